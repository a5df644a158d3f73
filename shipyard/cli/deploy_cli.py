"""
CLI for planning and running deployments of a manifest.
Thin wrapper over OrchestrationEngine.
"""
import asyncio
import json
import logging
import sys
from typing import List, Optional, Tuple

import click

from ..build.dependency_resolver import resolve
from ..config.global_config_loader import load_global_config
from ..config.manifest_loader import ManifestLoader
from ..core.enums import RunOutcome
from ..core.exceptions import DeploymentTimeoutError, ManifestError
from ..engine import OrchestrationEngine


def _setup_logging(log_level: str, fmt: Optional[str] = None):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=fmt or '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _load_manifest(manifest_path: str):
    try:
        return ManifestLoader.load_from_yaml(manifest_path)
    except ManifestError as e:
        raise click.ClickException(str(e))


def _collect_changes(changed: Tuple[str, ...], changes_file: Optional[str]) -> Optional[List[str]]:
    """Changeset from options; None when no changeset was given"""
    if not changed and not changes_file:
        return None

    paths = list(changed)
    if changes_file:
        if changes_file == '-':
            lines = sys.stdin.read().splitlines()
        else:
            with open(changes_file, 'r') as f:
                lines = f.read().splitlines()
        paths.extend(line.strip() for line in lines if line.strip())
    return paths


@click.group()
def cli():
    """Shipyard deployment orchestration"""
    pass


@cli.command()
@click.argument('manifest_path', type=click.Path(exists=True, dir_okay=False))
def order(manifest_path: str):
    """Print the dependency-respecting build order"""
    manifest = _load_manifest(manifest_path)
    try:
        names = resolve(manifest)
    except ManifestError as e:
        raise click.ClickException(str(e))

    for position, name in enumerate(names, 1):
        click.echo(f"{position:>3}. {name}")


@cli.command()
@click.argument('manifest_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--changed', multiple=True, help='Changed path (repeatable)')
@click.option('--changes-file', default=None, help='File with one changed path per line, - for stdin')
@click.option('--force', is_flag=True, help='Rebuild every service')
@click.option('--global-config', default=None, help='Path to global config YAML')
@click.option('--json', 'as_json', is_flag=True, help='Print the plan as JSON')
def plan(manifest_path: str, changed: Tuple[str, ...], changes_file: Optional[str],
         force: bool, global_config: Optional[str], as_json: bool):
    """Show build order and per-service build decisions without deploying"""
    manifest = _load_manifest(manifest_path)
    global_cfg = load_global_config(global_config)
    engine = OrchestrationEngine(global_cfg, use_lock=False)

    try:
        result = engine.plan(manifest, _collect_changes(changed, changes_file), force=force)
    except ManifestError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    click.echo(f"\n{'='*80}")
    click.echo(f"Deployment plan: {manifest_path}")
    click.echo(f"{'='*80}")
    for name in result['order']:
        deps = result['dependencies'][name]
        suffix = f" (after {', '.join(deps)})" if deps else ""
        click.echo(f"   - {name}: {result['decisions'][name]}{suffix}")
    click.echo(f"{'='*80}\n")


@cli.command()
@click.argument('manifest_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--changed', multiple=True, help='Changed path (repeatable)')
@click.option('--changes-file', default=None, help='File with one changed path per line, - for stdin')
@click.option('--force', is_flag=True, help='Rebuild every service')
@click.option('--concurrency', type=int, default=None, help='Maximum concurrent builds')
@click.option('--global-config', default=None, help='Path to global config YAML')
@click.option('--log-level', default=None, help='Log level')
@click.option('--json', 'as_json', is_flag=True, help='Print the release report as JSON')
def deploy(manifest_path: str, changed: Tuple[str, ...], changes_file: Optional[str], force: bool,
           concurrency: Optional[int], global_config: Optional[str], log_level: Optional[str],
           as_json: bool):
    """Build and release every service of a manifest"""
    global_cfg = load_global_config(global_config)
    _setup_logging(log_level or global_cfg.logging.level, global_cfg.logging.format)
    logger = logging.getLogger(__name__)

    if concurrency is not None:
        global_cfg.engine.concurrency = concurrency

    manifest = _load_manifest(manifest_path)
    changed_paths = _collect_changes(changed, changes_file)

    async def run_deploy():
        engine = OrchestrationEngine(global_cfg)
        try:
            return await engine.run(manifest, changed_paths, force=force)
        finally:
            await engine.close()

    try:
        report = asyncio.run(run_deploy())
    except (ManifestError, DeploymentTimeoutError) as e:
        raise click.ClickException(str(e))
    except Exception as e:
        logger.error(f"Deployment failed: {e}", exc_info=True)
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        report.print_summary()

    if report.outcome != RunOutcome.SUCCESS:
        sys.exit(1)


if __name__ == '__main__':
    cli()
