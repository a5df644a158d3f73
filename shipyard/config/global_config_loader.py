import yaml
from pathlib import Path
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field


@dataclass
class EngineConfig:
    """Build scheduling configuration"""
    concurrency: int = 4
    run_timeout: float = 3600
    build_timeout: float = 1200
    max_build_retries: int = 2
    retry_base_delay: float = 1.0
    retryable_exit_codes: List[int] = field(default_factory=lambda: [75, 124, 143])
    workdir: str = "."


@dataclass
class StorageConfig:
    """Deployment state storage configuration"""
    state_dir: str = "./data/deploy_state"


@dataclass
class LockConfig:
    """Run lock configuration"""
    timeout: int = 30


@dataclass
class PlatformConfig:
    """Local deployment platform configuration"""
    publish_dir: str = "./data/published"
    log_dir: str = "./data/logs"
    host: str = "localhost"
    base_port: int = 10000
    startup_grace: float = 1.0
    health_check_timeout: float = 30.0
    static_domain: str = "static.localhost"
    database_urls: Dict[str, str] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class GlobalConfig:
    """Global configuration for the orchestration engine"""
    engine: EngineConfig
    storage: StorageConfig
    lock: LockConfig
    platform: PlatformConfig
    logging: LoggingConfig

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GlobalConfig':
        """Create GlobalConfig from dictionary"""
        return cls(
            engine=EngineConfig(**data.get('engine', {})),
            storage=StorageConfig(**data.get('storage', {})),
            lock=LockConfig(**data.get('lock', {})),
            platform=PlatformConfig(**data.get('platform', {})),
            logging=LoggingConfig(**data.get('logging', {})),
        )

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'GlobalConfig':
        """Load GlobalConfig from YAML file"""
        path = Path(yaml_path)
        if not path.exists():
            # Return default config if file doesn't exist
            return cls.default()

        with open(path, 'r') as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data or {})

    @classmethod
    def default(cls) -> 'GlobalConfig':
        """Return default configuration"""
        return cls(
            engine=EngineConfig(),
            storage=StorageConfig(),
            lock=LockConfig(),
            platform=PlatformConfig(),
            logging=LoggingConfig(),
        )


def load_global_config(config_path: Optional[str] = None) -> GlobalConfig:
    """
    Load global configuration from YAML file.
    If no path provided, looks for shipyard.yaml in standard locations.
    """
    if config_path:
        return GlobalConfig.from_yaml(config_path)

    search_paths = [
        Path("./shipyard.yaml"),
        Path("./config/shipyard.yaml"),
        Path("/etc/shipyard/shipyard.yaml"),
    ]

    for path in search_paths:
        if path.exists():
            return GlobalConfig.from_yaml(str(path))

    return GlobalConfig.default()
