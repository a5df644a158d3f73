"""
Command-line interface.
"""

from .deploy_cli import cli

__all__ = ['cli']
