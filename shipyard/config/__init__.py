from .manifest_loader import ManifestLoader
from .global_config_loader import GlobalConfig, load_global_config

__all__ = [
    'ManifestLoader',
    'GlobalConfig',
    'load_global_config',
]
