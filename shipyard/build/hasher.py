"""
Canonical hash computation for service definitions and resolved environments.
Hashes parsed objects to avoid formatting-based changes.
"""
import hashlib
import json
from typing import Dict, Any
import logging

from ..core.models import Service


class ServiceHasher:
    """Computes canonical hashes used for incremental-build decisions"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def compute_service_hash(self, service: Service) -> str:
        """
        Compute hash from a parsed service definition.
        Uses canonical JSON serialization to ignore formatting/comments.

        Args:
            service: Parsed service

        Returns:
            SHA256 hash hex string
        """
        try:
            return self._digest(service.to_dict())
        except Exception as e:
            self.logger.error(f"Failed to compute hash for service {service.name}: {e}")
            raise

    def compute_env_hash(self, env: Dict[str, str]) -> str:
        """
        Compute hash of a resolved environment.
        A change means a dependency moved and baked-in values are stale.

        Args:
            env: Resolved environment mapping

        Returns:
            SHA256 hash hex string
        """
        return self._digest(env)

    @staticmethod
    def _digest(data: Any) -> str:
        canonical_json = json.dumps(
            data,
            sort_keys=True,
            separators=(',', ':'),
            default=str  # Enums and other non-JSON values
        )
        return hashlib.sha256(canonical_json.encode('utf-8')).hexdigest()
