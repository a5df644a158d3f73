"""
Environment resolution against live service addresses.
"""
import logging
from threading import Lock
from typing import Dict, Mapping, Optional

from ..core.exceptions import UnresolvedReferenceError
from ..core.models import Service, ServiceAddress


logger = logging.getLogger(__name__)


class LiveAddressBook:
    """
    Addresses of services that reached ``live`` in the current run.

    Each key is written exactly once, on the transition to ``live``; reads
    take a snapshot under the same lock.
    """

    def __init__(self):
        self._addresses: Dict[str, ServiceAddress] = {}
        self._lock = Lock()

    def publish(self, name: str, address: ServiceAddress) -> None:
        with self._lock:
            if name in self._addresses:
                raise ValueError(f"Address for service '{name}' already published")
            self._addresses[name] = address
        logger.debug(f"Published address for {name}: {address.url}")

    def snapshot(self) -> Dict[str, ServiceAddress]:
        with self._lock:
            return dict(self._addresses)


def resolve_env(
    service: Service,
    live_addresses: Mapping[str, ServiceAddress],
    database_properties: Optional[Mapping[str, Mapping[str, str]]] = None,
    root_causes: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Substitute references in a service's environment.

    Args:
        service: Service whose environment to resolve
        live_addresses: Addresses of live services
        database_properties: Connection properties per database name
        root_causes: Failure descriptions of services that did not go live

    Returns:
        Resolved mapping in manifest order

    Raises:
        UnresolvedReferenceError: If a referenced address is unknown
    """
    database_properties = database_properties or {}
    root_causes = root_causes or {}
    env: Dict[str, str] = {}

    for entry in service.env_vars:
        if entry.from_service is not None:
            ref = entry.from_service
            address = live_addresses.get(ref.target)
            if address is None:
                raise UnresolvedReferenceError(
                    service.name, ref.target, root_cause=root_causes.get(ref.target)
                )
            env[entry.key] = address.get(ref.property)
        elif entry.from_database is not None:
            ref = entry.from_database
            properties = database_properties.get(ref.target)
            if properties is None or ref.property.value not in properties:
                raise UnresolvedReferenceError(
                    service.name, ref.target, root_cause=root_causes.get(ref.target)
                )
            env[entry.key] = properties[ref.property.value]
        else:
            env[entry.key] = entry.value

    return env
