"""
Destination registry built from the BACKUP_DESTINATIONS configuration.

Each definition is a dict with a 'type' (local, s3, r2, minio, sftp), an
optional 'id' and type-specific keys. Invalid definitions are logged and
skipped so one bad entry never disables the others.
"""

import json
import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional

from .base import BackupDestination
from .local import LocalDestination
from .s3 import S3Destination
from .sftp import SftpDestination
from ..errors import DestinationConfigError

logger = logging.getLogger(__name__)


def _build_local(definition):
    return LocalDestination(definition['id'], definition.get('path') or definition.get('root'))


def _build_s3(definition):
    return S3Destination(
        definition['id'],
        bucket=definition.get('bucket'),
        access_key=definition.get('access_key'),
        secret_key=definition.get('secret_key'),
        region=definition.get('region', 'us-east-1'),
        endpoint_url=definition.get('endpoint_url') or definition.get('endpoint'),
        prefix=definition.get('prefix', ''),
    )


def _build_r2(definition):
    endpoint = definition.get('endpoint_url') or definition.get('endpoint')
    if not endpoint:
        account_id = definition.get('account_id')
        if not account_id:
            raise DestinationConfigError(f"R2 destination {definition['id']} needs account_id or endpoint_url")
        endpoint = f"https://{account_id}.r2.cloudflarestorage.com"
    return _build_s3(dict(definition, endpoint_url=endpoint, region=definition.get('region', 'auto')))


def _build_minio(definition):
    if not (definition.get('endpoint_url') or definition.get('endpoint')):
        raise DestinationConfigError(f"MinIO destination {definition['id']} needs endpoint_url")
    return _build_s3(definition)


def _build_sftp(definition):
    return SftpDestination(
        definition['id'],
        host=definition.get('host'),
        username=definition.get('username'),
        root=definition.get('root', '.'),
        port=definition.get('port', 22),
        password=definition.get('password'),
        private_key=definition.get('private_key'),
        timeout=definition.get('timeout', 30),
    )


DESTINATION_TYPES = {
    'local': _build_local,
    's3': _build_s3,
    'r2': _build_r2,
    'minio': _build_minio,
    'sftp': _build_sftp,
}


def parse_destination_config(value) -> List[Dict[str, Any]]:
    """
    Normalize BACKUP_DESTINATIONS into a list of dicts.

    Accepts a JSON string or a list. Invalid JSON yields an empty list.
    """
    if value is None:
        return []
    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            logger.error(f"BACKUP_DESTINATIONS is not valid JSON, ignoring it: {e}")
            return []
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, (list, tuple)):
        logger.error(f"BACKUP_DESTINATIONS must be a list, got {type(value).__name__}")
        return []
    return list(value)


class DestinationRegistry:
    """Ordered collection of destinations keyed by identifier."""

    def __init__(self, destinations: Iterable[BackupDestination] = ()):
        self._destinations = OrderedDict()
        for destination in destinations:
            self.register(destination)

    def register(self, destination: BackupDestination) -> BackupDestination:
        """
        Add a destination.

        Raises:
            DestinationConfigError: If the identifier is already registered
        """
        if destination.identifier in self._destinations:
            raise DestinationConfigError(f"Duplicate destination id: {destination.identifier}")
        self._destinations[destination.identifier] = destination
        return destination

    def get(self, identifier: str) -> Optional[BackupDestination]:
        return self._destinations.get(identifier)

    def get_destinations(self) -> List[BackupDestination]:
        return list(self._destinations.values())

    def get_enabled_destinations(self, run) -> List[BackupDestination]:
        enabled = []
        for destination in self._destinations.values():
            try:
                if destination.is_enabled(run):
                    enabled.append(destination)
            except Exception as e:
                logger.warning(f"is_enabled failed for {destination.identifier}, treating as disabled: {e}")
        return enabled

    def get_destination_for_file(self, record) -> Optional[BackupDestination]:
        return self._destinations.get(record.destination_id)

    def identifiers(self) -> List[str]:
        return list(self._destinations)

    def __len__(self):
        return len(self._destinations)

    def __iter__(self):
        return iter(self.get_destinations())

    def __contains__(self, identifier):
        return identifier in self._destinations

    @classmethod
    def from_config(cls, definitions) -> 'DestinationRegistry':
        """
        Build a registry from destination definitions.

        Args:
            definitions: JSON string or list of dicts
        """
        registry = cls()

        for index, definition in enumerate(parse_destination_config(definitions)):
            if not isinstance(definition, dict):
                logger.error(f"Destination #{index} is not an object, skipping")
                continue

            destination_type = str(definition.get('type', '')).lower()
            builder = DESTINATION_TYPES.get(destination_type)
            if builder is None:
                logger.error(f"Destination #{index} has unknown type {destination_type!r}, skipping")
                continue

            definition = dict(definition)
            definition.setdefault('id', destination_type if destination_type not in registry else f"{destination_type}_{index}")

            try:
                registry.register(builder(definition))
            except (DestinationConfigError, KeyError, TypeError, ValueError) as e:
                logger.error(f"Destination {definition.get('id')!r} is invalid, skipping: {e}")

        logger.info(f"Loaded {len(registry)} backup destination(s): {', '.join(registry.identifiers()) or 'none'}")
        return registry


def get_registry(app=None) -> DestinationRegistry:
    """Registry for the given (or current) Flask app, built once per app."""
    if app is None:
        from flask import current_app
        app = current_app._get_current_object()

    registry = app.extensions.get('dbvault_destinations')
    if registry is None:
        registry = DestinationRegistry.from_config(app.config.get('BACKUP_DESTINATIONS'))
        app.extensions['dbvault_destinations'] = registry
    return registry
