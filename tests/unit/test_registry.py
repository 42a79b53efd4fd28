"""
Unit tests for the destination registry (dbvault/backup/destinations/registry.py).
"""

import json

import pytest

from dbvault.backup.destinations import (
    DestinationRegistry,
    LocalDestination,
    S3Destination,
    SftpDestination,
    get_registry,
    parse_destination_config,
)
from dbvault.backup.errors import DestinationConfigError
from dbvault.backup.runs import RunContext


class TestParseDestinationConfig:
    """Test BACKUP_DESTINATIONS parsing."""

    def test_json_string(self):
        assert parse_destination_config('[{"type": "local", "path": "/x"}]') == [{'type': 'local', 'path': '/x'}]

    def test_single_object(self):
        """Test a lone object is wrapped in a list."""
        assert parse_destination_config({'type': 'local'}) == [{'type': 'local'}]

    @pytest.mark.parametrize("value", [None, '', '   ', 'not json', '42'])
    def test_invalid_values_give_empty_list(self, value):
        """Test unusable configuration yields no destinations."""
        assert parse_destination_config(value) == []


class TestDestinationRegistry:
    """Test DestinationRegistry operations."""

    def test_register_and_lookup(self, tmp_path):
        """Test destinations are kept in registration order."""
        first = LocalDestination('a', str(tmp_path / 'a'))
        second = LocalDestination('b', str(tmp_path / 'b'))
        registry = DestinationRegistry([first, second])

        assert registry.get('a') is first
        assert registry.get('missing') is None
        assert registry.get_destinations() == [first, second]
        assert registry.identifiers() == ['a', 'b']
        assert len(registry) == 2
        assert 'b' in registry
        assert list(registry) == [first, second]

    def test_duplicate_identifier(self, tmp_path):
        """Test registering an identifier twice raises DestinationConfigError."""
        registry = DestinationRegistry([LocalDestination('a', str(tmp_path))])

        with pytest.raises(DestinationConfigError, match="Duplicate"):
            registry.register(LocalDestination('a', str(tmp_path)))

    def test_get_enabled_destinations(self, tmp_path):
        """Test only destinations enabled for the run are returned."""
        registry = DestinationRegistry([
            LocalDestination('local', str(tmp_path)),
            LocalDestination('archive', str(tmp_path)),
        ])
        run = RunContext(run_id='r', destination_ids=('archive',))

        assert [d.identifier for d in registry.get_enabled_destinations(run)] == ['archive']

    def test_get_destination_for_file(self, tmp_path):
        """Test file records resolve through their destination_id."""
        local = LocalDestination('local', str(tmp_path))
        registry = DestinationRegistry([local])

        class Record:
            destination_id = 'local'

        assert registry.get_destination_for_file(Record()) is local


class TestFromConfig:
    """Test building registries from configuration."""

    def test_builds_every_type(self, tmp_path):
        """Test local, s3, r2, minio and sftp definitions."""
        definitions = [
            {'type': 'local', 'path': str(tmp_path)},
            {'type': 's3', 'id': 'aws', 'bucket': 'b', 'access_key': 'k', 'secret_key': 's', 'region': 'eu-west-1'},
            {'type': 'r2', 'bucket': 'b', 'account_id': 'acc123', 'access_key': 'k', 'secret_key': 's'},
            {'type': 'minio', 'bucket': 'b', 'endpoint_url': 'http://minio:9000', 'access_key': 'k', 'secret_key': 's'},
            {'type': 'sftp', 'host': 'h', 'username': 'u', 'password': 'p', 'root': '/srv'},
        ]

        registry = DestinationRegistry.from_config(json.dumps(definitions))

        assert registry.identifiers() == ['local', 'aws', 'r2', 'minio', 'sftp']
        assert isinstance(registry.get('local'), LocalDestination)
        assert isinstance(registry.get('aws'), S3Destination)
        assert isinstance(registry.get('sftp'), SftpDestination)
        assert registry.get('aws').region == 'eu-west-1'
        assert registry.get('r2').endpoint_url == 'https://acc123.r2.cloudflarestorage.com'
        assert registry.get('r2').region == 'auto'
        assert registry.get('minio').endpoint_url == 'http://minio:9000'

    def test_invalid_entries_are_skipped(self, tmp_path):
        """Test bad definitions are logged and the rest still load."""
        definitions = [
            {'type': 'ftp', 'host': 'h'},
            {'type': 'minio', 'bucket': 'b'},
            {'type': 'r2', 'bucket': 'b'},
            {'type': 's3'},
            {'type': 'sftp', 'host': 'h', 'username': 'u'},
            'not a dict',
            {'type': 'local', 'path': str(tmp_path)},
        ]

        registry = DestinationRegistry.from_config(definitions)

        assert registry.identifiers() == ['local']

    def test_default_ids_do_not_collide(self, tmp_path):
        """Test two destinations of one type get distinct ids."""
        registry = DestinationRegistry.from_config([
            {'type': 'local', 'path': str(tmp_path / 'a')},
            {'type': 'local', 'path': str(tmp_path / 'b')},
        ])

        assert registry.identifiers() == ['local', 'local_1']

    def test_duplicate_explicit_ids_keep_first(self, tmp_path):
        """Test a repeated explicit id is skipped."""
        registry = DestinationRegistry.from_config([
            {'type': 'local', 'id': 'main', 'path': str(tmp_path / 'a')},
            {'type': 'local', 'id': 'main', 'path': str(tmp_path / 'b')},
        ])

        assert len(registry) == 1
        assert registry.get('main').base_path == tmp_path / 'a'


class TestGetRegistry:
    """Test the per-app registry."""

    def test_built_once_per_app(self, app, tmp_path):
        """Test the registry is cached in app.extensions."""
        app.config['BACKUP_DESTINATIONS'] = json.dumps([{'type': 'local', 'path': str(tmp_path)}])

        first = get_registry(app)
        second = get_registry(app)

        assert first is second
        assert first.identifiers() == ['local']

    def test_uses_current_app(self, app):
        """Test the current app is used when none is given."""
        with app.app_context():
            assert len(get_registry()) == 0
