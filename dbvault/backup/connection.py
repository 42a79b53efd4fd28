"""
Connection parameters for a source database.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional

from sqlalchemy.engine import URL

from .errors import InvalidConfigurationError


DEFAULT_DRIVER = 'mysql+pymysql'

DEFAULT_PORTS = {
    'mysql': 3306,
    'mariadb': 3306,
    'postgresql': 5432,
}


def parse_table_list(value) -> FrozenSet[str]:
    """
    Normalize a table list from a comma separated string or an iterable.

    Args:
        value: None, "a, b" or ['a', 'b']

    Returns:
        Frozen set of stripped, non-empty table names
    """
    if not value:
        return frozenset()
    if isinstance(value, str):
        value = value.split(',')
    return frozenset(name.strip() for name in value if name and name.strip())


@dataclass(frozen=True)
class ConnectionSpec:
    """
    Validated, immutable connection parameters for one source database.

    skipped_tables are left out of the dump entirely; structure_only tables
    get their schema dumped without row data.
    """

    host: str
    port: int
    database: str
    username: str
    password: str = field(default='', repr=False)
    compression: bool = True
    skipped_tables: FrozenSet[str] = frozenset()
    structure_only: FrozenSet[str] = frozenset()
    connection_name: Optional[str] = None
    driver: str = DEFAULT_DRIVER
    driver_options: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'skipped_tables', parse_table_list(self.skipped_tables))
        object.__setattr__(self, 'structure_only', parse_table_list(self.structure_only))
        object.__setattr__(self, 'driver_options', MappingProxyType(dict(self.driver_options or {})))
        self._validate()

    def _validate(self):
        if not self.host or not str(self.host).strip():
            raise InvalidConfigurationError('host', 'Host cannot be empty')

        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise InvalidConfigurationError('port', 'Port must be an integer')

        if self.port < 1 or self.port > 65535:
            raise InvalidConfigurationError('port', 'Port must be between 1 and 65535')

        if not self.database or not str(self.database).strip():
            raise InvalidConfigurationError('database', 'Database name cannot be empty')

        if not self.username or not str(self.username).strip():
            raise InvalidConfigurationError('username', 'Username cannot be empty')

        if not self.driver:
            raise InvalidConfigurationError('driver', 'Driver cannot be empty')

    @property
    def display_name(self) -> str:
        return self.connection_name or f"{self.database}@{self.host}:{self.port}"

    @property
    def dialect_name(self) -> str:
        return self.driver.split('+', 1)[0]

    def sqlalchemy_url(self) -> URL:
        """Build the SQLAlchemy URL used to connect to the source database."""
        if self.dialect_name == 'sqlite':
            # File databases: host and credentials are not part of the URL
            return URL.create(drivername=self.driver, database=self.database)
        return URL.create(
            drivername=self.driver,
            username=self.username,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=self.database,
            query=dict(self.driver_options.get('query', {}))
        )

    def engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for create_engine() taken from driver_options."""
        options = {'pool_pre_ping': True}
        connect_args = self.driver_options.get('connect_args')
        if connect_args:
            options['connect_args'] = dict(connect_args)
        return options

    def to_dict(self, include_password: bool = False) -> Dict[str, Any]:
        data = {
            'host': self.host,
            'port': self.port,
            'database': self.database,
            'username': self.username,
            'compression': self.compression,
            'skipped_tables': sorted(self.skipped_tables),
            'structure_only': sorted(self.structure_only),
            'connection_name': self.connection_name,
            'driver': self.driver,
            'driver_options': dict(self.driver_options),
        }
        if include_password:
            data['password'] = self.password
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectionSpec':
        """
        Build a spec from a plain dict (API payloads, CLI input).

        Missing port falls back to the driver's default port.
        """
        driver = data.get('driver') or DEFAULT_DRIVER
        port = data.get('port')
        if port is None:
            port = DEFAULT_PORTS.get(driver.split('+', 1)[0], 3306)

        try:
            port = int(port)
        except (TypeError, ValueError):
            raise InvalidConfigurationError('port', f"Port must be an integer, got {port!r}")

        return cls(
            host=data.get('host', ''),
            port=port,
            database=data.get('database', ''),
            username=data.get('username', ''),
            password=data.get('password') or '',
            compression=data.get('compression', True),
            skipped_tables=parse_table_list(data.get('skipped_tables')),
            structure_only=parse_table_list(data.get('structure_only')),
            connection_name=data.get('connection_name'),
            driver=driver,
            driver_options=data.get('driver_options') or {}
        )

    @classmethod
    def from_data_source(cls, data_source, password: str = '') -> 'ConnectionSpec':
        """
        Build a spec from a DataSource row.

        Args:
            data_source: DataSource model instance
            password: Decrypted password (the model only stores ciphertext)
        """
        return cls(
            host=data_source.host,
            port=data_source.port,
            database=data_source.database,
            username=data_source.username,
            password=password,
            compression=data_source.compression,
            skipped_tables=data_source.skipped_tables,
            structure_only=data_source.structure_only,
            connection_name=data_source.name,
            driver=data_source.driver or DEFAULT_DRIVER,
            driver_options=data_source.driver_options or {}
        )
