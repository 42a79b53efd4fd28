"""
Database dump producer.

Connects to a source database through SQLAlchemy, writes a compressed SQL
dump into a fresh temporary workspace and hands back an ArtifactHandle.

Dump layout:
1. Header (database, timestamp, dialect)
2. Per table: DROP/CREATE statement, then batched INSERTs unless the
   table is structure-only. Skipped tables are omitted entirely.
3. View definitions (failures become warnings)
4. Stored procedures, functions and events on MySQL and MariaDB
   (failures become warnings)
"""

import json
import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import JSON, MetaData, Table, create_engine, inspect, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.schema import CreateTable

from .artifact import ArtifactHandle, TemporaryWorkspace
from .compression import CompressionError, generate_dump_filename, open_dump_stream, validate_compression_method
from .connection import ConnectionSpec
from .errors import BackupError, DatabaseConnectionError, DumpError, EstimationError

logger = logging.getLogger(__name__)


def default_engine_factory(spec: ConnectionSpec) -> Engine:
    return create_engine(spec.sqlalchemy_url(), **spec.engine_options())


class DumpProducer:
    """
    Produces compressed dumps of a source database.
    """

    def __init__(
        self,
        temp_dir: Optional[str] = None,
        compression_method: str = 'gzip',
        compression_level: int = 6,
        engine_factory: Callable[[ConnectionSpec], Engine] = None,
        batch_size: int = 500
    ):
        """
        Initialize dump producer.

        Args:
            temp_dir: Parent directory for run workspaces
            compression_method: Compression used when the spec enables compression
            compression_level: Compression level
            engine_factory: Builds a SQLAlchemy engine for a spec (overridable in tests)
            batch_size: Rows per INSERT statement
        """
        self.temp_dir = temp_dir
        self.compression_method = validate_compression_method(compression_method)
        self.compression_level = compression_level
        self.engine_factory = engine_factory or default_engine_factory
        self.batch_size = batch_size

    def test_connection(self, spec: ConnectionSpec) -> bool:
        """
        Run a cheap round-trip query against the source.

        Raises:
            DatabaseConnectionError: If the database is unreachable or rejects the credentials
        """
        engine = self._engine(spec)
        try:
            with engine.connect() as conn:
                conn.execute(text('SELECT 1'))
            return True
        except DBAPIError as e:
            raise self._connection_error(spec, e)
        finally:
            engine.dispose()

    def estimate_size(self, spec: ConnectionSpec) -> int:
        """
        Estimate the on-disk size of the source database in bytes.

        Raises:
            DatabaseConnectionError: If the database is unreachable
            EstimationError: If the size cannot be determined
        """
        engine = self._engine(spec)
        try:
            with engine.connect() as conn:
                return self._query_size(conn, spec)
        except (OperationalError, InterfaceError) as e:
            raise self._connection_error(spec, e)
        except EstimationError:
            raise
        except SQLAlchemyError as e:
            raise EstimationError(
                f"Failed to estimate size of database '{spec.database}': {e}",
                {'database': spec.database, 'operation': 'estimate_size'}
            )
        finally:
            engine.dispose()

    def get_tables(self, spec: ConnectionSpec) -> List[str]:
        """List base tables of the source database, sorted by name."""
        return self._list(spec, 'get_tables', lambda conn: sorted(inspect(conn).get_table_names()))

    def get_views(self, spec: ConnectionSpec) -> List[str]:
        """List views of the source database, sorted by name."""
        return self._list(spec, 'get_views', lambda conn: sorted(inspect(conn).get_view_names()))

    def produce(self, spec: ConnectionSpec, warnings: Optional[list] = None) -> ArtifactHandle:
        """
        Dump the source database into a new temporary workspace.

        Args:
            spec: Connection parameters
            warnings: Optional list that non-fatal problems are appended to

        Returns:
            ArtifactHandle owning the workspace

        Raises:
            DatabaseConnectionError: If the database is unreachable
            DumpError: If the dump fails or produces no output
        """
        self.test_connection(spec)

        method = self.compression_method if spec.compression else 'none'
        workspace = TemporaryWorkspace.create(self.temp_dir, prefix=f"dbvault_{_safe(spec.database)}_")
        engine = None

        try:
            engine = self._engine(spec)
            dump_path = workspace.file_path(generate_dump_filename(spec.database, method))

            with engine.connect() as conn:
                tables = sorted(inspect(conn).get_table_names())
                tables_to_dump = [t for t in tables if t not in spec.skipped_tables]

                if not tables_to_dump:
                    raise DumpError(
                        f"Failed to backup database '{spec.database}': no tables found to backup",
                        {'database': spec.database, 'skipped_tables': sorted(spec.skipped_tables)}
                    )

                logger.info(
                    f"Dumping {len(tables_to_dump)} tables from {spec.display_name} "
                    f"(skipped: {len(tables) - len(tables_to_dump)}, compression: {method})"
                )

                with open_dump_stream(str(dump_path), method, self.compression_level) as out:
                    self._write_header(out, conn, spec)
                    for table_name in tables_to_dump:
                        self._dump_table(out, conn, table_name, table_name in spec.structure_only)
                    self._dump_views(out, conn, spec, warnings)
                    if conn.dialect.name in ('mysql', 'mariadb'):
                        self._dump_routines(out, conn, spec, warnings)
                    self._write_footer(out, conn)

            artifact = ArtifactHandle.create(workspace, str(dump_path))
            logger.info(f"Dump created: {artifact.filename} ({artifact.size_bytes} bytes)")
            return artifact

        except (OperationalError, InterfaceError) as e:
            workspace.release()
            raise self._connection_error(spec, e)
        except BackupError:
            workspace.release()
            raise
        except (SQLAlchemyError, CompressionError, OSError) as e:
            workspace.release()
            raise DumpError(
                f"Failed to backup database '{spec.database}'. Reason: {e}",
                {'database': spec.database, 'error_type': type(e).__name__}
            )
        except BaseException:
            workspace.release()
            raise
        finally:
            if engine is not None:
                engine.dispose()

    def _engine(self, spec: ConnectionSpec) -> Engine:
        try:
            return self.engine_factory(spec)
        except (SQLAlchemyError, ImportError) as e:
            raise DatabaseConnectionError(
                f"Failed to create engine for {spec.display_name}: {e}",
                {'host': spec.host, 'port': spec.port, 'driver': spec.driver}
            )

    def _list(self, spec: ConnectionSpec, operation: str, query: Callable[[Connection], List[str]]) -> List[str]:
        engine = self._engine(spec)
        try:
            with engine.connect() as conn:
                return query(conn)
        except (OperationalError, InterfaceError) as e:
            raise self._connection_error(spec, e)
        except SQLAlchemyError as e:
            raise DumpError(
                f"Failed to backup database '{spec.database}'. Reason: {e}",
                {'database': spec.database, 'operation': operation}
            )
        finally:
            engine.dispose()

    def _query_size(self, conn: Connection, spec: ConnectionSpec) -> int:
        dialect = conn.dialect.name

        if dialect in ('mysql', 'mariadb'):
            value = conn.execute(
                text(
                    "SELECT SUM(data_length + index_length) FROM information_schema.tables "
                    "WHERE table_schema = :schema"
                ),
                {'schema': spec.database}
            ).scalar()
        elif dialect == 'postgresql':
            value = conn.execute(text('SELECT pg_database_size(current_database())')).scalar()
        elif dialect == 'sqlite':
            page_count = conn.execute(text('PRAGMA page_count')).scalar()
            page_size = conn.execute(text('PRAGMA page_size')).scalar()
            value = (page_count or 0) * (page_size or 0)
        else:
            raise EstimationError(
                f"Size estimation is not supported for dialect '{dialect}'",
                {'database': spec.database, 'dialect': dialect}
            )

        return int(value or 0)

    def _write_header(self, out, conn: Connection, spec: ConnectionSpec):
        out.write("-- dbvault database dump\n")
        out.write(f"-- Database: {spec.database}\n")
        out.write(f"-- Dialect: {conn.dialect.name}\n")
        out.write(f"-- Generated: {datetime.now(timezone.utc).isoformat()}\n\n")
        if conn.dialect.name in ('mysql', 'mariadb'):
            out.write("SET FOREIGN_KEY_CHECKS=0;\n\n")

    def _write_footer(self, out, conn: Connection):
        if conn.dialect.name in ('mysql', 'mariadb'):
            out.write("SET FOREIGN_KEY_CHECKS=1;\n")
        out.write("-- Dump completed\n")

    def _dump_table(self, out, conn: Connection, table_name: str, structure_only: bool):
        table = Table(table_name, MetaData(), autoload_with=conn)
        quoted = conn.dialect.identifier_preparer.quote(table_name)

        out.write(f"-- Table structure for {table_name}\n")
        out.write(f"DROP TABLE IF EXISTS {quoted};\n")
        out.write(str(CreateTable(table).compile(dialect=conn.dialect)).strip())
        out.write(";\n\n")

        if structure_only:
            logger.debug(f"Table {table_name} is structure-only, skipping rows")
            return

        out.write(f"-- Data for {table_name}\n")
        columns = ', '.join(conn.dialect.identifier_preparer.quote(c.name) for c in table.columns)
        dialect_name = conn.dialect.name
        json_columns = [isinstance(c.type, JSON) for c in table.columns]
        row_count = 0

        result = conn.execution_options(stream_results=True).execute(select(table))
        for batch in result.partitions(self.batch_size):
            values = ',\n'.join(
                '(' + ', '.join(
                    sql_literal(value, dialect_name, is_json) for value, is_json in zip(row, json_columns)
                ) + ')'
                for row in batch
            )
            out.write(f"INSERT INTO {quoted} ({columns}) VALUES\n{values};\n")
            row_count += len(batch)

        out.write("\n")
        logger.debug(f"Dumped {row_count} rows from {table_name}")

    def _dump_views(self, out, conn: Connection, spec: ConnectionSpec, warnings: Optional[list]):
        inspector = inspect(conn)
        for view in sorted(inspector.get_view_names()):
            if view in spec.skipped_tables:
                continue
            try:
                definition = (inspector.get_view_definition(view) or '').strip().rstrip(';')
                if not definition:
                    raise DumpError(f"Could not retrieve definition for view '{view}'")

                quoted = conn.dialect.identifier_preparer.quote(view)
                out.write(f"-- View: {view}\n")
                out.write(f"DROP VIEW IF EXISTS {quoted};\n")
                if definition.upper().startswith('CREATE'):
                    out.write(f"{definition};\n\n")
                else:
                    out.write(f"CREATE VIEW {quoted} AS {definition};\n\n")

            except (SQLAlchemyError, DumpError, NotImplementedError) as e:
                logger.warning(f"Failed to backup view '{view}': {e}")
                if warnings is not None:
                    warnings.append({
                        'message': f"Failed to backup view '{view}'",
                        'view': view,
                        'error': str(e),
                    })

    def _dump_routines(self, out, conn: Connection, spec: ConnectionSpec, warnings: Optional[list]):
        """
        Write stored procedures, functions and events (MySQL and MariaDB).

        Definitions are wrapped in DELIMITER blocks for the mysql client.
        Anything that cannot be read becomes a warning.
        """
        try:
            routines = conn.execute(
                text(
                    "SELECT ROUTINE_NAME, ROUTINE_TYPE FROM information_schema.ROUTINES "
                    "WHERE ROUTINE_SCHEMA = :schema ORDER BY ROUTINE_TYPE, ROUTINE_NAME"
                ),
                {'schema': spec.database}
            ).all()
            events = conn.execute(
                text(
                    "SELECT EVENT_NAME FROM information_schema.EVENTS "
                    "WHERE EVENT_SCHEMA = :schema ORDER BY EVENT_NAME"
                ),
                {'schema': spec.database}
            ).all()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to list routines and events of {spec.database}: {e}")
            if warnings is not None:
                warnings.append({'message': 'Failed to backup stored routines and events', 'error': str(e)})
            return

        objects = [(row[1].upper(), row[0]) for row in routines] + [('EVENT', row[0]) for row in events]
        if not objects:
            return

        out.write("-- Stored routines and events\n")
        for kind, name in objects:
            quoted = conn.dialect.identifier_preparer.quote(name)
            try:
                row = conn.execute(text(f"SHOW CREATE {kind} {quoted}")).first()
                definition = row._mapping.get(f"Create {kind.capitalize()}") if row is not None else None
                if not definition:
                    raise DumpError(f"Could not retrieve definition for {kind.lower()} '{name}'")

                out.write(f"DROP {kind} IF EXISTS {quoted};\n")
                out.write("DELIMITER ;;\n")
                out.write(f"{definition.strip().rstrip(';')} ;;\n")
                out.write("DELIMITER ;\n\n")

            except (SQLAlchemyError, DumpError) as e:
                logger.warning(f"Failed to backup {kind.lower()} '{name}': {e}")
                if warnings is not None:
                    warnings.append({
                        'message': f"Failed to backup {kind.lower()} '{name}'",
                        'routine': name,
                        'routine_type': kind.lower(),
                        'error': str(e),
                    })

    def _connection_error(self, spec: ConnectionSpec, error: Exception) -> DatabaseConnectionError:
        reason = getattr(error, 'orig', None) or error
        return DatabaseConnectionError(
            f"Failed to connect to database at {spec.host}:{spec.port}. Reason: {reason}",
            {'host': spec.host, 'port': spec.port, 'reason': str(reason)}
        )


def sql_literal(value, dialect_name: str = 'mysql', json_column: bool = False) -> str:
    """
    Render a Python value as a SQL literal for the given dialect.

    Backslashes are escaped for MySQL, which treats them as escape characters.
    On PostgreSQL lists become ARRAY constructors unless the column holds JSON.

    Raises:
        DumpError: If the value has no literal form on the dialect
    """
    postgres = dialect_name == 'postgresql'

    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        if postgres:
            return 'TRUE' if value else 'FALSE'
        return '1' if value else '0'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (float, Decimal)):
        if _is_finite(value):
            return str(value)
        return _non_finite_literal(value, dialect_name)
    if isinstance(value, (bytes, bytearray, memoryview)):
        if postgres:
            return f"'\\x{bytes(value).hex()}'::bytea"
        return f"X'{bytes(value).hex()}'"
    if isinstance(value, datetime):
        return _quote(value.isoformat(sep=' '), dialect_name)
    if isinstance(value, (date, time)):
        return _quote(value.isoformat(), dialect_name)
    if isinstance(value, timedelta):
        return _quote(str(value), dialect_name)
    if isinstance(value, list) and postgres and not json_column:
        if not value:
            return "'{}'"
        return 'ARRAY[' + ', '.join(sql_literal(item, dialect_name) for item in value) + ']'
    if isinstance(value, (dict, list)):
        return _quote(json.dumps(value), dialect_name)
    return _quote(str(value), dialect_name)


def _is_finite(value) -> bool:
    if isinstance(value, Decimal):
        return value.is_finite()
    return math.isfinite(value)


def _non_finite_literal(value, dialect_name: str) -> str:
    is_nan = value.is_nan() if isinstance(value, Decimal) else math.isnan(value)

    if dialect_name == 'postgresql':
        if is_nan:
            return "'NaN'"
        return "'-Infinity'" if value < 0 else "'Infinity'"

    # SQLite reads an overflowing REAL literal as infinity but stores NaN as NULL
    if dialect_name == 'sqlite' and not is_nan:
        return '-9e999' if value < 0 else '9e999'

    raise DumpError(
        f"Value {value} cannot be written as a {dialect_name} literal",
        {'dialect': dialect_name, 'value': str(value)}
    )


def _quote(value: str, dialect_name: str) -> str:
    if dialect_name in ('mysql', 'mariadb'):
        value = value.replace('\\', '\\\\')
    return "'" + value.replace("'", "''") + "'"


def _safe(name: str) -> str:
    return "".join(c if c.isalnum() or c in ('-', '_') else '_' for c in name)
