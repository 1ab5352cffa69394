"""
Database exporter - reads the source database through SQLAlchemy.

Discovers tables, counts rows, reads table data and renders it as one of the
supported export formats:
- sql: CREATE TABLE and INSERT statements
- json: metadata plus rows per table
- xlsx: a summary sheet plus one worksheet per table (openpyxl)

A failure on a single table is classified; tables whose failure allows the
run to continue are exported empty, anything else stops the export.
"""

import io
import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from openpyxl import Workbook
from sqlalchemy import MetaData, Table, func, inspect, select, text
from sqlalchemy.engine import Engine

from .errors import ErrorClassifier
from .retry import (
    DATABASE_PROFILE,
    RetryConfig,
    RetryPolicy,
    execute_with_retry_and_timeout,
    with_timeout,
)
from .types import ColumnInfo, DatabaseMetadata, ExportFormat, TableSchema


logger = logging.getLogger(__name__)

MAX_SHEET_TITLE = 31
DEFAULT_TIMEOUT_MS = 30000


class ExportError(Exception):
    """Raised when exporting the database fails."""
    pass


class DatabaseExporter:
    """
    Exporter for a relational database reachable through SQLAlchemy.
    """

    def __init__(
        self,
        engine: Engine,
        classifier: Optional[ErrorClassifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        retry_config: RetryConfig = DATABASE_PROFILE,
        schema: Optional[str] = None,
        database_name: Optional[str] = None,
        timeout_ms: Optional[int] = DEFAULT_TIMEOUT_MS,
    ):
        """
        Initialize exporter.

        Args:
            engine: SQLAlchemy engine for the source database
            classifier: Classifier deciding which per-table failures are skippable
            retry_policy: Policy used to retry database calls
            retry_config: Retry profile for database calls
            schema: Optional schema to export (default schema if None)
            database_name: Name recorded in export metadata
            timeout_ms: Deadline for each database call (None disables it)
        """
        self.engine = engine
        self.classifier = classifier or ErrorClassifier()
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry_config = retry_config
        self.schema = schema
        self.database_name = database_name or engine.url.database or engine.url.get_backend_name()
        self.timeout_ms = timeout_ms

    def _retry(self, operation: Callable[[], Any], label: str) -> Any:
        if self.timeout_ms is None:
            return self.retry_policy.run(operation, self.retry_config, label)
        # a timed-out attempt is retried like any other transient failure
        return execute_with_retry_and_timeout(
            operation, self.timeout_ms, self.retry_config, label, self.retry_policy
        )

    def check_connection(self):
        """
        Verify the database is reachable with a single round trip.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If the connection cannot be established
            OperationTimeoutError: If the round trip outlives timeout_ms
        """
        if self.timeout_ms is None:
            self._ping()
        else:
            with_timeout(self._ping, self.timeout_ms, 'Database connection check')

    def _ping(self):
        with self.engine.connect() as conn:
            conn.execute(text('SELECT 1'))

    def get_table_names(self) -> List[str]:
        return self._retry(
            lambda: sorted(inspect(self.engine).get_table_names(schema=self.schema)),
            'List tables'
        )

    def discover(self) -> DatabaseMetadata:
        """
        Discover all tables with their columns and row counts.

        Returns:
            DatabaseMetadata for the source database

        Raises:
            ExportError: If the database has no tables
            Exception: A per-table failure the classifier does not allow to skip
        """
        logger.info("Discovering database structure")

        table_names = self.get_table_names()
        if not table_names:
            raise ExportError('No tables found in the database')

        tables = []
        for table_name in table_names:
            try:
                columns = self._retry(lambda: self._describe_columns(table_name), f"Analyze table: {table_name}")
                row_count = self._retry(lambda: self._count_rows(table_name), f"Count rows: {table_name}")
                tables.append(TableSchema(name=table_name, columns=tuple(columns), row_count=row_count))
                logger.info(f"Table {table_name}: {row_count} rows, {len(columns)} columns")
            except Exception as e:
                classified = self.classifier.classify(e, f"Analyze table: {table_name}")
                if not self.classifier.should_continue(classified):
                    logger.error(f"Critical error analyzing table {table_name}, stopping analysis")
                    raise
                logger.warning(f"Could not analyze table {table_name}, continuing with limited info")
                tables.append(TableSchema(name=table_name, columns=(), row_count=0, analyzed=False))

        metadata = DatabaseMetadata(
            database_name=self.database_name,
            exported_at=datetime.now(timezone.utc),
            tables=tuple(tables),
        )
        logger.info(f"Discovery complete: {metadata.total_tables} tables, {metadata.total_rows} rows")
        return metadata

    def _describe_columns(self, table_name: str) -> List[ColumnInfo]:
        inspector = inspect(self.engine)
        primary_keys = set(
            inspector.get_pk_constraint(table_name, schema=self.schema).get('constrained_columns') or []
        )
        foreign_keys = {
            column
            for fk in inspector.get_foreign_keys(table_name, schema=self.schema)
            for column in fk.get('constrained_columns') or []
        }

        return [
            ColumnInfo(
                name=column['name'],
                data_type=str(column['type']),
                nullable=bool(column.get('nullable', True)),
                default=str(column['default']) if column.get('default') is not None else None,
                primary_key=column['name'] in primary_keys,
                foreign_key=column['name'] in foreign_keys,
            )
            for column in inspector.get_columns(table_name, schema=self.schema)
        ]

    def _reflect(self, table_name: str) -> Table:
        return Table(table_name, MetaData(), schema=self.schema, autoload_with=self.engine)

    def _count_rows(self, table_name: str) -> int:
        table = self._reflect(table_name)
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(table)).scalar_one()

    def _fetch_rows(self, table_name: str) -> List[Dict[str, Any]]:
        table = self._reflect(table_name)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(select(table)).mappings()]

    def export_table_data(self, metadata: DatabaseMetadata) -> Dict[str, List[Dict[str, Any]]]:
        """
        Read all rows of every discovered table.

        Returns:
            Dict mapping table name to a list of row dicts

        Raises:
            Exception: A per-table failure the classifier does not allow to skip
        """
        data = {}

        for table in metadata.tables:
            try:
                data[table.name] = self._retry(
                    lambda: self._fetch_rows(table.name),
                    f"Export data from table: {table.name}"
                )
            except Exception as e:
                classified = self.classifier.classify(e, f"Export data from table: {table.name}")
                if not self.classifier.should_continue(classified):
                    logger.error(f"Critical error exporting table {table.name}, stopping export")
                    raise
                logger.warning(f"Failed to export data from table {table.name}, continuing with empty data")
                data[table.name] = []

        return data

    def export_format(self, fmt: ExportFormat, metadata: DatabaseMetadata) -> bytes:
        """
        Export the database in one format.

        Args:
            fmt: Export format
            metadata: Result of discover()

        Returns:
            Raw (uncompressed) export bytes
        """
        renderer = RENDERERS[fmt]
        data = self.export_table_data(metadata)
        content = renderer(metadata, data)
        logger.info(f"{fmt.value.upper()} export rendered: {len(content)} bytes")
        return content


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return str(value)


def _quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def sql_literal(value: Any) -> str:
    """Render a Python value as a SQL literal."""
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"X'{bytes(value).hex()}'"
    if isinstance(value, (dict, list)):
        value = json.dumps(value, default=_json_default)
    elif isinstance(value, (datetime, date)):
        value = value.isoformat()
    return "'" + str(value).replace("'", "''") + "'"


def render_sql(metadata: DatabaseMetadata, data: Dict[str, List[Dict[str, Any]]]) -> bytes:
    """Render a SQL dump with schema and data."""
    lines = [
        f"-- Database backup: {metadata.database_name}",
        f"-- Exported at: {metadata.exported_at.isoformat()}",
        f"-- Tables: {metadata.total_tables}, rows: {metadata.total_rows}",
        '',
    ]

    for table in metadata.tables:
        name = _quote_identifier(table.name)
        lines.append(f"-- Table: {table.name}")

        if table.columns:
            definitions = []
            for column in table.columns:
                definition = f"  {_quote_identifier(column.name)} {column.data_type}"
                if not column.nullable:
                    definition += ' NOT NULL'
                definitions.append(definition)
            primary_keys = [_quote_identifier(c.name) for c in table.columns if c.primary_key]
            if primary_keys:
                definitions.append(f"  PRIMARY KEY ({', '.join(primary_keys)})")
            lines.append(f"CREATE TABLE IF NOT EXISTS {name} (")
            lines.append(',\n'.join(definitions))
            lines.append(');')
        else:
            lines.append(f"-- Schema unavailable for {table.name}")

        for row in data.get(table.name, []):
            columns = ', '.join(_quote_identifier(column) for column in row)
            values = ', '.join(sql_literal(value) for value in row.values())
            lines.append(f"INSERT INTO {name} ({columns}) VALUES ({values});")

        lines.append('')

    lines.append('-- End of backup')
    return ('\n'.join(lines) + '\n').encode('utf-8')


def render_json(metadata: DatabaseMetadata, data: Dict[str, List[Dict[str, Any]]]) -> bytes:
    """Render metadata and all rows as a JSON document."""
    document = {
        'metadata': metadata.to_dict(),
        'data': data,
    }
    return json.dumps(document, indent=2, default=_json_default).encode('utf-8')


def _sheet_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str, datetime, date)):
        if isinstance(value, datetime) and value.tzinfo is not None:
            # openpyxl rejects timezone-aware datetimes
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=_json_default)
    return _json_default(value)


def _sheet_title(name: str, used: set) -> str:
    title = "".join('_' if c in '[]:*?/\\' else c for c in name)[:MAX_SHEET_TITLE] or 'table'
    candidate, counter = title, 1
    while candidate.lower() in used:
        suffix = f"_{counter}"
        candidate = title[:MAX_SHEET_TITLE - len(suffix)] + suffix
        counter += 1
    used.add(candidate.lower())
    return candidate


def render_xlsx(metadata: DatabaseMetadata, data: Dict[str, List[Dict[str, Any]]]) -> bytes:
    """Render a workbook with a summary sheet and one sheet per table."""
    workbook = Workbook()
    summary = workbook.active
    summary.title = 'Summary'
    summary.append(['Database', metadata.database_name])
    summary.append(['Exported at', metadata.exported_at.isoformat()])
    summary.append(['Tables', metadata.total_tables])
    summary.append(['Rows', metadata.total_rows])
    summary.append([])
    summary.append(['Table', 'Rows', 'Columns'])
    for table in metadata.tables:
        summary.append([table.name, table.row_count, len(table.columns)])

    used_titles = {'summary'}
    for table in metadata.tables:
        sheet = workbook.create_sheet(_sheet_title(table.name, used_titles))
        rows = data.get(table.name, [])
        headers = [column.name for column in table.columns] or (list(rows[0].keys()) if rows else [])
        if headers:
            sheet.append(headers)
        for row in rows:
            sheet.append([_sheet_value(row.get(header)) for header in headers])

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


RENDERERS: Dict[ExportFormat, Callable[[DatabaseMetadata, Dict[str, List[Dict[str, Any]]]], bytes]] = {
    ExportFormat.SQL: render_sql,
    ExportFormat.JSON: render_json,
    ExportFormat.XLSX: render_xlsx,
}
