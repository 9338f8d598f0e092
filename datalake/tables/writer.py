from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from sqlalchemy import Column, Connection, Engine, Integer, MetaData, String, Table, Text, delete, func, inspect, select

from datalake.core.config import IDENTIFIER_PATTERN
from datalake.tables.parsers import ParsedTable

logger = logging.getLogger(__name__)

ROW_ID_COLUMN = "_ingest_row_id"
JOB_ID_COLUMN = "_ingest_job_id"
_RESERVED_COLUMNS = {ROW_ID_COLUMN, JOB_ID_COLUMN}


class TableWriteMode(str, Enum):
    CREATE_OR_REPLACE = "create_or_replace"
    APPEND = "append"


class InvalidTableNameError(ValueError):
    pass


class SchemaMismatchError(ValueError):
    pass


class TableNotFoundError(LookupError):
    pass


def validate_table_name(table_name: str) -> str:
    normalized = table_name.strip()
    if not IDENTIFIER_PATTERN.match(normalized):
        raise InvalidTableNameError(
            f"Invalid table name {table_name!r}: use letters, digits and underscores, starting with a letter or underscore"
        )
    return normalized


class TableWriter:
    """Writes parsed rows into destination tables named ``{prefix}{table_name}``.

    Every data column is stored as text. Each row is tagged with the job that wrote
    it, which is what makes ``append`` idempotent under redelivery: rows from an
    earlier attempt of the same job are replaced, not duplicated.
    """

    def __init__(self, engine: Engine, prefix: str = ""):
        self._engine = engine
        self._prefix = prefix

    def physical_name(self, table_name: str) -> str:
        return f"{self._prefix}{validate_table_name(table_name)}"

    def _build_table(self, name: str, columns: tuple[str, ...]) -> Table:
        reserved = _RESERVED_COLUMNS.intersection(columns)
        if reserved:
            raise SchemaMismatchError(f"Column names are reserved: {sorted(reserved)}")
        return Table(
            name,
            MetaData(),
            Column(ROW_ID_COLUMN, Integer, primary_key=True, autoincrement=True),
            Column(JOB_ID_COLUMN, String(64), nullable=False, index=True),
            *[Column(column, Text, nullable=True) for column in columns],
        )

    def _reflect(self, conn: Connection, name: str) -> Table:
        return Table(name, MetaData(), autoload_with=conn)

    def _data_columns(self, table: Table) -> list[str]:
        return [column.name for column in table.columns if column.name not in _RESERVED_COLUMNS]

    def _insert_rows(self, conn: Connection, table: Table, parsed: ParsedTable, job_id: str) -> None:
        if not parsed.rows:
            return
        payload: list[dict[str, Any]] = []
        for row in parsed.rows:
            record: dict[str, Any] = dict(zip(parsed.columns, row))
            record[JOB_ID_COLUMN] = job_id
            payload.append(record)
        conn.execute(table.insert(), payload)

    def write_table(
        self,
        table_name: str,
        parsed: ParsedTable,
        *,
        job_id: str,
        mode: TableWriteMode = TableWriteMode.CREATE_OR_REPLACE,
    ) -> int:
        name = self.physical_name(table_name)
        with self._engine.begin() as conn:
            if mode == TableWriteMode.CREATE_OR_REPLACE:
                table = self._build_table(name, parsed.columns)
                table.drop(conn, checkfirst=True)
                table.create(conn)
            elif inspect(conn).has_table(name):
                table = self._reflect(conn, name)
                existing = self._data_columns(table)
                if existing != list(parsed.columns):
                    raise SchemaMismatchError(
                        f"Columns {list(parsed.columns)} do not match existing table {table_name} columns {existing}"
                    )
                conn.execute(delete(table).where(table.c[JOB_ID_COLUMN] == job_id))
            else:
                table = self._build_table(name, parsed.columns)
                table.create(conn)
            self._insert_rows(conn, table, parsed, job_id)

        logger.info("Wrote %d rows to table %s (mode=%s)", parsed.row_count, name, mode.value)
        return parsed.row_count

    def table_exists(self, table_name: str) -> bool:
        return inspect(self._engine).has_table(self.physical_name(table_name))

    def count_rows(self, table_name: str) -> int:
        name = self.physical_name(table_name)
        with self._engine.connect() as conn:
            if not inspect(conn).has_table(name):
                raise TableNotFoundError(f"Table not found: {table_name}")
            table = self._reflect(conn, name)
            return int(conn.scalar(select(func.count()).select_from(table)) or 0)

    def read_rows(self, table_name: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        name = self.physical_name(table_name)
        with self._engine.connect() as conn:
            if not inspect(conn).has_table(name):
                raise TableNotFoundError(f"Table not found: {table_name}")
            table = self._reflect(conn, name)
            columns = [table.c[column] for column in self._data_columns(table)]
            stmt = select(*columns).order_by(table.c[ROW_ID_COLUMN].asc())
            if limit is not None:
                stmt = stmt.limit(limit)
            return [dict(row) for row in conn.execute(stmt).mappings().all()]
