# stadia_spider/documents.py

"""
JSON-document tables on SQLite.

Each table stores one validated JSON document per row in a `json` column and
projects selected dot-paths out of it as generated columns, so that queries
can filter and order on them without hand-written extraction SQL.
"""

import json
import logging
import os
import re
import sqlite3
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from pydantic import BaseModel, TypeAdapter

from stadia_spider.sql import SQL, TRUE, SQLExpression, identifier, join, raw

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z0-9_$]{1,64}$")
_COLUMN_NAME = re.compile(r"^[A-Za-z0-9_$]+(\.[A-Za-z0-9_$]+)*$")


class ColumnType(str, Enum):
    VIRTUAL = "virtual"  # generated, not stored, not indexed
    INDEXED = "indexed"  # stored, non-unique index
    UNIQUE = "unique"  # stored, unique index


class Column:
    """A generated column projected from a path into the document."""

    def __init__(self, table_id: SQLExpression, path: str, column_type: Union[ColumnType, str]):
        if len(path) > 128 or not _COLUMN_NAME.match(path):
            raise ValueError(f"invalid column path: {path!r}")
        self.path = path
        self.type = ColumnType(column_type)
        self.name = path.split(".")[-1]
        self.id = SQL("{}.{}", table_id, identifier(self.name))

    def __sql__(self) -> SQLExpression:
        return self.id

    def __repr__(self) -> str:
        return f"Column({self.path!r}, {self.type.value!r})"

    def eq(self, other: Any) -> SQLExpression:
        return SQL("{} = {}", self, other)

    def ne(self, other: Any) -> SQLExpression:
        return SQL("{} != {}", self, other)

    def lt(self, other: Any) -> SQLExpression:
        return SQL("{} < {}", self, other)

    def lte(self, other: Any) -> SQLExpression:
        return SQL("{} <= {}", self, other)

    def gt(self, other: Any) -> SQLExpression:
        return SQL("{} > {}", self, other)

    def gte(self, other: Any) -> SQLExpression:
        return SQL("{} >= {}", self, other)

    def is_null(self) -> SQLExpression:
        return SQL("{} is null", self)

    def not_null(self) -> SQLExpression:
        return SQL("{} is not null", self)

    def asc(self) -> SQLExpression:
        return SQL("{} asc", self)

    def desc(self) -> SQLExpression:
        return SQL("{} desc", self)


class Table:
    """One document table. Values are validated against row_type."""

    def __init__(
        self,
        database: "Database",
        name: str,
        row_type: Any,
        columns: Optional[Mapping[str, Union[ColumnType, str]]] = None,
    ):
        if not _TABLE_NAME.match(name):
            raise ValueError(f"invalid table name: {name!r}")
        self.database = database
        self.name = name
        self.row_type = row_type
        self.adapter = TypeAdapter(row_type)
        self.id = identifier(name)
        self._columns: Dict[str, Column] = {
            path: Column(self.id, path, column_type)
            for path, column_type in (columns or {}).items()
        }
        # Accessed as table.columns.<last path segment>
        self.columns = SimpleNamespace(
            **{column.name: column for column in self._columns.values()}
        )

    def __sql__(self) -> SQLExpression:
        return self.id

    def column(self, name: str) -> Column:
        return getattr(self.columns, name)

    def create(self) -> None:
        """Create the table and its indexes if they don't exist."""
        definitions = [
            raw("rowid integer primary key autoincrement not null"),
            raw("json text not null check (json_valid(json))"),
        ]
        indexes = []
        for column in self._columns.values():
            storage = "virtual" if column.type is ColumnType.VIRTUAL else "stored"
            definitions.append(SQL(
                "{} generated always as (json_extract(json, {})) " + storage,
                identifier(column.name),
                raw("'$." + column.path + "'"),
            ))
            if column.type is ColumnType.INDEXED:
                indexes.append(SQL(
                    "create index if not exists {} on {} ({})",
                    identifier(f"{self.name}.{column.path}::indexed"),
                    self,
                    identifier(column.name),
                ))
            elif column.type is ColumnType.UNIQUE:
                indexes.append(SQL(
                    "create unique index if not exists {} on {} ({})",
                    identifier(f"{self.name}.{column.path}::unique"),
                    self,
                    identifier(column.name),
                ))

        self.database.sql(SQL(
            "create table if not exists {} ({})", self, join(", ", definitions)
        ))
        for statement in indexes:
            self.database.sql(statement)

    def _encode(self, value: Any, unchecked: bool) -> str:
        if not unchecked:
            value = self.adapter.validate_python(value)
        elif not isinstance(value, BaseModel):
            return json.dumps(value, separators=(",", ":"))
        return self.adapter.dump_json(value, by_alias=True).decode("utf-8")

    def _decode(self, text: str, unchecked: bool) -> Any:
        if unchecked:
            return json.loads(text)
        return self.adapter.validate_json(text)

    def count(self, where: Optional[SQLExpression] = None) -> int:
        cursor = self.database.sql(SQL(
            "select count(*) from {} where {}", self, where or TRUE
        ))
        return cursor.fetchone()[0]

    def insert(self, value: Any, unchecked: bool = False) -> bool:
        """Insert value unless a row with the same unique key exists."""
        document = self._encode(value, unchecked)
        logger.debug("inserting into %s: %s", self.name, document)
        cursor = self.database.sql(SQL(
            "insert into {} (json) values ({}) on conflict do nothing", self, document
        ))
        return cursor.rowcount > 0

    def update(self, value: Any, unchecked: bool = False) -> None:
        """Insert value, replacing any row with the same unique key."""
        document = self._encode(value, unchecked)
        logger.debug("insert-or-replacing into %s: %s", self.name, document)
        self.database.sql(SQL(
            "insert or replace into {} (json) values ({})", self, document
        ))

    def delete(self, where: SQLExpression) -> int:
        cursor = self.database.sql(SQL("delete from {} where {}", self, where))
        return cursor.rowcount

    def select(
        self,
        where: Optional[SQLExpression] = None,
        order_by: Optional[SQLExpression] = None,
        top: Optional[int] = None,
        unchecked: bool = False,
    ) -> Iterator[Any]:
        """Lazily yield matching values. Each call re-runs the query."""
        cursor = self.database.sql(SQL(
            "select json from {} where {} order by {} limit {}",
            self,
            where or TRUE,
            order_by or raw("rowid asc"),
            -1 if top is None else top,
        ))
        for (document,) in cursor:
            yield self._decode(document, unchecked)

    def first(
        self,
        where: Optional[SQLExpression] = None,
        order_by: Optional[SQLExpression] = None,
        unchecked: bool = False,
    ) -> Any:
        for value in self.select(where=where, order_by=order_by, top=1, unchecked=unchecked):
            return value
        raise LookupError(f"no results found for first() on {self.name}")

    def get(
        self,
        where: Optional[SQLExpression] = None,
        order_by: Optional[SQLExpression] = None,
        unchecked: bool = False,
    ) -> Any:
        """Return the single matching value, or None if there is none."""
        results = list(self.select(where=where, order_by=order_by, top=2, unchecked=unchecked))
        if len(results) > 1:
            raise LookupError(f"get() on {self.name} expects one result, but got more than one")
        return results[0] if results else None


class Database:
    """Handle the SQLite connection and the document tables on it."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = self._resolve_db_path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self.tables: Dict[str, Table] = {}
        self.init_database()

    @staticmethod
    def _resolve_db_path(db_path: str) -> str:
        """Return an absolute database path anchored to the working directory when relative."""
        if db_path == ":memory:":
            return db_path
        path = Path(db_path)
        if path.is_absolute():
            return str(path)
        return str(Path.cwd() / path)

    def init_database(self) -> None:
        """Open the connection."""
        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                try:
                    os.makedirs(db_dir, exist_ok=True)
                except OSError as e:
                    raise RuntimeError(f"Failed to create database directory '{db_dir}': {e}")

            # Autocommit; multi-statement writes go through transaction().
            self.conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
            self.conn.execute("PRAGMA busy_timeout = 30000")
            if self.db_path != ":memory:":
                self._set_wal_mode_best_effort()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at '{self.db_path}': {e}")

    def _set_wal_mode_best_effort(self, retries: int = 5, delay_seconds: float = 0.2) -> None:
        """Try to enable WAL without failing startup if the DB is temporarily locked."""
        for attempt in range(retries):
            try:
                self.conn.execute("PRAGMA journal_mode = WAL")
                return
            except sqlite3.OperationalError as e:
                msg = str(e).lower()
                if "locked" not in msg and "busy" not in msg:
                    raise
                if attempt == retries - 1:
                    logger.warning("could not enable WAL mode (database locked); continuing. (%s)", e)
                    return
                time.sleep(delay_seconds)

    def sql(self, query: SQLExpression) -> sqlite3.Cursor:
        text, values = query.args
        if values:
            logger.debug("%s\n%r", text.strip(), values)
        else:
            logger.debug("%s", text.strip())
        return self.conn.execute(text, values)

    def create_table(
        self,
        name: str,
        row_type: Any,
        columns: Optional[Mapping[str, Union[ColumnType, str]]] = None,
    ) -> Table:
        if name in self.tables:
            raise ValueError(f"table {name} already defined")
        table = Table(self, name, row_type, columns)
        table.create()
        self.tables[name] = table
        return table

    @contextmanager
    def transaction(self, name: str = "write"):
        """Savepoint covering a multi-step write; rolled back on any exception."""
        savepoint = identifier(name)
        self.sql(SQL("savepoint {}", savepoint))
        try:
            yield self
        except BaseException:
            self.sql(SQL("rollback to {}", savepoint))
            self.sql(SQL("release {}", savepoint))
            raise
        else:
            self.sql(SQL("release {}", savepoint))

    def vacuum_into(self, target_path: str) -> str:
        """Write a compacted copy of the whole database to a new file."""
        target_path = self._resolve_db_path(target_path)
        if os.path.exists(target_path):
            raise FileExistsError(f"refusing to overwrite {target_path}")
        target_dir = os.path.dirname(target_path)
        if target_dir:
            os.makedirs(target_dir, exist_ok=True)
        try:
            self.sql(SQL("vacuum into {}", target_path))
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to write database copy to '{target_path}': {e}")
        return target_path

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
