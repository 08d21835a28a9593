# stadia_spider/export.py

"""
Rebuild record values from stored responses, without any network calls.

Every row keeps the raw `_response` it was parsed from. When the models or
parsers change, `reparse_database` copies the rows into a fresh database and
runs each table's `parse_response` on them again; `export_database` then
writes the result to a new SQLite file.
"""

import logging
import time
from typing import Iterable, Optional, Tuple

from pydantic import ValidationError

from stadia_spider.parsers import UnexpectedResponseError
from stadia_spider.tables import (
    TABLES,
    TABLES_BY_NAME,
    DatabaseRequestContext,
    SpiderDatabase,
)

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10000


class ReparseResult:
    def __init__(self):
        self.copied = 0
        self.reparsed = 0
        self.failed = 0

    def __repr__(self) -> str:
        return f"ReparseResult(copied={self.copied}, reparsed={self.reparsed}, failed={self.failed})"


def _definitions(table_names: Optional[Iterable[str]]):
    names = list(table_names or [])
    unknown = [name for name in names if name not in TABLES_BY_NAME]
    if unknown:
        raise ValueError(f"unknown table(s): {', '.join(unknown)}")
    return [TABLES_BY_NAME[name] for name in names] if names else list(TABLES)


def reparse_database(
    source: SpiderDatabase,
    target: SpiderDatabase,
    table_names: Optional[Iterable[str]] = None,
) -> ReparseResult:
    """
    Copy every row of `source` into `target` as stored, then replace the value
    of each row that has a stored response with a freshly parsed one.

    Rows are copied unchecked: they were validated when first written, and an
    older value that no longer validates is still better than none. Cascading
    writes made while re-parsing go through a DatabaseRequestContext on
    `target`, stamped with the row's original update time, so they obey the
    same rules as writes made while spidering. A row whose response no longer
    parses keeps its copied value and is counted as failed.
    """
    definitions = _definitions(table_names)
    result = ReparseResult()

    for definition in definitions:
        table = target.table(definition)
        with target.database.transaction("copy"):
            for row in source.table(definition).select(unchecked=True):
                table.update(row, unchecked=True)
                result.copied += 1
        logger.info("Copied the %s table", definition.name)

    for definition in definitions:
        source_table = source.table(definition)
        table = target.table(definition)
        for row in source_table.select(
            where=source_table.columns._response.not_null(), unchecked=True
        ):
            response = row.get("_response")
            if not response:
                continue

            try:
                with target.database.transaction("reparse"):
                    key = definition.parse_key(row["key"])
                    context = DatabaseRequestContext(target, row.get("_last_updated_timestamp"))
                    value = definition.parse_response(response, key, context)
                    table.update(definition.row_type(
                        key=key,
                        value=value,
                        request=row.get("_request"),
                        response=response,
                        last_updated_timestamp=row.get("_last_updated_timestamp"),
                        last_update_attempted_timestamp=row.get("_last_update_attempted_timestamp"),
                    ))
            except (ValidationError, UnexpectedResponseError) as e:
                logger.error("Failed to re-parse %s %s: %s\n%r", definition.name, row.get("key"), e, response)
                result.failed += 1
                continue

            result.reparsed += 1
            if result.reparsed % PROGRESS_EVERY == 0:
                logger.info("%s records re-parsed, currently working through %s", result.reparsed, definition.name)

    logger.info("Re-parsed %s records (%s failed)", result.reparsed, result.failed)
    return result


def default_export_path(sqlite_path: str) -> str:
    stem = sqlite_path[:-len(".sqlite")] if sqlite_path.endswith(".sqlite") else sqlite_path
    return f"{stem}-{time.strftime('%Y%m%dT%H%M%S')}.sqlite"


def export_database(
    source: SpiderDatabase,
    target_path: Optional[str] = None,
    table_names: Optional[Iterable[str]] = None,
) -> Tuple[str, ReparseResult]:
    """Re-parse `source` in memory and write the result to a new file."""
    target_path = target_path or default_export_path(source.path)
    target = SpiderDatabase(":memory:", skip_seeding=True)
    try:
        result = reparse_database(source, target, table_names)
        written = target.database.vacuum_into(target_path)
    finally:
        target.close()
    logger.info("Exported %r to %s", result, written)
    return written, result
