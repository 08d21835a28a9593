"""
Incremental crawl loop.

Each cycle picks the single stalest due record across the selected tables,
asks its table definition for the request, sends it as one batch, and writes
the parsed value back. Parsing registers any records it discovers along the
way, so the set of known keys grows as the crawl runs.
"""

import logging
import math
import threading
import time
from typing import Any, Callable, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from stadia_spider.parsers import UnexpectedResponseError
from stadia_spider.proto import validate_message
from stadia_spider.rpc.client import Client
from stadia_spider.sql import SQL, join, raw
from stadia_spider.tables import (
    TABLES,
    TABLES_BY_NAME,
    DatabaseRequestContext,
    SpiderDatabase,
    TableDefinition,
    now_ms,
)

logger = logging.getLogger(__name__)

UPDATED = "updated"
SKIPPED = "skipped"
IDLE = "idle"

# Records are never re-fetched more often than this, whatever their table allows.
MIN_MAX_AGE_SECONDS = 60 * 60 * 24 * 7


class Spider:
    def __init__(
        self,
        client: Client,
        database: SpiderDatabase,
        table_names: Optional[Iterable[str]] = None,
        idle_sleep_seconds: float = 960,
        error_sleep_seconds: float = 60,
        clock: Callable[[], int] = now_ms,
        min_max_age_seconds: float = MIN_MAX_AGE_SECONDS,
    ):
        self.client = client
        self.database = database
        self.idle_sleep_seconds = idle_sleep_seconds
        self.error_sleep_seconds = error_sleep_seconds
        self.clock = clock
        self.min_max_age_seconds = min_max_age_seconds

        names = list(table_names or [])
        unknown = [name for name in names if name not in TABLES_BY_NAME]
        if unknown:
            raise ValueError(f"unknown table(s): {', '.join(unknown)}")
        self.definitions: List[TableDefinition] = (
            [TABLES_BY_NAME[name] for name in names] if names else list(TABLES)
        )

    def max_age_seconds(self, definition: TableDefinition) -> float:
        """How long after an attempt a record of this table is due again."""
        return max(self.min_max_age_seconds, definition.max_age_seconds)

    def _stalest_due(self, definition: TableDefinition, now: int) -> Optional[Any]:
        table = self.database.table(definition)
        attempted = table.columns._last_update_attempted_timestamp
        updated = table.columns._last_updated_timestamp

        max_age = self.max_age_seconds(definition)
        if math.isinf(max_age):
            due = attempted.is_null()
        else:
            cutoff = now - int(max_age * 1000)
            due = SQL("({} or {})", attempted.is_null(), attempted.lte(cutoff))

        for row in table.select(
            where=due,
            order_by=join(", ", [attempted.asc(), updated.asc(), raw("rowid asc")]),
            top=1,
        ):
            return row
        return None

    def next_record(self) -> Optional[Tuple[TableDefinition, Any]]:
        """The globally stalest due record, or None when nothing is due."""
        now = self.clock()
        best = None
        best_rank = None
        for definition in self.definitions:
            row = self._stalest_due(definition, now)
            if row is None:
                continue
            # Never-attempted rows first, then oldest attempt, then oldest update.
            rank = (
                row.last_update_attempted_timestamp is not None,
                row.last_update_attempted_timestamp or 0,
                row.last_updated_timestamp or 0,
            )
            if best_rank is None or rank < best_rank:
                best, best_rank = (definition, row), rank
        return best

    def _mark_attempted(self, definition: TableDefinition, key: Any, timestamp: int) -> None:
        table = self.database.table(definition)
        with self.database.database.transaction("attempt"):
            existing = self.database.get_record(definition, key)
            if existing is None:
                record = definition.row_type(key=key, last_update_attempted_timestamp=timestamp)
            else:
                record = existing.model_copy(update={"last_update_attempted_timestamp": timestamp})
            table.update(record)

    def fetch_record(self, definition: TableDefinition, key: Any) -> Any:
        """Fetch, parse and store one record now; returns its new value."""
        key = definition.parse_key(key)
        timestamp = self.clock()
        self._mark_attempted(definition, key, timestamp)

        context = DatabaseRequestContext(self.database, timestamp)
        request = definition.make_request(key, context)
        responses = self.client.fetch_rpc_batch(request)

        with self.database.database.transaction("update"):
            try:
                responses = [validate_message(response) for response in responses]
                value = definition.parse_response(responses, key, context)
            except (ValidationError, UnexpectedResponseError):
                logger.error(
                    "Failed to parse %s %s from response: %r", definition.name, key, responses
                )
                raise
            if definition.cacheable:
                self.database.table(definition).update(definition.row_type(
                    key=key,
                    value=value,
                    request=[[method_id, args] for method_id, args in request],
                    response=responses,
                    last_updated_timestamp=timestamp,
                    last_update_attempted_timestamp=timestamp,
                ))

        logger.info("Updated %s %s", definition.name, key)
        return value

    def spider_once(self) -> str:
        picked = self.next_record()
        if picked is None:
            logger.info("Nothing is due for an update")
            return IDLE

        definition, row = picked
        try:
            self.fetch_record(definition, row.key)
        except (ValidationError, UnexpectedResponseError) as e:
            logger.error("Skipping %s %s: %s", definition.name, row.key, e)
            return SKIPPED
        return UPDATED

    def run(self, stop_event: Optional[threading.Event] = None) -> int:
        """Spider until stop_event is set. Returns the number of records updated."""
        stop_event = stop_event or threading.Event()
        updated = 0
        started = time.monotonic()
        while not stop_event.is_set():
            outcome = self.spider_once()
            if outcome == UPDATED:
                updated += 1
            elif outcome == IDLE:
                stop_event.wait(self.idle_sleep_seconds)
            else:
                stop_event.wait(self.error_sleep_seconds)
        logger.info("Stopped after updating %s records in %.0fs", updated, time.monotonic() - started)
        return updated
