"""
Cached record tables and the RPCs that fill them.

Each TableDefinition declares how to request one record by key and how to
parse the responses into its value. Parsing often reveals other records
(skus listed by a game, friends of a player, ...); those are written through
the RequestContext passed to parse_response, which refuses any write that
would replace a known value with a missing or incomplete one.
"""

from __future__ import annotations

import logging
import math
import re
import string
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, TypeAdapter, create_model
from typing_extensions import Literal

from stadia_spider import models, seed_keys
from stadia_spider.documents import Database, Table
from stadia_spider.parsers import (
    UnexpectedResponseError,
    capture_from_proto,
    shallow_player_from_proto,
    sku_from_proto,
)
from stadia_spider.proto import at

logger = logging.getLogger(__name__)

RequestPairs = List[Tuple[str, Optional[list]]]

DEFAULT_CACHE_CONTROL = "max-age=5529600"
NO_STORE = "no-store,max-age=0"
_MAX_AGE = re.compile(r"^max-age=(\d+)$")


def now_ms() -> int:
    return int(time.time() * 1000)


class DependencyMissingError(LookupError):
    """A request needs a parent record that has not been fetched yet."""


class RecordBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    request: Optional[List[Any]] = Field(default=None, alias="_request")
    response: Optional[List[Any]] = Field(default=None, alias="_response")
    last_updated_timestamp: Optional[PositiveInt] = Field(
        default=None, alias="_last_updated_timestamp"
    )
    last_update_attempted_timestamp: Optional[PositiveInt] = Field(
        default=None, alias="_last_update_attempted_timestamp"
    )


class TableDefinition(ABC):
    name: str
    key_type: Any
    value_type: Any
    columns: Mapping[str, str] = {}
    seed_keys: Sequence[Any] = ()
    cache_control: str = DEFAULT_CACHE_CONTROL

    def __init__(self):
        self.key_adapter = TypeAdapter(self.key_type)
        self.row_type = create_model(
            f"{self.name}Record",
            __base__=RecordBase,
            key=(self.key_type, ...),
            value=(Optional[self.value_type], None),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    def parse_key(self, key: Any) -> Any:
        return self.key_adapter.validate_python(key)

    def record_columns(self) -> Dict[str, str]:
        columns = {
            "key": "unique",
            "_last_updated_timestamp": "indexed",
            "_last_update_attempted_timestamp": "indexed",
            "_request": "virtual",
            "_response": "virtual",
            "value": "virtual",
        }
        for path, column_type in self.columns.items():
            columns[f"value.{path}"] = column_type
        return columns

    @property
    def cacheable(self) -> bool:
        return self.cache_control != NO_STORE

    @property
    def max_age_seconds(self) -> float:
        if not self.cacheable:
            return 0
        match = _MAX_AGE.match(self.cache_control)
        return int(match.group(1)) if match else math.inf

    @abstractmethod
    def make_request(self, key: Any, context: "RequestContext") -> RequestPairs:
        """Return the (method id, args) pairs that fetch this record."""

    @abstractmethod
    def parse_response(self, responses: List[Any], key: Any, context: "RequestContext") -> Any:
        """Parse the responses, in request order, into this table's value."""


class RequestContext(ABC):
    """What a table definition may read and write while handling one request."""

    def __init__(self, request_timestamp: Optional[int] = None):
        # Shared by every write made while handling this request.
        self.request_timestamp = request_timestamp or now_ms()

    @abstractmethod
    def get_dependency(self, definition: TableDefinition, key: Any) -> Any:
        """Return the value of an already-fetched parent record."""

    @abstractmethod
    def update(
        self,
        definition: TableDefinition,
        key: Any,
        value: Any = None,
        incomplete: bool = False,
    ) -> bool:
        """Record a key (and optionally its value); False if rejected."""


class DatabaseRequestContext(RequestContext):
    def __init__(self, database: "SpiderDatabase", request_timestamp: Optional[int] = None):
        super().__init__(request_timestamp)
        self.database = database

    def get_dependency(self, definition: TableDefinition, key: Any) -> Any:
        record = self.database.get_record(definition, key)
        if record is None or record.value is None:
            raise DependencyMissingError(f"parent {definition.name} {key} not known")
        return record.value

    def update(
        self,
        definition: TableDefinition,
        key: Any,
        value: Any = None,
        incomplete: bool = False,
    ) -> bool:
        key = definition.parse_key(key)
        table = self.database.table(definition)
        existing = self.database.get_record(definition, key)

        if existing is not None and existing.value is not None:
            if value is None or incomplete:
                logger.debug("not replacing known %s %s with a lesser value", definition.name, key)
                return False

        if value is None:
            if existing is None:
                table.insert(definition.row_type(key=key))
            return True

        table.update(definition.row_type(
            key=key,
            value=value,
            last_updated_timestamp=self.request_timestamp,
            last_update_attempted_timestamp=(
                existing.last_update_attempted_timestamp if existing else None
            ),
        ))
        return True


class SpiderDatabase:
    """The record tables for every definition in TABLES, on one SQLite file."""

    def __init__(self, path: str = ":memory:", skip_seeding: bool = False):
        self.path = path
        self.database = Database(path)
        self.tables: Dict[str, Table] = {
            definition.name: self.database.create_table(
                definition.name, definition.row_type, definition.record_columns()
            )
            for definition in TABLES
        }
        if skip_seeding:
            logger.info("Skipping seeding")
        else:
            self.seed()

    def table(self, definition: TableDefinition) -> Table:
        return self.tables[definition.name]

    def get_record(self, definition: TableDefinition, key: Any) -> Any:
        table = self.table(definition)
        return table.get(where=table.columns.key.eq(definition.parse_key(key)))

    def seed(self) -> int:
        count = 0
        with self.database.transaction("seeding"):
            for definition in TABLES:
                table = self.table(definition)
                for key in definition.seed_keys:
                    if table.insert(definition.row_type(key=definition.parse_key(key))):
                        count += 1
        logger.info("Seeded %s records", count)
        return count

    def close(self) -> None:
        self.database.close()


# --- Definitions ---

class PlayerTable(TableDefinition):
    name = "Player"
    cache_control = "max-age=11059200"
    key_type = models.PlayerId
    value_type = models.Player
    columns = {
        "name": "indexed",
        "number": "virtual",
        "friend_player_ids": "virtual",
        "played_game_ids": "virtual",
        "avatar_image_url": "indexed",
    }
    seed_keys = seed_keys.PLAYER

    def make_request(self, key, context):
        return [
            ("D0Amud", [None, True, None, None, key]),
            ("Z5HRnb", [None, True, key]),
            ("Q6jt8c", [None, None, None, key]),
        ]

    def parse_response(self, responses, key, context):
        profile, friends, games = (at(responses, i) for i in range(3))

        player = shallow_player_from_proto(at(profile, 5))
        if player.player_id != key:
            raise UnexpectedResponseError(f"requested player {key} but got {player.player_id}")

        friend_players = [shallow_player_from_proto(p) for p in at(friends, 0) or []]
        player = models.Player.model_validate({
            **player.model_dump(),
            "played_game_ids": at(games, 0) or [],
            "friend_player_ids": [friend.player_id for friend in friend_players],
        })

        for friend in friend_players:
            context.update(PLAYER, friend.player_id, friend, incomplete=True)
        for game_id in player.played_game_ids:
            context.update(GAME, game_id)
        context.update(PLAYER_PROGRESSION, key)

        return player


class GameTable(TableDefinition):
    name = "Game"
    cache_control = "max-age=57600"
    key_type = models.GameId
    value_type = models.Game
    columns = {"sku_id": "indexed"}
    seed_keys = seed_keys.GAME

    # sku list filters passed to ZAm7We
    SKU_LIST_FILTERS = [1, 2, 3, 4, 6, 7, 8, 9, 10]

    def make_request(self, key, context):
        return [
            ("ZAm7We", [key, self.SKU_LIST_FILTERS]),
            ("LrvzJb", [None, None, [[key]]]),
        ]

    def parse_response(self, responses, key, context):
        listed, details = at(responses, 0, 0), at(responses, 1)
        if listed is None and not details:
            raise UnexpectedResponseError(
                f"found no skus for game {key}; only expected for subscriptions, which are not supported"
            )

        game_sku = sku_from_proto(at(details, 1, 0, 1, 9))
        if game_sku.game_id != key:
            raise UnexpectedResponseError(f"requested game {key} but got {game_sku.game_id}")

        if isinstance(listed, list):
            skus = [sku_from_proto(at(entry, 9)) for entry in listed]
        else:
            logger.info("No skus listed for %s %s %s", game_sku.name, key, game_sku.sku_id)
            skus = [game_sku]

        for sku in skus:
            context.update(SKU, sku.sku_id, sku)

        return models.Game(sku_id=game_sku.sku_id, sku_ids=[sku.sku_id for sku in skus])


class SkuTable(TableDefinition):
    name = "Sku"
    cache_control = "max-age=1382400"
    key_type = models.SkuId
    value_type = models.Sku
    columns = {
        "game_id": "indexed",
        "sku_type": "indexed",
        "name": "indexed",
        "description": "virtual",
    }
    seed_keys = seed_keys.SKU

    def make_request(self, key, context):
        return [("FWhQV", [None, key])]

    def parse_response(self, responses, key, context):
        sku_proto = at(responses, 0, 16)
        if sku_proto is None:
            logger.warning("requested sku %s appears to have been deleted", key)
            return models.DeletedSku(sku_id=key)

        sku = sku_from_proto(sku_proto)
        if sku.sku_id != key:
            logger.warning("response sku %s did not match requested sku %s", sku.sku_id, key)
            context.update(SKU, sku.sku_id, sku)
            return models.AliasSku(sku_id=key, target_sku_id=sku.sku_id)

        if sku.game_id is not None:
            context.update(GAME, sku.game_id)
        return sku


class SubscriptionTable(TableDefinition):
    name = "Subscription"
    cache_control = "max-age=14400"
    key_type = models.SubscriptionId
    value_type = models.Subscription
    seed_keys = seed_keys.SUBSCRIPTION

    def make_request(self, key, context):
        return [("Z5yYme", [key])]

    def parse_response(self, responses, key, context):
        logger.info("Subscription %s response is kept raw; no parser yet", key)
        return models.Subscription()


class StoreListTable(TableDefinition):
    name = "StoreList"
    cache_control = "max-age=1920"
    key_type = models.StoreListId
    value_type = List[models.StoreListEntry]
    seed_keys = seed_keys.STORE_LIST

    def make_request(self, key, context):
        return [("ZAm7We", [None, None, None, None, None, key])]

    def parse_response(self, responses, key, context):
        entries = []
        for item in at(responses, 0, 0) or []:
            sku = sku_from_proto(at(item, 9))
            if sku.game_id is None:
                raise UnexpectedResponseError(f"store list {key} sku {sku.sku_id} has no game")
            context.update(SKU, sku.sku_id, sku)
            context.update(GAME, sku.game_id)
            entries.append(models.StoreListEntry(sku_id=sku.sku_id, game_id=sku.game_id))
        return entries


class PlayerProgressionTable(TableDefinition):
    name = "PlayerProgression"
    cache_control = "max-age=115200"
    key_type = models.PlayerId
    value_type = models.PlayerProgression

    def make_request(self, key, context):
        player = context.get_dependency(PLAYER, key)
        return [("e7h9qd", [None, game_id, key]) for game_id in player.played_game_ids or []]

    def parse_response(self, responses, key, context):
        player = context.get_dependency(PLAYER, key)
        logger.info("PlayerProgression %s responses are kept raw; no parser yet", key)
        return models.PlayerProgression(game_ids=player.played_game_ids or [])


class PlayerSearchTable(TableDefinition):
    name = "PlayerSearch"
    cache_control = "max-age=5529600"
    key_type = models.GamertagPrefix
    value_type = List[models.PlayerId]
    seed_keys = seed_keys.PLAYER_SEARCH

    # the service returns at most this many results per search
    RESULT_LIMIT = 100

    def make_request(self, key, context):
        return [("FdyJ0", [key[:1] + " " + key[1:]])]

    def parse_response(self, responses, key, context):
        results = at(responses, 0, 1)
        if not results:
            logger.debug("No results for PlayerSearch %s.", key)
            return []

        players = [shallow_player_from_proto(at(result, 0)) for result in results]
        for player in players:
            context.update(PLAYER, player.player_id, player, incomplete=True)
        logger.debug("%s results for PlayerSearch %s.", len(players), key)

        if len(players) >= self.RESULT_LIMIT:
            for prefix in self.narrower_prefixes(key):
                context.update(PLAYER_SEARCH, prefix)

        return [player.player_id for player in players]

    @staticmethod
    def narrower_prefixes(prefix: str) -> List[str]:
        """Prefixes that split a saturated search into smaller ones."""
        suffixes: List[str] = []
        if "#" in prefix:
            digits = len(prefix) - prefix.index("#") - 1
            if digits < 4:
                if digits > 0:
                    suffixes.append("0")
                suffixes.extend("123456789")
        else:
            if len(prefix) < 15:
                suffixes.extend(string.ascii_lowercase + string.digits)
            if len(prefix) >= 3:
                suffixes.append("#")

        if not suffixes:
            raise UnexpectedResponseError(
                f"Are there really {PlayerSearchTable.RESULT_LIMIT} matches for {prefix}?"
            )
        return [prefix + suffix for suffix in suffixes]


class MyGamesTable(TableDefinition):
    name = "MyGames"
    cache_control = NO_STORE
    key_type = Literal["myGames"]
    value_type = List[models.OwnedGame]
    seed_keys = ("myGames",)

    def make_request(self, key, context):
        return [("T2ZnGf", None)]

    def parse_response(self, responses, key, context):
        owned = []
        for item in at(responses, 0, 2) or []:
            sku = sku_from_proto(at(item, 1))
            if sku.game_id is None:
                raise UnexpectedResponseError(f"owned sku {sku.sku_id} has no game")
            context.update(SKU, sku.sku_id, sku)
            context.update(GAME, sku.game_id)
            owned.append(models.OwnedGame(game_id=sku.game_id, sku_id=sku.sku_id))
        return owned


class MyPurchasesTable(TableDefinition):
    name = "MyPurchases"
    cache_control = NO_STORE
    key_type = Literal["myPurchases"]
    value_type = List[models.SkuId]
    seed_keys = ("myPurchases",)

    def make_request(self, key, context):
        return [("uwn0Ob", None)]

    def parse_response(self, responses, key, context):
        sku_ids = [at(item, 0) for item in at(responses, 0, 0) or []]
        for sku_id in sku_ids:
            context.update(SKU, sku_id)
        return sku_ids


class MyFriendsTable(TableDefinition):
    name = "MyFriends"
    cache_control = NO_STORE
    key_type = Literal["myFriends"]
    value_type = models.Friends
    seed_keys = ("myFriends",)

    def make_request(self, key, context):
        return [("Z5HRnb", None)]

    def parse_response(self, responses, key, context):
        friends = [shallow_player_from_proto(p) for p in at(responses, 0, 0) or []]
        for friend in friends:
            context.update(PLAYER, friend.player_id, friend, incomplete=True)
        return models.Friends(player_ids=[friend.player_id for friend in friends])


class MyRecentPlayersTable(TableDefinition):
    name = "MyRecentPlayers"
    cache_control = NO_STORE
    key_type = Literal["myRecentPlayers"]
    value_type = List[models.RecentPlayer]
    seed_keys = ("myRecentPlayers",)

    def make_request(self, key, context):
        return [("nsSFNb", None)]

    def parse_response(self, responses, key, context):
        recent = []
        for item in at(responses, 0, 0) or []:
            player = shallow_player_from_proto(at(item, 0))
            game_id = at(item, 1, 0)
            context.update(PLAYER, player.player_id, player, incomplete=True)
            if game_id is not None:
                context.update(GAME, game_id)
            recent.append(models.RecentPlayer(player_id=player.player_id, game_id=game_id))
        return recent


class CaptureTable(TableDefinition):
    name = "Capture"
    cache_control = "max-age=44236800"
    key_type = models.CaptureId
    value_type = models.Capture
    columns = {"game_id": "indexed", "timestamp": "indexed"}
    seed_keys = seed_keys.CAPTURE

    def make_request(self, key, context):
        return [("g6aH1", [key])]

    def parse_response(self, responses, key, context):
        capture = capture_from_proto(at(responses, 0))
        if capture.capture_id != key:
            raise UnexpectedResponseError(f"requested capture {key} but got {capture.capture_id}")
        context.update(GAME, capture.game_id)
        return capture


PLAYER = PlayerTable()
GAME = GameTable()
SKU = SkuTable()
SUBSCRIPTION = SubscriptionTable()
STORE_LIST = StoreListTable()
PLAYER_PROGRESSION = PlayerProgressionTable()
PLAYER_SEARCH = PlayerSearchTable()
MY_GAMES = MyGamesTable()
MY_PURCHASES = MyPurchasesTable()
MY_FRIENDS = MyFriendsTable()
MY_RECENT_PLAYERS = MyRecentPlayersTable()
CAPTURE = CaptureTable()

TABLES: Tuple[TableDefinition, ...] = (
    PLAYER,
    GAME,
    SKU,
    SUBSCRIPTION,
    STORE_LIST,
    PLAYER_PROGRESSION,
    PLAYER_SEARCH,
    MY_GAMES,
    MY_PURCHASES,
    MY_FRIENDS,
    MY_RECENT_PLAYERS,
    CAPTURE,
)

TABLES_BY_NAME: Dict[str, TableDefinition] = {definition.name: definition for definition in TABLES}
