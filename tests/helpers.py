# tests/helpers.py

import os
import tempfile

from stadia_spider.tables import SpiderDatabase

PLAYER_ID = "956082794034380385"
FRIEND_ID = "5478196876050978967"
GAME_ID = "4f9a2b1crcp1"
GAME_SKU_ID = "9e0c7a11"
ADDON_SKU_ID = "1d2e3f4ap"
AVATAR_URL = "https://lh3.googleusercontent.com/avatar"


def create_test_db(skip_seeding: bool = True):
    """Create a fresh spider database in a temp file. Returns (database, path)."""
    fd, path = tempfile.mkstemp(suffix=".sqlite")
    os.close(fd)
    return SpiderDatabase(path, skip_seeding=skip_seeding), path


def remove_test_db(database, path: str) -> None:
    database.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.remove(path + suffix)


def sku_proto(sku_id, game_id=GAME_ID, type_id=1, name="Test Game",
              internal_name="test_game", children=None, subscription_id=None):
    """A sku array as returned inside FWhQV/ZAm7We/LrvzJb responses."""
    proto = [None] * 28
    proto[0] = sku_id
    proto[1] = name
    proto[2] = [None, [[[None, "https://lh3.googleusercontent.com/cover=w1280-h720"]]]]
    proto[4] = game_id
    proto[5] = internal_name
    proto[6] = type_id
    proto[9] = "A game for testing."
    proto[10] = [1600000000]
    proto[14] = [[[child] for child in children]] if children else None
    proto[26] = []
    proto[27] = subscription_id
    return proto


def player_proto(player_id, name="Alice", number="0000"):
    """The shallow player block shared by profiles, friend lists and searches."""
    return [[name, number], ["a12", AVATAR_URL], None, None, None, player_id]


def profile_responses(player_id, friends=(), game_ids=()):
    """Responses to D0Amud, Z5HRnb and Q6jt8c for one player."""
    return [
        [None] * 5 + [player_proto(player_id)],
        [[player_proto(friend_id, name=f"Friend{i}") for i, friend_id in enumerate(friends)]],
        [list(game_ids)],
    ]


def game_responses(game_sku, listed_skus=None):
    """Responses to ZAm7We and LrvzJb for a game."""
    listed = None if listed_skus is None else [[[None] * 9 + [sku] for sku in listed_skus]]
    details = [None, [[None, [None] * 9 + [game_sku]]]]
    return [listed, details]


class FakeClient:
    """Stands in for rpc.Client; answers batches from a responder callable."""

    def __init__(self, responder=None):
        self.responder = responder or (lambda pairs: [None for _ in pairs])
        self.batches = []

    def fetch_rpc_batch(self, pairs):
        pairs = list(pairs)
        self.batches.append(pairs)
        return self.responder(pairs)
