import os
import tempfile
from typing import List, Optional

import pytest
from pydantic import BaseModel, ValidationError

from stadia_spider.documents import Database


class Doc(BaseModel):
    id: str
    score: int
    tags: Optional[List[str]] = None


@pytest.fixture
def database():
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    db = Database(db_path)
    try:
        yield db
    finally:
        db.close()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(db_path + suffix):
                os.remove(db_path + suffix)


@pytest.fixture
def docs(database):
    return database.create_table("Docs", Doc, {"id": "unique", "score": "indexed", "tags": "virtual"})


def test_insert_does_not_overwrite(docs):
    assert docs.insert(Doc(id="a", score=1)) is True
    assert docs.insert(Doc(id="a", score=2)) is False
    assert docs.get(docs.columns.id.eq("a")).score == 1


def test_update_upserts(docs):
    docs.update(Doc(id="a", score=1))
    docs.update(Doc(id="a", score=5))
    assert docs.count() == 1
    assert docs.get(docs.columns.id.eq("a")).score == 5


def test_select_filters_and_orders(docs):
    for i, score in enumerate([30, 10, 20]):
        docs.insert(Doc(id=f"d{i}", score=score))
    scores = [d.score for d in docs.select(where=docs.columns.score.gte(15), order_by=docs.columns.score.desc())]
    assert scores == [30, 20]
    assert [d.score for d in docs.select(order_by=docs.columns.score.asc(), top=1)] == [10]


def test_select_is_restartable(docs):
    docs.insert(Doc(id="a", score=1))
    assert len(list(docs.select())) == 1
    assert len(list(docs.select())) == 1


def test_get_and_first(docs):
    assert docs.get(docs.columns.id.eq("missing")) is None
    with pytest.raises(LookupError):
        docs.first(docs.columns.id.eq("missing"))
    docs.insert(Doc(id="a", score=1))
    docs.insert(Doc(id="b", score=1))
    with pytest.raises(LookupError):
        docs.get(docs.columns.score.eq(1))
    assert docs.first(docs.columns.score.eq(1), order_by=docs.columns.id.desc()).id == "b"


def test_delete_returns_count(docs):
    docs.insert(Doc(id="a", score=1))
    docs.insert(Doc(id="b", score=2))
    assert docs.delete(docs.columns.score.lt(2)) == 1
    assert docs.count() == 1


def test_null_projection(docs):
    docs.insert(Doc(id="a", score=1))
    docs.insert(Doc(id="b", score=1, tags=["x"]))
    assert [d.id for d in docs.select(where=docs.columns.tags.is_null())] == ["a"]
    assert [d.id for d in docs.select(where=docs.columns.tags.not_null())] == ["b"]


def test_values_are_validated(docs):
    with pytest.raises(ValidationError):
        docs.insert({"id": "a", "score": "not a number"})
    assert docs.insert({"id": "a", "score": 3}) is True
    assert next(docs.select(unchecked=True)) == {"id": "a", "score": 3, "tags": None}


def test_large_numeric_strings_survive(database):
    class Keyed(BaseModel):
        key: str

    table = database.create_table("Keyed", Keyed, {"key": "unique"})
    table.insert(Keyed(key="12195660895651674916"))
    assert table.get(table.columns.key.eq("12195660895651674916")).key == "12195660895651674916"


def test_transaction_rolls_back(database, docs):
    with pytest.raises(RuntimeError):
        with database.transaction():
            docs.insert(Doc(id="a", score=1))
            raise RuntimeError("boom")
    assert docs.count() == 0


def test_duplicate_table_rejected(database, docs):
    with pytest.raises(ValueError):
        database.create_table("Docs", Doc)


def test_invalid_names_rejected(database):
    with pytest.raises(ValueError):
        database.create_table("bad name", Doc)
    with pytest.raises(ValueError):
        database.create_table("Other", Doc, {"bad path!": "virtual"})


def test_reopen_keeps_rows():
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    try:
        first = Database(db_path)
        first.create_table("Docs", Doc, {"id": "unique"}).insert(Doc(id="a", score=1))
        first.close()

        second = Database(db_path)
        assert second.create_table("Docs", Doc, {"id": "unique"}).count() == 1
        second.close()
    finally:
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(db_path + suffix):
                os.remove(db_path + suffix)


class Owner(BaseModel):
    name: Optional[str] = None


class Meta(BaseModel):
    owner: Optional[Owner] = None


class Item(BaseModel):
    id: str
    meta: Optional[Meta] = None


def test_nested_path_projection(database):
    items = database.create_table("Items", Item, {"id": "unique", "meta.owner.name": "indexed"})
    items.insert(Item(id="a", meta=Meta(owner=Owner(name="ann"))))
    items.insert(Item(id="b", meta=Meta(owner=Owner(name="bob"))))
    items.insert(Item(id="c", meta=Meta(owner=Owner(name="ann"))))
    items.insert(Item(id="d", meta=Meta()))
    items.insert(Item(id="e"))

    assert [i.id for i in items.select(where=items.columns.name.eq("ann"))] == ["a", "c"]
    assert [i.id for i in items.select(where=items.columns.name.eq("bob"))] == ["b"]
    assert [i.id for i in items.select(where=items.columns.name.is_null())] == ["d", "e"]

    items.update(Item(id="a", meta=Meta(owner=Owner(name="bob"))))
    assert [i.id for i in items.select(where=items.columns.name.eq("bob"), order_by=items.columns.id.asc())] == ["a", "b"]
    assert items.count(items.columns.name.eq("ann")) == 1


def test_nested_path_index_is_named_after_full_path(database):
    database.create_table("Items", Item, {"meta.owner.name": "indexed"})
    names = [row[0] for row in database.conn.execute("select name from sqlite_master where type = 'index'")]
    assert "Items.meta.owner.name::indexed" in names
