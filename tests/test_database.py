"""Record store and transaction tests."""

from unittest import mock

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from database import (
    DuplicateKey,
    MemoryStore,
    MongoStore,
    StoreError,
    TransientConflict,
    Write,
    WriteConflict,
    open_store,
)
from config import Settings


@pytest.fixture
def shelf(store):
    return store.insert("movies", {"title": "movie1", "numberInStock": 1})


# --- MemoryStore CRUD ---

def test_insert_assigns_id_and_returns_copy(store):
    doc = store.insert("genres", {"name": "Drama"})
    assert isinstance(doc["_id"], ObjectId)
    doc["name"] = "changed"
    assert store.find_one("genres", {"_id": doc["_id"]})["name"] == "Drama"


def test_find_filters_and_sorts(store):
    store.insert("movies", {"title": "b", "numberInStock": 3})
    store.insert("movies", {"title": "a", "numberInStock": 0})
    store.insert("movies", {"title": "c", "numberInStock": 1})

    in_stock = store.find("movies", {"numberInStock": {"$gte": 1}}, sort=[("title", 1)])
    assert [m["title"] for m in in_stock] == ["b", "c"]

    by_title_desc = store.find("movies", sort=[("title", -1)])
    assert [m["title"] for m in by_title_desc] == ["c", "b", "a"]


def test_none_filter_matches_missing_field(store):
    store.insert("rentals", {"label": "open"})
    store.insert("rentals", {"label": "closed", "dateReturned": "2024-01-01"})
    assert [r["label"] for r in store.find("rentals", {"dateReturned": None})] == ["open"]


def test_update_and_delete_return_documents(store, shelf):
    updated = store.update("movies", {"_id": shelf["_id"]}, {"$inc": {"numberInStock": 4}})
    assert updated["numberInStock"] == 5

    removed = store.delete("movies", {"_id": shelf["_id"]})
    assert removed["_id"] == shelf["_id"]
    assert store.find_one("movies", {"_id": shelf["_id"]}) is None
    assert store.update("movies", {"_id": shelf["_id"]}, {"$set": {"title": "x"}}) is None
    assert store.delete("movies", {"_id": shelf["_id"]}) is None


def test_unique_email_is_enforced(store):
    store.insert("users", {"email": "a@example.com"})
    with pytest.raises(DuplicateKey):
        store.insert("users", {"email": "a@example.com"})
    with pytest.raises(DuplicateKey):
        store.apply([Write("insert", "users", document={"_id": ObjectId(), "email": "a@example.com"})])
    assert len(store.find("users")) == 1


def test_collection_names_lists_non_empty_collections(store):
    assert store.collection_names() == []
    store.insert("genres", {"name": "Drama"})
    assert store.collection_names() == ["genres"]


# --- Transaction ---

def test_transaction_commits_all_writes(store, shelf):
    with store.transaction() as tx:
        tx.update("movies", {"_id": shelf["_id"], "numberInStock": {"$gte": 1}}, {"$inc": {"numberInStock": -1}})
        rental = tx.insert("rentals", {"movie": shelf["_id"]})

    assert tx.state == "committed"
    assert store.find_one("movies", {"_id": shelf["_id"]})["numberInStock"] == 0
    assert store.find_one("rentals", {"_id": rental["_id"]}) is not None


def test_unmatched_conditional_update_discards_whole_batch(store, shelf):
    store.update("movies", {"_id": shelf["_id"]}, {"$set": {"numberInStock": 0}})
    tx = store.transaction()
    rental = tx.insert("rentals", {"movie": shelf["_id"]})
    tx.update("movies", {"_id": shelf["_id"], "numberInStock": {"$gte": 1}}, {"$inc": {"numberInStock": -1}})

    with pytest.raises(WriteConflict):
        tx.commit()

    assert tx.state == "aborted"
    assert store.find_one("rentals", {"_id": rental["_id"]}) is None
    assert store.find_one("movies", {"_id": shelf["_id"]})["numberInStock"] == 0


def test_exception_inside_block_aborts(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.insert("rentals", {"n": 1})
            raise RuntimeError("boom")

    assert tx.state == "aborted"
    assert store.find("rentals") == []


def test_transaction_cannot_be_reused(store):
    tx = store.transaction()
    tx.insert("genres", {"name": "Drama"})
    tx.commit()
    with pytest.raises(StoreError):
        tx.commit()
    with pytest.raises(StoreError):
        tx.insert("genres", {"name": "Horror"})
    assert len(store.find("genres")) == 1


def test_abort_drops_staged_writes(store):
    tx = store.transaction()
    tx.insert("genres", {"name": "Drama"})
    tx.abort()
    assert tx.writes == []
    with pytest.raises(StoreError):
        tx.commit()
    assert store.find("genres") == []


# --- MongoStore ---

def make_mongo_store():
    client = mock.MagicMock()
    session = client.start_session.return_value.__enter__.return_value
    session.in_transaction = True
    collection = client.__getitem__.return_value.__getitem__.return_value
    return MongoStore(client, "video_rentals"), session, collection


def test_mongo_apply_runs_writes_in_one_session_transaction():
    store, session, collection = make_mongo_store()
    collection.update_one.return_value.matched_count = 1
    writes = [
        Write("update", "movies", filter={"_id": 1}, update={"$inc": {"numberInStock": -1}}),
        Write("insert", "rentals", document={"_id": 2}),
    ]

    store.apply(writes)

    session.start_transaction.assert_called_once()
    collection.update_one.assert_called_once_with({"_id": 1}, {"$inc": {"numberInStock": -1}}, session=session)
    collection.insert_one.assert_called_once_with({"_id": 2}, session=session)
    session.commit_transaction.assert_called_once()
    session.abort_transaction.assert_not_called()


def test_mongo_apply_aborts_on_unmatched_update():
    store, session, collection = make_mongo_store()
    collection.update_one.return_value.matched_count = 0

    with pytest.raises(WriteConflict):
        store.apply([Write("update", "movies", filter={"_id": 1}, update={"$inc": {"numberInStock": -1}})])

    session.abort_transaction.assert_called_once()
    session.commit_transaction.assert_not_called()


def test_mongo_driver_errors_become_store_errors():
    store, session, collection = make_mongo_store()
    collection.insert_one.side_effect = PyMongoError("not a replica set")

    with pytest.raises(StoreError) as excinfo:
        store.apply([Write("insert", "rentals", document={"_id": 2})])

    assert not isinstance(excinfo.value, WriteConflict)
    session.abort_transaction.assert_called_once()


def transient_write_conflict():
    return OperationFailure("WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]})


def test_mongo_retries_transient_transaction_error():
    store, session, collection = make_mongo_store()
    collection.update_one.side_effect = [transient_write_conflict(), mock.Mock(matched_count=1)]

    store.apply([Write("update", "movies", filter={"_id": 1}, update={"$inc": {"numberInStock": -1}})])

    assert collection.update_one.call_count == 2
    assert session.start_transaction.call_count == 2
    session.abort_transaction.assert_called_once()
    session.commit_transaction.assert_called_once()


def test_mongo_retry_rechecks_condition():
    store, session, collection = make_mongo_store()
    collection.update_one.side_effect = [transient_write_conflict(), mock.Mock(matched_count=0)]

    with pytest.raises(WriteConflict):
        store.apply([Write("update", "movies", filter={"_id": 1}, update={"$inc": {"numberInStock": -1}})])

    session.commit_transaction.assert_not_called()


def test_mongo_gives_up_after_repeated_transient_errors():
    store, session, collection = make_mongo_store()
    collection.update_one.side_effect = transient_write_conflict()

    with pytest.raises(TransientConflict):
        store.apply([Write("update", "movies", filter={"_id": 1}, update={"$inc": {"numberInStock": -1}})])

    assert collection.update_one.call_count == 3
    session.commit_transaction.assert_not_called()


def test_mongo_recommits_on_unknown_commit_result():
    store, session, collection = make_mongo_store()
    session.commit_transaction.side_effect = [
        PyMongoError("commit timed out", error_labels=["UnknownTransactionCommitResult"]),
        None,
    ]

    store.apply([Write("insert", "rentals", document={"_id": 2})])

    collection.insert_one.assert_called_once_with({"_id": 2}, session=session)
    assert session.commit_transaction.call_count == 2
    session.abort_transaction.assert_not_called()


def test_mongo_duplicate_key_on_insert():
    store, session, collection = make_mongo_store()
    collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key error")

    with pytest.raises(DuplicateKey):
        store.insert("users", {"email": "a@example.com"})


def test_open_store_picks_backend():
    memory = open_store(Settings(secret_key="k", database_url="memory://"))
    assert isinstance(memory, MemoryStore)

    mongo = open_store(Settings(secret_key="k", database_url="mongodb://localhost:27017", database_name="vr"))
    try:
        assert isinstance(mongo, MongoStore)
        assert mongo.db.name == "vr"
    finally:
        mongo.close()
