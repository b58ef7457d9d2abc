"""Tests for the dual-backend data layer and rating aggregation."""

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect, ServerSelectionTimeoutError

import data


BOOK = {
    "title": "Dune",
    "author": "Frank Herbert",
    "description": "Spice.",
    "genre": "Science Fiction",
    "publishedYear": 1965,
}


@pytest.mark.parametrize("value,expected", [
    (4.25, 4.3),
    (0.25, 0.3),
    (4.333333, 4.3),
    (2.5, 2.5),
    (5, 5),
])
def test_round_rating_half_up(value, expected):
    assert data.round_rating(value) == pytest.approx(expected)


def test_compute_rating():
    assert data.compute_rating([]) == (0, 0)
    assert data.compute_rating([5, 4, 4]) == (4.3, 3)
    assert data.compute_rating([1, 2]) == (1.5, 2)


def test_local_backend_rating_lifecycle(local_backend):
    user = data.create_user("Ahmed", "ahmed@example.com", "secret123")
    other = data.create_user("Sarah", "sarah@example.com", "secret123")
    book = data.create_book(BOOK, user)

    first = data.add_review(book["_id"], user["_id"], 3, "Fine")
    data.add_review(book["_id"], other["_id"], 4, "Good")
    assert data.get_book(book["_id"])["averageRating"] == 3.5

    data.update_review(first["_id"], {"rating": 5, "book": "ignored"})
    stored = data.get_book(book["_id"])
    assert stored["averageRating"] == 4.5
    assert stored["totalReviews"] == 2
    assert data.get_review(first["_id"])["book"] == book["_id"]

    assert data.delete_review(first["_id"]) is True
    assert data.get_book(book["_id"])["averageRating"] == 4
    assert data.delete_review(first["_id"]) is False


def test_mongo_backend_uses_aggregation(mongo_backend):
    user = data.create_user("Ahmed", "ahmed@example.com", "secret123")
    book = data.create_book(BOOK, user)
    data.add_review(book["_id"], user["_id"], 4, "Good")

    doc = mongo_backend["books"].find_one({"_id": ObjectId(book["_id"])})
    assert doc["averageRating"] == 4
    assert doc["totalReviews"] == 1
    assert isinstance(doc["addedBy"], ObjectId)

    # Nothing leaked into the fallback files
    assert data.get_local_store().count("books") == 0


def test_duplicate_review_rejected(backend):
    user = data.create_user("Ahmed", "ahmed@example.com", "secret123")
    book = data.create_book(BOOK, user)
    data.add_review(book["_id"], user["_id"], 4, "Good")
    with pytest.raises(data.DuplicateError):
        data.add_review(book["_id"], user["_id"], 2, "Again")


def test_duplicate_user_rejected(backend):
    data.create_user("Ahmed", "ahmed@example.com", "secret123")
    with pytest.raises(data.DuplicateError):
        data.create_user("Ahmed 2", "Ahmed@Example.com", "secret123")


def test_user_password_handling(backend):
    created = data.create_user("Ahmed", "ahmed@example.com", "secret123")
    assert "password" not in created
    assert "password" not in data.find_user_by_id(created["_id"])

    stored = data.find_user_by_email("AHMED@example.com")
    assert stored["password"] != "secret123"
    assert data.check_password(stored, "secret123")
    assert not data.check_password(stored, "wrong")
    assert not data.check_password(None, "secret123")


def test_unknown_reviewer_is_labelled(local_backend):
    user = data.create_user("Ahmed", "ahmed@example.com", "secret123")
    book = data.create_book(BOOK, user)
    local_backend.insert("reviews", {
        "book": book["_id"], "user": "ghost", "rating": 2, "reviewText": "Hm",
    })
    reviews = data.get_book_reviews(book["_id"])
    assert reviews[0]["user"] == {"_id": "ghost", "name": "Unknown User"}


def test_failover_to_local_on_mongo_error(mongo_backend, monkeypatch):
    user = data.create_user("Ahmed", "ahmed@example.com", "secret123")

    def unavailable(*args, **kwargs):
        raise AutoReconnect("connection reset")

    monkeypatch.setattr(data, "_mongo_create_book", unavailable)
    monkeypatch.setattr(data, "_mongo_get_books", unavailable)

    book = data.create_book(BOOK, user)
    assert book["addedBy"] == {"_id": user["_id"], "name": "Ahmed"}
    assert mongo_backend["books"].count_documents({}) == 0
    assert data.get_local_store().count("books") == 1

    books, total = data.get_books()
    assert total == 1
    assert books[0]["_id"] == book["_id"]


def test_mongo_only_mode_propagates_errors(tmp_path, monkeypatch):
    import mongomock

    data.connect(mode="mongo_only", client=mongomock.MongoClient(), db_name="test")
    try:
        def unavailable(*args, **kwargs):
            raise AutoReconnect("connection reset")

        monkeypatch.setattr(data, "_mongo_get_books", unavailable)
        with pytest.raises(AutoReconnect):
            data.get_books()
        assert data.get_local_store() is None
    finally:
        data.close()


def test_unreachable_mongo_falls_back_at_connect(tmp_path, monkeypatch):
    monkeypatch.setenv("MONGO_TIMEOUT_MS", "50")
    data.connect(mode="auto", mongo_uri="mongodb://127.0.0.1:1/", data_dir=str(tmp_path))
    try:
        assert data.get_mongo_db() is None
        status = data.get_storage_status()
        assert status["mongodb_connected"] is False
        user = data.create_user("Ahmed", "ahmed@example.com", "secret123")
        assert data.find_user_by_id(user["_id"])["name"] == "Ahmed"
    finally:
        data.close()


def test_unreachable_mongo_in_mongo_only_mode_raises(tmp_path, monkeypatch):
    monkeypatch.setenv("MONGO_TIMEOUT_MS", "50")
    with pytest.raises(ServerSelectionTimeoutError):
        data.connect(mode="mongo_only", mongo_uri="mongodb://127.0.0.1:1/")
    data.close()


def test_recalculate_all_ratings_repairs_stale_stats(backend):
    user = data.create_user("Ahmed", "ahmed@example.com", "secret123")
    book = data.create_book(BOOK, user)
    data.add_review(book["_id"], user["_id"], 2, "Meh")

    if backend == "auto":
        data.get_mongo_db()["books"].update_one(
            {"_id": ObjectId(book["_id"])}, {"$set": {"averageRating": 5, "totalReviews": 9}}
        )
    else:
        data.get_local_store().update("books", book["_id"], {"averageRating": 5, "totalReviews": 9})

    assert data.recalculate_all_ratings() == 1
    stored = data.get_book(book["_id"])
    assert stored["averageRating"] == 2
    assert stored["totalReviews"] == 1


def test_reset_storage(backend):
    user = data.create_user("Ahmed", "ahmed@example.com", "secret123")
    data.create_book(BOOK, user)
    data.reset_storage()
    assert data.get_books() == ([], 0)
    assert data.find_user_by_email("ahmed@example.com") is None


def test_review_of_deleted_book_is_labelled(local_backend):
    user = data.create_user("Ahmed", "ahmed@example.com", "secret123")
    local_backend.insert("reviews", {
        "book": "gone", "user": user["_id"], "rating": 3, "reviewText": "Lost",
    })
    reviews = data.get_user_reviews(user["_id"])
    assert reviews[0]["book"] == {
        "_id": "gone", "title": "Unknown Book", "author": "Unknown Author",
    }


def test_concurrent_local_reviews_keep_one_per_user(local_backend):
    import threading

    user = data.create_user("Ahmed", "ahmed@example.com", "secret123")
    book = data.create_book(BOOK, user)
    outcomes = []

    def post(n):
        try:
            data.add_review(book["_id"], user["_id"], n % 5 + 1, "Again")
            outcomes.append("added")
        except data.DuplicateError:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=post, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("added") == 1
    assert data.get_book(book["_id"])["totalReviews"] == 1
