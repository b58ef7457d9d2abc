"""
Data Access Layer with Local Fallback

This module provides the data access layer for the book review service.
MongoDB is the primary backend; when it cannot be reached, every operation is
served from flat JSON files instead. Three storage modes are supported:

1. AUTO       - Try MongoDB first, fall back to local files on any error
2. MONGO_ONLY - MongoDB only, errors propagate
3. LOCAL_ONLY - Local JSON files only, MongoDB is never contacted

Set the STORAGE_MODE environment variable to control the mode.
"""

import logging
import math
import os
import re
from datetime import datetime, timezone
from enum import Enum

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.security import check_password_hash, generate_password_hash

from local_storage import COLLECTIONS, JSONStore, utc_timestamp


logger = logging.getLogger(__name__)


class StorageMode(Enum):
    AUTO = "auto"
    MONGO_ONLY = "mongo_only"
    LOCAL_ONLY = "local_only"


class DuplicateError(Exception):
    """Raised when a write would violate a uniqueness rule."""


DEFAULT_MONGODB_URI = "mongodb://localhost:27017/"
DEFAULT_MONGO_DB = "book_review"
DEFAULT_DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")

BOOK_FIELDS = ("title", "author", "description", "genre", "publishedYear")
REVIEW_FIELDS = ("rating", "reviewText")

SORT_OPTIONS = {
    "year_desc": ("publishedYear", DESCENDING),
    "year_asc": ("publishedYear", ASCENDING),
    "rating_desc": ("averageRating", DESCENDING),
    "rating_asc": ("averageRating", ASCENDING),
}
DEFAULT_SORT = ("createdAt", DESCENDING)

UNKNOWN_USER = "Unknown User"
UNKNOWN_BOOK = {"title": "Unknown Book", "author": "Unknown Author"}


# Module state, populated by connect()
STORAGE_MODE = None
mongo_client = None
mongo_db = None
local_store = None
_connected = False


# ============================================================================
# Connection
# ============================================================================

def connect(mode=None, mongo_uri=None, db_name=None, data_dir=None, client=None):
    """
    Configure the storage backends.

    Arguments default to the STORAGE_MODE, MONGODB_URI, MONGO_DB and DATA_DIR
    environment variables. Passing ``client`` uses an existing MongoClient
    (or compatible object) without pinging it.
    """
    global STORAGE_MODE, mongo_client, mongo_db, local_store, _connected

    close()

    if not isinstance(mode, StorageMode):
        mode = StorageMode((mode or os.environ.get("STORAGE_MODE", "auto")).lower())
    STORAGE_MODE = mode
    db_name = db_name or os.environ.get("MONGO_DB", DEFAULT_MONGO_DB)
    data_dir = data_dir or os.environ.get("DATA_DIR", DEFAULT_DATA_DIR)

    if mode != StorageMode.MONGO_ONLY:
        local_store = JSONStore(data_dir)

    if mode != StorageMode.LOCAL_ONLY:
        owns_client = client is None
        try:
            if owns_client:
                uri = mongo_uri or os.environ.get("MONGODB_URI", DEFAULT_MONGODB_URI)
                timeout = int(os.environ.get("MONGO_TIMEOUT_MS", 2000))
                client = MongoClient(uri, serverSelectionTimeoutMS=timeout)
                client.server_info()  # Test connection
            mongo_client = client
            mongo_db = client[db_name]
            _ensure_indexes()
            logger.info("[MongoDB] Connected to database: %s", db_name)
        except PyMongoError as e:
            logger.warning("[MongoDB] Connection failed: %s", e)
            if owns_client and client is not None:
                client.close()
            mongo_client = None
            mongo_db = None
            if mode == StorageMode.MONGO_ONLY:
                raise

    if mode == StorageMode.AUTO and mongo_db is None:
        logger.warning("[Local] MongoDB not available, using local file storage in %s",
                       local_store.data_dir)
    elif mode == StorageMode.LOCAL_ONLY:
        logger.info("[Local] Using local file storage in %s", local_store.data_dir)

    _connected = True


def close():
    """Close the MongoDB client and forget the current configuration."""
    global STORAGE_MODE, mongo_client, mongo_db, local_store, _connected
    if mongo_client is not None:
        mongo_client.close()
    STORAGE_MODE = None
    mongo_client = None
    mongo_db = None
    local_store = None
    _connected = False


def _ensure_connected():
    if not _connected:
        connect()


def _ensure_indexes():
    mongo_db["users"].create_index("email", unique=True)
    mongo_db["books"].create_index("addedBy")
    mongo_db["books"].create_index([("createdAt", DESCENDING)])
    mongo_db["reviews"].create_index(
        [("book", ASCENDING), ("user", ASCENDING)], unique=True
    )


def get_mongo_db():
    _ensure_connected()
    return mongo_db


def get_local_store():
    _ensure_connected()
    return local_store


def _run(operation, mongo_fn, local_fn, *args, **kwargs):
    """Run ``mongo_fn`` and fall back to ``local_fn`` when MongoDB fails."""
    _ensure_connected()
    if mongo_db is None:
        return local_fn(*args, **kwargs)
    try:
        return mongo_fn(*args, **kwargs)
    except PyMongoError as e:
        if STORAGE_MODE == StorageMode.MONGO_ONLY:
            raise
        logger.warning(
            "[MongoDB] %s failed (%s), using local storage", operation, e
        )
        return local_fn(*args, **kwargs)


# ============================================================================
# Shared helpers
# ============================================================================

def round_rating(value):
    """Round half-up to one decimal place."""
    return math.floor(value * 10 + 0.5) / 10


def compute_rating(ratings):
    """Return ``(averageRating, totalReviews)`` for a list of ratings."""
    if not ratings:
        return 0, 0
    return round_rating(sum(ratings) / len(ratings)), len(ratings)


def _sort_order(sort):
    return SORT_OPTIONS.get(sort, DEFAULT_SORT)


def _local_sorted(records, field, direction):
    return sorted(
        records,
        key=lambda r: (r.get(field, 0), r.get("_id", "")),
        reverse=direction == DESCENDING,
    )


def _newest_first(records):
    return _local_sorted(records, "createdAt", DESCENDING)


def _populate_users(records, field, names):
    for record in records:
        user_id = record.get(field)
        record[field] = {"_id": user_id, "name": names.get(user_id, UNKNOWN_USER)}
    return records


def _populate_books(records, summaries):
    for record in records:
        book_id = record.get("book")
        record["book"] = summaries.get(book_id, dict(UNKNOWN_BOOK, _id=book_id))
    return records


def _without_password(user):
    if user is None:
        return None
    return {k: v for k, v in user.items() if k != "password"}


# ============================================================================
# MongoDB Operations
# ============================================================================

def _oid(value):
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def _serialize(doc, keep_password=False):
    """Convert a MongoDB document to its JSON wire form."""
    out = {}
    for key, value in doc.items():
        if key == "password" and not keep_password:
            continue
        if isinstance(value, ObjectId):
            value = str(value)
        elif isinstance(value, datetime):
            value = utc_timestamp(value)
        elif isinstance(value, dict):
            value = _serialize(value, keep_password)
        out[key] = value
    return out


def _now():
    return datetime.now(timezone.utc)


def _mongo_user_names(user_ids):
    ids = [oid for oid in {_oid(u) for u in user_ids} if oid is not None]
    if not ids:
        return {}
    users = mongo_db["users"].find({"_id": {"$in": ids}}, {"name": 1})
    return {str(u["_id"]): u.get("name") for u in users}


def _mongo_book_summaries(book_ids):
    ids = [oid for oid in {_oid(b) for b in book_ids} if oid is not None]
    if not ids:
        return {}
    books = mongo_db["books"].find({"_id": {"$in": ids}}, {"title": 1, "author": 1})
    return {
        str(b["_id"]): {"_id": str(b["_id"]), "title": b.get("title"), "author": b.get("author")}
        for b in books
    }


def _mongo_populate_users(records, field):
    names = _mongo_user_names([r.get(field) for r in records])
    return _populate_users(records, field, names)


# Users

def _mongo_find_user_by_email(email):
    user = mongo_db["users"].find_one({"email": email.lower()})
    return _serialize(user, keep_password=True) if user else None


def _mongo_find_user_by_id(user_id):
    oid = _oid(user_id)
    if oid is None:
        return None
    user = mongo_db["users"].find_one({"_id": oid}, {"password": 0})
    return _serialize(user) if user else None


def _mongo_create_user(name, email, password_hash):
    users = mongo_db["users"]
    if users.find_one({"email": email}):
        raise DuplicateError("User already exists")
    now = _now()
    doc = {
        "name": name,
        "email": email,
        "password": password_hash,
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        users.insert_one(doc)
    except DuplicateKeyError:
        raise DuplicateError("User already exists")
    return _serialize(doc)


# Books

def _mongo_book_query(search=None, genre=None):
    query = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"author": {"$regex": pattern, "$options": "i"}},
        ]
    if genre and genre != "all":
        query["genre"] = genre
    return query


def _mongo_get_books(search=None, genre=None, sort=None, page=1, limit=5):
    books = mongo_db["books"]
    query = _mongo_book_query(search, genre)
    field, direction = _sort_order(sort)
    cursor = (
        books.find(query)
        .sort([(field, direction), ("_id", direction)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    results = [_serialize(b) for b in cursor]
    total = books.count_documents(query)
    return _mongo_populate_users(results, "addedBy"), total


def _mongo_get_book(book_id):
    oid = _oid(book_id)
    if oid is None:
        return None
    book = mongo_db["books"].find_one({"_id": oid})
    if not book:
        return None
    return _mongo_populate_users([_serialize(book)], "addedBy")[0]


def _mongo_create_book(fields, user):
    now = _now()
    doc = {k: fields[k] for k in BOOK_FIELDS if k in fields}
    doc.update({
        "addedBy": _oid(user["_id"]) or user["_id"],
        "averageRating": 0,
        "totalReviews": 0,
        "createdAt": now,
        "updatedAt": now,
    })
    result = mongo_db["books"].insert_one(doc)
    return _mongo_get_book(result.inserted_id)


def _mongo_update_book(book_id, fields):
    oid = _oid(book_id)
    if oid is None:
        return None
    changes = {k: fields[k] for k in BOOK_FIELDS if k in fields}
    changes["updatedAt"] = _now()
    book = mongo_db["books"].find_one_and_update(
        {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not book:
        return None
    return _mongo_populate_users([_serialize(book)], "addedBy")[0]


def _mongo_delete_book(book_id):
    oid = _oid(book_id)
    if oid is None:
        return False
    result = mongo_db["books"].delete_one({"_id": oid})
    if not result.deleted_count:
        return False
    mongo_db["reviews"].delete_many({"book": oid})
    return True


def _mongo_get_user_books(user_id):
    oid = _oid(user_id)
    if oid is None:
        return []
    cursor = mongo_db["books"].find({"addedBy": oid}).sort(
        [("createdAt", DESCENDING), ("_id", DESCENDING)]
    )
    return [_serialize(b) for b in cursor]


# Reviews

def _mongo_get_book_reviews(book_id):
    oid = _oid(book_id)
    if oid is None:
        return []
    cursor = mongo_db["reviews"].find({"book": oid}).sort(
        [("createdAt", DESCENDING), ("_id", DESCENDING)]
    )
    return _mongo_populate_users([_serialize(r) for r in cursor], "user")


def _mongo_get_review(review_id):
    oid = _oid(review_id)
    if oid is None:
        return None
    review = mongo_db["reviews"].find_one({"_id": oid})
    return _serialize(review) if review else None


def _mongo_populated_review(review_id):
    review = _mongo_get_review(review_id)
    if review is None:
        return None
    return _mongo_populate_users([review], "user")[0]


def _mongo_find_user_review(book_id, user_id):
    book_oid, user_oid = _oid(book_id), _oid(user_id)
    if book_oid is None or user_oid is None:
        return None
    review = mongo_db["reviews"].find_one({"book": book_oid, "user": user_oid})
    return _serialize(review) if review else None


def _mongo_add_review(book_id, user_id, rating, review_text):
    if _mongo_find_user_review(book_id, user_id):
        raise DuplicateError("You have already reviewed this book")
    now = _now()
    doc = {
        "book": _oid(book_id),
        "user": _oid(user_id),
        "rating": int(rating),
        "reviewText": review_text,
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        result = mongo_db["reviews"].insert_one(doc)
    except DuplicateKeyError:
        raise DuplicateError("You have already reviewed this book")
    _mongo_update_book_stats(book_id)
    return _mongo_populated_review(result.inserted_id)


def _mongo_update_review(review_id, fields):
    oid = _oid(review_id)
    if oid is None:
        return None
    changes = {k: fields[k] for k in REVIEW_FIELDS if k in fields}
    changes["updatedAt"] = _now()
    review = mongo_db["reviews"].find_one_and_update(
        {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not review:
        return None
    _mongo_update_book_stats(review["book"])
    return _mongo_populate_users([_serialize(review)], "user")[0]


def _mongo_delete_review(review_id):
    oid = _oid(review_id)
    if oid is None:
        return False
    review = mongo_db["reviews"].find_one_and_delete({"_id": oid})
    if not review:
        return False
    _mongo_update_book_stats(review["book"])
    return True


def _mongo_get_user_reviews(user_id):
    oid = _oid(user_id)
    if oid is None:
        return []
    cursor = mongo_db["reviews"].find({"user": oid}).sort(
        [("createdAt", DESCENDING), ("_id", DESCENDING)]
    )
    reviews = [_serialize(r) for r in cursor]
    summaries = _mongo_book_summaries([r.get("book") for r in reviews])
    return _populate_books(reviews, summaries)


# Aggregation

def _mongo_update_book_stats(book_id):
    """Recompute a book's average rating and review count from its reviews."""
    oid = _oid(book_id)
    if oid is None:
        return
    pipeline = [
        {"$match": {"book": oid}},
        {"$group": {
            "_id": "$book",
            "averageRating": {"$avg": "$rating"},
            "totalReviews": {"$sum": 1},
        }},
    ]
    result = list(mongo_db["reviews"].aggregate(pipeline))
    if result:
        average = round_rating(result[0]["averageRating"])
        total = result[0]["totalReviews"]
    else:
        average, total = 0, 0
    mongo_db["books"].update_one(
        {"_id": oid},
        {"$set": {"averageRating": average, "totalReviews": total, "updatedAt": _now()}},
    )


def _mongo_recalculate_all_ratings():
    book_ids = [b["_id"] for b in mongo_db["books"].find({}, {"_id": 1})]
    for book_id in book_ids:
        _mongo_update_book_stats(book_id)
    return len(book_ids)


def _mongo_reset_storage():
    for name in COLLECTIONS:
        mongo_db[name].delete_many({})


# ============================================================================
# Local Storage Operations
# ============================================================================

def _local_user_names(user_ids):
    wanted = set(user_ids)
    return {
        u["_id"]: u.get("name")
        for u in local_store.find("users", lambda u: u.get("_id") in wanted)
    }


def _local_book_summaries(book_ids):
    wanted = set(book_ids)
    return {
        b["_id"]: {"_id": b["_id"], "title": b.get("title"), "author": b.get("author")}
        for b in local_store.find("books", lambda b: b.get("_id") in wanted)
    }


def _local_populate_users(records, field):
    names = _local_user_names([r.get(field) for r in records])
    return _populate_users(records, field, names)


# Users

def _local_find_user_by_email(email):
    email = email.lower()
    return local_store.find_one("users", lambda u: u.get("email") == email)


def _local_find_user_by_id(user_id):
    return _without_password(local_store.find_by_id("users", user_id))


def _local_create_user(name, email, password_hash):
    user = local_store.insert_unless(
        "users",
        {"name": name, "email": email, "password": password_hash},
        lambda u: u.get("email") == email,
    )
    if user is None:
        raise DuplicateError("User already exists")
    return _without_password(user)


# Books

def _local_get_books(search=None, genre=None, sort=None, page=1, limit=5):
    books = local_store.find("books")
    if search:
        term = search.lower()
        books = [
            b for b in books
            if term in b.get("title", "").lower() or term in b.get("author", "").lower()
        ]
    if genre and genre != "all":
        books = [b for b in books if b.get("genre") == genre]

    field, direction = _sort_order(sort)
    books = _local_sorted(books, field, direction)

    total = len(books)
    start = (page - 1) * limit
    return _local_populate_users(books[start:start + limit], "addedBy"), total


def _local_get_book(book_id):
    book = local_store.find_by_id("books", book_id)
    if book is None:
        return None
    return _local_populate_users([book], "addedBy")[0]


def _local_create_book(fields, user):
    record = {k: fields[k] for k in BOOK_FIELDS if k in fields}
    record.update({"addedBy": user["_id"], "averageRating": 0, "totalReviews": 0})
    book = local_store.insert("books", record)
    book["addedBy"] = {"_id": user["_id"], "name": user.get("name")}
    return book


def _local_update_book(book_id, fields):
    changes = {k: fields[k] for k in BOOK_FIELDS if k in fields}
    book = local_store.update("books", book_id, changes)
    if book is None:
        return None
    return _local_populate_users([book], "addedBy")[0]


def _local_delete_book(book_id):
    if not local_store.delete("books", book_id):
        return False
    local_store.delete_where("reviews", lambda r: r.get("book") == book_id)
    return True


def _local_get_user_books(user_id):
    return _newest_first(local_store.find("books", lambda b: b.get("addedBy") == user_id))


# Reviews

def _local_get_book_reviews(book_id):
    reviews = _newest_first(local_store.find("reviews", lambda r: r.get("book") == book_id))
    return _local_populate_users(reviews, "user")


def _local_get_review(review_id):
    return local_store.find_by_id("reviews", review_id)


def _local_find_user_review(book_id, user_id):
    return local_store.find_one(
        "reviews", lambda r: r.get("book") == book_id and r.get("user") == user_id
    )


def _local_add_review(book_id, user_id, rating, review_text):
    review = local_store.insert_unless(
        "reviews",
        {"book": book_id, "user": user_id, "rating": int(rating), "reviewText": review_text},
        lambda r: r.get("book") == book_id and r.get("user") == user_id,
    )
    if review is None:
        raise DuplicateError("You have already reviewed this book")
    _local_update_book_stats(book_id)
    return _local_populate_users([review], "user")[0]


def _local_update_review(review_id, fields):
    changes = {k: fields[k] for k in REVIEW_FIELDS if k in fields}
    review = local_store.update("reviews", review_id, changes)
    if review is None:
        return None
    _local_update_book_stats(review["book"])
    return _local_populate_users([review], "user")[0]


def _local_delete_review(review_id):
    review = local_store.find_by_id("reviews", review_id)
    if review is None or not local_store.delete("reviews", review_id):
        return False
    _local_update_book_stats(review["book"])
    return True


def _local_get_user_reviews(user_id):
    reviews = _newest_first(local_store.find("reviews", lambda r: r.get("user") == user_id))
    summaries = _local_book_summaries([r.get("book") for r in reviews])
    return _populate_books(reviews, summaries)


# Aggregation

def _local_update_book_stats(book_id):
    """Recompute a book's average rating and review count from its reviews."""
    ratings = [
        r.get("rating", 0)
        for r in local_store.find("reviews", lambda r: r.get("book") == book_id)
    ]
    average, total = compute_rating(ratings)
    local_store.update("books", book_id, {"averageRating": average, "totalReviews": total})


def _local_recalculate_all_ratings():
    book_ids = [b["_id"] for b in local_store.find("books")]
    for book_id in book_ids:
        _local_update_book_stats(book_id)
    return len(book_ids)


def _local_reset_storage():
    for name in COLLECTIONS:
        local_store.clear(name)


# ============================================================================
# Public API - backend-aware operations
# ============================================================================

# Users

def find_user_by_email(email):
    """Return the user with ``email`` including its password hash, or None."""
    return _run("find_user_by_email", _mongo_find_user_by_email,
                _local_find_user_by_email, email)


def find_user_by_id(user_id):
    return _run("find_user_by_id", _mongo_find_user_by_id,
                _local_find_user_by_id, user_id)


def create_user(name, email, password):
    """
    Register a new user.

    Raises:
        DuplicateError: a user with this email already exists
    """
    password_hash = generate_password_hash(password)
    return _run("create_user", _mongo_create_user, _local_create_user,
                name, email.lower(), password_hash)


def check_password(user, password):
    if not user or not user.get("password"):
        return False
    return check_password_hash(user["password"], password)


# Books

def get_books(search=None, genre=None, sort=None, page=1, limit=5):
    """
    Return one page of books and the total number of matches.

    Args:
        search: case-insensitive substring matched against title or author
        genre: exact genre, ignored when empty or 'all'
        sort: 'year_desc', 'year_asc', 'rating_desc', 'rating_asc';
            anything else sorts newest first

    Returns:
        Tuple of (list of book dicts with populated 'addedBy', total count)
    """
    return _run("get_books", _mongo_get_books, _local_get_books,
                search=search, genre=genre, sort=sort, page=page, limit=limit)


def get_book(book_id):
    return _run("get_book", _mongo_get_book, _local_get_book, book_id)


def create_book(fields, user):
    return _run("create_book", _mongo_create_book, _local_create_book, fields, user)


def update_book(book_id, fields):
    return _run("update_book", _mongo_update_book, _local_update_book, book_id, fields)


def delete_book(book_id):
    """Delete a book together with its reviews."""
    return _run("delete_book", _mongo_delete_book, _local_delete_book, book_id)


def get_user_books(user_id):
    return _run("get_user_books", _mongo_get_user_books, _local_get_user_books, user_id)


# Reviews

def get_book_reviews(book_id):
    return _run("get_book_reviews", _mongo_get_book_reviews,
                _local_get_book_reviews, book_id)


def get_review(review_id):
    return _run("get_review", _mongo_get_review, _local_get_review, review_id)


def find_user_review(book_id, user_id):
    return _run("find_user_review", _mongo_find_user_review,
                _local_find_user_review, book_id, user_id)


def add_review(book_id, user_id, rating, review_text):
    """
    Add a review and refresh the book's aggregate rating.

    Raises:
        DuplicateError: the user has already reviewed this book
    """
    return _run("add_review", _mongo_add_review, _local_add_review,
                book_id, user_id, rating, review_text)


def update_review(review_id, fields):
    return _run("update_review", _mongo_update_review, _local_update_review,
                review_id, fields)


def delete_review(review_id):
    return _run("delete_review", _mongo_delete_review, _local_delete_review, review_id)


def get_user_reviews(user_id):
    return _run("get_user_reviews", _mongo_get_user_reviews,
                _local_get_user_reviews, user_id)


# Aggregation and maintenance

def update_book_stats(book_id):
    return _run("update_book_stats", _mongo_update_book_stats,
                _local_update_book_stats, book_id)


def recalculate_all_ratings():
    """Recompute the aggregate rating of every book. Returns the book count."""
    return _run("recalculate_all_ratings", _mongo_recalculate_all_ratings,
                _local_recalculate_all_ratings)


def reset_storage():
    """Delete every user, book and review in the active backend."""
    return _run("reset_storage", _mongo_reset_storage, _local_reset_storage)


def get_storage_status():
    """Get current storage mode and per-backend record counts."""
    _ensure_connected()
    status = {
        "mode": STORAGE_MODE.value,
        "mongodb_connected": mongo_db is not None,
        "local_data_dir": local_store.data_dir if local_store is not None else None,
    }

    if mongo_db is not None:
        try:
            status["mongodb_counts"] = {
                name: mongo_db[name].count_documents({}) for name in COLLECTIONS
            }
        except PyMongoError as e:
            logger.warning("[MongoDB] Count failed: %s", e)
            status["mongodb_counts"] = "error"

    if local_store is not None:
        status["local_counts"] = {name: local_store.count(name) for name in COLLECTIONS}

    return status
