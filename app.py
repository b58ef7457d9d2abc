"""
Book Review Application with Local Storage Fallback

This Flask application serves a JSON API for cataloguing books and posting
reviews. Data lives in MongoDB; if MongoDB is unreachable the API keeps
working against flat JSON files (see data.py).

Set STORAGE_MODE to 'auto' (default), 'mongo_only' or 'local_only'.
"""

import logging
import math
import os
import secrets

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

import data
from auth import auth_required, generate_token
from validators import validate_book, validate_login, validate_register, validate_review


logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 5
MAX_PAGE_SIZE = 50
MAX_PAGE = 100000

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", secrets.token_hex(32))
app.config["TOKEN_MAX_AGE_DAYS"] = int(os.environ.get("TOKEN_MAX_AGE_DAYS", 30))


def _body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _error(message, status):
    return jsonify({"success": False, "message": message}), status


def _validation_failed(errors):
    return jsonify({
        "success": False,
        "message": "Validation errors",
        "errors": errors,
    }), 400


def _user_payload(user, token=None):
    payload = {"_id": user["_id"], "name": user["name"], "email": user["email"]}
    if token:
        payload["token"] = token
    return payload


# ============================================================================
# Auth
# ============================================================================

@app.route('/api/auth/register', methods=['POST'])
def register():
    """
    Register a new user.

    Expected JSON body:
    - name: Display name (1-50 characters)
    - email: Email address, must be unique
    - password: At least 6 characters
    """
    fields, errors = validate_register(_body())
    if errors:
        return _validation_failed(errors)

    try:
        user = data.create_user(fields["name"], fields["email"], fields["password"])
    except data.DuplicateError:
        return _error("User already exists", 400)

    return jsonify({
        "success": True,
        "data": _user_payload(user, generate_token(user["_id"])),
        "message": "User registered successfully",
    }), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    """Exchange email and password for a bearer token."""
    fields, errors = validate_login(_body())
    if errors:
        return _validation_failed(errors)

    user = data.find_user_by_email(fields["email"])
    if not user or not data.check_password(user, fields["password"]):
        return _error("Invalid email or password", 401)

    return jsonify({
        "success": True,
        "data": _user_payload(user, generate_token(user["_id"])),
        "message": "Login successful",
    })


@app.route('/api/auth/profile', methods=['GET'])
@auth_required
def profile():
    return jsonify({"success": True, "data": _user_payload(g.user)})


# ============================================================================
# Books
# ============================================================================

@app.route('/api/books', methods=['GET'])
def get_books():
    """
    List books, one page at a time.

    Query parameters:
    - page: page number, starting at 1
    - limit: books per page (default 5, at most 50)
    - search: matches title or author, case-insensitive
    - genre: exact genre, 'all' disables the filter
    - sort: 'year_desc', 'year_asc', 'rating_desc', 'rating_asc'
      (default newest first)
    """
    page = request.args.get('page', type=int) or 1
    page = min(max(page, 1), MAX_PAGE)
    limit = request.args.get('limit', type=int) or DEFAULT_PAGE_SIZE
    if limit < 1:
        limit = DEFAULT_PAGE_SIZE
    limit = min(limit, MAX_PAGE_SIZE)

    books, total = data.get_books(
        search=request.args.get('search'),
        genre=request.args.get('genre'),
        sort=request.args.get('sort'),
        page=page,
        limit=limit,
    )
    total_pages = math.ceil(total / limit)

    return jsonify({
        "success": True,
        "data": books,
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalBooks": total,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    })


@app.route('/api/books', methods=['POST'])
@auth_required
def create_book():
    fields, errors = validate_book(_body())
    if errors:
        return _validation_failed(errors)

    book = data.create_book(fields, g.user)
    return jsonify({
        "success": True,
        "data": book,
        "message": "Book created successfully",
    }), 201


@app.route('/api/books/user/mybooks', methods=['GET'])
@auth_required
def get_my_books():
    return jsonify({"success": True, "data": data.get_user_books(g.user["_id"])})


@app.route('/api/books/<book_id>', methods=['GET'])
def get_book(book_id):
    book = data.get_book(book_id)
    if not book:
        return _error("Book not found", 404)
    return jsonify({"success": True, "data": book})


@app.route('/api/books/<book_id>', methods=['PUT'])
@auth_required
def update_book(book_id):
    fields, errors = validate_book(_body())
    if errors:
        return _validation_failed(errors)

    book = data.get_book(book_id)
    if not book:
        return _error("Book not found", 404)
    if book["addedBy"]["_id"] != g.user["_id"]:
        return _error("Not authorized to update this book", 401)

    book = data.update_book(book_id, fields)
    if not book:
        return _error("Book not found", 404)
    return jsonify({
        "success": True,
        "data": book,
        "message": "Book updated successfully",
    })


@app.route('/api/books/<book_id>', methods=['DELETE'])
@auth_required
def delete_book(book_id):
    book = data.get_book(book_id)
    if not book:
        return _error("Book not found", 404)
    if book["addedBy"]["_id"] != g.user["_id"]:
        return _error("Not authorized to delete this book", 401)

    if not data.delete_book(book_id):
        return _error("Book not found", 404)
    return jsonify({"success": True, "message": "Book deleted successfully"})


# ============================================================================
# Reviews
# ============================================================================

@app.route('/api/reviews/user/myreviews', methods=['GET'])
@auth_required
def get_my_reviews():
    return jsonify({"success": True, "data": data.get_user_reviews(g.user["_id"])})


@app.route('/api/reviews/<book_id>', methods=['GET'])
def get_book_reviews(book_id):
    return jsonify({"success": True, "data": data.get_book_reviews(book_id)})


@app.route('/api/reviews/<book_id>', methods=['POST'])
@auth_required
def add_review(book_id):
    """
    Review a book. Each user may review a book once.

    Expected JSON body:
    - rating: integer 1-5
    - reviewText: 1-500 characters
    """
    fields, errors = validate_review(_body())
    if errors:
        return _validation_failed(errors)

    if not data.get_book(book_id):
        return _error("Book not found", 404)

    try:
        review = data.add_review(book_id, g.user["_id"], fields["rating"], fields["reviewText"])
    except data.DuplicateError:
        return _error("You have already reviewed this book", 400)

    return jsonify({
        "success": True,
        "data": review,
        "message": "Review added successfully",
    }), 201


@app.route('/api/reviews/<review_id>', methods=['PUT'])
@auth_required
def update_review(review_id):
    fields, errors = validate_review(_body())
    if errors:
        return _validation_failed(errors)

    review = data.get_review(review_id)
    if not review:
        return _error("Review not found", 404)
    if review["user"] != g.user["_id"]:
        return _error("Not authorized to update this review", 401)

    review = data.update_review(review_id, fields)
    if not review:
        return _error("Review not found", 404)
    return jsonify({
        "success": True,
        "data": review,
        "message": "Review updated successfully",
    })


@app.route('/api/reviews/<review_id>', methods=['DELETE'])
@auth_required
def delete_review(review_id):
    review = data.get_review(review_id)
    if not review:
        return _error("Review not found", 404)
    if review["user"] != g.user["_id"]:
        return _error("Not authorized to delete this review", 401)

    if not data.delete_review(review_id):
        return _error("Failed to delete review", 500)
    return jsonify({"success": True, "message": "Review deleted successfully"})


# ============================================================================
# Status
# ============================================================================

@app.route('/api/health', methods=['GET'])
def health():
    return jsonify({"ok": True})


@app.route('/api/storage/status', methods=['GET'])
def storage_status():
    """Get current storage mode and database status."""
    return jsonify(data.get_storage_status())


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return _error(e.description, e.code)


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return _error("Server error", 500)


if __name__ == '__main__':
    logging.basicConfig(
        level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    data.connect()

    print("\n" + "=" * 60)
    print("Book Review Application Starting")
    print("=" * 60)
    status = data.get_storage_status()
    print(f"Storage Mode: {status['mode']}")
    print(f"MongoDB Connected: {status['mongodb_connected']}")
    print(f"Local Data Dir: {status['local_data_dir']}")
    print("=" * 60 + "\n")
    app.run(
        port=int(os.environ.get('PORT', 5000)),
        debug=os.environ.get('FLASK_DEBUG', 'false').lower() == 'true',
    )
