"""
Request body validation.

Every validator returns ``(cleaned, errors)`` where ``errors`` is a list of
``{"field": ..., "message": ...}`` dicts; the request is valid when it is empty.
"""

import re
from datetime import datetime


GENRES = (
    "Fiction",
    "Non-Fiction",
    "Mystery",
    "Romance",
    "Science Fiction",
    "Fantasy",
    "Thriller",
    "Biography",
    "History",
    "Self-Help",
    "Business",
    "Technology",
    "Other",
)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _error(field, message):
    return {"field": field, "message": message}


def _text(body, field, max_length, message, errors, min_length=1):
    value = body.get(field)
    if not isinstance(value, str):
        errors.append(_error(field, message))
        return None
    value = value.strip()
    if not min_length <= len(value) <= max_length:
        errors.append(_error(field, message))
        return None
    return value


def _integer(body, field, low, high, message, errors):
    value = body.get(field)
    if isinstance(value, bool):
        value = None
    elif isinstance(value, str) and re.fullmatch(r"\s*[+-]?\d+\s*", value):
        value = int(value)
    elif isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or not low <= value <= high:
        errors.append(_error(field, message))
        return None
    return value


def _email(body, errors):
    value = body.get("email")
    if not isinstance(value, str) or not EMAIL_RE.match(value.strip()):
        errors.append(_error("email", "Please enter a valid email"))
        return None
    return value.strip().lower()


def validate_register(body):
    errors = []
    cleaned = {
        "name": _text(body, "name", 50, "Name must be between 1 and 50 characters", errors),
        "email": _email(body, errors),
    }
    password = body.get("password")
    if not isinstance(password, str) or len(password) < 6:
        errors.append(_error("password", "Password must be at least 6 characters"))
    cleaned["password"] = password
    return cleaned, errors


def validate_login(body):
    errors = []
    cleaned = {"email": _email(body, errors)}
    password = body.get("password")
    if not isinstance(password, str) or not password:
        errors.append(_error("password", "Password is required"))
    cleaned["password"] = password
    return cleaned, errors


def validate_book(body):
    errors = []
    cleaned = {
        "title": _text(body, "title", 200,
                       "Title must be between 1 and 200 characters", errors),
        "author": _text(body, "author", 100,
                        "Author must be between 1 and 100 characters", errors),
        "description": _text(body, "description", 1000,
                             "Description must be between 1 and 1000 characters", errors),
    }

    genre = body.get("genre")
    if genre not in GENRES:
        errors.append(_error("genre", "Please select a valid genre"))
    cleaned["genre"] = genre

    cleaned["publishedYear"] = _integer(
        body, "publishedYear", 1000, datetime.now().year,
        "Please enter a valid year", errors,
    )
    return cleaned, errors


def validate_review(body):
    errors = []
    cleaned = {
        "rating": _integer(body, "rating", 1, 5, "Rating must be between 1 and 5", errors),
        "reviewText": _text(body, "reviewText", 500,
                            "Review text must be between 1 and 500 characters", errors),
    }
    return cleaned, errors
