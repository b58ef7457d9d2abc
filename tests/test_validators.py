"""Tests for request validation."""

from datetime import datetime

import pytest

from validators import validate_book, validate_login, validate_register, validate_review


def _fields(errors):
    return {e["field"] for e in errors}


def test_register_cleans_input():
    cleaned, errors = validate_register(
        {"name": "  Ahmed  ", "email": " Ahmed@Example.COM ", "password": "secret123"}
    )
    assert errors == []
    assert cleaned["name"] == "Ahmed"
    assert cleaned["email"] == "ahmed@example.com"


def test_register_rejects_short_password_and_long_name():
    _, errors = validate_register({"name": "x" * 51, "email": "a@b.co", "password": "12345"})
    assert _fields(errors) == {"name", "password"}


def test_login_requires_email_and_password():
    _, errors = validate_login({})
    assert _fields(errors) == {"email", "password"}


def test_book_accepts_numeric_string_year():
    cleaned, errors = validate_book({
        "title": " Dune ",
        "author": "Frank Herbert",
        "description": "Spice.",
        "genre": "Science Fiction",
        "publishedYear": "1965",
    })
    assert errors == []
    assert cleaned["title"] == "Dune"
    assert cleaned["publishedYear"] == 1965


@pytest.mark.parametrize("year", [999, datetime.now().year + 1, "abc", True, None, 1965.5])
def test_book_rejects_bad_year(year):
    _, errors = validate_book({
        "title": "Dune",
        "author": "Frank Herbert",
        "description": "Spice.",
        "genre": "Science Fiction",
        "publishedYear": year,
    })
    assert _fields(errors) == {"publishedYear"}


def test_book_length_limits():
    _, errors = validate_book({
        "title": "t" * 201,
        "author": "a" * 101,
        "description": "d" * 1001,
        "genre": "Other",
        "publishedYear": 2000,
    })
    assert _fields(errors) == {"title", "author", "description"}


@pytest.mark.parametrize("rating", [0, 6, "five", 2.5, None])
def test_review_rejects_bad_rating(rating):
    _, errors = validate_review({"rating": rating, "reviewText": "Fine"})
    assert _fields(errors) == {"rating"}


def test_review_text_limits():
    cleaned, errors = validate_review({"rating": "4", "reviewText": "  Great  "})
    assert errors == []
    assert cleaned == {"rating": 4, "reviewText": "Great"}

    _, errors = validate_review({"rating": 4, "reviewText": "x" * 501})
    assert _fields(errors) == {"reviewText"}
