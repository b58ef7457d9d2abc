"""Shared fixtures: each storage backend, and a Flask test client on top."""

import mongomock
import pytest

import data
from app import app as flask_app


TEST_DB = "test_book_review"


@pytest.fixture
def local_backend(tmp_path):
    """Local JSON files only."""
    data.connect(mode="local_only", data_dir=str(tmp_path / "data"))
    yield data.get_local_store()
    data.close()


@pytest.fixture
def mongo_backend(tmp_path):
    """MongoDB (mocked) with the local fallback files in tmp_path."""
    client = mongomock.MongoClient()
    data.connect(mode="auto", data_dir=str(tmp_path / "data"), client=client, db_name=TEST_DB)
    yield client[TEST_DB]
    data.close()


@pytest.fixture(params=["local_only", "auto"])
def backend(request, tmp_path):
    """Run the test once against local files and once against MongoDB."""
    client = mongomock.MongoClient() if request.param == "auto" else None
    data.connect(
        mode=request.param,
        data_dir=str(tmp_path / "data"),
        client=client,
        db_name=TEST_DB,
    )
    yield request.param
    data.close()


@pytest.fixture
def client(backend):
    flask_app.config.update(TESTING=True, SECRET_KEY="test-secret")
    return flask_app.test_client()


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, name="Ahmed", email="ahmed@example.com", password="secret123"):
    response = client.post(
        "/api/auth/register",
        json={"name": name, "email": email, "password": password},
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["data"]


def book_payload(**overrides):
    payload = {
        "title": "Dune",
        "author": "Frank Herbert",
        "description": "Spice, sand and politics.",
        "genre": "Science Fiction",
        "publishedYear": 1965,
    }
    payload.update(overrides)
    return payload


def create_book(client, token, **overrides):
    response = client.post("/api/books", json=book_payload(**overrides), headers=auth_header(token))
    assert response.status_code == 201, response.get_json()
    return response.get_json()["data"]
