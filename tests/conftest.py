from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from flask_jwt_extended import create_access_token

from backend.app import create_app

ADMIN_ID = ObjectId("64b000000000000000000001")
CUSTOMER_ID = ObjectId("64b000000000000000000002")


def make_cursor(documents):
    """A find() cursor stand-in supporting the chained calls the listings use."""
    cursor = MagicMock()
    for method in ("sort", "skip", "limit", "max_time_ms"):
        getattr(cursor, method).return_value = cursor
    cursor.__iter__.return_value = iter(list(documents))
    return cursor


def make_users_lookup(*documents):
    by_id = {document["_id"]: document for document in documents}

    def find_one(filters, *args, **kwargs):
        return by_id.get(filters.get("_id"))

    return find_one


@pytest.fixture
def db():
    database = MagicMock()
    database.users.find_one.side_effect = make_users_lookup(
        {"_id": ADMIN_ID, "name": "Admin", "roles": ["admin"]},
        {
            "_id": CUSTOMER_ID,
            "name": "Ivy Lime",
            "email": "ivy@example.com",
            "phone": "+100200300",
            "roles": ["customer"],
            "orders": [],
        },
    )
    return database


@pytest.fixture
def app(db, tmp_path):
    public_folder = tmp_path / "public"
    public_folder.mkdir()
    flask_app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length",
            "PUBLIC_FOLDER": str(public_folder),
            "UPLOAD_FOLDER": str(public_folder / "images"),
            "UPLOAD_PATH": "images",
        },
        database=db,
    )
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def auth_headers(app, user_id) -> dict:
    with app.app_context():
        token = create_access_token(identity=str(user_id))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(app):
    return auth_headers(app, ADMIN_ID)


@pytest.fixture
def customer_headers(app):
    return auth_headers(app, CUSTOMER_ID)
