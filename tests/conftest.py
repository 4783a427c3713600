"""Shared fixtures: an application wired to an in-memory MongoDB."""

import mongomock
import pytest

from dashboard_server import create_app

ADMIN_EMAIL = "admin@x.com"
MEMBER_EMAIL = "member@x.com"


@pytest.fixture
def database():
    return mongomock.MongoClient().dashboardDB


@pytest.fixture
def app(database):
    return create_app(
        {
            "TESTING": True,
            "APP_ENV": "development",
            "JWT_SECRET_KEY": "test-secret",
            "STRIPE_SECRET_KEY": "sk_test_123",
            "DEFAULT_ADMIN_EMAIL": "",
        },
        database=database,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_user(database):
    result = database.users.insert_one({"email": ADMIN_EMAIL, "name": "Admin", "role": "admin"})
    return result.inserted_id


@pytest.fixture
def member_user(database):
    result = database.users.insert_one({"email": MEMBER_EMAIL, "name": "Member", "role": "user"})
    return result.inserted_id


def login(client, email, **profile):
    response = client.post("/jwt", json={"email": email, **profile})
    assert response.status_code == 200
    return response


@pytest.fixture
def admin_client(client, admin_user):
    login(client, ADMIN_EMAIL)
    return client


@pytest.fixture
def member_client(client, member_user):
    login(client, MEMBER_EMAIL)
    return client
