import jwt
import mongomock
import pytest
from fastapi.testclient import TestClient

from main import create_app
from middleware import SessionVerifier
from models import register_models
from registry import ModelRegistry

SECRET = "storefront-test-secret-0123456789abcdef"


def make_token(sub="user_buyer", email="buyer@shop.com", key=SECRET, **claims):
    return jwt.encode({"sub": sub, "email": email, **claims}, key, algorithm="HS256")


def bearer(**kwargs):
    return {"Authorization": f"Bearer {make_token(**kwargs)}"}


@pytest.fixture
def database():
    return mongomock.MongoClient().db


@pytest.fixture
def registry(database):
    return ModelRegistry(database)


@pytest.fixture
def models(registry):
    models = register_models(registry)
    registry.ensure_indexes()
    return models


@pytest.fixture
def verifier():
    return SessionVerifier(SECRET)


@pytest.fixture
def app(database, verifier):
    return create_app(database, verifier=verifier)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def seller(app):
    app.state.models.User.create({"email": "seller@shop.com", "name": "Seller", "isSeller": True})
    return bearer(sub="user_seller", email="seller@shop.com")


@pytest.fixture
def buyer():
    return bearer(sub="user_buyer", email="buyer@shop.com", name="Buyer")
