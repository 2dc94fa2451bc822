import logging
from unittest.mock import MagicMock

import mongomock
import pytest
from bson import ObjectId
from bson.errors import InvalidId
from pydantic import ValidationError
from pymongo.errors import ServerSelectionTimeoutError

from models import register_models
from registry import ModelRegistry
from schemas import Product, User


def make_product(models, **overrides):
    data = dict(userId="seller", name="Lamp", price=20, offerPrice=15, category="Home", image=["https://img/lamp.png"])
    data.update(overrides)
    return models.Product.create(data)


def make_address(models, user_id="buyer"):
    return models.Address.create({
        "userId": user_id,
        "fullName": "Jane Doe",
        "phoneNumber": "555-0100",
        "pincode": "560001",
        "area": "MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
    })


def test_get_or_register_is_idempotent(registry):
    first = registry.get_or_register("User", User, unique=["email"])
    second = registry.get_or_register("User", User, unique=["email"])
    assert first is second
    assert registry.get_or_register("User") is first


def test_second_definition_does_not_replace_first(registry):
    first = registry.get_or_register("Thing", User)
    assert registry.get_or_register("Thing", Product) is first
    assert first.schema is User


def test_register_models_twice_returns_same_handles(registry):
    first = register_models(registry)
    second = register_models(registry)
    for a, b in zip(first, second):
        assert a is b
    assert {m.name for m in registry} == {"User", "Address", "Product", "Order"}


def test_unknown_model_without_schema(registry):
    with pytest.raises(KeyError):
        registry.get_or_register("Missing")
    assert "Missing" not in registry


def test_collection_is_lowercased_name(models):
    assert models.User.collection.name == "user"
    assert models.Order.collection.name == "order"


def test_create_user_with_only_email(models):
    user = models.User.create({"email": "a@shop.com"})
    assert isinstance(user["_id"], ObjectId)
    assert user["isSeller"] is False
    assert user["cartItems"] == {}
    assert "createdAt" in user and "updatedAt" in user

    stored = models.User.find_by_id(user["_id"])
    assert stored["isSeller"] is False
    assert stored["cartItems"] == {}


def test_create_user_without_email_fails(models):
    with pytest.raises(ValidationError):
        models.User.create({"name": "Nobody"})
    assert models.User.count() == 0


def test_duplicate_email_fails(models):
    models.User.create({"email": "a@shop.com"})
    with pytest.raises(mongomock.DuplicateKeyError):
        models.User.create({"email": "a@shop.com", "name": "Again"})
    assert models.User.count({"email": "a@shop.com"}) == 1


def test_create_accepts_schema_instance(models):
    product = models.Product.create(
        Product(userId="s1", name="Mug", price=8, offerPrice=6, category="Kitchen", image=["m.png"])
    )
    assert product["offerPrice"] == 6
    assert models.Product.find_one({"name": "Mug"})["userId"] == "s1"


def test_order_status_default(models):
    address = make_address(models)
    order = models.Order.create({"userId": "buyer", "amount": 0, "address": address["_id"]})
    assert order["status"] == "Order Placed"
    assert models.Order.find_by_id(order["_id"])["status"] == "Order Placed"


def test_update_refreshes_updated_at(models):
    user = models.User.create({"email": "a@shop.com"})
    before = models.User.find_by_id(user["_id"])
    result = models.User.update_by_id(user["_id"], {"cartItems": {"p1": 3}})
    assert result.matched_count == 1

    after = models.User.find_by_id(user["_id"])
    assert after["cartItems"] == {"p1": 3}
    assert after["createdAt"] == before["createdAt"]
    assert after["updatedAt"] >= before["updatedAt"]


def test_find_by_id_rejects_malformed_id(models):
    with pytest.raises(InvalidId):
        models.Product.find_by_id("nope")


def test_find_and_delete(models):
    make_product(models, category="Home")
    make_product(models, name="Pan", category="Kitchen")
    assert len(models.Product.find()) == 2
    assert [p["name"] for p in models.Product.find({"category": "Kitchen"})] == ["Pan"]
    assert len(models.Product.find(limit=1)) == 1

    models.Product.delete_one({"name": "Pan"})
    assert models.Product.count() == 1


def test_populate_resolves_references(models):
    lamp = make_product(models)
    mug = make_product(models, name="Mug", offerPrice=5)
    address = make_address(models)
    order = models.Order.create({
        "userId": "buyer",
        "items": [{"product": lamp["_id"], "quantity": 1}, {"product": str(mug["_id"]), "quantity": 2}],
        "amount": 25,
        "address": address["_id"],
    })

    populated = models.Order.populate(models.Order.find_by_id(order["_id"]), "address", "items.product")
    assert populated["address"]["fullName"] == "Jane Doe"
    assert [i["product"]["name"] for i in populated["items"]] == ["Lamp", "Mug"]
    assert populated["amount"] == 25


def test_populate_lists_and_missing_targets(models):
    address = make_address(models)
    models.Order.create({"userId": "buyer", "amount": 1, "address": address["_id"]})
    models.Order.create({"userId": "buyer", "amount": 2, "address": ObjectId()})

    orders = models.Order.populate(models.Order.find(sort=[("amount", 1)]), "address")
    assert orders[0]["address"]["_id"] == address["_id"]
    assert orders[1]["address"] is None


def test_populate_unknown_path(models):
    with pytest.raises(ValueError):
        models.Order.populate({}, "userId")


def test_registries_are_independent():
    first = ModelRegistry(mongomock.MongoClient().db)
    second = ModelRegistry(mongomock.MongoClient().db)
    assert first.get_or_register("User", User) is not second.get_or_register("User", User)


def test_registration_does_not_touch_the_database():
    database = MagicMock()
    registry = ModelRegistry(database)
    model = registry.get_or_register("User", User, unique=["email"])
    assert model.unique == ["email"]
    model.collection.create_index.assert_not_called()

    registry.ensure_indexes()
    model.collection.create_index.assert_called_once_with("email", unique=True)


def test_unreachable_database_only_warns(caplog):
    database = MagicMock()
    database.__getitem__.return_value.create_index.side_effect = ServerSelectionTimeoutError("down")
    registry = ModelRegistry(database)
    registry.get_or_register("User", User, unique=["email"])

    with caplog.at_level(logging.WARNING, logger="registry"):
        registry.ensure_indexes()
    assert "Unable to ensure unique index User.email" in caplog.text


def test_get_or_create_inserts_once(models):
    first = models.User.get_or_create({"email": "a@shop.com"}, {"name": "A"})
    assert first["name"] == "A"
    assert first["isSeller"] is False
    assert first["cartItems"] == {}
    assert "createdAt" in first

    second = models.User.get_or_create({"email": "a@shop.com"}, {"name": "Changed"})
    assert second["_id"] == first["_id"]
    assert second["name"] == "A"
    assert models.User.count() == 1


def test_get_or_create_validates(models):
    with pytest.raises(ValidationError):
        models.User.get_or_create({"email": "not-an-email"})
    assert models.User.count() == 0
