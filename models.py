from typing import NamedTuple

from registry import Model, ModelRegistry
from schemas import Address, Order, Product, User


class Models(NamedTuple):
    User: Model
    Address: Model
    Product: Model
    Order: Model


def register_models(registry: ModelRegistry) -> Models:
    """Register the storefront models. Safe to call more than once."""
    return Models(
        User=registry.get_or_register("User", User, unique=["email"]),
        Address=registry.get_or_register("Address", Address),
        Product=registry.get_or_register("Product", Product),
        Order=registry.get_or_register("Order", Order),
    )
