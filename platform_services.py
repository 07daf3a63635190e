"""
Interfaces the host e-commerce platform provides to the connector.

The connector never talks to the platform's storage directly. The host
registers concrete services on the Flask app with `register_platform`, or names
a factory in BLING_PLATFORM_FACTORY ("package.module:callable") that returns a
PlatformServices instance.
"""
import abc
import importlib

from flask import current_app

EXTENSION_KEY = 'bling_platform'


class ProductService(abc.ABC):
    @abc.abstractmethod
    def list_products(self, filters, relations=None):
        """Products matching `filters` (e.g. {"external_id": [...]}) as dicts with `variants`."""

    @abc.abstractmethod
    def upsert_products(self, payloads):
        """Creates or updates products (with nested variants); returns the persisted products."""


class OrderService(abc.ABC):
    @abc.abstractmethod
    def retrieve_order(self, order_id, relations=None):
        """The order dict, or None when it does not exist."""

    @abc.abstractmethod
    def update_order(self, order_id, data):
        """Applies `data` (e.g. {"metadata": {...}}) to the order."""

    @abc.abstractmethod
    def list_orders(self, filters, limit=None):
        """Orders matching `filters` (e.g. {"status": ["pending"]}), at most `limit` of them."""


class StockLocationService(abc.ABC):
    @abc.abstractmethod
    def list_stock_locations(self):
        """[{"id": ..., "name": ...}, ...]"""


class PlatformServices:
    def __init__(self, products=None, orders=None, stock_locations=None):
        self.products = products
        self.orders = orders
        self.stock_locations = stock_locations


def register_platform(app, products=None, orders=None, stock_locations=None):
    services = PlatformServices(products=products, orders=orders, stock_locations=stock_locations)
    app.extensions[EXTENSION_KEY] = services
    return services


def get_platform(app=None):
    app = app or current_app
    return app.extensions.get(EXTENSION_KEY) or PlatformServices()


def load_platform_factory(app, dotted_path):
    """Resolves "module:callable" and registers whatever PlatformServices it returns."""
    module_name, _, attr = dotted_path.partition(':')
    if not module_name or not attr:
        raise ValueError(f"Invalid platform factory '{dotted_path}', expected 'module:callable'")
    factory = getattr(importlib.import_module(module_name), attr)
    services = factory()
    if not isinstance(services, PlatformServices):
        raise TypeError(f"Platform factory '{dotted_path}' must return PlatformServices")
    app.extensions[EXTENSION_KEY] = services
    return services
