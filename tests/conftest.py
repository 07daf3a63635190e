# Ensure project root is on sys.path so the flat modules import when running tests from anywhere.
import os
import sys
from datetime import datetime

# Isolated in-memory database, no background scheduler during tests
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['BLING_SCHEDULER_ENABLED'] = 'false'
os.environ['BLING_PLATFORM_FACTORY'] = ''

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest

from app import app as flask_app
from config_store import ConfigRepository
from models import db, utcnow
from platform_services import (
    OrderService,
    ProductService,
    StockLocationService,
    EXTENSION_KEY,
    register_platform,
)

NOW = datetime(2025, 1, 15, 12, 0, 0)


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=''):
        self.status_code = status_code
        self._json = json_data
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Stands in for requests.Session: replays queued responses and records every call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def request(self, method, url, **kwargs):
        self.calls.append({'method': method, 'url': url, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected request: {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class InMemoryProducts(ProductService):
    def __init__(self, products=None, failures=0):
        self.products = list(products or [])
        self.failures = failures
        self.list_calls = []
        self.upsert_calls = []

    def list_products(self, filters, relations=None):
        self.list_calls.append((filters, relations))
        wanted = set(filters.get('external_id') or [])
        return [p for p in self.products if p.get('external_id') in wanted]

    def upsert_products(self, payloads):
        self.upsert_calls.append(payloads)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("platform unavailable")
        return payloads


class InMemoryOrders(OrderService):
    def __init__(self, orders=None):
        self.orders = {o['id']: o for o in orders or []}
        self.updates = []

    def retrieve_order(self, order_id, relations=None):
        return self.orders.get(order_id)

    def update_order(self, order_id, data):
        self.updates.append((order_id, data))
        self.orders[order_id] = {**self.orders[order_id], **data}

    def list_orders(self, filters, limit=None):
        statuses = set(filters.get('status') or [])
        matching = [o for o in self.orders.values() if not statuses or o.get('status') in statuses]
        return matching[:limit] if limit else matching


class InMemoryStockLocations(StockLocationService):
    def __init__(self, locations=None):
        self.locations = list(locations or [])

    def list_stock_locations(self):
        return self.locations


def make_order(**overrides):
    order = {
        'id': 'order_1',
        'display_id': 1001,
        'email': 'maria@example.com',
        'created_at': '2025-01-10T15:30:00Z',
        'total': 150.0,
        'shipping_total': 20.0,
        'discount_total': 0,
        'metadata': {},
        'shipping_address': {
            'first_name': 'Maria',
            'last_name': 'Silva',
            'address_1': 'Rua das Flores, 123',
            'address_2': None,
            'city': 'São Paulo',
            'province': 'SP',
            'postal_code': '01310-100',
            'country_code': 'br',
            'phone': '(11) 99999-0000',
            'metadata': {'cpf': '529.982.247-25', 'bairro': 'Jardins'},
        },
        'billing_address': None,
        'items': [
            {'id': 'item_1', 'title': 'Camiseta', 'quantity': 2, 'unit_price': 65.0,
             'metadata': {'bling_external_id': 'CAM-01'}},
        ],
        'shipping_methods': [{'name': 'PAC', 'amount': 20.0, 'metadata': {'service_code': '04510'}}],
        'transactions': [{'amount': 150.0, 'currency_code': 'brl', 'created_at': '2025-01-10T15:31:00Z'}],
    }
    order.update(overrides)
    return order


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        flask_app.extensions.pop(EXTENSION_KEY, None)
        flask_app.config['BLING_HTTP_SESSION'] = None


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def repository(app):
    return ConfigRepository()


@pytest.fixture
def http_session(app):
    session = FakeSession()
    app.config['BLING_HTTP_SESSION'] = session
    return session


@pytest.fixture
def platform(app):
    return register_platform(
        app,
        products=InMemoryProducts(),
        orders=InMemoryOrders([make_order()]),
        stock_locations=InMemoryStockLocations([{'id': 'sloc_1', 'name': 'Galpão SP'}]),
    )


@pytest.fixture
def connected(repository):
    """Credentials plus a fresh six hour token, as the live routes see it."""
    repository.save({'client_id': 'client-id', 'client_secret': 'client-secret'})
    repository.store_tokens({'access_token': 'access-1', 'refresh_token': 'refresh-1', 'expires_in': 21600}, utcnow())
    return repository
