import hashlib
import hmac
import json
from unittest import mock
from urllib.parse import parse_qs, urlparse

import pytest

from app import verify_bling_signature
from conftest import FakeResponse
from models import OAuthState, SyncLog, utcnow


def sign(body, secret):
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def test_verify_signature_accepts_prefixed_hex():
    body = b'{"topic":"estoque"}'
    assert verify_bling_signature(body, sign(body, 's3cret'), 's3cret')
    assert verify_bling_signature(body, 'sha256=' + sign(body, 's3cret'), 's3cret')
    assert not verify_bling_signature(body, sign(body, 'other'), 's3cret')
    assert not verify_bling_signature(body, None, 's3cret')
    assert verify_bling_signature(body, None, None)


def test_config_post_stores_blank_as_null(client, repository):
    resp = client.post('/config', json={'client_id': '', 'client_secret': 'x'})

    assert resp.status_code == 200
    config = repository.get(reload=True)
    assert config.client_id is None
    assert config.client_secret == 'x'


def test_config_post_leaves_omitted_fields_untouched(client, repository):
    repository.save({'client_id': 'keep-me', 'client_secret': 'secret-1'})

    resp = client.post('/config', json={'sync_preferences': {'products': {'import_images': True}}})

    assert resp.status_code == 200
    config = repository.get(reload=True)
    assert config.client_id == 'keep-me'
    assert config.client_secret == 'secret-1'
    assert config.sync_preferences['products']['import_images'] is True


def test_config_post_rejects_unknown_fields(client):
    resp = client.post('/config', json={'client_id': 'a', 'bogus': 1})
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Invalid input'


def test_config_get_masks_secrets(client, repository):
    repository.save({'client_id': 'client-id', 'client_secret': 'supersecret', 'webhook_secret': 'hook'})

    data = client.get('/config').get_json()

    assert data['client_id'] == 'client-id'
    assert data['client_secret'] == '*******cret'
    assert data['webhook_secret'] == '****'
    assert data['has_client_secret'] is True
    assert data['is_connected'] is False
    assert data['sync_preferences']['orders']['generate_nf'] is True


def test_health_states(client, repository):
    assert client.get('/health').get_json() == {'status': 'not_connected'}

    repository.save({'client_id': 'client-id', 'client_secret': 'client-secret'})
    repository.store_tokens({'access_token': 'a', 'refresh_token': 'r', 'expires_in': 21600}, utcnow())
    assert client.get('/health').get_json()['status'] == 'ok'


def test_authorize_redirects_to_bling_with_state(client, repository):
    repository.save({'client_id': 'client-id'})

    resp = client.get('/authorize')

    assert resp.status_code == 302
    query = parse_qs(urlparse(resp.headers['Location']).query)
    assert query['client_id'] == ['client-id']
    assert query['redirect_uri'][0].endswith('/oauth/callback')
    assert repository.session.get(OAuthState, query['state'][0]) is not None


def test_authorize_without_credentials_redirects_with_error(client):
    resp = client.get('/authorize')
    assert resp.status_code == 302
    assert 'auth_error=true' in resp.headers['Location']


def test_oauth_url_returns_state(client, repository):
    repository.save({'client_id': 'client-id'})
    data = client.get('/oauth/url').get_json()
    assert data['state'] in data['auth_url']


def test_oauth_callback_success(client, repository, http_session):
    repository.save({'client_id': 'client-id', 'client_secret': 'client-secret'})
    state = client.get('/oauth/url').get_json()['state']
    http_session.queue(FakeResponse(200, {'access_token': 'a', 'refresh_token': 'r', 'expires_in': 21600}))

    resp = client.get(f'/oauth/callback?code=abc&state={state}')

    assert resp.status_code == 302
    assert 'auth_success=true' in resp.headers['Location']
    assert repository.get(reload=True).access_token == 'a'


def test_oauth_callback_without_state_is_rejected(client, repository, http_session):
    repository.save({'client_id': 'client-id', 'client_secret': 'client-secret'})

    resp = client.get('/oauth/callback?code=abc')

    assert 'auth_error=true' in resp.headers['Location']
    assert http_session.calls == []


def test_webhook_with_wrong_signature_is_rejected(client, repository, platform):
    repository.save({'webhook_secret': 's3cret'})
    body = json.dumps({'topic': 'estoque'}).encode('utf-8')

    with mock.patch('app.get_product_reconciler') as reconciler:
        resp = client.post('/webhook', data=body, content_type='application/json',
                           headers={'x-bling-signature': sign(body, 'wrong')})

    assert resp.status_code == 401
    reconciler.assert_not_called()
    assert SyncLog.query.filter_by(entity='Webhook', status='Error').count() == 1


def test_webhook_with_valid_signature_resyncs_catalog(client, repository, platform):
    repository.save({'webhook_secret': 's3cret'})
    body = json.dumps({'topic': 'produto'}).encode('utf-8')

    with mock.patch('app.get_product_reconciler') as factory:
        factory.return_value.sync_products_to_platform.return_value = {'summary': {'created': 0}, 'warnings': []}
        resp = client.post('/webhook', data=body, content_type='application/json',
                           headers={'x-bling-signature': 'sha256=' + sign(body, 's3cret')})

    assert resp.status_code == 200
    assert resp.get_json()['handled'] is True
    factory.return_value.sync_products_to_platform.assert_called_once_with()


@pytest.mark.parametrize('event', ['product.updated', 'stock.updated', 'inventory.updated', 'order.created'])
def test_webhook_resyncs_on_every_signed_bling_event(client, repository, platform, event):
    repository.save({'webhook_secret': 's3cret'})
    body = json.dumps({'event': event, 'data': {'id': 1}}).encode('utf-8')

    with mock.patch('app.get_product_reconciler') as factory:
        factory.return_value.sync_products_to_platform.return_value = {'summary': {'created': 0}, 'warnings': []}
        resp = client.post('/webhook', data=body, content_type='application/json',
                           headers={'x-bling-signature': sign(body, 's3cret')})

    assert resp.get_json()['handled'] is True
    factory.return_value.sync_products_to_platform.assert_called_once_with()


def test_order_status_sync_route(client, connected, platform, http_session):
    order = platform.orders.orders['order_1']
    order.update(status='pending', metadata={'bling': {'sale_id': '555'}})
    http_session.queue(FakeResponse(200, {'data': {'id': 555, 'situacao': {'valor': 6}}}))

    data = client.post('/orders/status-sync').get_json()

    assert data['summary']['completed'] == 1
    assert platform.orders.orders['order_1']['status'] == 'completed'
    assert http_session.calls[0]['url'].endswith('/pedidos/vendas/555')


def test_sync_disabled_route_reports_warning(client, repository, platform, http_session):
    repository.save({'sync_preferences': {'products': {'enabled': False}}})

    data = client.post('/sync').get_json()

    assert data['summary']['total_products'] == 0
    assert 'desativada' in data['warnings'][0]
    assert http_session.calls == []


def test_sync_without_token_asks_for_reauthorization(client, repository, platform):
    repository.save({'client_id': 'client-id', 'client_secret': 'client-secret'})

    resp = client.post('/sync')

    assert resp.status_code == 401
    assert resp.get_json()['reauthorize'] is True


def test_order_sync_route(client, connected, platform, http_session):
    http_session.queue(FakeResponse(201, {'data': {'id': 555}}))

    resp = client.post('/orders/order_1/sync', json={'generateShippingLabel': True})

    assert resp.status_code == 200
    result = resp.get_json()['result']
    assert result['summary']['bling_sale_id'] == '555'
    assert result['payload']['gerar_etiqueta'] == 'S'
    assert http_session.calls[0]['url'].endswith('/vendas')
    assert http_session.calls[0]['headers']['Authorization'] == 'Bearer access-1'


def test_order_sync_route_surfaces_bling_error(client, connected, platform, http_session):
    http_session.queue(FakeResponse(400, {'error': {'message': 'Cliente inválido', 'description': 'x'}}))

    resp = client.post('/orders/order_1/sync')

    assert resp.status_code == 400
    assert resp.get_json() == {'message': 'Cliente inválido', 'upstream_status': 400}


def test_order_sync_route_unknown_order(client, connected, platform):
    resp = client.post('/orders/nope/sync')
    assert resp.status_code == 404


def test_inventory_locations_and_mappings(client, repository, platform):
    resp = client.post('/inventory/locations/mappings', json={'stock_location_id': 'sloc_1', 'bling_deposit_id': 7})
    assert resp.get_json()['mappings'] == [
        {'stock_location_id': 'sloc_1', 'bling_deposit_id': '7', 'is_default': True}]

    client.post('/inventory/locations/mappings', json={'stock_location_id': 'sloc_2', 'bling_deposit_id': '8'})
    mappings = client.delete('/inventory/locations/mappings/0').get_json()['mappings']
    assert mappings == [{'stock_location_id': 'sloc_2', 'bling_deposit_id': '8', 'is_default': True}]

    data = client.get('/inventory/locations').get_json()
    assert data['locations'] == [{'id': 'sloc_1', 'name': 'Galpão SP'}]
    assert data['mappings'] == mappings

    assert client.post('/inventory/locations/mappings/5/default').status_code == 404


def test_deposits_route(client, connected, http_session):
    http_session.queue(FakeResponse(200, {'data': [{'id': 1, 'descricao': 'Geral'}]}))
    assert client.get('/deposits').get_json() == {'deposits': [{'id': 1, 'descricao': 'Geral'}]}


def test_test_connection(client, connected, http_session):
    http_session.queue(FakeResponse(200, {'data': []}))
    data = client.post('/test-connection').get_json()
    assert data['success'] is True
    assert http_session.calls[0]['params'] == {'pagina': 1, 'limite': 1}


def test_logs_route_lists_recent_events(client, repository):
    client.post('/config', json={'client_id': 'a'})
    logs = client.get('/logs').get_json()
    assert logs[0]['type'] == 'success'
    assert logs[0]['message'].startswith('[Config]')
