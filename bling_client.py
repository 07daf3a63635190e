import base64
import logging
import time

import requests

from errors import BlingAPIError
from settings import settings

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


def _safe_json(resp):
    try:
        return resp.json()
    except ValueError:
        return None


def describe_error_body(body, fallback):
    """Most readable message Bling gave us: body message > raw text > fallback."""
    if isinstance(body, dict):
        if isinstance(body.get('message'), str) and body['message']:
            return body['message']
        error = body.get('error')
        if isinstance(error, dict):
            for key in ('message', 'description'):
                if isinstance(error.get(key), str) and error[key]:
                    return error[key]
        if isinstance(error, str) and error:
            return error
    if isinstance(body, str) and body.strip():
        return body.strip()
    return fallback


def error_from_response(resp, action):
    body = _safe_json(resp)
    if body is None:
        body = resp.text
    fallback = f"{action} falhou com status {resp.status_code}."
    return BlingAPIError(describe_error_body(body, fallback), upstream_status=resp.status_code, response=body)


def basic_auth_header(client_id, client_secret):
    creds = f"{client_id}:{client_secret}".encode('utf-8')
    return f"Basic {base64.b64encode(creds).decode('utf-8')}"


class BlingOAuthClient:
    """Talks to Bling's OAuth token endpoint with HTTP Basic client credentials."""

    def __init__(self, client_id, client_secret, oauth_base_url=None, timeout=None, session=None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.oauth_base_url = (oauth_base_url or settings.OAUTH_BASE_URL).rstrip('/')
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.session = session or requests.Session()

    @property
    def token_url(self):
        return f"{self.oauth_base_url}/token"

    def _post_token(self, form, action):
        headers = {
            'Authorization': basic_auth_header(self.client_id, self.client_secret),
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json',
        }
        try:
            resp = self.session.request('POST', self.token_url, data=form, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise BlingAPIError(f"{action}: {e}") from e

        if resp.status_code not in (200, 201):
            raise error_from_response(resp, action)

        data = _safe_json(resp)
        if not isinstance(data, dict) or not data.get('access_token'):
            raise BlingAPIError(f"{action}: resposta sem access_token.", upstream_status=resp.status_code, response=data)
        return data

    def exchange_code(self, code, redirect_uri=None):
        form = {'grant_type': 'authorization_code', 'code': code}
        if redirect_uri:
            form['redirect_uri'] = redirect_uri
        return self._post_token(form, 'Troca do código de autorização')

    def refresh(self, refresh_token):
        form = {'grant_type': 'refresh_token', 'refresh_token': refresh_token}
        return self._post_token(form, 'Renovação do token')


class BlingClient:
    """Bearer-authenticated client for the Bling REST API v3."""

    def __init__(self, access_token, base_url=None, timeout=None, max_retries=None, base_delay=None,
                 session=None, sleep=time.sleep):
        self.access_token = access_token
        self.base_url = (base_url or settings.API_BASE_URL).rstrip('/')
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.max_retries = max(1, max_retries or settings.MAX_RETRIES)
        self.base_delay = settings.BASE_DELAY if base_delay is None else base_delay
        self.session = session or requests.Session()
        self.sleep = sleep

    def _headers(self):
        return {
            'Authorization': f'Bearer {self.access_token}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def request(self, method, path, retry=True, **kwargs):
        """
        Sends one API call and returns the decoded JSON body.
        With `retry`, 429/5xx answers and connection errors are retried with
        exponential backoff up to `max_retries` attempts.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        action = f"{method} /{path.lstrip('/')}"
        attempts = self.max_retries if retry else 1
        kwargs.setdefault('timeout', self.timeout)

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            try:
                resp = self.session.request(method, url, headers=self._headers(), **kwargs)
            except requests.RequestException as e:
                if last_attempt:
                    raise BlingAPIError(f"{action} falhou: {e}") from e
                logger.warning(f"{action} request error (attempt {attempt + 1}/{attempts}): {e}")
                self.sleep(self.base_delay * (2 ** attempt))
                continue

            if resp.status_code in RETRYABLE_STATUSES and not last_attempt:
                logger.warning(f"{action} returned {resp.status_code}, retrying (attempt {attempt + 1}/{attempts})")
                self.sleep(self.base_delay * (2 ** attempt))
                continue

            if resp.status_code >= 400:
                raise error_from_response(resp, action)

            body = _safe_json(resp)
            return body if body is not None else {}

        raise BlingAPIError(f"{action} falhou após {attempts} tentativas.")

    # --- PRODUCTS ---

    def get_products(self, page=1, limit=None, **filters):
        params = {'pagina': page, 'limite': limit or settings.PAGE_SIZE}
        params.update(filters)
        body = self.request('GET', '/produtos', params=params)
        data = body.get('data') if isinstance(body, dict) else None
        return data if isinstance(data, list) else []

    def get_all_products(self, limit=None, max_pages=1000):
        limit = limit or settings.PAGE_SIZE
        products = []
        for page in range(1, max_pages + 1):
            batch = self.get_products(page=page, limit=limit)
            if not batch:
                break
            products.extend(batch)
            logger.info(f"Loaded {len(batch)} Bling products (page {page})")
            if len(batch) < limit:
                break
        return products

    def get_product(self, product_id):
        body = self.request('GET', f'/produtos/{product_id}')
        data = body.get('data') if isinstance(body, dict) else None
        return data if isinstance(data, dict) else None

    # --- SALES ---

    def create_sale(self, payload):
        # Never retried: a replayed POST would create a second sale
        return self.request('POST', '/vendas', retry=False, json=payload)

    def get_sale(self, sale_id):
        body = self.request('GET', f'/pedidos/vendas/{sale_id}')
        data = body.get('data') if isinstance(body, dict) else None
        return data if isinstance(data, dict) else None

    # --- DEPOSITS ---

    def get_deposits(self):
        body = self.request('GET', '/depositos', params={'pagina': 1, 'limite': 100})
        data = body.get('data') if isinstance(body, dict) else None
        return data if isinstance(data, list) else []
