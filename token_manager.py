"""
OAuth2 token lifecycle for the Bling connection.

Tokens live on the singleton configuration row. A token counts as expired
TOKEN_EXPIRY_MARGIN seconds (5 minutes by default) before Bling would reject
it; the first caller after that point refreshes it.

Refreshes are serialized twice: an in-process lock per configuration row, and
a version check on the row so a refresh computed from a stale read never
overwrites a newer token written by another process.
"""
import logging
import secrets
import threading
from datetime import timedelta
from urllib.parse import urlencode

import requests

from bling_client import BlingClient, BlingOAuthClient
from config_store import ConfigRepository
from errors import AuthenticationError, BlingAPIError, ConfigurationError
from models import utcnow
from settings import settings as default_settings

logger = logging.getLogger(__name__)

_refresh_locks = {}
_refresh_locks_guard = threading.Lock()


def _refresh_lock_for(config_id):
    with _refresh_locks_guard:
        lock = _refresh_locks.get(config_id)
        if lock is None:
            lock = _refresh_locks[config_id] = threading.Lock()
        return lock


class TokenManager:
    def __init__(self, repository=None, settings=None, http_session=None, clock=None):
        self.repository = repository or ConfigRepository()
        self.settings = settings or default_settings
        self.http_session = http_session
        self.clock = clock or utcnow

    def _oauth_client(self, config):
        return BlingOAuthClient(
            config.client_id,
            config.client_secret,
            oauth_base_url=self.settings.OAUTH_BASE_URL,
            timeout=self.settings.REQUEST_TIMEOUT,
            session=self.http_session,
        )

    def expiry_time(self, config):
        margin = self.settings.TOKEN_EXPIRY_MARGIN
        return config.token_updated_at + timedelta(seconds=(config.expires_in or 0) - margin)

    def _has_token(self, config):
        return bool(config and config.access_token and config.token_updated_at is not None
                    and config.expires_in is not None)

    # --- AUTHORIZATION ---

    def build_authorization(self, redirect_uri):
        """Returns (url, state). The state is stored with a short TTL."""
        config = self.repository.get()
        if not config or not config.client_id:
            raise ConfigurationError("Bling Client ID is not configured. Please save credentials first.")

        state = secrets.token_urlsafe(24)
        expires_at = self.clock() + timedelta(minutes=self.settings.OAUTH_STATE_TTL_MINUTES)
        self.repository.save_oauth_state(state, redirect_uri, expires_at)

        params = urlencode({
            'response_type': 'code',
            'client_id': config.client_id,
            'redirect_uri': redirect_uri,
            'state': state,
        })
        return f"{self.settings.OAUTH_BASE_URL}/authorize?{params}", state

    def get_authorization_url(self, redirect_uri):
        url, _ = self.build_authorization(redirect_uri)
        return url

    def validate_state(self, state):
        if not state:
            return False
        row = self.repository.consume_oauth_state(state)
        if row is None:
            logger.warning("OAuth callback with unknown state")
            return False
        if row.expires_at < self.clock():
            logger.warning("OAuth callback with expired state")
            return False
        return True

    def handle_oauth_callback(self, code, state=None):
        """
        Exchanges an authorization code for tokens. Never raises: failures are
        logged and reported as {"success": False, "message": ...}.
        When `state` is given it must be a live state issued by build_authorization.
        """
        if state is not None and not self.validate_state(state):
            return {'success': False, 'message': 'Invalid or expired OAuth state.'}

        try:
            config = self.repository.get()
            if not config or not config.client_id or not config.client_secret:
                raise ConfigurationError("Bling Client ID or Secret not configured.")

            data = self._oauth_client(config).exchange_code(code)
            self.repository.store_tokens(data, self.clock())
            logger.info("Bling OAuth token saved successfully.")
            return {'success': True}
        except (ConfigurationError, BlingAPIError, requests.RequestException) as e:
            logger.error(f"Bling OAuth callback failed: {e}")
            return {'success': False, 'message': str(e)}

    # --- ACCESS TOKENS ---

    def get_access_token(self):
        config = self.repository.get()
        if not self._has_token(config):
            raise AuthenticationError("Bling access token not found or invalid. Please authenticate.")

        if self.clock() < self.expiry_time(config):
            return config.access_token

        with _refresh_lock_for(config.id):
            # Another thread may have refreshed while we waited for the lock
            config = self.repository.get(reload=True)
            if not self._has_token(config):
                raise AuthenticationError("Bling access token not found or invalid. Please authenticate.")
            if self.clock() < self.expiry_time(config):
                return config.access_token
            return self._refresh(config)

    def _refresh(self, config):
        logger.info("Bling access token expired, refreshing...")

        if not config.client_id or not config.client_secret or not config.refresh_token:
            raise AuthenticationError("Missing Bling credentials or refresh token for renewal.")

        read_version = config.version
        try:
            data = self._oauth_client(config).refresh(config.refresh_token)
        except (BlingAPIError, requests.RequestException) as e:
            logger.error(f"Failed to refresh Bling access token: {e}")
            raise AuthenticationError("Failed to refresh Bling token.") from e

        if not self.repository.store_tokens(data, self.clock(), expected_version=read_version):
            # Lost the race to another process; its token is the one on record
            current = self.repository.get(reload=True)
            logger.info("Bling token was refreshed concurrently; using the stored token.")
            if self._has_token(current):
                return current.access_token
            raise AuthenticationError("Failed to refresh Bling token.")

        logger.info("Bling access token refreshed successfully.")
        return data['access_token']

    def create_authorized_client(self):
        return BlingClient(
            self.get_access_token(),
            base_url=self.settings.API_BASE_URL,
            timeout=self.settings.REQUEST_TIMEOUT,
            max_retries=self.settings.MAX_RETRIES,
            base_delay=self.settings.BASE_DELAY,
            session=self.http_session,
        )

    def token_info(self):
        config = self.repository.get()
        if not self._has_token(config):
            return {'valid': False, 'message': 'Token não inicializado'}

        expires_at = self.expiry_time(config)
        remaining = (expires_at - self.clock()).total_seconds()
        return {
            'valid': remaining > 0,
            'expires_at': expires_at.isoformat(),
            'expires_in_seconds': int(remaining),
            'has_refresh_token': bool(config.refresh_token),
        }
