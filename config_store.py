import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from models import db, BlingConfig, OAuthState, SyncedOrder, BLING_CONFIG_ID, utcnow
from preferences import merge_preferences

logger = logging.getLogger(__name__)

CREDENTIAL_FIELDS = ('client_id', 'client_secret', 'webhook_secret')

# A claimed order with no sale id after this long is treated as abandoned
IN_FLIGHT_TTL = timedelta(minutes=5)


def clean_credential(value):
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def mask_secret(value):
    if not value:
        return ''
    if len(value) <= 4:
        return '*' * len(value)
    return '*' * (len(value) - 4) + value[-4:]


class ConfigRepository:
    """Access to the singleton Bling configuration row and its side tables."""

    def __init__(self, session=None):
        self.session = session or db.session

    # --- CONFIGURATION ROW ---

    def get(self, reload=False):
        if reload:
            self.session.expire_all()
        return self.session.get(BlingConfig, BLING_CONFIG_ID)

    def get_preferences(self):
        config = self.get()
        return merge_preferences({}, config.sync_preferences if config else None)

    def save(self, data):
        """
        Applies a partial update. Only keys present in `data` change; credentials
        are trimmed and blank values stored as NULL.
        """
        config = self.get()
        if config is None:
            config = BlingConfig(id=BLING_CONFIG_ID, version=0)
            self.session.add(config)

        for field in CREDENTIAL_FIELDS:
            if field in data:
                setattr(config, field, clean_credential(data[field]))

        if data.get('sync_preferences') is not None:
            config.sync_preferences = merge_preferences(data['sync_preferences'], config.sync_preferences)
        elif not config.sync_preferences:
            config.sync_preferences = merge_preferences()

        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return config

    def store_tokens(self, token_data, now, expected_version=None):
        """
        Writes a new token triple. With `expected_version` the write only lands
        if nobody else stored tokens since that version was read; returns
        whether it landed.
        """
        values = {
            'access_token': token_data.get('access_token'),
            'refresh_token': token_data.get('refresh_token'),
            'expires_in': int(token_data.get('expires_in') or 0),
            'token_updated_at': now,
            'version': BlingConfig.version + 1,
            'updated_at': now,
        }
        query = self.session.query(BlingConfig).filter(BlingConfig.id == BLING_CONFIG_ID)
        if expected_version is not None:
            query = query.filter(BlingConfig.version == expected_version)

        try:
            updated = query.update(values, synchronize_session=False)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self.session.expire_all()
        return updated == 1

    def public_view(self):
        config = self.get()
        return {
            'client_id': (config.client_id if config else None) or '',
            'client_secret': mask_secret(config.client_secret if config else None),
            'webhook_secret': mask_secret(config.webhook_secret if config else None),
            'has_client_secret': bool(config and config.client_secret),
            'has_webhook_secret': bool(config and config.webhook_secret),
            'is_connected': bool(config and config.access_token),
            'sync_preferences': merge_preferences({}, config.sync_preferences if config else None),
        }

    # --- OAUTH STATES ---

    def save_oauth_state(self, state, redirect_uri, expires_at):
        self.session.add(OAuthState(state=state, redirect_uri=redirect_uri, created_at=utcnow(),
                                    expires_at=expires_at))
        self.session.commit()

    def consume_oauth_state(self, state):
        """Deletes and returns the state row, or None when unknown."""
        row = self.session.get(OAuthState, state)
        if row is None:
            return None
        self.session.delete(row)
        self.session.commit()
        return row

    def purge_expired_states(self, now=None):
        now = now or utcnow()
        deleted = self.session.query(OAuthState).filter(OAuthState.expires_at < now).delete()
        self.session.commit()
        return deleted

    # --- ORDER SYNC GUARD ---

    def synced_sale_id(self, order_id):
        row = self.session.get(SyncedOrder, str(order_id))
        return row.sale_id if row else None

    def claim_order(self, order_id):
        """Marks an order as in flight. False if another sync holds it."""
        order_id = str(order_id)
        now = utcnow()
        row = self.session.get(SyncedOrder, order_id)
        if row is not None:
            if row.sale_id is None and now - row.created_at < IN_FLIGHT_TTL:
                return False
            row.sale_id = None
            row.created_at = now
            self.session.commit()
            return True

        try:
            self.session.add(SyncedOrder(order_id=order_id, created_at=now))
            self.session.commit()
            return True
        except IntegrityError:
            self.session.rollback()
            return False

    def complete_order(self, order_id, sale_id):
        row = self.session.get(SyncedOrder, str(order_id))
        if row is None:
            row = SyncedOrder(order_id=str(order_id))
            self.session.add(row)
        row.sale_id = sale_id or ''
        row.created_at = utcnow()
        self.session.commit()

    def release_order(self, order_id):
        try:
            row = self.session.get(SyncedOrder, str(order_id))
            if row is not None and row.sale_id is None:
                self.session.delete(row)
                self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error(f"Could not release sync lock for order {order_id}: {e}")
