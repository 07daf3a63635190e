from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()

# Single logical configuration row
BLING_CONFIG_ID = 'bling_config'


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BlingConfig(db.Model):
    __tablename__ = 'bling_config'
    id = db.Column(db.String(64), primary_key=True, default=BLING_CONFIG_ID)
    client_id = db.Column(db.String(255))
    client_secret = db.Column(db.String(255))
    webhook_secret = db.Column(db.String(255))
    access_token = db.Column(db.Text)
    refresh_token = db.Column(db.Text)
    expires_in = db.Column(db.Integer)
    token_updated_at = db.Column(db.DateTime)
    sync_preferences = db.Column(db.JSON)
    # Bumped on every token write; refreshes only persist against the version they read
    version = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class OAuthState(db.Model):
    __tablename__ = 'bling_oauth_states'
    state = db.Column(db.String(128), primary_key=True)
    redirect_uri = db.Column(db.String(512))
    created_at = db.Column(db.DateTime, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)


class SyncedOrder(db.Model):
    __tablename__ = 'bling_synced_orders'
    # sale_id is NULL while the POST to Bling is in flight
    order_id = db.Column(db.String(100), primary_key=True)
    sale_id = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=utcnow)


class SyncLog(db.Model):
    __tablename__ = 'sync_logs'
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=utcnow, index=True)
    entity = db.Column(db.String(50))
    status = db.Column(db.String(20))
    message = db.Column(db.Text)
