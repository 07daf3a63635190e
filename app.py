import hashlib
import hmac
import logging
import ssl
import threading
import time
from datetime import timedelta
from urllib.parse import quote

import schedule
from flask import Flask, jsonify, redirect, request
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from config_store import ConfigRepository
from errors import AuthenticationError, BlingIntegrationError, NotFoundError
from models import db, SyncLog, utcnow
from order_sync import OrderSyncEngine
from platform_services import get_platform, load_platform_factory
from preferences import add_location_mapping, remove_location_mapping, set_default_location
from product_sync import ProductReconciler
from schemas import ConfigUpdateRequest, LocationMapping, describe_validation_error
from settings import settings
from token_manager import TokenManager

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'x-bling-signature'

app = Flask(__name__)

# --- CONFIGURATION ---
database_url = settings.DATABASE_URL
if database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql+pg8000://", 1)
elif database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+pg8000://", 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
# requests.Session used for every Bling call; None means one per client
app.config.setdefault('BLING_HTTP_SESSION', None)

if settings.DATABASE_SSL and database_url.startswith("postgresql+pg8000://"):
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        "connect_args": {"ssl_context": ssl.create_default_context()}
    }

db.init_app(app)

# --- DB INIT ---
with app.app_context():
    db.create_all()
    logger.info("Database tables created/verified.")

if settings.PLATFORM_FACTORY:
    load_platform_factory(app, settings.PLATFORM_FACTORY)


# --- SERVICES ---
def get_token_manager():
    return TokenManager(ConfigRepository(), settings, http_session=app.config.get('BLING_HTTP_SESSION'))


def get_product_reconciler():
    return ProductReconciler(get_token_manager(), get_platform(app), ConfigRepository(), settings)


def get_order_engine():
    return OrderSyncEngine(get_token_manager(), get_platform(app), ConfigRepository(),
                           product_reconciler=get_product_reconciler())


# --- HELPERS ---
def log_event(entity, status, message):
    try:
        db.session.add(SyncLog(entity=entity, status=status, message=message, timestamp=utcnow()))
        db.session.commit()
    except Exception as e:
        logger.error(f"DB LOG ERROR: {e}")
        db.session.rollback()


def verify_bling_signature(data, signature_header, secret):
    """HMAC-SHA256 (hex) of the raw body. Without a configured secret every request passes."""
    if not secret:
        return True
    if not signature_header:
        return False
    signature = signature_header.strip()
    if signature.lower().startswith('sha256='):
        signature = signature[len('sha256='):]
    digest = hmac.new(secret.encode('utf-8'), data, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature.lower())


def public_base_url():
    return settings.APP_URL or request.host_url.rstrip('/')


def admin_redirect(**params):
    query = '&'.join(f"{key}={quote(str(value), safe='')}" for key, value in params.items())
    separator = '&' if '?' in settings.ADMIN_UI_URL else '?'
    return redirect(f"{settings.ADMIN_UI_URL}{separator}{query}")


def flag(body, name):
    """Boolean option from the JSON body (true only) or the query string."""
    if body.get(name) is True:
        return True
    return request.args.get(name, '').lower() in ('1', 'true', 'yes')


def json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


# --- ERROR HANDLERS ---
@app.errorhandler(BlingIntegrationError)
def handle_integration_error(e):
    logger.warning(f"{type(e).__name__}: {e.message}")
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return e
    logger.exception("Unhandled error")
    return jsonify({"message": "Erro interno ao processar a requisição."}), 500


# --- OAUTH ---
@app.route('/authorize')
def authorize():
    redirect_uri = f"{public_base_url()}/oauth/callback"
    try:
        auth_url = get_token_manager().get_authorization_url(redirect_uri)
    except BlingIntegrationError as e:
        logger.error(f"Failed to get Bling authorization URL: {e.message}")
        return admin_redirect(auth_error='true', message=e.message)
    return redirect(auth_url)


@app.route('/oauth/url')
def oauth_url():
    redirect_uri = request.args.get('redirect_uri') or f"{public_base_url()}/oauth/callback"
    auth_url, state = get_token_manager().build_authorization(redirect_uri)
    return jsonify({"auth_url": auth_url, "state": state})


@app.route('/oauth/callback')
def oauth_callback():
    code = request.args.get('code')
    state = request.args.get('state')
    if request.args.get('error'):
        message = request.args.get('error_description') or request.args.get('error')
        log_event('OAuth', 'Error', f"Authorization denied: {message}")
        return admin_redirect(auth_error='true', message=message)
    if not code or not state:
        return admin_redirect(auth_error='true', message='Parâmetros code/state ausentes.')

    result = get_token_manager().handle_oauth_callback(code, state)
    if not result['success']:
        log_event('OAuth', 'Error', result.get('message') or 'OAuth callback failed')
        return admin_redirect(auth_error='true', message=result.get('message') or 'Falha na autenticação.')

    log_event('OAuth', 'Success', "Bling connected.")
    return admin_redirect(auth_success='true')


# --- CONFIG ---
@app.route('/config', methods=['GET'])
def get_config():
    return jsonify(ConfigRepository().public_view())


@app.route('/config', methods=['POST'])
def save_config():
    try:
        update = ConfigUpdateRequest.model_validate(json_body()).to_update()
    except ValidationError as e:
        return jsonify({"message": "Invalid input", "issues": describe_validation_error(e)}), 400

    ConfigRepository().save(update)
    log_event('Config', 'Success', "Bling settings saved.")
    return jsonify({"message": "Bling settings saved successfully."})


@app.route('/health')
def health():
    config = ConfigRepository().get()
    if not config or not config.access_token:
        return jsonify({"status": "not_connected"})
    token_manager = get_token_manager()
    try:
        token_manager.get_access_token()
    except BlingIntegrationError as e:
        logger.error(f"Bling health check failed: {e.message}")
        return jsonify({"status": "error", "message": e.message})
    return jsonify({"status": "ok", "token": token_manager.token_info()})


@app.route('/test-connection', methods=['POST'])
def test_connection():
    try:
        client = get_token_manager().create_authorized_client()
        client.get_products(page=1, limit=1)
    except AuthenticationError as e:
        return jsonify({"success": False, "message": e.message, "reauthorize": True}), 401
    except BlingIntegrationError as e:
        log_event('Connection', 'Error', e.message)
        return jsonify({"success": False, "message": e.message}), e.status_code
    return jsonify({"success": True, "message": "Conexão com Bling estabelecida com sucesso"})


# --- SYNC ---
@app.route('/sync', methods=['POST'])
def trigger_product_sync():
    logger.info("Starting synchronization of Bling products...")
    try:
        result = get_product_reconciler().sync_products_to_platform()
    except BlingIntegrationError as e:
        log_event('Product Sync', 'Error', e.message)
        raise

    summary = result['summary']
    log_event('Product Sync', 'Success',
              f"{summary['created']} created, {summary['updated']} updated, {summary['skipped']} skipped.")
    return jsonify({"message": "Sincronização concluída com sucesso.",
                    "summary": summary, "warnings": result['warnings']})


@app.route('/orders/<order_id>/sync', methods=['POST'])
def trigger_order_sync(order_id):
    body = json_body()
    try:
        result = get_order_engine().sync_order(
            order_id,
            generate_nfe=flag(body, 'generateNfe'),
            generate_shipping_label=flag(body, 'generateShippingLabel'),
            force=flag(body, 'force'),
        )
    except BlingIntegrationError as e:
        log_event('Order Sync', 'Error', f"Order {order_id}: {e.message}")
        raise

    sale_id = result['summary']['bling_sale_id']
    log_event('Order Sync', 'Success', f"Order {order_id} sent to Bling (sale {sale_id}).")
    return jsonify({"message": "Pedido sincronizado com o Bling.", "result": result})


@app.route('/orders/status-sync', methods=['POST'])
def trigger_order_status_sync():
    result = get_order_engine().pull_order_statuses()
    summary = result['summary']
    log_event('Order Status', 'Success',
              f"{summary['checked']} orders checked, {summary['updated']} updated from Bling.")
    return jsonify(result)


@app.route('/webhook', methods=['POST'])
def bling_webhook():
    raw = request.get_data()
    config = ConfigRepository().get()
    secret = config.webhook_secret if config else None
    if not verify_bling_signature(raw, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning("Invalid Bling webhook signature")
        log_event('Webhook', 'Error', "Invalid signature, event rejected.")
        return jsonify({"message": "Invalid signature"}), 401

    event = json_body()
    topic = event.get('topic') or event.get('event') or 'unknown'
    logger.info(f"Received Bling webhook: {topic}")

    result = get_product_reconciler().sync_products_to_platform()
    log_event('Webhook', 'Success', f"Catalog re-synced after '{topic}' event.")
    return jsonify({"received": True, "handled": True, "summary": result['summary'],
                    "warnings": result['warnings']})


# --- INVENTORY ---
@app.route('/inventory/locations')
def inventory_locations():
    service = get_platform(app).stock_locations
    locations = []
    if service is not None:
        locations = [{"id": loc['id'], "name": loc.get('name') or loc['id']}
                     for loc in service.list_stock_locations()]
    mappings = ConfigRepository().get_preferences()['inventory']['locations']
    return jsonify({"locations": locations, "mappings": mappings})


def _save_mappings(mappings):
    repository = ConfigRepository()
    repository.save({'sync_preferences': {'inventory': {'locations': mappings}}})
    return repository.get_preferences()['inventory']['locations']


def _current_mappings():
    return ConfigRepository().get_preferences()['inventory']['locations']


@app.route('/inventory/locations/mappings', methods=['POST'])
def add_mapping():
    try:
        mapping = LocationMapping.model_validate(json_body())
    except ValidationError as e:
        return jsonify({"message": "Invalid input", "issues": describe_validation_error(e)}), 400
    mappings = add_location_mapping(_current_mappings(), mapping.stock_location_id, mapping.bling_deposit_id)
    return jsonify({"mappings": _save_mappings(mappings)})


@app.route('/inventory/locations/mappings/<int:index>', methods=['DELETE'])
def remove_mapping(index):
    try:
        mappings = remove_location_mapping(_current_mappings(), index)
    except IndexError as e:
        raise NotFoundError(str(e))
    return jsonify({"mappings": _save_mappings(mappings)})


@app.route('/inventory/locations/mappings/<int:index>/default', methods=['POST'])
def make_default_mapping(index):
    try:
        mappings = set_default_location(_current_mappings(), index)
    except IndexError as e:
        raise NotFoundError(str(e))
    return jsonify({"mappings": _save_mappings(mappings)})


@app.route('/deposits')
def list_deposits():
    deposits = get_token_manager().create_authorized_client().get_deposits()
    return jsonify({"deposits": deposits})


# --- LOGS ---
@app.route('/logs')
def sync_logs():
    logs = SyncLog.query.order_by(SyncLog.timestamp.desc()).limit(50).all()
    data = []
    for log in logs:
        msg_type = 'info'
        status_lower = (log.status or '').lower()
        if 'error' in status_lower or 'fail' in status_lower: msg_type = 'error'
        elif 'success' in status_lower: msg_type = 'success'
        elif 'warning' in status_lower or 'skip' in status_lower: msg_type = 'warning'

        iso_ts = log.timestamp.isoformat()
        if not iso_ts.endswith('Z'): iso_ts += 'Z'

        data.append({
            'id': log.id,
            'timestamp': iso_ts,
            'message': f"[{log.entity}] {log.message}",
            'type': msg_type,
            'details': log.status,
        })
    return jsonify(data)


# --- SCHEDULED JOBS ---
def scheduled_product_sync():
    with app.app_context():
        try:
            result = get_product_reconciler().sync_products_to_platform()
            summary = result['summary']
            log_event('Daily Sync', 'Success',
                      f"{summary['total_products']} products processed, "
                      f"{summary['created']} created, {summary['updated']} updated.")
        except BlingIntegrationError as e:
            log_event('Daily Sync', 'Error', e.message)
        except Exception as e:
            logger.exception("Daily product sync crashed")
            log_event('Daily Sync', 'Error', str(e))


def scheduled_order_status_sync():
    with app.app_context():
        try:
            result = get_order_engine().pull_order_statuses()
            summary = result['summary']
            if summary['checked']:
                log_event('Order Status', 'Success',
                          f"{summary['checked']} orders checked, {summary['updated']} updated from Bling.")
        except BlingIntegrationError as e:
            log_event('Order Status', 'Error', e.message)
        except Exception as e:
            logger.exception("Order status sync crashed")
            log_event('Order Status', 'Error', str(e))


def purge_oauth_states():
    with app.app_context():
        try:
            deleted = ConfigRepository().purge_expired_states()
            if deleted:
                logger.info(f"Purged {deleted} expired OAuth states.")
        except Exception as e:
            db.session.rollback()
            logger.error(f"OAuth state purge failed: {e}")


def cleanup_old_logs():
    """Deletes logs older than LOG_RETENTION_DAYS to keep the DB light."""
    with app.app_context():
        cutoff = utcnow() - timedelta(days=settings.LOG_RETENTION_DAYS)
        try:
            SyncLog.query.filter(SyncLog.timestamp < cutoff).delete()
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Maintenance Error: {e}")


def run_schedule():
    schedule.every().day.at(settings.DAILY_SYNC_AT).do(
        lambda: threading.Thread(target=scheduled_product_sync).start())
    schedule.every(settings.ORDER_STATUS_SYNC_MINUTES).minutes.do(
        lambda: threading.Thread(target=scheduled_order_status_sync).start())
    schedule.every().hour.do(purge_oauth_states)
    schedule.every().day.at("06:00").do(lambda: threading.Thread(target=cleanup_old_logs).start())

    while True:
        schedule.run_pending()
        time.sleep(1)


# --- SYSTEM STARTUP ---
if settings.SCHEDULER_ENABLED:
    t = threading.Thread(target=run_schedule, daemon=True)
    t.start()

if __name__ == '__main__':
    app.run(debug=True)
