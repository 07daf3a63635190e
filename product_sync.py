import logging
import time

from config_store import ConfigRepository
from errors import ConfigurationError
from preferences import resolve_location_for_deposit
from settings import settings as default_settings
from snapshots import has_inventory_data, normalize_product_snapshot

logger = logging.getLogger(__name__)

PREVIEW_SIZE = 5
DISABLED_WARNING = "Sincronização de produtos está desativada nas preferências."


def build_sync_summary(snapshots, created, updated, skipped):
    return {
        'total_products': len(snapshots),
        'total_variants': sum(len(s['variants']) for s in snapshots),
        'products_with_inventory_data': sum(1 for s in snapshots if has_inventory_data(s)),
        'created': created,
        'updated': updated,
        'skipped': skipped,
        'preview': [
            {
                'external_id': s['external_id'],
                'name': s['name'],
                'variants': len(s['variants']),
                'stock_entries': len(s['stock']),
            }
            for s in snapshots[:PREVIEW_SIZE]
        ],
    }


def fallback_variant_snapshot(snapshot):
    """Every product needs one sellable unit; synthesize it from product-level fields."""
    return {
        'external_id': snapshot['external_id'],
        'sku': snapshot.get('sku') or snapshot['external_id'],
        'barcode': None,
        'price': snapshot.get('price'),
        'currency': snapshot.get('currency'),
        'weight_kg': None,
        'depth_cm': None,
        'height_cm': None,
        'width_cm': None,
        'stock': snapshot['stock'],
    }


def match_existing_variant(variant, existing_product):
    """SKU match wins over the Bling id stored in variant metadata."""
    if not existing_product:
        return None
    candidates = existing_product.get('variants') or []

    if variant.get('sku'):
        for candidate in candidates:
            if candidate.get('sku') and candidate['sku'] == variant['sku']:
                return candidate

    if variant.get('external_id'):
        for candidate in candidates:
            metadata = candidate.get('metadata') or {}
            if metadata.get('bling_external_id') == variant['external_id']:
                return candidate
    return None


def build_inventory_levels(stock, locations):
    levels = {}
    for entry in stock:
        if entry.get('quantity') is None:
            continue
        location_id = resolve_location_for_deposit(locations, entry.get('warehouse_id'))
        if location_id is None:
            continue
        levels[location_id] = levels.get(location_id, 0) + entry['quantity']
    return [{'location_id': loc, 'quantity': qty} for loc, qty in levels.items()]


def build_variant_upsert(snapshot, variant, existing_product, preferences):
    existing_variant = match_existing_variant(variant, existing_product)
    sku = variant.get('sku') or (existing_variant or {}).get('sku')
    if not sku and not variant.get('external_id'):
        return None

    if variant.get('sku'):
        title = variant['sku']
    elif existing_variant and existing_variant.get('title'):
        title = existing_variant['title']
    else:
        title = f"{snapshot['name']} - Bling"

    upsert = {
        'title': title,
        'sku': sku,
        'barcode': variant.get('barcode') or (existing_variant or {}).get('barcode'),
    }

    metadata = dict((existing_variant or {}).get('metadata') or {})
    if variant.get('external_id'):
        metadata['bling_external_id'] = variant['external_id']
    if metadata:
        upsert['metadata'] = metadata

    if variant.get('price') is not None:
        currency = (variant.get('currency') or 'BRL').lower()
        upsert['prices'] = [{'amount': variant['price'], 'currency_code': currency}]

    for source, target in (('weight_kg', 'weight'), ('depth_cm', 'length'),
                           ('height_cm', 'height'), ('width_cm', 'width')):
        if variant.get(source) is not None:
            upsert[target] = variant[source]

    if preferences['inventory']['enabled']:
        levels = build_inventory_levels(variant.get('stock') or [], preferences['inventory']['locations'])
        if levels:
            upsert['inventory_levels'] = levels

    if existing_variant and existing_variant.get('id'):
        upsert['id'] = existing_variant['id']
    return upsert


def build_product_upsert(snapshot, existing_product, preferences):
    variants = snapshot['variants'] or [fallback_variant_snapshot(snapshot)]

    upsert_variants = []
    for variant in variants:
        upsert = build_variant_upsert(snapshot, variant, existing_product, preferences)
        if upsert:
            upsert_variants.append(upsert)

    if not upsert_variants:
        return None

    metadata = dict((existing_product or {}).get('metadata') or {})
    metadata.update({'bling_external_id': snapshot['external_id'], 'bling_source': 'bling'})

    upsert = {
        'title': snapshot['name'],
        'external_id': snapshot['external_id'],
        'status': (existing_product or {}).get('status') or 'published',
        'variants': upsert_variants,
        'metadata': metadata,
    }

    # Fields disabled in preferences are absent from the snapshot; leave the platform value alone
    if 'description' in snapshot:
        upsert['description'] = snapshot['description']

    if preferences['products']['import_images']:
        upsert['images'] = [{'url': url} for url in snapshot['images']]
        if snapshot['images']:
            upsert['thumbnail'] = snapshot['images'][0]

    if existing_product and existing_product.get('id'):
        upsert['id'] = existing_product['id']
    return upsert


class ProductReconciler:
    """Pulls the Bling catalog and upserts it into the platform, keyed by external id."""

    def __init__(self, token_manager, platform, repository=None, settings=None, sleep=time.sleep):
        self.token_manager = token_manager
        self.platform = platform
        self.repository = repository or ConfigRepository()
        self.settings = settings or default_settings
        self.sleep = sleep

    def fetch_snapshots(self, preferences):
        client = self.token_manager.create_authorized_client()
        raw_products = client.get_all_products(limit=self.settings.PAGE_SIZE)
        snapshots = [normalize_product_snapshot(p, preferences) for p in raw_products]
        logger.info(f"Fetched {len(snapshots)} products from Bling.")
        return snapshots

    def _upsert_with_retry(self, payloads):
        attempts = max(1, self.settings.MAX_RETRIES)
        for attempt in range(attempts):
            try:
                return self.platform.products.upsert_products(payloads)
            except Exception as e:
                if attempt == attempts - 1:
                    logger.error(f"Product upsert failed after {attempts} attempts: {e}")
                    raise
                logger.warning(f"Product upsert failed (attempt {attempt + 1}/{attempts}): {e}")
                self.sleep(self.settings.BASE_DELAY * (2 ** attempt))

    def sync_products_to_platform(self):
        preferences = self.repository.get_preferences()

        if not preferences['products']['enabled']:
            return {'summary': build_sync_summary([], 0, 0, 0), 'warnings': [DISABLED_WARNING]}

        if self.platform is None or self.platform.products is None:
            raise ConfigurationError("Serviço de produtos da plataforma não encontrado.")

        snapshots = self.fetch_snapshots(preferences)
        if not snapshots:
            return {'summary': build_sync_summary([], 0, 0, 0), 'warnings': []}

        external_ids = [s['external_id'] for s in snapshots if s['external_id']]
        existing_products = []
        if external_ids:
            existing_products = self.platform.products.list_products(
                {'external_id': external_ids}, relations=['variants'])
        existing_by_external_id = {p['external_id']: p for p in existing_products if p.get('external_id')}

        warnings = []
        upserts = []
        for snapshot in snapshots:
            if not snapshot['external_id']:
                warnings.append(
                    f'Produto "{snapshot["name"]}" ignorado: identificador externo (external_id) ausente no Bling.')
                continue

            existing = existing_by_external_id.get(snapshot['external_id'])
            payload = build_product_upsert(snapshot, existing, preferences)
            if payload is None:
                warnings.append(
                    f'Produto "{snapshot["name"]}" ignorado: nenhuma variante válida para sincronizar.')
                continue
            upserts.append((payload, 'update' if existing else 'create'))

        if not upserts:
            for warning in warnings:
                logger.warning(warning)
            return {'summary': build_sync_summary(snapshots, 0, 0, len(snapshots)), 'warnings': warnings}

        self._upsert_with_retry([payload for payload, _ in upserts])

        created = sum(1 for _, mode in upserts if mode == 'create')
        updated = len(upserts) - created
        summary = build_sync_summary(snapshots, created, updated, len(snapshots) - len(upserts))

        logger.info(f"Product sync complete: {created} created, {updated} updated, "
                    f"{summary['total_products']} processed.")
        for warning in warnings:
            logger.warning(warning)

        return {'summary': summary, 'warnings': warnings}
