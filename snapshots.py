"""
Normalizes Bling product payloads into product snapshots.

Bling answers with heterogeneous shapes (stock as scalar, object or list;
variants under `variacoes` or `variantes`; products optionally wrapped under
`produto`). Every extractor here degrades to an empty result instead of raising
on a shape it does not recognize.

Snapshot fields gated by preferences are left out of the dict entirely when the
preference is off, so consumers can tell "not imported" from "imported empty".
"""
import math

PRODUCT_ID_KEYS = ('id', 'codigo', 'sku', 'idProduto')
STOCK_KEYS = ('estoques', 'depositos', 'estoque', 'saldo')
WAREHOUSE_KEYS = ('idDeposito', 'id_deposito', 'deposito_id')
QUANTITY_KEYS = ('saldo', 'quantidade', 'estoque', 'disponivel', 'saldoAtual',
                 'saldoVirtual', 'saldoVirtualTotal', 'saldoFisicoTotal')
IMAGE_URL_KEYS = ('link', 'url', 'path')

DEFAULT_CURRENCY = 'BRL'
UNNAMED_PRODUCT = 'Produto sem nome'


def _as_dict(value):
    return value if isinstance(value, dict) else {}


def _as_list(value):
    if isinstance(value, list):
        return value
    if value is None:
        return []
    return [value]


def _first_present(data, keys):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def to_optional_string(value):
    """Strings and numbers as a non-empty string, anything else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)
    return None


def first_string(*values):
    for value in values:
        text = to_optional_string(value)
        if text is not None:
            return text
    return None


def parse_number(value):
    """
    Numbers pass through; strings are read in Brazilian locale
    ("1.234,56" -> 1234.56). Anything unparseable is None.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        normalized = value.strip().replace('.', '').replace(',', '.', 1)
        if not normalized:
            return None
        try:
            parsed = float(normalized)
        except ValueError:
            return None
        return None if math.isnan(parsed) else parsed
    return None


def resolve_external_id(product_data):
    return first_string(*(product_data.get(key) for key in PRODUCT_ID_KEYS)) or ''


# --- STOCK ---

def normalize_stock_entry(value):
    if value is None or isinstance(value, (bool, list)):
        return None

    if isinstance(value, (int, float, str)):
        quantity = parse_number(value)
        if quantity is None:
            return None
        return {'warehouse_id': None, 'quantity': quantity}

    if not isinstance(value, dict):
        return None

    warehouse_id = first_string(
        *(value.get(key) for key in WAREHOUSE_KEYS),
        _as_dict(value.get('deposito')).get('id'),
    )

    quantity = None
    for key in QUANTITY_KEYS:
        quantity = parse_number(value.get(key))
        if quantity is not None:
            break

    if warehouse_id is None and quantity is None:
        return None
    return {'warehouse_id': warehouse_id, 'quantity': quantity}


def extract_stock_snapshots(data):
    raw = _first_present(data, STOCK_KEYS)
    if not isinstance(raw, list):
        single = normalize_stock_entry(raw)
        return [single] if single else []

    entries = []
    for item in raw:
        entry = normalize_stock_entry(item)
        if entry:
            entries.append(entry)
    return entries


# --- IMAGES ---

def _image_url(image):
    if isinstance(image, str):
        return image or None
    return first_string(*(_as_dict(image).get(key) for key in IMAGE_URL_KEYS))


def extract_image_urls(product_data):
    raw = _first_present(product_data, ('imagens', 'imagem'))

    if raw is None:
        # API v3 detail payloads keep images under midia.imagens
        media = _as_dict(_as_dict(product_data.get('midia')).get('imagens'))
        raw = _as_list(media.get('externas')) + _as_list(media.get('internas'))

    if isinstance(raw, list):
        return [url for url in (_image_url(image) for image in raw) if url]
    if isinstance(raw, (str, dict)):
        url = _image_url(raw)
        return [url] if url else []
    return []


# --- VARIANTS ---

def extract_variant_snapshots(product_data, preferences, include_inventory):
    raw_variants = _as_list(_first_present(product_data, ('variacoes', 'variantes')))
    import_prices = preferences['products']['import_prices']

    variants = []
    for raw in raw_variants:
        root = _as_dict(raw)
        data = root['variacao'] if isinstance(root.get('variacao'), dict) else root

        variants.append({
            'external_id': first_string(data.get('id')),
            'sku': first_string(data.get('sku'), data.get('codigo')),
            'barcode': first_string(data.get('gtin'), data.get('ean')),
            'price': parse_number(_first_present(data, ('preco', 'precoVenda'))) if import_prices else None,
            'currency': (first_string(data.get('moeda')) or DEFAULT_CURRENCY) if import_prices else None,
            'weight_kg': parse_number(_first_present(data, ('pesoLiquido', 'pesoBruto'))),
            'depth_cm': parse_number(data.get('comprimento')),
            'height_cm': parse_number(data.get('altura')),
            'width_cm': parse_number(data.get('largura')),
            'stock': extract_stock_snapshots(data) if include_inventory else [],
        })
    return variants


def normalize_product_snapshot(raw_product, preferences):
    wrapper = _as_dict(raw_product)
    product_data = wrapper['produto'] if isinstance(wrapper.get('produto'), dict) else wrapper

    include_description = preferences['products']['import_descriptions']
    include_price = preferences['products']['import_prices']
    include_images = preferences['products']['import_images']
    include_inventory = preferences['inventory']['enabled']

    snapshot = {
        'external_id': resolve_external_id(product_data),
        'name': first_string(product_data.get('nome'), product_data.get('descricao')) or UNNAMED_PRODUCT,
        'images': extract_image_urls(product_data) if include_images else [],
        'stock': extract_stock_snapshots(product_data) if include_inventory else [],
        'variants': extract_variant_snapshots(product_data, preferences, include_inventory),
        'raw': product_data,
    }

    if include_description:
        description = first_string(product_data.get('descricaoCurta'), product_data.get('descricao'))
        if description:
            snapshot['description'] = description

    if include_price:
        snapshot['price'] = parse_number(product_data.get('preco'))
        snapshot['currency'] = first_string(product_data.get('moeda')) or DEFAULT_CURRENCY

    sku = first_string(product_data.get('codigo'), product_data.get('sku'), product_data.get('referencia'))
    if sku:
        snapshot['sku'] = sku

    return snapshot


def has_inventory_data(snapshot):
    if snapshot['stock']:
        return True
    return any(variant['stock'] for variant in snapshot['variants'])
