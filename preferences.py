"""
Sync preference resolution.

Stored preferences are partial: anything the admin never touched resolves to
DEFAULT_SYNC_PREFERENCES. Every function here is pure; callers persist results.
"""
import copy

DEFAULT_SYNC_PREFERENCES = {
    'products': {
        'enabled': True,
        'import_images': False,
        'import_descriptions': True,
        'import_prices': True,
    },
    'inventory': {
        'enabled': True,
        'bidirectional': False,
        'locations': [],
    },
    'orders': {
        'enabled': True,
        'send_to_bling': True,
        'receive_from_bling': True,
        'generate_nf': True,
    },
}

SECTION_FIELDS = {
    'products': ('enabled', 'import_images', 'import_descriptions', 'import_prices'),
    'inventory': ('enabled', 'bidirectional'),
    'orders': ('enabled', 'send_to_bling', 'receive_from_bling', 'generate_nf'),
}


def _section(prefs, name):
    if not isinstance(prefs, dict):
        return {}
    value = prefs.get(name)
    return value if isinstance(value, dict) else {}


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def default_preferences():
    return copy.deepcopy(DEFAULT_SYNC_PREFERENCES)


def merge_preferences(incoming=None, current=None):
    """
    Layers `incoming` over `current` over the defaults, field by field.
    `inventory.locations` is replaced wholesale when `incoming` carries a list,
    otherwise the current entries are copied.
    """
    merged = {}
    for section, fields in SECTION_FIELDS.items():
        inc = _section(incoming, section)
        cur = _section(current, section)
        defaults = DEFAULT_SYNC_PREFERENCES[section]
        merged[section] = {
            field: _first_set(inc.get(field), cur.get(field), defaults[field])
            for field in fields
        }

    incoming_locations = _section(incoming, 'inventory').get('locations')
    if isinstance(incoming_locations, list):
        source = incoming_locations
    else:
        source = _section(current, 'inventory').get('locations')
        if not isinstance(source, list):
            source = []

    merged['inventory']['locations'] = normalize_location_defaults(
        [dict(location) for location in source if isinstance(location, dict)]
    )
    return merged


# --- INVENTORY LOCATION MAPPINGS ---

def normalize_location_defaults(locations):
    """At most one default survives: the first flagged entry."""
    seen_default = False
    normalized = []
    for location in locations:
        entry = dict(location)
        is_default = bool(entry.get('is_default')) and not seen_default
        seen_default = seen_default or is_default
        entry['is_default'] = is_default
        normalized.append(entry)
    return normalized


def add_location_mapping(locations, stock_location_id, bling_deposit_id):
    has_default = any(loc.get('is_default') for loc in locations)
    updated = [dict(loc) for loc in locations]
    updated.append({
        'stock_location_id': stock_location_id,
        'bling_deposit_id': str(bling_deposit_id),
        'is_default': not has_default,
    })
    return updated


def remove_location_mapping(locations, index):
    if index < 0 or index >= len(locations):
        raise IndexError(f"No location mapping at position {index}")

    was_default = bool(locations[index].get('is_default'))
    remaining = [dict(loc) for i, loc in enumerate(locations) if i != index]
    if was_default and remaining:
        for position, loc in enumerate(remaining):
            loc['is_default'] = position == 0
    return remaining


def set_default_location(locations, index):
    if index < 0 or index >= len(locations):
        raise IndexError(f"No location mapping at position {index}")
    return [dict(loc, is_default=(i == index)) for i, loc in enumerate(locations)]


def resolve_location_for_deposit(locations, warehouse_id):
    """Platform stock location for a Bling deposit; falls back to the default mapping."""
    if warehouse_id is not None:
        for loc in locations:
            if str(loc.get('bling_deposit_id')) == str(warehouse_id):
                return loc.get('stock_location_id')
    for loc in locations:
        if loc.get('is_default'):
            return loc.get('stock_location_id')
    return None
