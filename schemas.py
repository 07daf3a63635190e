"""
Pydantic schemas for request validation.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LocationMapping(BaseModel):
    """Platform stock location <-> Bling deposit."""
    stock_location_id: str = Field(..., min_length=1)
    bling_deposit_id: str = Field(..., min_length=1)
    is_default: bool = False

    @field_validator('bling_deposit_id', 'stock_location_id', mode='before')
    @classmethod
    def _ids_as_strings(cls, value):
        # Bling deposit ids come back from /depositos as integers
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ProductPreferences(BaseModel):
    enabled: Optional[bool] = None
    import_images: Optional[bool] = None
    import_descriptions: Optional[bool] = None
    import_prices: Optional[bool] = None


class InventoryPreferences(BaseModel):
    enabled: Optional[bool] = None
    bidirectional: Optional[bool] = None
    locations: Optional[List[LocationMapping]] = None


class OrderPreferences(BaseModel):
    enabled: Optional[bool] = None
    send_to_bling: Optional[bool] = None
    receive_from_bling: Optional[bool] = None
    generate_nf: Optional[bool] = None


class SyncPreferencesUpdate(BaseModel):
    products: Optional[ProductPreferences] = None
    inventory: Optional[InventoryPreferences] = None
    orders: Optional[OrderPreferences] = None


class ConfigUpdateRequest(BaseModel):
    """Body of POST /config. Omitted fields are left untouched."""
    model_config = ConfigDict(extra='forbid')

    client_id: Optional[str] = Field(None, max_length=255)
    client_secret: Optional[str] = Field(None, max_length=255)
    webhook_secret: Optional[str] = Field(None, max_length=255)
    sync_preferences: Optional[SyncPreferencesUpdate] = None

    def to_update(self):
        return self.model_dump(exclude_unset=True)


def describe_validation_error(error):
    return [
        {'path': list(issue['loc']), 'message': issue['msg']}
        for issue in error.errors()
    ]
