from __future__ import annotations

from fastapi import APIRouter, Depends

from storage_portal.auth import Principal, get_current_principal
from storage_portal.schemas import SkuBody
from storage_portal.services.catalog_client import ItemCatalog, describe_sku
from storage_portal.services.catalog_factory import get_item_catalog

router = APIRouter(prefix='/catalog', tags=['catalog'])


@router.post('/validate-sku')
def validate_sku(
    body: SkuBody,
    _: Principal = Depends(get_current_principal),
    catalog: ItemCatalog = Depends(get_item_catalog),
):
    return describe_sku(catalog, body.sku)
