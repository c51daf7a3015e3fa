from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from storage_portal.config import settings
from storage_portal.errors import PreconditionFailed

logger = logging.getLogger(__name__)

STOCK_ENDPOINT = 'PPItemAPI_GetItemStock'


@dataclass(frozen=True)
class CatalogVariant:
    variant_code: str
    stock: int


@dataclass(frozen=True)
class CatalogItem:
    sku: str
    total_stock: int
    variants: tuple[CatalogVariant, ...] = field(default_factory=tuple)


class ItemCatalog(Protocol):
    def lookup_skus(self, skus: list[str]) -> dict[str, CatalogItem]: ...


def _stock_value(value) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def parse_catalog_response(payload: dict) -> dict[str, CatalogItem]:
    """Read the stock endpoint's reply.

    ``value`` holds a JSON *string* with a list of
    ``{"itemNo": ..., "variants": [{"variantCode": ..., "stock": ...}]}``.
    Anything unreadable is treated as "no items found".
    """
    raw = payload.get('value') if isinstance(payload, dict) else None
    if not isinstance(raw, str):
        return {}
    try:
        rows = json.loads(raw)
    except ValueError:
        logger.warning('Catalog returned an unreadable value payload')
        return {}
    if not isinstance(rows, list):
        return {}

    items: dict[str, CatalogItem] = {}
    for row in rows:
        if not isinstance(row, dict) or not isinstance(row.get('itemNo'), str):
            continue
        variants = tuple(
            CatalogVariant(variant_code=str(variant.get('variantCode') or ''), stock=_stock_value(variant.get('stock')))
            for variant in (row.get('variants') or [])
            if isinstance(variant, dict)
        )
        sku = row['itemNo']
        items[sku] = CatalogItem(sku=sku, total_stock=sum(variant.stock for variant in variants), variants=variants)
    return items


class BusinessCentralCatalog:
    def __init__(self) -> None:
        if not settings.catalog_api_url:
            raise ValueError('CATALOG_API_URL is required when CATALOG_PROVIDER=business_central')
        if not settings.catalog_username or not settings.catalog_password:
            raise ValueError('CATALOG_USERNAME and CATALOG_PASSWORD are required for the catalog API')

        self.url = f'{settings.catalog_api_url.rstrip("/")}/{STOCK_ENDPOINT}?company={quote(settings.catalog_company)}'
        credentials = f'{settings.catalog_username}:{settings.catalog_password}'.encode('utf-8')
        self.headers = {
            'Authorization': 'Basic ' + base64.b64encode(credentials).decode('ascii'),
            'Content-Type': 'application/json',
        }

    def _post(self, payload: dict) -> dict:
        req = Request(url=self.url, data=json.dumps(payload).encode('utf-8'), headers=self.headers, method='POST')
        try:
            with urlopen(req, timeout=settings.catalog_timeout_seconds) as response:
                return json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise PreconditionFailed(f'Catalog API error {exc.code}: {body}') from exc
        except URLError as exc:
            raise PreconditionFailed(f'Catalog API network error: {exc.reason}') from exc

    def lookup_skus(self, skus: list[str]) -> dict[str, CatalogItem]:
        clean = [sku.strip() for sku in skus if sku and sku.strip()]
        if not clean:
            return {}
        found = parse_catalog_response(self._post({'skuListJson': json.dumps(clean)}))
        return {sku: item for sku, item in found.items() if sku in clean}


def describe_sku(catalog: ItemCatalog, sku: str) -> dict:
    clean = (sku or '').strip()
    if not clean:
        raise PreconditionFailed('SKU is required')
    item = catalog.lookup_skus([clean]).get(clean)
    if item is None:
        return {'exists': False, 'stock': None, 'variants': []}
    return {
        'exists': True,
        'stock': item.total_stock,
        'variants': [{'variant_code': variant.variant_code, 'stock': variant.stock} for variant in item.variants],
    }
