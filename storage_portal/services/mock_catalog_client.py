from __future__ import annotations

from storage_portal.services.catalog_client import CatalogItem, CatalogVariant


class MockCatalog:
    """Deterministic catalog; any SKU starting with ``UNKNOWN`` is missing."""

    sizes = ('S', 'M', 'L')

    def lookup_skus(self, skus: list[str]) -> dict[str, CatalogItem]:
        items: dict[str, CatalogItem] = {}
        for sku in skus:
            clean = (sku or '').strip()
            if not clean or clean.upper().startswith('UNKNOWN'):
                continue
            checksum = sum(ord(char) for char in clean)
            variants = tuple(
                CatalogVariant(variant_code=f'{clean}-{size}', stock=(checksum + offset) % 7)
                for offset, size in enumerate(self.sizes)
            )
            items[clean] = CatalogItem(sku=clean, total_stock=sum(v.stock for v in variants), variants=variants)
        return items
