from __future__ import annotations

from functools import lru_cache

from storage_portal.config import settings
from storage_portal.services.catalog_client import BusinessCentralCatalog
from storage_portal.services.mock_catalog_client import MockCatalog


@lru_cache(maxsize=1)
def get_item_catalog():
    provider = settings.catalog_provider.strip().lower()
    if provider == 'business_central':
        return BusinessCentralCatalog()
    return MockCatalog()
