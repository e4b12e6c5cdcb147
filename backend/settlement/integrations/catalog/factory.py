from __future__ import annotations

import os

from settlement.integrations.catalog.base import CatalogProvider
from settlement.integrations.catalog.local_provider import LocalCatalogProvider
from settlement.integrations.common import IntegrationMisconfiguredError, provider_name


def build_catalog_provider() -> CatalogProvider:
    provider = provider_name(os.getenv("CATALOG_PROVIDER"), "local")
    if provider == "local":
        return LocalCatalogProvider()
    raise IntegrationMisconfiguredError("catalog_provider", provider)
