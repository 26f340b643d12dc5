"""
カタログ・顧客サービスのクライアント

外部サービスへの問い合わせ。どちらも副作用のない読み取り。

  GET {catalog}/products/{sku}     → {"price": ...}   404 は未登録
  GET {customers}/customers/{id}   → 200 は存在, 404 は存在しない
"""

from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx

from .errors import LookupUnavailableError, UnknownProductError

# order_lines.unit_price の精度
CENT = Decimal("0.01")


class PriceLookup(Protocol):
    async def get_current_price(self, sku: str) -> Decimal: ...


class CustomerLookup(Protocol):
    async def customer_exists(self, customer_id: str) -> bool: ...


class CatalogClient:
    """httpx で Catalog / Customer サービスに問い合わせる。"""

    def __init__(
        self,
        catalog_service_url: str,
        customer_service_url: str,
        client: httpx.AsyncClient,
    ):
        self.catalog_url = catalog_service_url.rstrip("/")
        self.customer_url = customer_service_url.rstrip("/")
        self.client = client

    async def get_current_price(self, sku: str) -> Decimal:
        try:
            resp = await self.client.get(f"{self.catalog_url}/products/{sku}")
            if resp.status_code == 404:
                raise UnknownProductError(sku)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise LookupUnavailableError(f"Catalog lookup for {sku} failed: {e}") from e

        try:
            price = Decimal(str(resp.json()["price"]))
            cents = price.quantize(CENT) if price.is_finite() else None
        except (ValueError, KeyError, TypeError, InvalidOperation) as e:
            raise LookupUnavailableError(f"Catalog returned no usable price for {sku}") from e
        if cents is None or cents != price:
            raise LookupUnavailableError(f"Catalog returned an unusable price for {sku}: {price}")
        if cents < 0:
            raise LookupUnavailableError(f"Catalog returned a negative price for {sku}")
        return cents

    async def customer_exists(self, customer_id: str) -> bool:
        try:
            resp = await self.client.get(f"{self.customer_url}/customers/{customer_id}")
            if resp.status_code == 404:
                return False
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise LookupUnavailableError(f"Customer lookup for {customer_id} failed: {e}") from e
        return True
