from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import aiohttp

from cosigner.common import log_event
from cosigner.errors import PriceUnavailableError


class PriceSource(Protocol):
    async def price_b_per_a(self, mint_a: str, mint_b: str) -> Decimal:
        ...


def _usd_price(body: dict[str, Any], mint: str) -> Decimal:
    entry = body.get(mint)
    if not isinstance(entry, dict):
        raise PriceUnavailableError(f"No price data for {mint}.")
    try:
        value = Decimal(str(entry.get("usdPrice")))
    except (InvalidOperation, ValueError) as error:
        raise PriceUnavailableError(f"Invalid price for {mint}.") from error
    if not value.is_finite() or value <= 0:
        raise PriceUnavailableError(f"Non-positive price for {mint}.")
    return value


class JupiterPriceClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_url: str = "https://api.jup.ag/price/v3",
        api_key: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._api_url = api_url
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def price_b_per_a(self, mint_a: str, mint_b: str) -> Decimal:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Price HTTP session is not initialized.")

        try:
            async with self._session.get(
                self._api_url,
                params={"ids": f"{mint_a},{mint_b}"},
                headers=self._headers(),
            ) as response:
                body = await response.json(content_type=None)
                if response.status >= 400:
                    raise PriceUnavailableError(f"Price API failed: status={response.status}")
        except (aiohttp.ClientError, ValueError) as error:
            raise PriceUnavailableError(f"Price API request failed: {error}") from error

        if not isinstance(body, dict):
            raise PriceUnavailableError("Price API returned an unexpected payload.")

        price = _usd_price(body, mint_a) / _usd_price(body, mint_b)
        log_event(
            self._logger,
            level="info",
            event="market_price_fetched",
            message="Fetched market price",
            mint_a=mint_a,
            mint_b=mint_b,
            price=str(price),
        )
        return price
