from __future__ import annotations

import base64
import json
import logging
import os
from typing import Mapping, Protocol, Sequence

import aiohttp
from solders.keypair import Keypair

from cosigner.common import log_event
from cosigner.errors import KeyCustodyError

MIN_KEY_INDEX = 9


class KeyCustody(Protocol):
    async def get_signer(self, index: int) -> Keypair:
        ...


class KeyNotConfiguredError(KeyCustodyError):
    pass


def parse_keypair(raw: str, *, source: str) -> Keypair:
    value = raw.strip()

    if value.startswith("["):
        try:
            arr = json.loads(value)
        except json.JSONDecodeError as error:
            raise KeyCustodyError(f"{source} JSON key is malformed.") from error
        if not isinstance(arr, list):
            raise KeyCustodyError(f"{source} JSON key must be an integer array.")
        try:
            return Keypair.from_bytes(bytes(arr))
        except ValueError as error:
            raise KeyCustodyError(f"{source} JSON key is not a valid keypair.") from error

    try:
        return Keypair.from_base58_string(value)
    except ValueError as error:
        raise KeyCustodyError(f"Unsupported key format from {source}.") from error


class EnvKeyCustody:
    """Keys supplied directly as CUSTODY_KEY_<index> variables."""

    def __init__(self, *, prefix: str = "CUSTODY_KEY_", environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._environ = environ if environ is not None else os.environ

    async def get_signer(self, index: int) -> Keypair:
        name = f"{self._prefix}{index}"
        raw = self._environ.get(name, "")
        if not raw.strip():
            raise KeyNotConfiguredError(f"{name} is not set.")
        return parse_keypair(raw, source=name)


class HttpKeyCustody:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        service_url: str,
        siv_key: str,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._service_url = service_url
        self._siv_key = siv_key
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

    async def get_signer(self, index: int) -> Keypair:
        if index < MIN_KEY_INDEX:
            raise KeyCustodyError(f"Key index {index} is reserved. Minimum allowed index is {MIN_KEY_INDEX}.")
        if not self._service_url or not self._siv_key:
            raise KeyNotConfiguredError("KEY_SERVICE_URL and SIV_KEY are required for key service lookups.")
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Key service HTTP session is not initialized.")

        token = base64.b64encode(self._siv_key.encode("utf-8")).decode("ascii")
        try:
            async with self._session.get(
                self._service_url,
                params={"idx": str(index)},
                headers={"Authorization": f"Basic {token}"},
            ) as response:
                if response.status >= 400:
                    raise KeyCustodyError(f"Key service error: status={response.status}")
                body = await response.json(content_type=None)
        except aiohttp.ClientError as error:
            raise KeyCustodyError(f"Key service request failed: {error}") from error

        if not isinstance(body, dict) or not isinstance(body.get("keypair"), str):
            raise KeyCustodyError("Key service returned an unexpected payload.")

        signer = parse_keypair(body["keypair"], source="key service")
        account = body.get("account")
        if account and str(account) != str(signer.pubkey()):
            raise KeyCustodyError("Key service account does not match the returned keypair.")

        log_event(
            self._logger,
            level="info",
            event="custody_key_fetched",
            message="Fetched custody key from key service",
            key_index=index,
            account=str(signer.pubkey()),
        )
        return signer


class ChainedKeyCustody:
    """Tries each custody in order, moving on only when a key is not configured there."""

    def __init__(self, custodies: Sequence[KeyCustody]) -> None:
        self._custodies = list(custodies)

    async def get_signer(self, index: int) -> Keypair:
        for custody in self._custodies:
            try:
                return await custody.get_signer(index)
            except KeyNotConfiguredError:
                continue
        raise KeyCustodyError(f"No custody source holds key index {index}.")
