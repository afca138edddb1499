from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Mapping, Protocol

from solders.pubkey import Pubkey

from cosigner.common import log_event
from cosigner.errors import ConfigurationError

from .fees import FeeRecipient
from .types import ResourceConfig


def normalize_resource_key(value: str) -> str:
    return str(value or "").strip().lower()


class ResourceDirectory(Protocol):
    async def resolve(self, resource_key: str, operation_type: str) -> ResourceConfig:
        ...


def _parse_entry(address: str, raw: Any) -> ResourceConfig:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Resource entry for {address} must be an object.")

    resource_address = str(raw.get("address") or address).strip()
    custody_address = str(raw.get("custody_address") or "").strip()
    manager_address = str(raw.get("manager_address") or "").strip()
    try:
        Pubkey.from_string(resource_address)
        Pubkey.from_string(custody_address)
        Pubkey.from_string(manager_address)
    except ValueError as error:
        raise ConfigurationError(f"Resource entry for {address} has an invalid address: {error}") from error

    try:
        custody_index = int(raw.get("custody_index"))
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"Resource entry for {address} has no valid custody_index.") from error

    operations = raw.get("operations") or []
    if not isinstance(operations, list):
        raise ConfigurationError(f"Resource entry for {address} operations must be a list.")

    recipients_raw = raw.get("fee_recipients") or []
    if not isinstance(recipients_raw, list):
        raise ConfigurationError(f"Resource entry for {address} fee_recipients must be a list.")

    return ResourceConfig(
        resource_key=normalize_resource_key(resource_address),
        resource_address=resource_address,
        custody_index=custody_index,
        custody_address=custody_address,
        manager_address=manager_address,
        operations=frozenset(str(item) for item in operations),
        fee_recipients=tuple(FeeRecipient.from_dict(item) for item in recipients_raw),
    )


def parse_directory(payload: Any) -> dict[str, ResourceConfig]:
    if isinstance(payload, Mapping) and isinstance(payload.get("resources"), Mapping):
        payload = payload["resources"]
    if not isinstance(payload, Mapping):
        raise ConfigurationError("Resource directory must be a JSON object keyed by resource address.")

    entries: dict[str, ResourceConfig] = {}
    for address, raw in payload.items():
        config = _parse_entry(str(address), raw)
        entries[config.resource_key] = config
    return entries


class StaticResourceDirectory:
    """Authorized resources from a JSON file (re-read when it changes) or an inline JSON string."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        path: str = "",
        inline_json: str = "",
    ) -> None:
        self._logger = logger
        self._path = path
        self._inline_json = inline_json
        self._entries: dict[str, ResourceConfig] = {}
        self._loaded_mtime: float | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], *, logger: logging.Logger) -> "StaticResourceDirectory":
        directory = cls(logger=logger)
        directory._entries = parse_directory(payload)
        return directory

    async def load(self) -> None:
        if self._path:
            await self._reload_file()
            return
        if self._inline_json:
            try:
                payload = json.loads(self._inline_json)
            except json.JSONDecodeError as error:
                raise ConfigurationError(f"RESOURCE_DIRECTORY_JSON is malformed: {error}") from error
            self._entries = parse_directory(payload)
        log_event(
            self._logger,
            level="info",
            event="resource_directory_loaded",
            message="Resource directory loaded",
            resources=len(self._entries),
        )

    async def _reload_file(self) -> None:
        try:
            mtime = await asyncio.to_thread(os.path.getmtime, self._path)
        except OSError as error:
            raise ConfigurationError(f"Resource directory file is unavailable: {error}") from error
        if self._loaded_mtime is not None and mtime == self._loaded_mtime:
            return

        def read() -> Any:
            with open(self._path, encoding="utf-8") as handle:
                return json.load(handle)

        try:
            payload = await asyncio.to_thread(read)
        except (OSError, json.JSONDecodeError) as error:
            raise ConfigurationError(f"Resource directory file is unreadable: {error}") from error
        self._entries = parse_directory(payload)
        self._loaded_mtime = mtime
        log_event(
            self._logger,
            level="info",
            event="resource_directory_loaded",
            message="Resource directory loaded from file",
            resources=len(self._entries),
            path=self._path,
        )

    async def resolve(self, resource_key: str, operation_type: str) -> ResourceConfig:
        if self._path:
            await self._reload_file()

        config = self._entries.get(normalize_resource_key(resource_key))
        if config is None:
            raise ConfigurationError(
                "Resource is not authorized for co-signed operations.",
                resource_key=normalize_resource_key(resource_key),
            )
        if operation_type not in config.operations:
            raise ConfigurationError(
                f"Resource is not authorized for {operation_type}.",
                resource_key=config.resource_key,
                operation=operation_type,
            )
        return config
