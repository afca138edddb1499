from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_csv_set(value: Any) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in str(value).split(",") if part.strip())


@dataclass(slots=True)
class AppSettings:
    rpc_url: str
    http_host: str
    http_port: int
    confirm_window_seconds: float
    pending_max_age_seconds: float
    sweep_interval_seconds: float
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    error_backoff_seconds: float
    jupiter_price_api: str
    jupiter_api_key: str
    amm_sdk_url: str
    amm_sdk_timeout_seconds: float
    amm_pool_type: str
    key_service_url: str
    siv_key: str
    resource_directory_path: str
    resource_directory_json: str
    restricted_custody_addresses: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_env(cls) -> "AppSettings":
        confirm_window_seconds = max(30.0, to_float(os.getenv("CONFIRM_WINDOW_SECONDS"), 600.0))
        return cls(
            rpc_url=os.getenv("RPC_URL", ""),
            http_host=os.getenv("HTTP_HOST", "0.0.0.0"),
            http_port=max(1, to_int(os.getenv("HTTP_PORT"), 8080)),
            confirm_window_seconds=confirm_window_seconds,
            # the sweep is a backstop and must never beat the confirm window
            pending_max_age_seconds=max(
                confirm_window_seconds,
                to_float(os.getenv("PENDING_MAX_AGE_SECONDS"), 900.0),
            ),
            sweep_interval_seconds=max(1.0, to_float(os.getenv("SWEEP_INTERVAL_SECONDS"), 300.0)),
            confirm_timeout_seconds=max(1.0, to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 60.0)),
            confirm_poll_interval_seconds=max(
                0.1,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
            jupiter_price_api=os.getenv("JUPITER_PRICE_API", "https://api.jup.ag/price/v3"),
            jupiter_api_key=os.getenv("JUPITER_API_KEY", ""),
            amm_sdk_url=os.getenv("AMM_SDK_URL", "http://127.0.0.1:8787"),
            amm_sdk_timeout_seconds=max(1.0, to_float(os.getenv("AMM_SDK_TIMEOUT_SECONDS"), 20.0)),
            amm_pool_type=os.getenv("AMM_POOL_TYPE", "dlmm").strip().lower() or "dlmm",
            key_service_url=os.getenv("KEY_SERVICE_URL", ""),
            siv_key=os.getenv("SIV_KEY", ""),
            resource_directory_path=os.getenv("RESOURCE_DIRECTORY_PATH", ""),
            resource_directory_json=os.getenv("RESOURCE_DIRECTORY_JSON", ""),
            restricted_custody_addresses=to_csv_set(os.getenv("RESTRICTED_CUSTODY_ADDRESSES")),
        )
