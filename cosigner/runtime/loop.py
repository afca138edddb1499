from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from cosigner.common import guarded_call, log_event, wait_with_stop
from cosigner.operations import StaticResourceDirectory
from cosigner.storage import StorageGateway

from .settings import AppSettings


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    directory: StaticResourceDirectory,
    clients: Sequence[Any],
) -> None:
    while not stop_event.is_set():
        try:
            await storage.connect()
            await directory.load()
            for client in clients:
                await client.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            for client in clients:
                await guarded_call(
                    client.close,
                    logger=logger,
                    event="bootstrap_client_close_failed",
                    message="Failed to close client during bootstrap retry",
                    client=type(client).__name__,
                )
            await guarded_call(
                storage.close,
                logger=logger,
                event="bootstrap_storage_close_failed",
                message="Failed to close storage during bootstrap retry",
            )

            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def sweep_pending_operations(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    max_age_seconds: float,
) -> int:
    removed = await storage.pending_store.sweep(max_age_seconds)
    if removed:
        log_event(
            logger,
            level="info",
            event="pending_operations_swept",
            message="Removed abandoned pending operations",
            removed=removed,
            max_age_seconds=max_age_seconds,
        )
        await storage.publish_event(
            level="INFO",
            event="pending_operations_swept",
            message="Removed abandoned pending operations",
            details={"removed": removed},
        )
    return removed


async def run_sweep_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
) -> None:
    while not stop_event.is_set():
        await guarded_call(
            lambda: sweep_pending_operations(
                logger=logger,
                storage=storage,
                max_age_seconds=app_settings.pending_max_age_seconds,
            ),
            logger=logger,
            event="pending_sweep_failed",
            message="Pending operation sweep failed",
            level="error",
        )
        if await wait_with_stop(stop_event, app_settings.sweep_interval_seconds):
            return
