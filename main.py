from __future__ import annotations

import asyncio
import contextlib
import signal

from aiohttp import web
from dotenv import load_dotenv

from cosigner.common import guarded_call, log_event
from cosigner.operations import (
    ChainedKeyCustody,
    EnvKeyCustody,
    FeeClaimOperation,
    HttpKeyCustody,
    HttpPositionSdk,
    JupiterPriceClient,
    LiquidityDepositOperation,
    LiquidityWithdrawOperation,
    OperationSequencer,
    SolanaLedgerClient,
    StaticResourceDirectory,
    TransactionIntegrityVerifier,
)
from cosigner.runtime import AppSettings, bootstrap_dependencies, run_sweep_loop, setup_logger
from cosigner.server import create_app
from cosigner.storage import StorageGateway, StorageSettings


async def main() -> None:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()

    storage = StorageGateway(storage_settings, logger)
    directory = StaticResourceDirectory(
        logger=logger,
        path=app_settings.resource_directory_path,
        inline_json=app_settings.resource_directory_json,
    )
    ledger = SolanaLedgerClient(
        logger=logger,
        rpc_url=app_settings.rpc_url,
        poll_interval_seconds=app_settings.confirm_poll_interval_seconds,
    )
    sdk = HttpPositionSdk(
        logger=logger,
        base_url=app_settings.amm_sdk_url,
        pool_type=app_settings.amm_pool_type,
        timeout_seconds=app_settings.amm_sdk_timeout_seconds,
    )
    prices = JupiterPriceClient(
        logger=logger,
        api_url=app_settings.jupiter_price_api,
        api_key=app_settings.jupiter_api_key,
    )
    key_service = HttpKeyCustody(
        logger=logger,
        service_url=app_settings.key_service_url,
        siv_key=app_settings.siv_key,
    )
    custody = ChainedKeyCustody([EnvKeyCustody(), key_service])
    clients = [ledger, sdk, prices, key_service]

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        storage=storage,
        directory=directory,
        clients=clients,
    )

    # the storage backend is only selected by connect()
    verifier = TransactionIntegrityVerifier(ledger=ledger, logger=logger)
    definitions = [
        FeeClaimOperation(sdk=sdk, logger=logger),
        LiquidityWithdrawOperation(sdk=sdk, prices=prices, logger=logger),
        LiquidityDepositOperation(
            sdk=sdk,
            ledger=ledger,
            logger=logger,
            restricted_custody_addresses=app_settings.restricted_custody_addresses,
        ),
    ]
    sequencers = {
        definition.operation_type: OperationSequencer(
            definition=definition,
            store=storage.pending_store,
            locks=storage.lock_manager,
            directory=directory,
            custody=custody,
            ledger=ledger,
            verifier=verifier,
            logger=logger,
            audit=storage,
            confirm_window_seconds=app_settings.confirm_window_seconds,
            confirm_timeout_seconds=app_settings.confirm_timeout_seconds,
        )
        for definition in definitions
    }

    async def healthcheck() -> None:
        await storage.healthcheck()
        await ledger.healthcheck()

    app = create_app(logger=logger, sequencers=sequencers, healthcheck=healthcheck)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, app_settings.http_host, app_settings.http_port)
    await site.start()

    log_event(
        logger,
        level="info",
        event="service_started",
        message="Co-signer service started",
        host=app_settings.http_host,
        port=app_settings.http_port,
        operations=sorted(sequencers),
        storage_backend=storage_settings.backend,
    )
    await guarded_call(
        lambda: storage.publish_event(
            level="INFO",
            event="service_started",
            message="Co-signer service started",
            details={"operations": sorted(sequencers), "port": app_settings.http_port},
        ),
        logger=logger,
        event="startup_publish_failed",
        message="Failed to publish startup event",
    )

    try:
        await run_sweep_loop(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
        )
    finally:
        with contextlib.suppress(Exception):
            await storage.publish_event(
                level="INFO",
                event="service_stopped",
                message="Co-signer service stopped gracefully",
            )

        with contextlib.suppress(Exception):
            await runner.cleanup()
        for client in clients:
            with contextlib.suppress(Exception):
                await client.close()
        with contextlib.suppress(Exception):
            await storage.close()

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
