from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from dotenv import load_dotenv

from milkman_keeper.bot_runtime import (
    AppSettings,
    ExecutionCircuitBreaker,
    run_discovery_loop,
    run_execution_loop,
    run_finalization_loop,
    run_workers,
    setup_logger,
)
from milkman_keeper.chain import EthereumClient
from milkman_keeper.common import guarded_call, log_event, wait_with_stop
from milkman_keeper.cow import CowApiClient
from milkman_keeper.trading import (
    ConfigurationError,
    KeeperFatalError,
    SwapFinalizer,
    SwapPairingExecutor,
    SwapPricingEngine,
    SwapRegistry,
    SwapWatcher,
)

BOOTSTRAP_RETRY_SECONDS = 5.0


class BootstrapAborted(RuntimeError):
    """Shutdown was requested before dependencies were initialized."""


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    chain: EthereumClient,
    api: CowApiClient,
    watcher: SwapWatcher,
) -> None:
    while not stop_event.is_set():
        try:
            await chain.connect()
            await api.connect()
            await api.healthcheck()
            await watcher.initialize()
            return
        except KeeperFatalError:
            raise
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
                retry_in_seconds=BOOTSTRAP_RETRY_SECONDS,
            )
            await guarded_call(
                api.close,
                logger=logger,
                event="bootstrap_cleanup_failed",
                message="Failed to close CoW API session after bootstrap error",
            )
            await wait_with_stop(stop_event, BOOTSTRAP_RETRY_SECONDS)

    raise BootstrapAborted("Shutdown requested before dependencies were initialized.")


async def main() -> int:
    load_dotenv()
    logger = setup_logger()

    try:
        app_settings = AppSettings.from_env()
    except ConfigurationError as error:
        log_event(
            logger,
            level="critical",
            event="configuration_error",
            message="Invalid keeper configuration",
            error=str(error),
        )
        return 2

    logger.setLevel(app_settings.log_level)

    registry = SwapRegistry()
    requested_queue = registry.queue("requested")
    finalization_queue = registry.queue("awaiting_finalization")

    chain = EthereumClient(
        logger=logger,
        rpc_url=app_settings.rpc_url,
        private_key=app_settings.keeper_private_key,
        milkman_address=app_settings.milkman_address,
        state_helper_address=app_settings.state_helper_address,
        app_data=app_settings.app_data,
        request_timeout_seconds=app_settings.http_timeout_seconds,
        receipt_timeout_seconds=app_settings.tx_receipt_timeout_seconds,
    )
    api = CowApiClient(
        logger=logger,
        api_base_url=app_settings.cow_api_base_url,
        app_data=app_settings.app_data,
        timeout_seconds=app_settings.http_timeout_seconds,
        max_retries=app_settings.api_max_retries,
    )
    pricing = SwapPricingEngine(
        slippage_bps=app_settings.slippage_bps,
        order_validity_seconds=app_settings.order_validity_seconds,
        fee_model=app_settings.fee_model,
    )
    watcher = SwapWatcher(
        logger=logger,
        chain=chain,
        requested_queue=requested_queue,
        finalization_queue=finalization_queue,
        starting_block=app_settings.starting_block_number,
        min_swap_amount=app_settings.min_swap_amount,
        block_overlap=app_settings.discovery_block_overlap,
    )
    executor = SwapPairingExecutor(
        logger=logger,
        chain=chain,
        api=api,
        pricing=pricing,
        requested_queue=requested_queue,
        finalization_queue=finalization_queue,
        order_owner=app_settings.milkman_address,
        signing_scheme=app_settings.signing_scheme,
        estimate_verification_gas=app_settings.estimate_verification_gas,
        verification_gas_padding_pct=app_settings.verification_gas_padding_pct,
        app_data=app_settings.app_data,
    )
    finalizer = SwapFinalizer(
        logger=logger,
        chain=chain,
        requested_queue=requested_queue,
        finalization_queue=finalization_queue,
    )
    circuit_breaker = ExecutionCircuitBreaker(
        logger=logger,
        max_consecutive_failures=app_settings.execution_max_consecutive_failures,
        cooldown_seconds=app_settings.execution_circuit_breaker_seconds,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info(
            "Shutdown signal received",
            extra={"event": "shutdown_signal_received", "signal": sig.name},
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    exit_code = 0
    try:
        await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            chain=chain,
            api=api,
            watcher=watcher,
        )

        log_event(
            logger,
            level="info",
            event="keeper_started",
            message="Milkman keeper started",
            keeper_address=chain.keeper_address,
            **app_settings.to_log_fields(),
        )

        await run_workers(
            logger=logger,
            stop_event=stop_event,
            discovery=run_discovery_loop(
                logger=logger,
                stop_event=stop_event,
                watcher=watcher,
                requested_queue=requested_queue,
                finalization_queue=finalization_queue,
                interval_seconds=app_settings.discovery_interval_seconds,
            ),
            execution=run_execution_loop(
                logger=logger,
                stop_event=stop_event,
                executor=executor,
                requested_queue=requested_queue,
                interval_seconds=app_settings.execution_interval_seconds,
                circuit_breaker=circuit_breaker,
            ),
            finalization=run_finalization_loop(
                logger=logger,
                stop_event=stop_event,
                finalizer=finalizer,
                finalization_queue=finalization_queue,
                interval_seconds=app_settings.finalization_interval_seconds,
            ),
        )
    except KeeperFatalError:
        exit_code = 1
    except BootstrapAborted as error:
        logger.info(
            "Shutdown requested during bootstrap",
            extra={"event": "bootstrap_aborted", "error": str(error)},
        )
    finally:
        await guarded_call(api.close, logger=logger, event="api_close_failed", message="Failed to close CoW API session")
        await guarded_call(chain.close, logger=logger, event="chain_close_failed", message="Failed to close RPC provider")

        logger.info(
            "Shutdown completed",
            extra={
                "event": "shutdown_completed",
                "exit_code": exit_code,
                "requested": len(requested_queue),
                "awaiting_finalization": len(finalization_queue),
            },
        )

    return exit_code


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
