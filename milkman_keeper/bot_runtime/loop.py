from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from milkman_keeper.common import log_event, wait_with_stop
from milkman_keeper.trading import (
    STATUS_REQUEUED,
    KeeperFatalError,
    SwapFinalizer,
    SwapPairingExecutor,
    SwapQueue,
    SwapWatcher,
    failure_log_level,
)

from .loop_helpers import ExecutionCircuitBreaker, drain_snapshot


async def run_discovery_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    watcher: SwapWatcher,
    requested_queue: SwapQueue,
    finalization_queue: SwapQueue,
    interval_seconds: float,
) -> None:
    log_event(
        logger,
        level="info",
        event="discovery_loop_started",
        message="Discovery worker started",
        starting_block=watcher.last_processed_block,
        interval_seconds=interval_seconds,
    )
    while not stop_event.is_set():
        try:
            await watcher.scan_once()
        except (asyncio.CancelledError, KeeperFatalError):
            raise
        except Exception as error:
            log_event(
                logger,
                level=failure_log_level(error),
                event="discovery_cycle_failed",
                message="Discovery cycle failed; the same block range is rescanned next cycle",
                last_processed_block=watcher.last_processed_block,
                error=str(error),
                error_type=type(error).__name__,
            )

        log_event(
            logger,
            level="info",
            event="queue_status",
            message="Swap queue sizes",
            last_processed_block=watcher.last_processed_block,
            requested=len(requested_queue),
            awaiting_finalization=len(finalization_queue),
        )
        await wait_with_stop(stop_event, interval_seconds)


async def run_execution_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    executor: SwapPairingExecutor,
    requested_queue: SwapQueue,
    interval_seconds: float,
    circuit_breaker: ExecutionCircuitBreaker | None = None,
) -> None:
    loop = asyncio.get_running_loop()
    breaker = circuit_breaker or ExecutionCircuitBreaker(logger=logger)

    log_event(
        logger,
        level="info",
        event="execution_loop_started",
        message="Execution worker started",
        interval_seconds=interval_seconds,
        circuit_breaker_threshold=breaker.max_consecutive_failures,
    )
    while not stop_event.is_set():
        remaining_seconds = breaker.remaining_seconds(loop.time())
        if remaining_seconds > 0:
            log_event(
                logger,
                level="warning",
                event="execution_circuit_open",
                message="Pairing skipped because the execution circuit breaker is open",
                remaining_seconds=round(remaining_seconds, 3),
                requested=len(requested_queue),
            )
            await wait_with_stop(stop_event, min(remaining_seconds, interval_seconds))
            continue

        for swap in drain_snapshot(requested_queue):
            try:
                result = await executor.pair(swap)
            except (asyncio.CancelledError, KeeperFatalError):
                raise
            except Exception as error:
                requested_queue.push(swap)
                log_event(
                    logger,
                    level="exception",
                    event="swap_pairing_crashed",
                    message="Unexpected error while pairing swap; returned it to the requested queue",
                    error=str(error),
                    **swap.log_fields(),
                )
                breaker.record_failure(now=loop.time(), error=str(error))
            else:
                if result.status == STATUS_REQUEUED:
                    breaker.record_failure(now=loop.time(), error=result.error)
                else:
                    breaker.record_success()

            if stop_event.is_set() or breaker.is_open(loop.time()):
                break

        await wait_with_stop(stop_event, interval_seconds)


async def run_finalization_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    finalizer: SwapFinalizer,
    finalization_queue: SwapQueue,
    interval_seconds: float,
) -> None:
    log_event(
        logger,
        level="info",
        event="finalization_loop_started",
        message="Finalization worker started",
        interval_seconds=interval_seconds,
    )
    while not stop_event.is_set():
        for swap in drain_snapshot(finalization_queue):
            try:
                await finalizer.finalize(swap)
            except (asyncio.CancelledError, KeeperFatalError):
                raise
            except Exception as error:
                finalization_queue.push(swap)
                log_event(
                    logger,
                    level="exception",
                    event="swap_finalization_crashed",
                    message="Unexpected error while finalizing swap; kept it in the finalization queue",
                    error=str(error),
                    **swap.log_fields(),
                )
            if stop_event.is_set():
                break

        await wait_with_stop(stop_event, interval_seconds)


async def run_workers(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    discovery: Coroutine[Any, Any, None] | None = None,
    execution: Coroutine[Any, Any, None] | None = None,
    finalization: Coroutine[Any, Any, None] | None = None,
) -> None:
    """Run the worker coroutines until they all stop or one fails.

    A failure in any worker sets ``stop_event``, cancels the others and is
    re-raised to the caller.
    """
    tasks = [
        asyncio.ensure_future(coroutine)
        for coroutine in (discovery, execution, finalization)
        if coroutine is not None
    ]
    for task, name in zip(tasks, ("discovery", "execution", "finalization")):
        task.set_name(f"keeper-{name}")

    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    failed = [task for task in done if not task.cancelled() and task.exception() is not None]
    if not failed:
        return

    stop_event.set()
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    error = failed[0].exception()
    log_event(
        logger,
        level="critical",
        event="keeper_fatal_error" if isinstance(error, KeeperFatalError) else "keeper_worker_crashed",
        message="Worker stopped with an unrecoverable error; shutting down",
        worker=failed[0].get_name(),
        error=str(error),
        error_type=type(error).__name__,
    )
    raise error
