from .logging import LOGGER_NAME, JsonFormatter, setup_logger
from .loop import run_discovery_loop, run_execution_loop, run_finalization_loop, run_workers
from .loop_helpers import ExecutionCircuitBreaker, drain_snapshot
from .settings import AppSettings

__all__ = [
    "LOGGER_NAME",
    "AppSettings",
    "ExecutionCircuitBreaker",
    "JsonFormatter",
    "drain_snapshot",
    "run_discovery_loop",
    "run_execution_loop",
    "run_finalization_loop",
    "run_workers",
    "setup_logger",
]
