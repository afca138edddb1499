from .logging import setup_logger
from .loop import bootstrap_dependencies, run_sweep_loop, sweep_pending_operations
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "bootstrap_dependencies",
    "run_sweep_loop",
    "setup_logger",
    "sweep_pending_operations",
]
