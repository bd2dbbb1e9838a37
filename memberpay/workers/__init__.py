"""Background workers."""
from .expiry_sweeper import run_sweep, start_expiry_sweeper

__all__ = ["run_sweep", "start_expiry_sweeper"]
