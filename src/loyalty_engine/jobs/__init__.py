"""Scheduled background work."""

from .sweeps import register_scheduler, request_stop, run_sweeps_once

__all__ = ["register_scheduler", "request_stop", "run_sweeps_once"]
