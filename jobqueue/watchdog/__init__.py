"""
Watchdog module.
Contains the stale-heartbeat watchdog for running jobs.
"""

from jobqueue.watchdog.main import Watchdog, run

__all__ = ["Watchdog", "run"]
