"""
Scheduler Service.

Job registry for periodic engine work (the signer reminder sweep).  The
engine does not run its own timer: an external scheduler (cron, a
platform job runner) triggers jobs through ``SchedulerService.run_job``,
either via the HTTP endpoint or the ``flask run-job`` CLI command.

Architecture:
    - register_job: decorator that adds a job function to the registry
    - SchedulerService: executes a registered job inside the app context
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask

from app.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("reminder_sweep")
        def sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """Runs registered jobs within the Flask app context."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Errors raised by the job propagate to the caller after being
        logged; the result dict is returned only on success.

        Returns:
            {"job_name", "status", "duration_ms", "result"}
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            raise NotFoundError("Job", job_name)
        if cls._app is None:
            raise RuntimeError("Scheduler not initialized")

        start = time.monotonic()
        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception:
            logger.exception("Job %s failed", job_name)
            raise
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Job %s finished in %dms", job_name, duration_ms)

        return {
            "job_name": job_name,
            "status": "success",
            "duration_ms": duration_ms,
            "result": result,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        return [
            {"job_name": name, "description": (fn.__doc__ or "").strip().splitlines()[0]}
            for name, fn in sorted(_job_registry.items())
        ]
