"""
Maintenance Permit Core
Scheduler Service.

A lightweight background job scheduler built on a daemon thread. Jobs
register themselves with the ``register_job`` decorator; the ticker runs
every registered job at a fixed interval inside the Flask app context.

In development/testing, jobs are triggered manually with ``run_job``.
The ticker is started only when ``PERMIT_ESCALATION_MODE`` is
``scheduled`` and the app is not under test.
"""

from __future__ import annotations

import atexit
import logging
import threading
import time
from typing import Callable

from flask import Flask

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("permit_escalation_sweep")
        def sweep_permit_escalations(app):
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
    """
    Lightweight scheduler service.

    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _stop: threading.Event | None = None
    _thread: threading.Thread | None = None
    _exit_hook_registered = False

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind the scheduler to the app and start the ticker if configured."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))
        if app.config.get("PERMIT_ESCALATION_MODE") == "scheduled" and not app.config.get("TESTING"):
            cls.start(app.config.get("ESCALATION_SWEEP_INTERVAL_SEC", 300))

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": int((time.monotonic() - start) * 1000),
            "result": result,
            "error": error,
        }

    @classmethod
    def run_all(cls) -> list[dict]:
        return [cls.run_job(name) for name in list(_job_registry)]

    # ── Ticker ────────────────────────────────────────────────────────────

    @classmethod
    def start(cls, interval_sec: float) -> None:
        if cls._thread and cls._thread.is_alive():
            return
        cls._stop = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop, args=(interval_sec, cls._stop),
            name="scheduler-ticker", daemon=True,
        )
        cls._thread.start()
        if not cls._exit_hook_registered:
            atexit.register(cls.stop)
            cls._exit_hook_registered = True
        logger.info("Scheduler ticker started (every %ss)", interval_sec)

    @classmethod
    def stop(cls) -> None:
        """Signal the ticker to exit and wait for it; runs at interpreter shutdown."""
        if cls._stop:
            cls._stop.set()
        if cls._thread:
            cls._thread.join(timeout=5)
        cls._thread = None
        cls._stop = None

    @classmethod
    def _loop(cls, interval_sec: float, stop: threading.Event) -> None:
        while not stop.wait(interval_sec):
            cls.run_all()
