"""
Server logging for taskpilot.
Rotating server/error/access logs, crash reports, and the HTTP request middleware.
"""

import os
import sys
import json
import logging
import traceback
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from logging.handlers import RotatingFileHandler
from contextlib import asynccontextmanager

from .config import APP_DIR

SERVER_LOGGER = "taskpilot.server"
ACCESS_LOGGER = "taskpilot.access"
TASK_LOGGER = "taskpilot.server.tasks"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_directory() -> Path:
    """Get or create the server logs directory."""
    server_logs = APP_DIR / "logs" / "server"
    server_logs.mkdir(parents=True, exist_ok=True)
    return server_logs


def get_crash_log_directory() -> Path:
    crash_logs = APP_DIR / "logs" / "crashes"
    crash_logs.mkdir(parents=True, exist_ok=True)
    return crash_logs


def _reset_handlers(logger: logging.Logger):
    for handler in logger.handlers[:]:
        handler.flush()
        handler.close()
        logger.removeHandler(handler)


def setup_server_logger(debug: bool = False, level: str = "INFO") -> logging.Logger:
    """
    Configure the taskpilot.server logger tree.

    - server.log: everything at the configured level (10MB x 5)
    - error.log: errors with source location (5MB x 10)
    - console: only in debug mode or with TASKPILOT_DEBUG set
    """
    log_dir = get_log_directory()

    logger = logging.getLogger(SERVER_LOGGER)
    logger.setLevel(logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO))
    _reset_handlers(logger)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    server_handler = RotatingFileHandler(log_dir / "server.log", maxBytes=10 * 1024 * 1024, backupCount=5)
    server_handler.setFormatter(formatter)
    logger.addHandler(server_handler)

    error_handler = RotatingFileHandler(log_dir / "error.log", maxBytes=5 * 1024 * 1024, backupCount=10)
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s",
            datefmt=DATE_FORMAT,
        )
    )
    logger.addHandler(error_handler)

    if debug or os.getenv("TASKPILOT_DEBUG"):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def setup_access_logger() -> logging.Logger:
    """HTTP access log (20MB x 3)."""
    logger = logging.getLogger(ACCESS_LOGGER)
    logger.setLevel(logging.INFO)
    _reset_handlers(logger)

    access_handler = RotatingFileHandler(
        get_log_directory() / "access.log", maxBytes=20 * 1024 * 1024, backupCount=3
    )
    access_handler.setFormatter(logging.Formatter("%(asctime)s - %(message)s", datefmt=DATE_FORMAT))
    logger.addHandler(access_handler)
    return logger


def log_crash(error: BaseException, context: Optional[Dict[str, Any]] = None) -> str:
    """
    Write a JSON crash report and log it at CRITICAL.
    Returns the crash id used in the report filename.
    """
    timestamp = datetime.now(timezone.utc)
    crash_id = timestamp.strftime("%Y%m%d_%H%M%S")
    crash_file = get_crash_log_directory() / f"crash_{crash_id}.json"

    crash_info = {
        "timestamp": timestamp.isoformat(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "stack_trace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
        "python_version": sys.version,
        "platform": sys.platform,
        "context": context or {},
        "environment": {k: v for k, v in os.environ.items() if k.startswith("TASKPILOT_")},
    }

    with open(crash_file, "w") as f:
        json.dump(crash_info, f, indent=2, default=str)

    logging.getLogger(SERVER_LOGGER).critical(f"CRASH {crash_id}: {error}", exc_info=error)
    return crash_id


async def log_request_response(request, call_next):
    """Middleware logging every HTTP request with its status and duration."""
    access_logger = logging.getLogger(ACCESS_LOGGER)
    server_logger = logging.getLogger(SERVER_LOGGER)

    start_time = datetime.now(timezone.utc)
    request_id = start_time.strftime("%Y%m%d%H%M%S") + str(id(request))[-4:]
    client = request.client.host if request.client else "unknown"
    access_logger.info(f"REQUEST [{request_id}] {request.method} {request.url.path} from {client}")

    try:
        response = await call_next(request)
    except Exception as e:
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        crash_id = log_crash(
            e,
            {"request_id": request_id, "method": request.method, "path": str(request.url.path)},
        )
        access_logger.error(f"CRASH [{request_id}] 500 (crash_id: {crash_id}) in {duration:.3f}s")
        raise

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    access_logger.info(f"RESPONSE [{request_id}] {response.status_code} in {duration:.3f}s")

    if response.status_code >= 500:
        server_logger.error(f"Server error on {request.method} {request.url.path}: status {response.status_code}")
    elif response.status_code >= 400:
        server_logger.warning(f"Client error on {request.method} {request.url.path}: status {response.status_code}")

    return response


def setup_exception_handler():
    """Route uncaught exceptions through the crash log."""

    def handle_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        log_crash(exc_value, {"type": "uncaught_exception"})

    sys.excepthook = handle_exception


@asynccontextmanager
async def log_lifecycle(app_name: str = "taskpilot"):
    """Log startup and shutdown banners around the application lifespan."""
    logger = logging.getLogger(SERVER_LOGGER)

    startup_time = datetime.now(timezone.utc)
    logger.info("=" * 60)
    logger.info(f"Starting {app_name} server (pid {os.getpid()}, python {sys.version.split()[0]})")
    logger.info("=" * 60)

    try:
        yield
    finally:
        uptime = (datetime.now(timezone.utc) - startup_time).total_seconds()
        logger.info(f"Shutting down {app_name} server after {uptime:.2f}s")


def log_task_event(task_id: str, event: str, details: Optional[Dict[str, Any]] = None):
    """One structured line per task lifecycle event."""
    record = {"task_id": task_id, "event": event}
    if details:
        record["details"] = details
    logging.getLogger(TASK_LOGGER).info(json.dumps(record, default=str))


def initialize_logging(debug: bool = False, level: str = "INFO") -> logging.Logger:
    """Initialize all logging systems. Called once by the server entry point."""
    logger = setup_server_logger(debug, level)
    setup_access_logger()
    setup_exception_handler()
    logger.info(f"Logging system initialized in {get_log_directory()}")
    return logger
