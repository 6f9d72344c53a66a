from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from controller.src.config import load_config
from controller.src.controller import CacheSyncError, build_controller
from controller.src.health import start_health_server
from controller.src.kube import build_clients, load_kube_configuration
from controller.src.metrics import METRICS
from controller.src.resources import build_scheme

RUNTIME_VERSION = "0.1.0"
INFORMER_STOP_TIMEOUT_SECONDS = 5
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, start informers, and run the workers."""
    config = load_config()
    configure_logging(config.log_level)
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api, custom_api = build_clients()
    scheme = build_scheme()

    controller = build_controller(
        config,
        core_api=core_api,
        apps_api=apps_api,
        custom_api=custom_api,
        scheme=scheme,
    )
    health_server = start_health_server(ready=controller.ready, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    informers = (controller.deployment_informer, controller.inference_job_informer)
    informer_threads: list[threading.Thread] = []
    for informer in informers:
        thread = threading.Thread(
            target=informer.run,
            kwargs={"stop_event": shutdown_event},
            name=f"{informer.name}-informer",
            daemon=True,
        )
        thread.start()
        informer_threads.append(thread)

    exit_code = 0
    try:
        controller.run(
            workers=config.workers,
            stop_event=shutdown_event,
            cache_sync_timeout=config.cache_sync_timeout_seconds or None,
        )
    except CacheSyncError:
        # A stop signal during startup also ends the sync wait; only a real
        # sync failure is fatal.
        if not shutdown_event.is_set():
            logger.error("Informer caches failed to sync; exiting")
            exit_code = 1
    finally:
        shutdown_event.set()
        for informer in informers:
            informer.request_stop()
        for thread in informer_threads:
            thread.join(timeout=INFORMER_STOP_TIMEOUT_SECONDS)
        health_server.shutdown()

    logger.info("Controller stopped")
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
