from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading
import time

from configmap_controller.src.config import ConfigError, load_config
from configmap_controller.src.kube import build_clients, load_kube_configuration
from configmap_controller.src.manager import Manager
from configmap_controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOG_DATEFMT = "%Y-%m-%d-%H:%M:%S"
# Structured ``extra=`` fields copied into the JSON line when present, with
# their JSON key. ``name`` is reserved on LogRecord for the logger name.
CONTEXT_FIELDS = (
    ("controller", "controller"),
    ("reconcile_id", "reconcile_id"),
    ("kind", "kind"),
    ("namespace", "namespace"),
    ("resource_name", "name"),
)

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
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def __init__(self) -> None:
        super().__init__(datefmt=LOG_DATEFMT)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: N802
        created = time.localtime(record.created)
        stamp = time.strftime(datefmt or LOG_DATEFMT, created)
        return f"{stamp}.{int(record.msecs):03d}-{time.strftime('%Z', created)}"

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for attribute, key in CONTEXT_FIELDS:
            value = getattr(record, attribute, None)
            if value is not None:
                log_entry[key] = str(value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # The kubernetes client logs full request bodies at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def main() -> int:
    """Manager entrypoint: configure logging, connect to the cluster and run until signalled."""
    try:
        config = load_config()
    except ConfigError as exc:
        configure_logging(os.getenv("LOG_LEVEL", "INFO"))
        logging.getLogger(__name__).error("Invalid configuration: %s", exc)
        return 2

    configure_logging(config.log_level)
    logger = logging.getLogger("configmap_controller")
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    logger.info("Setting up manager")
    load_kube_configuration()
    manager = Manager(config, build_clients())

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info("Starting manager")
    manager.run(shutdown_event)
    logger.info("Manager stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
