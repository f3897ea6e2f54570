from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from kubernetes.client import CoordinationV1Api

from neo4j_operator.src.config import ConfigError, load_config
from neo4j_operator.src.controller import ShardedDatabaseController, build_controller
from neo4j_operator.src.health import start_health_server
from neo4j_operator.src.kube import build_clients, load_kube_configuration
from neo4j_operator.src.leader import LeaseLeaderElector
from neo4j_operator.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger("neo4j_operator")

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|neo4j_auth)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(\b[a-z][a-z0-9+.-]*://[^:/\s]+:)([^@\s]+)(@)"),
        r"\1[REDACTED]\3",
    ),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with credentials scrubbed from messages and tracebacks."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, level.upper(), logging.INFO))


class ControllerSupervisor:
    """Runs the controller watch loop in a thread that follows leadership.

    ``start`` is wired to leadership acquisition and ``stop`` to its loss.
    A loop that exits on its own, or refuses to stop within
    ``stop_timeout_seconds``, sets ``shutdown_event`` so the pod restarts
    instead of running a half-dead controller.
    """

    def __init__(
        self,
        controller: ShardedDatabaseController,
        shutdown_event: threading.Event,
        stop_timeout_seconds: float,
        leader_ready: threading.Event | None = None,
    ) -> None:
        self.controller = controller
        self.shutdown_event = shutdown_event
        self.stop_timeout_seconds = stop_timeout_seconds
        self.leader_ready = leader_ready
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def _run(self, stop: threading.Event) -> None:
        try:
            self.controller.run_forever(shutdown_event=stop)
        except Exception:
            LOGGER.exception("Controller thread crashed")
            self.shutdown_event.set()
            return
        if not stop.is_set() and not self.shutdown_event.is_set():
            LOGGER.error("Controller thread exited without a stop signal; terminating process")
            self.shutdown_event.set()

    def start(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error("Previous controller thread is still running; refusing to start another")
                self.shutdown_event.set()
                return
            self._stop = threading.Event()
            if self.leader_ready is not None:
                self.leader_ready.set()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop,), name="controller", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            if self.leader_ready is not None:
                self.leader_ready.clear()
            self.controller.request_stop()
            self._stop.set()
            if self._thread is None:
                return
            self._thread.join(timeout=self.stop_timeout_seconds)
            if self._thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss; forcing process shutdown",
                    self.stop_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def main() -> None:
    """Operator entrypoint: configure logging, elect a leader and run the controller."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    try:
        config = load_config()
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        sys.exit(2)
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_clients()
    controller = build_controller(config, clients)

    election = config.leader_election
    leader_ready = threading.Event() if election.enabled else None
    health_server = start_health_server(
        ready=controller.ready, port=config.health_port, leader=leader_ready
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if election.enabled:
        supervisor = ControllerSupervisor(
            controller,
            shutdown_event,
            stop_timeout_seconds=election.controller_stop_timeout_seconds,
            leader_ready=leader_ready,
        )
        elector = LeaseLeaderElector.from_config(CoordinationV1Api(), config.namespace, election)
        elector.run(
            on_started_leading=supervisor.start,
            on_stopped_leading=supervisor.stop,
            stop_event=shutdown_event,
        )
        supervisor.stop()
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Operator stopped")


if __name__ == "__main__":
    main()
