from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from botocore.exceptions import BotoCoreError, ClientError

from readiness.src.aws import build_aws_cloud
from readiness.src.config import ConfigError, load_config, load_leader_election_config
from readiness.src.controller import ReadinessController, build_controller
from readiness.src.health import start_health_server
from readiness.src.kube import build_clients, load_kube_configuration
from readiness.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|"
            r"aws_secret_access_key|aws_session_token|secret_?access_?key|session_?token)\b"
            r"\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|X-Amz-Security-Token|X-Amz-Signature)=)([^&\s]+)"),
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
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def _run_with_leader_election(
    controller: ReadinessController,
    shutdown_event: threading.Event,
    leader_ready: threading.Event,
) -> None:
    """Run the controller only while this replica holds the lease.

    A controller thread that exits without being asked to, or that does
    not stop within the handoff timeout, takes the whole process down so
    Kubernetes restarts it cleanly.
    """
    from kubernetes.client import CoordinationV1Api

    from readiness.src.leader import LeaseLeaderElector

    election = load_leader_election_config()
    elector = LeaseLeaderElector.from_config(CoordinationV1Api(), election)

    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error("Previous controller thread is still running; refusing to start another")
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            leader_ready.set()
            stop = controller_stop

            def _run_controller() -> None:
                unexpected_exit = False
                try:
                    controller.run_forever(shutdown_event=stop)
                    unexpected_exit = not stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        LOGGER.error("Controller exited without a stop signal; terminating process")
                except Exception:
                    unexpected_exit = True
                    LOGGER.exception("Controller thread crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="readiness-controller", daemon=True
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller_stop.set()
            controller.request_stop()
            if controller_thread is None:
                return
            controller_thread.join(timeout=election.stop_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Controller did not stop within %ss of losing the lease; shutting down",
                    election.stop_timeout_seconds,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> int:
    """Entrypoint: configure logging, build collaborators, serve health and run the controller."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
        leader_election_enabled = load_leader_election_config().enabled
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    load_kube_configuration()
    clients = build_clients()

    try:
        cloud = build_aws_cloud(
            region=config.aws_region,
            assume_role_arn=config.aws_assume_role_arn,
            timeout_seconds=config.cloud_timeout_seconds,
        )
    except (BotoCoreError, ClientError):
        LOGGER.exception("Failed to create the AWS client for region %s", config.aws_region)
        return 1

    controller = build_controller(config, clients, cloud)

    leader_ready = threading.Event() if leader_election_enabled else None
    health_server = start_health_server(
        readiness_probe=controller.readiness_state,
        port=config.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    if leader_ready is not None:
        _run_with_leader_election(controller, shutdown_event, leader_ready)
    else:
        controller.run_forever(shutdown_event=shutdown_event)
        if not shutdown_event.is_set():
            LOGGER.error("Controller exited without a stop signal")
            exit_code = 1

    health_server.shutdown()
    LOGGER.info("Controller stopped")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
