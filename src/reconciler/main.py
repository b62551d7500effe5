"""Async entry points for the device reconciliation engine.

Each runner performs one transition (or readiness wait) and maps the
outcome to a process exit code:

    0    converged
    1    failed (configuration, backend, timeout)
    130  cancelled by SIGINT/SIGTERM
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC
from typing import Any

from .client import ControllerClient
from .config import EngineConfig
from .devices import build_orchestrator
from .errors import FailureKind, TransitionError
from .harness import ControllerHarness, HarnessError
from .orchestrator import Operation
from .policies import PolicyLoadError, load_policies
from .states import EntityIdentity

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    import json
    from datetime import datetime

    reserved = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message"}

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data: dict[str, Any] = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            for key, value in record.__dict__.items():
                if key not in reserved:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the HTTP pipeline
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def install_signal_handlers(cancel: asyncio.Event) -> None:
    """Set the cancel event on SIGINT/SIGTERM."""
    loop = asyncio.get_event_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling", extra={"signal": sig.name})
        cancel.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug("Signal handler not installed", extra={"signal": sig.name})


def _exit_code(error: TransitionError) -> int:
    if error.kind == FailureKind.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILURE


async def run_transition(
    config: EngineConfig,
    operation: Operation,
    mac: str,
    *,
    site: str | None = None,
    payload: dict[str, Any] | None = None,
    cancel: asyncio.Event | None = None,
    client: ControllerClient | None = None,
) -> int:
    """Drive one device through one lifecycle operation.

    Returns:
        Exit code (0 converged, 1 failed, 130 cancelled).
    """
    try:
        identity = EntityIdentity.for_device(site or config.site, mac)
        policies = load_policies(config)
    except (ValueError, PolicyLoadError) as e:
        logger.error("Invalid input", extra={"error": str(e)})
        return EXIT_FAILURE

    if cancel is None:
        cancel = asyncio.Event()
        install_signal_handlers(cancel)

    owns_client = client is None
    client = client or ControllerClient.from_config(config)
    try:
        orchestrator = build_orchestrator(client, policies)
        result = await orchestrator.transition(identity, operation, payload, cancel)
    except TransitionError as e:
        return _exit_code(e)
    except Exception as e:
        logger.exception("Transition failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE
    finally:
        if owns_client:
            client.close()

    logger.info(
        "Device converged",
        extra={
            "identity": str(identity),
            "operation": operation.value,
            "state": repr(result.state),
            "mutated": result.mutated,
        },
    )
    return EXIT_OK


async def run_wait_ready(
    config: EngineConfig,
    *,
    timeout_seconds: float | None = None,
    cancel: asyncio.Event | None = None,
    client: ControllerClient | None = None,
) -> int:
    """Wait until the controller reports ready.

    Returns:
        Exit code (0 ready, 1 failed, 130 cancelled).
    """
    if cancel is None:
        cancel = asyncio.Event()
        install_signal_handlers(cancel)

    owns_client = client is None
    client = client or ControllerClient.from_config(config)
    harness = ControllerHarness(
        client,
        startup_timeout_seconds=timeout_seconds or config.harness_startup_timeout_seconds,
    )
    try:
        await harness.wait_until_ready(cancel)
    except HarnessError as e:
        logger.error("Controller not available", extra={"error": str(e)})
        return EXIT_FAILURE
    except TransitionError as e:
        logger.error("Controller did not become ready", extra=e.to_dict())
        return _exit_code(e)
    finally:
        if owns_client:
            client.close()

    return EXIT_OK
