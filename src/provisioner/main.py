"""Non-interactive entry point for the Azure provisioner.

Reads everything from the environment (see Config.from_env), plans the
stack and applies it unless DRY_RUN is set. Meant for CI pipelines and
containers; the interactive CLI lives in cli.py.

SECRETLESS ARCHITECTURE:
Authentication uses azure-identity only. Service principal secrets or
passwords in the environment abort startup (exit code 2).

Exit codes:
    0: Plan applied (or dry run) without failures
    1: Configuration, declaration or provisioning failure
    2: Security violation
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import IO

from .azure_provider import AzureProvider
from .config import Config, ConfigurationError
from .diff_normalizer import create_normalizer_from_env
from .errors import ProvisioningError
from .reconciler import Reconciler
from .report import render_plan_text
from .security import SecretlessViolationError, get_credential
from .spec_loader import SpecLoadError, load_stack
from .state import FileStateStore

# LogRecord attributes that are not structured context
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: IO[str] | None = None) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def install_signal_handlers(reconciler: Reconciler) -> None:
    """Cancel the running apply on SIGTERM/SIGINT.

    Must be called from inside the running event loop.
    """
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))


async def main() -> int:
    """Plan and apply the configured stack.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
        stack = load_stack(config.stack_file)
        settings = stack.to_settings(config.settings)
    except (ConfigurationError, SpecLoadError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting Azure provisioner",
        extra={
            "stack": stack.name,
            "subscription_id": settings.subscription_id,
            "location": settings.location,
            "dry_run": config.dry_run,
        },
    )

    try:
        provider = AzureProvider(settings, credential=get_credential())
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    reconciler = Reconciler(
        provider,
        FileStateStore(config.state_file),
        settings=settings,
        executor_config=config.executor,
        normalizer=create_normalizer_from_env(),
        dry_run=config.dry_run,
    )

    install_signal_handlers(reconciler)

    try:
        plan, result = await reconciler.up(stack.to_declarations())
    except ProvisioningError as e:
        logger.error(
            "Provisioning aborted",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        provider.close()

    logger.info("Plan", extra={"plan": render_plan_text(plan), "summary": plan.counts()})

    if result is not None and not result.success:
        logger.error("Provisioning incomplete", extra=result.to_dict())
        return 1

    logger.info("Provisioner finished")
    return 0


def run() -> None:
    """Entry point for the non-interactive runner."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
