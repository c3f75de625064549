import os
import sys
from typing import Any, Final

from loguru import logger

_TRUTHY: Final[set[str]] = {"1", "true", "yes", "on"}

# Keys bound with logger.contextualize() while a batch or an order is processed.
_CONTEXT_KEYS: Final[tuple[str, ...]] = ("batch_id", "order_id")


def _console_format(record: dict[str, Any]) -> str:
    """Human-readable line with service, batch and order context when bound."""
    extra = record["extra"]
    parts = ["<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level>"]
    if "service" in extra:
        parts.append("<blue>{extra[service]}</blue>")
    context = " ".join(f"{key}={{extra[{key}]}}" for key in _CONTEXT_KEYS if key in extra)
    if context:
        parts.append(f"<magenta>{context}</magenta>")
    parts.append("<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>")
    return " | ".join(parts) + "\n{exception}"


def setup_logging(*, service: str | None = None) -> None:
    """Configure Loguru logger based on environment variables.

    LOG_LEVEL sets the level, LOG_JSON switches stdout to JSON lines (the default
    inside containers) and LOG_FILE adds a rotating JSON file sink. Batch and order
    ids bound by the orchestrator appear on every line either way.

    Args:
        service: Optional service name to include in log context.
    """
    logger.remove()

    level_env: str = os.getenv("LOG_LEVEL", "INFO")

    is_container = os.getenv("ECS_CONTAINER_METADATA_URI") is not None
    default_json = "true" if is_container else "false"
    serialize: bool = os.getenv("LOG_JSON", default_json).lower() in _TRUTHY

    if serialize:
        logger.add(sys.stdout, level=level_env, serialize=True)
    else:
        logger.add(sys.stdout, level=level_env, format=_console_format, colorize=True)

    log_file: str | None = os.getenv("LOG_FILE")
    if log_file:
        logger.add(log_file, level=level_env, serialize=True, rotation="10 MB", retention=5)

    if service:
        logger.configure(extra={"service": service})
