# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_openid

import hashlib
import hmac
import logging
import sys
from pathlib import Path
from typing import Any

from loguru import logger
from opentelemetry import trace
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["logger", "configure_logging", "anonymize"]

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class LogSettings(BaseSettings):
    """
    Logging options, read from the environment on every `configure_logging()` call.

    Attributes:
        level (str): Loguru level name; unknown names fall back to INFO.
        json_output (bool): JSON lines on stdout instead of text on stderr.
        file (str): Rotating JSON file sink; empty disables it.
    """

    model_config = SettingsConfigDict(env_prefix="COREASON_OPENID_LOG_", case_sensitive=False)

    level: str = "INFO"
    json_output: bool = Field(default=False, validation_alias=AliasChoices("COREASON_OPENID_LOG_JSON"))
    file: str = "logs/coreason_openid.log"

    @field_validator("level", mode="before")
    @classmethod
    def known_level(cls, v: Any) -> str:
        level = str(v).upper()
        try:
            logger.level(level)
        except ValueError:
            return "INFO"
        return level


class InterceptHandler(logging.Handler):
    """
    Redirects standard logging records to Loguru, so httpx and httpcore
    request logs share the engine's sinks.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Report the original caller, not the logging module
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename in (logging.__file__, __file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def trace_id_injector(record: dict[str, Any]) -> None:
    """
    Loguru patcher adding the current OpenTelemetry trace and span ids to `extra`.
    """
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        record["extra"]["trace_id"] = format(ctx.trace_id, "032x")
        record["extra"]["span_id"] = format(ctx.span_id, "016x")


def anonymize(value: str, salt: str) -> str:
    """
    Returns the HMAC-SHA256 hex digest of `value`, for logging user identifiers.

    Args:
        value: The value to anonymize (e.g. a `sub` claim).
        salt: The secret salt.
    """
    return hmac.new(salt.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def _add_file_sink(path: str, level: str) -> None:
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(path, rotation="500 MB", retention="10 days", serialize=True, enqueue=True, level=level)
    except OSError:
        # Read-only filesystems keep console logging only
        logger.debug(f"File logging disabled, cannot write to {path}")


def _intercept_standard_logging(level: str) -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    numeric_level = logging.getLevelName(level)
    logging.getLogger().setLevel(numeric_level if isinstance(numeric_level, int) else logging.INFO)


def configure_logging() -> None:
    """
    Configures Loguru sinks from the environment. Safe to call again after the
    environment changes; previous sinks are replaced.

    Environment:
        COREASON_OPENID_LOG_LEVEL: Loguru level name (default INFO).
        COREASON_OPENID_LOG_JSON: "true" for JSON lines on stdout.
        COREASON_OPENID_LOG_FILE: File sink path, empty to disable.
    """
    settings = LogSettings()

    logger.configure(handlers=[], patcher=trace_id_injector)
    if settings.json_output:
        logger.add(sys.stdout, level=settings.level, serialize=True)
    else:
        logger.add(sys.stderr, level=settings.level, format=_CONSOLE_FORMAT)

    if settings.file:
        _add_file_sink(settings.file, settings.level)

    _intercept_standard_logging(settings.level)


# Initialize on import
configure_logging()
