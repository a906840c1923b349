"""Loguru sinks for the tracker plus helpers that emit one structured line per event.

Every record carries an ``analysis`` extra so lines from concurrent runs can be
told apart; it is ``-`` outside a run.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from visibility.config import settings

LOG_DIR = Path("logs")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[analysis]}</magenta> | <cyan>{name}:{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[analysis]} | {name}:{function}:{line} - {message}"

QUIET_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "httpx",
    "httpcore",
    "hpack",
    "openai._base_client",
    "supabase",
    "postgrest",
    "asyncio",
)


def configure_logging(log_dir: Path = LOG_DIR) -> None:
    log_dir.mkdir(exist_ok=True)
    logger.configure(
        handlers=[
            {
                "sink": sys.stderr,
                "format": CONSOLE_FORMAT,
                "level": settings.app_log_level.upper(),
                "colorize": True,
            },
            {
                "sink": log_dir / "visibility_{time:YYYY-MM-DD}.log",
                "format": FILE_FORMAT,
                "level": "DEBUG",
                "rotation": "00:00",
                "retention": "7 days",
                "compression": "zip",
                "enqueue": True,
            },
        ],
        extra={"analysis": "-"},
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(settings.noisy_log_level.upper())


configure_logging()


def _emit(tag: str, payload: dict[str, Any], *, level: str = "INFO", analysis_id: Optional[str] = None) -> None:
    record = {"timestamp": datetime.now(timezone.utc).isoformat(), **payload}
    target = logger.bind(analysis=analysis_id) if analysis_id else logger
    target.opt(depth=2).log(level, f"{tag}: {record}")


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    attempts: int = 1,
    error: Optional[str] = None,
) -> None:
    """One line per chat completion, successful or not."""
    _emit(
        "LLM_CALL_FAILED" if error else "LLM_CALL",
        {
            "model": model,
            "caller": caller,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
            "duration_ms": duration_ms,
            "status": status,
            "attempts": attempts,
            "error": error,
        },
        level="ERROR" if error else "INFO",
    )


def log_batch_event(analysis_id: str, batch_id: int, status: str, **data: Any) -> None:
    _emit(
        "BATCH",
        {"batch_id": batch_id, "status": status, **data},
        level="WARNING" if status == "failed" else "INFO",
        analysis_id=analysis_id,
    )


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    # Successful reads and writes are frequent; keep them out of the console.
    _emit(
        "DB_OPERATION_FAILED" if error else "DB_OPERATION",
        {"operation": operation, "table": table, "status": status, "details": details, "error": error},
        level="ERROR" if error else "DEBUG",
    )


def log_event(event_type: str, message: str, **kwargs: Any) -> None:
    """Pipeline lifecycle event (started, completed, failed)."""
    analysis_id = kwargs.get("analysis_id")
    _emit(
        "EVENT",
        {"event_type": event_type, "message": message, **kwargs},
        analysis_id=str(analysis_id) if analysis_id else None,
    )
