# app/log.py
"""
Logging helpers shared by the consent pipeline.

Identities are wallet-like strings; they are only ever logged truncated.
"""
import logging
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    root = logging.getLogger("app")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    return root


def short_id(value: Optional[str], keep: int = 20) -> str:
    if not value:
        return "<none>"
    if len(value) <= keep:
        return value
    return value[:keep] + "..."


def log_operation(logger: logging.Logger, operation: str, status: str,
                  details: Optional[Dict[str, Any]] = None, level: int = logging.INFO) -> None:
    """Log a structured operation line."""
    message = f"Operation: {operation}, Status: {status}"
    if details:
        message += f", Details: {details}"
    logger.log(level, message)
