"""Logging helpers for the OAuth broker."""

import logging
import sys


def setup_logging(level: int = logging.WARNING) -> logging.Logger:
    """Configure the root logger for the broker.

    Args:
        level: Logging level for the broker loggers

    Returns:
        The "mcp-oauth-broker" logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Replace existing handlers so repeated calls don't duplicate output
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(handler)

    for name in ("mcp-oauth-broker", "mcp.server", "uvicorn"):
        logging.getLogger(name).setLevel(level)

    return logging.getLogger("mcp-oauth-broker")


def mask_sensitive(value: str | None, keep_chars: int = 4) -> str:
    """Mask a secret, keeping only a few leading characters.

    Args:
        value: Token, secret or code to mask
        keep_chars: Number of leading characters to keep visible

    Returns:
        Masked representation safe for log output
    """
    if not value:
        return ""
    if len(value) <= keep_chars * 2:
        return "*" * len(value)
    return f"{value[:keep_chars]}...({len(value)} chars)"


def describe_token(value: str | None) -> str:
    """Describe a token by presence and length only."""
    if not value:
        return "missing"
    return f"present (length={len(value)})"
