"""Structured audit trail for the OAuth broker.

Each authorization, callback, token and bearer-authentication outcome is
written as one JSON line to a file and/or stdout. Email addresses are masked
unless AUDIT_LOG_MASK_PII is disabled. Tokens and codes never appear in
entries.
"""

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, TextIO

logger = logging.getLogger("mcp-oauth-broker.utils.audit")


class AuditAction(str, Enum):
    """Broker events that are audited."""

    # Authorization flow
    AUTHORIZATION_REQUESTED = "authorization_requested"
    AUTHORIZATION_REJECTED = "authorization_rejected"
    UPSTREAM_CALLBACK = "upstream_callback"
    TOKEN_ISSUED = "token_issued"
    TOKEN_DENIED = "token_denied"
    CLIENT_REGISTERED = "client_registered"

    # Resource side
    AUTHENTICATION_SUCCESS = "authentication_success"
    AUTHENTICATION_FAILURE = "authentication_failure"

    # System
    SERVER_STARTED = "server_started"
    SERVER_STOPPED = "server_stopped"


_ACTION_CATEGORIES = {
    AuditAction.AUTHORIZATION_REQUESTED: "authorization",
    AuditAction.AUTHORIZATION_REJECTED: "authorization",
    AuditAction.UPSTREAM_CALLBACK: "authorization",
    AuditAction.TOKEN_ISSUED: "token",
    AuditAction.TOKEN_DENIED: "token",
    AuditAction.CLIENT_REGISTERED: "registration",
    AuditAction.AUTHENTICATION_SUCCESS: "authentication",
    AuditAction.AUTHENTICATION_FAILURE: "authentication",
    AuditAction.SERVER_STARTED: "system",
    AuditAction.SERVER_STOPPED: "system",
}


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"
    ERROR = "error"


@dataclass
class AuditLogEntry:
    """One audit record."""

    timestamp: str  # ISO 8601, UTC
    action: str
    result: str = AuditResult.SUCCESS.value
    action_category: Optional[str] = None
    client_id: Optional[str] = None
    client_dialect: Optional[str] = None
    user_id: Optional[str] = None  # Email or subject of the authenticated user
    user_ip: Optional[str] = None
    user_agent: Optional[str] = None
    error_code: Optional[str] = None  # OAuth error code when the result is not success
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary, excluding None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class AuditLogger:
    """Writes audit entries to the configured outputs."""

    def __init__(
        self,
        enabled: bool = True,
        output_file: Optional[str] = None,
        output_stdout: bool = False,
        mask_pii: bool = True,
    ):
        """Initialize the audit logger.

        Args:
            enabled: Whether audit logging is enabled
            output_file: Path to the audit log file (optional)
            output_stdout: Whether to also write entries to stdout
            mask_pii: Whether to mask email addresses in entries
        """
        self.enabled = enabled
        self.output_file = output_file
        self.output_stdout = output_stdout
        self.mask_pii = mask_pii

        self.file_handler: Optional[TextIO] = None
        if self.enabled and self.output_file:
            try:
                log_path = Path(self.output_file)
                log_path.parent.mkdir(parents=True, exist_ok=True)
                self.file_handler = open(log_path, "a", encoding="utf-8")
            except OSError as e:
                logger.error(f"Failed to open audit log file {self.output_file}: {e}")

    def _mask_email(self, value: Optional[str]) -> Optional[str]:
        if not self.mask_pii or not value or "@" not in value:
            return value

        username, _, domain = value.partition("@")
        if len(username) > 2:
            masked_username = username[0] + "*" * (len(username) - 2) + username[-1]
        else:
            masked_username = "*" * len(username)
        return f"{masked_username}@{domain}"

    def _write_entry(self, entry: AuditLogEntry) -> None:
        if not self.enabled:
            return

        entry.user_id = self._mask_email(entry.user_id)
        json_entry = entry.to_json()

        if self.file_handler:
            try:
                self.file_handler.write(json_entry + "\n")
                self.file_handler.flush()
            except OSError as e:
                logger.error(f"Failed to write audit log entry to file: {e}")

        if self.output_stdout:
            print(json_entry, file=sys.stdout, flush=True)

    def log(
        self,
        action: AuditAction,
        result: AuditResult = AuditResult.SUCCESS,
        client_id: Optional[str] = None,
        client_dialect: Optional[str] = None,
        user_id: Optional[str] = None,
        user_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        error_code: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Log an audit event.

        Args:
            action: Event being audited
            result: Outcome of the event
            client_id: OAuth client the event concerns
            client_dialect: Redirect dialect of the client, when known
            user_id: Authenticated user's email or subject
            user_ip: Client IP address
            user_agent: User agent string
            error_code: OAuth error code for failed or denied events
            metadata: Additional structured context (never tokens or codes)
        """
        entry = AuditLogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action.value,
            result=result.value,
            action_category=_ACTION_CATEGORIES.get(action),
            client_id=client_id,
            client_dialect=client_dialect,
            user_id=user_id,
            user_ip=user_ip,
            user_agent=user_agent,
            error_code=error_code,
            metadata=metadata,
        )
        self._write_entry(entry)

    def close(self) -> None:
        if self.file_handler:
            try:
                self.file_handler.close()
            except OSError as e:
                logger.error(f"Error closing audit log file: {e}")
            self.file_handler = None

    @classmethod
    def from_env(cls) -> "AuditLogger":
        """Create an audit logger from environment variables.

        Environment variables:
        - AUDIT_LOG_ENABLED: Enable audit logging (default: true)
        - AUDIT_LOG_FILE: Path to audit log file (optional)
        - AUDIT_LOG_STDOUT: Output to stdout (default: false)
        - AUDIT_LOG_MASK_PII: Mask email addresses (default: true)
        """
        truthy = ("true", "1", "yes")
        return cls(
            enabled=os.getenv("AUDIT_LOG_ENABLED", "true").lower() in truthy,
            output_file=os.getenv("AUDIT_LOG_FILE"),
            output_stdout=os.getenv("AUDIT_LOG_STDOUT", "false").lower() in truthy,
            mask_pii=os.getenv("AUDIT_LOG_MASK_PII", "true").lower() in truthy,
        )


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> Optional[AuditLogger]:
    """Get the global audit logger.

    Returns:
        AuditLogger instance if enabled, None otherwise
    """
    global _audit_logger

    if _audit_logger is None:
        _audit_logger = AuditLogger.from_env()
        if _audit_logger.enabled:
            logger.info("Audit logging enabled")
            if _audit_logger.output_file:
                logger.info(f"Audit logs will be written to: {_audit_logger.output_file}")
        else:
            logger.debug("Audit logging is disabled")

    return _audit_logger if _audit_logger.enabled else None


def audit(action: AuditAction, result: AuditResult = AuditResult.SUCCESS, **kwargs: Any) -> None:
    """Log an audit event with the global logger, if enabled."""
    audit_logger = get_audit_logger()
    if audit_logger:
        audit_logger.log(action, result, **kwargs)
