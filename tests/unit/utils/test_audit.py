"""Unit tests for the broker audit trail."""

import json
import os
import tempfile
from unittest.mock import patch

import pytest

import mcp_oauth_broker.utils.audit as audit_module
from mcp_oauth_broker.utils.audit import (
    AuditAction,
    AuditLogEntry,
    AuditLogger,
    AuditResult,
    audit,
    get_audit_logger,
)


@pytest.fixture(autouse=True)
def reset_global_logger():
    audit_module._audit_logger = None
    yield
    if audit_module._audit_logger is not None:
        audit_module._audit_logger.close()
    audit_module._audit_logger = None


class TestAuditLogEntry:
    """Test AuditLogEntry dataclass."""

    def test_to_dict_excludes_none_values(self):
        """Test that to_dict excludes None values."""
        entry = AuditLogEntry(
            timestamp="2024-01-15T10:30:00Z",
            action="token_issued",
            result="success",
        )
        data = entry.to_dict()
        assert "client_id" not in data
        assert "timestamp" in data
        assert data["action"] == "token_issued"

    def test_to_json_produces_valid_json(self):
        entry = AuditLogEntry(
            timestamp="2024-01-15T10:30:00Z",
            action="authorization_requested",
            client_id="client-1",
            client_dialect="loopback",
            metadata={"scope": "openid"},
        )
        data = json.loads(entry.to_json())
        assert data["client_id"] == "client-1"
        assert data["client_dialect"] == "loopback"
        assert data["metadata"] == {"scope": "openid"}


class TestAuditLogger:
    """Test AuditLogger class."""

    def test_init_with_file_output(self):
        """Test AuditLogger initialization with file output."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = os.path.join(tmpdir, "nested", "audit.log")
            logger = AuditLogger(enabled=True, output_file=log_file)
            assert logger.file_handler is not None
            assert os.path.exists(log_file)
            logger.close()
            assert logger.file_handler is None

    def test_mask_email(self):
        """Test PII masking for email addresses."""
        logger = AuditLogger(enabled=True, mask_pii=True)
        masked = logger._mask_email("alice@example.com")
        assert masked == "a***e@example.com"

    def test_mask_short_username(self):
        logger = AuditLogger(enabled=True, mask_pii=True)
        assert logger._mask_email("al@example.com") == "**@example.com"

    def test_subject_is_not_masked(self):
        """Opaque subjects are not email addresses and pass through."""
        logger = AuditLogger(enabled=True, mask_pii=True)
        assert logger._mask_email("1234567890") == "1234567890"

    def test_no_mask_when_disabled(self):
        logger = AuditLogger(enabled=True, mask_pii=False)
        assert logger._mask_email("alice@example.com") == "alice@example.com"

    def test_log_entry_to_file(self):
        """Test that log entries are written to file as JSON lines."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = os.path.join(tmpdir, "audit.log")
            logger = AuditLogger(enabled=True, output_file=log_file)

            logger.log(
                action=AuditAction.TOKEN_ISSUED,
                client_id="client-1",
                user_id="alice@example.com",
            )
            logger.log(
                action=AuditAction.TOKEN_DENIED,
                result=AuditResult.DENIED,
                client_id="client-1",
                error_code="invalid_grant",
            )
            logger.close()

            with open(log_file, "r") as f:
                lines = f.readlines()

            issued = json.loads(lines[0])
            denied = json.loads(lines[1])
            assert issued["action"] == "token_issued"
            assert issued["action_category"] == "token"
            assert issued["user_id"] == "a***e@example.com"
            assert denied["result"] == "denied"
            assert denied["error_code"] == "invalid_grant"

    def test_log_entry_to_stdout(self, capsys):
        """Test that log entries are written to stdout."""
        logger = AuditLogger(enabled=True, output_stdout=True)
        logger.log(action=AuditAction.CLIENT_REGISTERED, client_id="client-2")

        captured = capsys.readouterr()
        data = json.loads(captured.out.strip())
        assert data["action"] == "client_registered"
        assert data["action_category"] == "registration"

    def test_log_entry_disabled(self, capsys):
        """Test that nothing is written when disabled."""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = os.path.join(tmpdir, "audit.log")
            logger = AuditLogger(enabled=False, output_file=log_file, output_stdout=True)
            logger.log(action=AuditAction.SERVER_STARTED)
            logger.close()

            assert not os.path.exists(log_file)
        assert capsys.readouterr().out == ""

    def test_from_env_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            logger = AuditLogger.from_env()
        assert logger.enabled is True
        assert logger.output_file is None
        assert logger.output_stdout is False
        assert logger.mask_pii is True

    def test_from_env_custom_values(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            log_file = os.path.join(tmpdir, "audit.log")
            with patch.dict(
                os.environ,
                {
                    "AUDIT_LOG_ENABLED": "true",
                    "AUDIT_LOG_FILE": log_file,
                    "AUDIT_LOG_STDOUT": "yes",
                    "AUDIT_LOG_MASK_PII": "false",
                },
                clear=True,
            ):
                logger = AuditLogger.from_env()
            assert logger.output_file == log_file
            assert logger.output_stdout is True
            assert logger.mask_pii is False
            logger.close()

    def test_unwritable_file_does_not_raise(self):
        """Test handling of file creation failures."""
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = os.path.join(tmpdir, "blocker")
            with open(blocker, "w") as f:
                f.write("")
            logger = AuditLogger(enabled=True, output_file=os.path.join(blocker, "audit.log"))
            assert logger.file_handler is None
            logger.log(action=AuditAction.SERVER_STARTED)
            logger.close()


class TestAuditLoggerGlobal:
    """Test global audit logger functions."""

    def test_get_audit_logger_is_singleton(self):
        with patch.dict(os.environ, {"AUDIT_LOG_ENABLED": "true"}, clear=True):
            assert get_audit_logger() is get_audit_logger()

    def test_get_audit_logger_returns_none_when_disabled(self):
        with patch.dict(os.environ, {"AUDIT_LOG_ENABLED": "false"}, clear=True):
            assert get_audit_logger() is None

    def test_audit_helper_writes_through_global_logger(self, capsys):
        env = {"AUDIT_LOG_ENABLED": "true", "AUDIT_LOG_STDOUT": "true"}
        with patch.dict(os.environ, env, clear=True):
            audit(
                AuditAction.AUTHENTICATION_FAILURE,
                AuditResult.FAILURE,
                user_ip="10.0.0.1",
                error_code="invalid_token",
            )

        data = json.loads(capsys.readouterr().out.strip())
        assert data["action"] == "authentication_failure"
        assert data["result"] == "failure"
        assert data["user_ip"] == "10.0.0.1"

    def test_audit_helper_noop_when_disabled(self, capsys):
        with patch.dict(os.environ, {"AUDIT_LOG_ENABLED": "false"}, clear=True):
            audit(AuditAction.SERVER_STOPPED)
        assert capsys.readouterr().out == ""
