"""
Tests for the structured error hierarchy and the logging helpers.
"""

import json
import logging

import pytest

from portal_shared.exceptions import (
    ConfigurationError, ErrorCode, NetworkError, PortalError, ReauthenticationRequiredError,
    RecoveryAction, StorageError, ValidationError, handle_exception
)
from portal_shared.logging_config import (
    AuditLogger, DetailedFormatter, LogFormat, LogLevel, StructuredFormatter,
    log_structured_error, setup_logging
)


@pytest.mark.parametrize("exception, expected_class, expected_code", [
    (ConnectionError("refused"), NetworkError, ErrorCode.NETWORK_CONNECTION_FAILED),
    (TimeoutError("slow"), NetworkError, ErrorCode.NETWORK_TIMEOUT),
    (TypeError("not serializable"), StorageError, ErrorCode.STORAGE_SERIALIZATION_FAILED),
    (PermissionError("denied"), StorageError, ErrorCode.STORAGE_BACKEND_UNAVAILABLE),
    (FileNotFoundError("client.conf"), ConfigurationError, ErrorCode.CONFIG_FILE_NOT_FOUND),
    (ValueError("bad"), ValidationError, ErrorCode.VALIDATION_INVALID_INPUT),
    (RuntimeError("boom"), PortalError, ErrorCode.INTERNAL_UNEXPECTED_ERROR),
])
def test_handle_exception_mapping(exception, expected_class, expected_code):
    error = handle_exception(exception, context={'operation': 'test'})

    assert type(error) is expected_class
    assert error.error_code == expected_code
    assert error.cause is exception
    assert error.context['cause_type'] == type(exception).__name__


def test_handle_exception_passes_portal_errors_through():
    original = StorageError("quota", ErrorCode.STORAGE_QUOTA_EXCEEDED, key='profile')
    assert handle_exception(original) is original


def test_reauthentication_error_is_terminal():
    error = ReauthenticationRequiredError()

    assert error.user_message == "Token refresh failed. Please login again."
    assert error.recovery_actions == [RecoveryAction.USER_INTERVENTION]

    payload = error.to_dict()['error']
    assert payload['code'] == 'AUTH_1005'
    assert payload['recovery_actions'] == ['user_intervention']
    assert payload['cause'] is None


def test_storage_error_records_key():
    error = StorageError("too big", ErrorCode.STORAGE_QUOTA_EXCEEDED, key='draft')

    assert error.context['key'] == 'draft'
    assert RecoveryAction.LOWER_SECURITY_TIER in error.recovery_actions


def _record(**extra):
    record = logging.LogRecord('portal_client.test', logging.WARNING, __file__, 10,
                               "storage failed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_structured_formatter_includes_error_details():
    error = StorageError("too big", ErrorCode.STORAGE_QUOTA_EXCEEDED, key='draft')
    entry = json.loads(StructuredFormatter().format(_record(error_info=error, tier='tab')))

    assert entry['level'] == 'WARNING'
    assert entry['error']['code'] == 'STORAGE_3001'
    assert entry['error']['context'] == {'key': 'draft'}
    assert entry['extra'] == {'tier': 'tab'}


def test_detailed_formatter_appends_audit_info():
    formatted = DetailedFormatter().format(_record(audit_info={'event_type': 'token_refresh'}))

    assert 'storage failed' in formatted
    assert 'token_refresh' in formatted


def test_log_structured_error_attaches_error(caplog):
    logger = logging.getLogger('portal_client.test')
    error = ConfigurationError("Missing required setting: hmac.api_key", config_key='hmac.api_key')

    with caplog.at_level(logging.WARNING):
        log_structured_error(logger, error, level=logging.WARNING, command='sign')

    record = caplog.records[-1]
    assert record.error_info is error
    assert record.command == 'sign'
    assert record.levelno == logging.WARNING


def test_audit_logger_emits_structured_records(caplog):
    audit = AuditLogger()

    with caplog.at_level(logging.INFO, logger='audit'):
        audit.log_token_refresh('ada@example.com', 'refresh_failed', 'invalid_grant')
        audit.log_security_level_change('tab', 'memory_only', reason='production')

    refresh, change = [record.audit_info for record in caplog.records[-2:]]
    assert refresh['event_type'] == 'token_refresh'
    assert refresh['result'] == 'failure'
    assert refresh['context'] == {'outcome': 'refresh_failed', 'error_code': 'invalid_grant'}
    assert change['result'] == 'overridden'
    assert change['context']['reason'] == 'production'


def test_setup_logging_writes_audit_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    audit_file = tmp_path / 'audit' / 'audit.log'

    try:
        loggers = setup_logging(
            log_level=LogLevel.DEBUG,
            log_format=LogFormat.JSON,
            log_file=str(tmp_path / 'client.log'),
            enable_console=False,
            audit_file=str(audit_file)
        )
        AuditLogger().log_session_lifecycle('session-1', 'started', 'ada@example.com')
        for handler in loggers['audit'].handlers:
            handler.flush()

        entry = json.loads(audit_file.read_text().strip().splitlines()[-1])
        assert entry['audit']['session_id'] == 'session-1'
        assert entry['audit']['result'] == 'started'
        assert root.level == logging.DEBUG
    finally:
        audit = logging.getLogger('audit')
        for handler in audit.handlers[:]:
            handler.close()
            audit.removeHandler(handler)
        audit.propagate = True
        for handler in root.handlers[:]:
            handler.close()
            root.removeHandler(handler)
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
