"""
Tests for the diagnostics command line interface.
"""

import json
import time
from unittest.mock import AsyncMock, Mock, patch

import pytest

from portal_client import main as cli
from portal_client.auth.token_manager import TokenManager

from conftest import API_KEY, make_token


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch.object(cli, 'setup_logging'):
        yield


@pytest.fixture
def environ(portal_environ):
    with patch.dict('os.environ', portal_environ, clear=True):
        yield portal_environ


def run(capsys, *argv):
    code = cli.main(['--config', '/nonexistent/client.conf', *argv])
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def test_sign_prints_headers_as_json(capsys, environ):
    code, out, _ = run(capsys, '--json', 'sign', 'post', '--token', 'abc')
    headers = json.loads(out)

    assert code == 0
    assert headers['Authorization'] == 'Bearer abc'
    assert headers['Content-Type'] == 'application/json'
    assert headers['x-apikey'] == API_KEY


def test_sign_without_auth_for_get(capsys, environ):
    code, out, _ = run(capsys, 'sign', 'GET', '--no-auth')

    assert code == 0
    assert 'Authorization' not in out
    assert 'Content-Type' not in out
    assert 'User-Agent: CustomApp/1.0' in out


def test_sign_with_missing_secret_is_configuration_error(capsys, environ):
    del environ['PORTAL_SHARED_SECRET']
    with patch.dict('os.environ', environ, clear=True):
        code, _, err = run(capsys, 'sign', 'GET')

    assert code == 2
    assert 'hmac.shared_secret' in err


def test_check_token_fresh_and_expiring(capsys, environ):
    fresh = make_token({'exp': time.time() + 3600})
    expiring = make_token({'exp': time.time() + 30})

    code, out, _ = run(capsys, '--json', 'check-token', fresh)
    assert code == 0
    assert json.loads(out)['expiring'] is False

    code, out, _ = run(capsys, '--json', 'check-token', expiring)
    assert code == 1
    assert json.loads(out)['expiring'] is True

    code, out, _ = run(capsys, 'check-token', 'not-a-token')
    assert code == 1
    assert 'Expires at: unknown' in out


def test_check_token_with_validation(capsys, environ):
    fresh = make_token({'exp': time.time() + 3600})

    with patch.object(TokenManager, 'validate_token_with_graph', AsyncMock(return_value=False)):
        code, out, _ = run(capsys, '--json', 'check-token', fresh, '--validate')

    assert code == 1
    assert json.loads(out)['valid'] is False


def test_assess_reports_tier(capsys, environ, no_keyring):
    code, out, _ = run(capsys, '--json', 'assess', '--tier', 'low')
    report = json.loads(out)

    assert code == 0
    assert report['tier'] == 'persistent'
    assert report['penetration_test_ready'] is False
    assert 'CSRF Vulnerable' in report['risks']


def test_assess_leaves_keyring_untouched(capsys, environ):
    keyring = Mock()
    with patch('portal_client.auth.session_store.keyring', keyring):
        code, out, _ = run(capsys, 'assess', '--tier', 'persistent')

    assert code == 0
    assert 'Security level: persistent' in out
    assert keyring.mock_calls == []


def test_assess_in_production_shows_override(capsys, environ):
    environ['PORTAL_ENVIRONMENT'] = 'production'
    with patch.dict('os.environ', environ, clear=True):
        code, out, _ = run(capsys, 'assess', '--tier', 'tab')

    assert code == 0
    assert 'Security level: memory_only' in out
    assert 'requested tab' in out


def test_assess_unknown_tier(capsys, environ):
    code, _, err = run(capsys, 'assess', '--tier', 'paranoid')

    assert code == 2
    assert 'paranoid' in err


def test_env_hides_secrets(capsys, environ):
    code, out, _ = run(capsys, '--json', 'env')
    description = json.loads(out)

    assert code == 0
    assert description['client_id'] == 'acme-portal'
    assert description['shared_secret_set'] is True
    assert 'test-shared-secret' not in out
