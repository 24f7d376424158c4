"""
Tests for the token lifecycle manager.

Expiry checks run against a fixed clock; refresh tests drive a mocked identity
provider; validation runs against a local aiohttp server standing in for the
identity endpoint.
"""

from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from portal_client.auth.identity_provider import (
    IdentityProvider, IdentityProviderError, LoginCancelledError, TokenResponse
)
from portal_client.auth.token_manager import TokenManager, TokenState, parse_token_expiry
from portal_shared.exceptions import ErrorCode, ReauthenticationRequiredError

from conftest import make_token

NOW = 1_700_000_000.0


def make_provider(silent=None, interactive=None):
    provider = Mock(spec=IdentityProvider)
    provider.acquire_token_silent = AsyncMock(**(silent or {}))
    provider.login_interactive = AsyncMock(**(interactive or {}))
    return provider


@pytest.fixture
def manager():
    return TokenManager(make_provider(), scopes=['User.Read'], clock=lambda: NOW)


def test_token_expiring_within_five_minutes(manager):
    assert manager.is_token_expiring(make_token({'exp': NOW + 60})) is True
    assert manager.is_token_expiring(make_token({'exp': NOW - 10})) is True
    assert manager.state == TokenState.EXPIRING


def test_token_exactly_at_threshold_is_expiring(manager):
    assert manager.is_token_expiring(make_token({'exp': NOW + 300})) is True


def test_token_beyond_threshold_is_fresh(manager):
    assert manager.is_token_expiring(make_token({'exp': NOW + 301})) is False
    assert manager.is_token_expiring(make_token({'exp': NOW + 3600})) is False


def test_custom_threshold():
    manager = TokenManager(make_provider(), refresh_threshold_seconds=30, clock=lambda: NOW)

    assert manager.is_token_expiring(make_token({'exp': NOW + 60})) is False
    assert manager.is_token_expiring(make_token({'exp': NOW + 30})) is True


@pytest.mark.parametrize("token", [
    "",
    "not-a-jwt",
    "only.two",
    "a.b.c.d",
    "header.%%%not-base64%%%.signature",
    "header.bm90LWpzb24.signature",  # "not-json"
])
def test_malformed_tokens_are_expiring(manager, token):
    assert manager.is_token_expiring(token) is True


@pytest.mark.parametrize("claims", [
    {},
    {'exp': 'tomorrow'},
    {'exp': None},
    {'exp': True},
    {'exp': float('nan')},
    {'exp': float('inf')},
    {'exp': float('-inf')},
    {'exp': 10 ** 400},
    ['exp', NOW + 3600],
])
def test_tokens_without_numeric_exp_are_expiring(manager, claims):
    assert manager.is_token_expiring(make_token(claims)) is True


def test_parse_token_expiry():
    assert parse_token_expiry(make_token({'exp': 1234})) == 1234.0
    assert parse_token_expiry("garbage") is None
    assert parse_token_expiry(make_token({'exp': float('nan')})) is None


@pytest.mark.asyncio
async def test_silent_refresh_success():
    provider = make_provider(silent={'return_value': TokenResponse(access_token='silent-token')})
    manager = TokenManager(provider, scopes=['User.Read'])
    refreshed = []
    manager.add_token_refresh_callback(refreshed.append)

    token = await manager.get_fresh_token({'username': 'ada@example.com'})

    assert token == 'silent-token'
    assert manager.state == TokenState.REFRESHED_SILENT
    assert refreshed == ['silent-token']
    provider.acquire_token_silent.assert_awaited_once_with(['User.Read'], {'username': 'ada@example.com'})
    provider.login_interactive.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ['interaction_required', 'consent_required', 'login_required'])
async def test_interaction_codes_trigger_exactly_one_interactive_login(code):
    provider = make_provider(
        silent={'side_effect': IdentityProviderError(code)},
        interactive={'return_value': TokenResponse(access_token='interactive-token')}
    )
    manager = TokenManager(provider, scopes=['User.Read'])

    token = await manager.get_fresh_token(None)

    assert token == 'interactive-token'
    assert manager.state == TokenState.REFRESHED_INTERACTIVE
    provider.acquire_token_silent.assert_awaited_once()
    provider.login_interactive.assert_awaited_once_with(['User.Read'])


@pytest.mark.asyncio
async def test_other_silent_failure_requires_reauthentication():
    provider = make_provider(silent={'side_effect': IdentityProviderError('invalid_grant')})
    manager = TokenManager(provider)

    with pytest.raises(ReauthenticationRequiredError) as exc_info:
        await manager.get_fresh_token(None)

    error = exc_info.value
    assert error.error_code == ErrorCode.AUTH_REAUTHENTICATION_REQUIRED
    assert error.user_message == "Token refresh failed. Please login again."
    assert error.context['error_code'] == 'invalid_grant'
    assert manager.state == TokenState.REFRESH_FAILED
    provider.login_interactive.assert_not_called()


@pytest.mark.asyncio
async def test_unexpected_silent_exception_requires_reauthentication():
    provider = make_provider(silent={'side_effect': RuntimeError("provider crashed")})
    manager = TokenManager(provider)

    with pytest.raises(ReauthenticationRequiredError):
        await manager.get_fresh_token(None)
    provider.login_interactive.assert_not_called()


@pytest.mark.asyncio
async def test_empty_silent_token_requires_reauthentication():
    provider = make_provider(silent={'return_value': TokenResponse(access_token=None)})
    manager = TokenManager(provider)

    with pytest.raises(ReauthenticationRequiredError) as exc_info:
        await manager.get_fresh_token(None)
    assert exc_info.value.context['error_code'] == 'no_access_token'


@pytest.mark.asyncio
async def test_cancelled_interactive_login_requires_reauthentication():
    provider = make_provider(
        silent={'side_effect': IdentityProviderError('interaction_required')},
        interactive={'side_effect': LoginCancelledError()}
    )
    manager = TokenManager(provider)

    with pytest.raises(ReauthenticationRequiredError) as exc_info:
        await manager.get_fresh_token(None)

    assert exc_info.value.context['error_code'] == 'user_cancelled'
    assert manager.state == TokenState.REFRESH_FAILED
    provider.login_interactive.assert_awaited_once()


@pytest.mark.asyncio
async def test_ensure_fresh_token_keeps_valid_token():
    provider = make_provider()
    manager = TokenManager(provider, clock=lambda: NOW)
    current = make_token({'exp': NOW + 3600})

    assert await manager.ensure_fresh_token(None, current) == current
    assert manager.state == TokenState.FRESH
    provider.acquire_token_silent.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_fresh_token_refreshes_expiring_token():
    provider = make_provider(silent={'return_value': TokenResponse(access_token='new-token')})
    manager = TokenManager(provider, clock=lambda: NOW)

    assert await manager.ensure_fresh_token(None, make_token({'exp': NOW + 10})) == 'new-token'
    assert await manager.ensure_fresh_token(None, None) == 'new-token'
    assert provider.acquire_token_silent.await_count == 2


@pytest_asyncio.fixture
async def identity_endpoint():
    seen = []

    async def me(request):
        seen.append(request.headers.get('Authorization'))
        if request.headers.get('Authorization') == 'Bearer good-token':
            return web.json_response({'displayName': 'Ada'})
        return web.json_response({'error': 'InvalidAuthenticationToken'}, status=401)

    app = web.Application()
    app.router.add_get('/v1.0/me', me)
    server = TestServer(app)
    await server.start_server()
    yield server, seen
    await server.close()


@pytest.mark.asyncio
async def test_validate_token_with_graph_accepts_2xx(identity_endpoint):
    server, seen = identity_endpoint
    manager = TokenManager(make_provider(), graph_url=str(server.make_url('/v1.0/me')))

    assert await manager.validate_token_with_graph('good-token') is True
    assert seen == ['Bearer good-token']


@pytest.mark.asyncio
async def test_validate_token_with_graph_rejects_non_2xx(identity_endpoint):
    server, _ = identity_endpoint
    manager = TokenManager(make_provider(), graph_url=str(server.make_url('/v1.0/me')))

    assert await manager.validate_token_with_graph('bad-token') is False


@pytest.mark.asyncio
async def test_validate_token_with_graph_network_failure_is_invalid(unused_tcp_port):
    manager = TokenManager(
        make_provider(),
        graph_url=f'http://127.0.0.1:{unused_tcp_port}/v1.0/me',
        validation_timeout=2.0
    )

    assert await manager.validate_token_with_graph('good-token') is False
