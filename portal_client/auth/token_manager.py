"""
Token Manager for the Portal Client.

This module decides when the held bearer token needs replacing, refreshes it
through the identity provider (silently first, interactively only when the
provider demands user interaction) and optionally checks a token's liveness
against the identity endpoint.
"""

import asyncio
import json
import logging
import math
import time
from enum import Enum
from typing import Any, Callable, List, Optional

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout
from jose.utils import base64url_decode

from portal_client.auth.identity_provider import (
    IdentityProvider, IdentityProviderError, TokenResponse
)
from portal_shared.exceptions import ReauthenticationRequiredError
from portal_shared.logging_config import AuditLogger

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_URL = 'https://graph.microsoft.com/v1.0/me'
DEFAULT_REFRESH_THRESHOLD_SECONDS = 5 * 60


class TokenState(Enum):
    """Lifecycle state of the held token."""
    FRESH = "fresh"
    EXPIRING = "expiring"
    REFRESHED_SILENT = "refreshed_silent"
    REFRESHED_INTERACTIVE = "refreshed_interactive"
    REFRESH_FAILED = "refresh_failed"


def parse_token_expiry(token: str) -> Optional[float]:
    """
    Extract the ``exp`` claim (epoch seconds) from a JWT without verifying it.

    Returns None when the token is not three dot-separated segments or the
    claim set cannot be decoded, or when ``exp`` is missing or not a finite
    number.
    """
    parts = token.split('.') if isinstance(token, str) else []
    if len(parts) != 3:
        logger.warning("Invalid JWT token format")
        return None

    try:
        claims = json.loads(base64url_decode(parts[1].encode('ascii')))
    except (ValueError, UnicodeError, TypeError) as e:
        logger.warning(f"Could not parse token, assuming expired: {e}")
        return None

    if not isinstance(claims, dict):
        logger.warning("Token claim set is not an object, assuming expired")
        return None

    exp = claims.get('exp')
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        logger.warning("Token has no numeric exp claim, assuming expired")
        return None

    try:
        expires_at = float(exp)
    except OverflowError:
        expires_at = math.inf
    if not math.isfinite(expires_at):
        logger.warning("Token exp claim is not finite, assuming expired")
        return None

    return expires_at


def _account_label(account: Any) -> Optional[str]:
    if account is None:
        return None
    if isinstance(account, dict):
        return account.get('username') or account.get('home_account_id')
    return getattr(account, 'username', None) or str(account)


class TokenManager:
    """
    Manages the bearer token's refresh lifecycle.

    One silent attempt, at most one interactive attempt, no retry loop.
    Concurrent callers are not de-duplicated: each call refreshes on its own.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        scopes: Optional[List[str]] = None,
        refresh_threshold_seconds: float = DEFAULT_REFRESH_THRESHOLD_SECONDS,
        graph_url: str = DEFAULT_GRAPH_URL,
        validation_timeout: float = 10.0,
        clock: Optional[Callable[[], float]] = None,
        http_session: Optional[ClientSession] = None
    ):
        self.identity_provider = identity_provider
        self.scopes = list(scopes or [])
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self.graph_url = graph_url
        self.validation_timeout = ClientTimeout(total=validation_timeout)
        self._clock = clock or time.time
        self._http_session = http_session

        self.state = TokenState.FRESH
        self._token_refresh_callbacks: List[Callable[[str], None]] = []
        self._audit_logger = AuditLogger()

        logger.info("Token manager initialized")

    def add_token_refresh_callback(self, callback: Callable[[str], None]) -> None:
        """
        Add callback for token refresh events.

        Args:
            callback: Function called with the new token
        """
        self._token_refresh_callbacks.append(callback)

    def _notify_token_refresh(self, new_token: str) -> None:
        for callback in self._token_refresh_callbacks:
            try:
                callback(new_token)
            except Exception as e:
                logger.error(f"Error in token refresh callback: {e}")

    def is_token_expiring(self, token: str) -> bool:
        """
        Check whether *token* expires within the refresh threshold.

        A token that cannot be decoded counts as expiring, so that the caller
        refreshes instead of sending a token of unknown validity.
        """
        expires_at = parse_token_expiry(token)
        if expires_at is None:
            self.state = TokenState.EXPIRING
            return True

        expiring = expires_at - self._clock() <= self.refresh_threshold_seconds
        if expiring:
            self.state = TokenState.EXPIRING
        return expiring

    async def get_fresh_token(self, account: Any) -> str:
        """
        Acquire a new access token for *account*.

        Args:
            account: Identity-provider account object

        Returns:
            New bearer token

        Raises:
            ReauthenticationRequiredError: The user has to log in again
        """
        label = _account_label(account)
        logger.info("Getting fresh token...")

        try:
            response = await self.identity_provider.acquire_token_silent(self.scopes, account)
            token = self._require_token(response)
        except IdentityProviderError as e:
            logger.error(f"Token refresh failed: {e.error_code}")
            if not e.requires_interaction:
                self._fail(label, e.error_code, e)
            return await self._interactive_fallback(label)
        except Exception as e:
            logger.error(f"Token refresh failed: {e}")
            self._fail(label, "unexpected_error", e)

        logger.info("Fresh token obtained")
        self._succeed(label, token, TokenState.REFRESHED_SILENT)
        return token

    async def ensure_fresh_token(self, account: Any, token: Optional[str] = None) -> str:
        """
        Return *token* if it is still comfortably valid, otherwise refresh it.

        Args:
            account: Identity-provider account object
            token: Currently held token, if any

        Returns:
            A token that is not about to expire
        """
        if token and not self.is_token_expiring(token):
            self.state = TokenState.FRESH
            return token
        return await self.get_fresh_token(account)

    async def validate_token_with_graph(self, token: str) -> bool:
        """
        Check *token* against the identity endpoint.

        Any failure, including network errors, reports the token as invalid.
        """
        headers = {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json'
        }

        try:
            if self._http_session is not None and not self._http_session.closed:
                return await self._request_identity(self._http_session, headers)

            async with aiohttp.ClientSession(timeout=self.validation_timeout) as session:
                return await self._request_identity(session, headers)

        except (ClientError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"Token validation failed: {e}")
            return False

    async def _request_identity(self, session: ClientSession, headers: dict) -> bool:
        async with session.get(self.graph_url, headers=headers) as response:
            valid = 200 <= response.status < 300
            if not valid:
                logger.info(f"Identity endpoint rejected token (status {response.status})")
            return valid

    async def _interactive_fallback(self, label: Optional[str]) -> str:
        logger.info("Silent refresh failed, trying interactive login...")

        try:
            response = await self.identity_provider.login_interactive(self.scopes)
            token = self._require_token(response)
        except IdentityProviderError as e:
            logger.error(f"Interactive login failed: {e.error_code}")
            self._audit_logger.log_authentication(label, "interactive", success=False,
                                                  failure_reason=e.error_code)
            self._fail(label, e.error_code, e)
        except Exception as e:
            logger.error(f"Interactive login failed: {e}")
            self._audit_logger.log_authentication(label, "interactive", success=False,
                                                  failure_reason="unexpected_error")
            self._fail(label, "unexpected_error", e)

        logger.info("Interactive login successful")
        self._audit_logger.log_authentication(label, "interactive", success=True)
        self._succeed(label, token, TokenState.REFRESHED_INTERACTIVE)
        return token

    @staticmethod
    def _require_token(response: Optional[TokenResponse]) -> str:
        if response is None or not response.access_token:
            raise IdentityProviderError("no_access_token", "No access token received")
        return response.access_token

    def _succeed(self, label: Optional[str], token: str, state: TokenState) -> None:
        self.state = state
        self._audit_logger.log_token_refresh(label, state.value)
        self._notify_token_refresh(token)

    def _fail(self, label: Optional[str], error_code: str, cause: Exception) -> None:
        self.state = TokenState.REFRESH_FAILED
        self._audit_logger.log_token_refresh(label, TokenState.REFRESH_FAILED.value, error_code)
        raise ReauthenticationRequiredError(
            context={'error_code': error_code},
            cause=cause
        ) from cause
