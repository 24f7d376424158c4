"""
Portal session context.

A PortalSession exists from login to logout and owns everything with session
lifetime: the tiered session store, the request signer, the token manager and
the HTTP client. Nothing here is a module-level singleton.
"""

import logging
from typing import Any, Dict, Optional, Union

from portal_client.api_client import PortalAPIClient, RetryConfig
from portal_client.auth.identity_provider import IdentityProvider
from portal_client.auth.request_signer import HttpMethod, RequestSigner
from portal_client.auth.session_store import TieredSessionStore
from portal_client.auth.token_manager import TokenManager
from portal_client.config import PortalConfiguration
from portal_shared.exceptions import ReauthenticationRequiredError
from portal_shared.logging_config import AuditLogger

logger = logging.getLogger(__name__)


class PortalSession:
    """
    Session-lifetime container for the portal client.

    Usage::

        async with PortalSession(config, provider, account) as session:
            profile = await session.request('GET', '/api/profile')
    """

    def __init__(
        self,
        config: PortalConfiguration,
        identity_provider: IdentityProvider,
        account: Any = None,
        session_id: Optional[str] = None,
        session_key: Optional[bytes] = None
    ):
        self.config = config
        self.identity_provider = identity_provider
        self.account = account
        self._session_id = session_id
        self._session_key = session_key
        self._access_token: Optional[str] = None
        self._audit_logger = AuditLogger()

        self.store: Optional[TieredSessionStore] = None
        self.signer: Optional[RequestSigner] = None
        self.token_manager: Optional[TokenManager] = None
        self.api_client: Optional[PortalAPIClient] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.store.session_id if self.store else self._session_id

    @property
    def started(self) -> bool:
        return self.store is not None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        """
        Build the session's components from configuration.

        Raises:
            ConfigurationError: A signing setting is missing or invalid
        """
        if self.started:
            return

        self.config.validate()

        self.signer = RequestSigner(
            client_id=self.config.get_client_id(),
            shared_secret=self.config.get_shared_secret(),
            api_key=self.config.get_api_key(),
            origin=self.config.get_origin()
        )

        self.token_manager = TokenManager(
            self.identity_provider,
            scopes=self.config.get_scopes(),
            refresh_threshold_seconds=self.config.get_refresh_threshold_seconds(),
            graph_url=self.config.get_graph_url(),
            validation_timeout=self.config.get_validation_timeout()
        )
        self.token_manager.add_token_refresh_callback(self._on_token_refreshed)

        self.api_client = PortalAPIClient(
            base_url=self.config.get_base_url(),
            signer=self.signer,
            timeout=self.config.get_server_timeout(),
            retry_config=RetryConfig(
                max_retries=self.config.get_retry_attempts(),
                base_delay=self.config.get_retry_delay()
            )
        )

        self.store = TieredSessionStore(
            tier=self.config.get_security_level(),
            production=self.config.is_production(),
            session_id=self._session_id,
            session_key=self._session_key,
            storage_dir=self.config.get_session_storage_dir(),
            quota_bytes=self.config.get_session_quota_bytes()
        )

        self._audit_logger.log_session_lifecycle(self.session_id, "started", self._account_name())
        logger.info(f"Portal session {self.session_id} started (tier: {self.store.tier.value})")

    def _require_started(self) -> None:
        if not self.started:
            raise RuntimeError("Portal session has not been started")

    def _account_name(self) -> Optional[str]:
        if self.account is None:
            return None
        if isinstance(self.account, dict):
            return self.account.get('username')
        return getattr(self.account, 'username', None)

    def _on_token_refreshed(self, token: str) -> None:
        self._access_token = token

    async def get_access_token(self) -> str:
        """
        Return a token that is not about to expire, refreshing if needed.

        Raises:
            ReauthenticationRequiredError: The user has to log in again
        """
        self._require_started()
        try:
            self._access_token = await self.token_manager.ensure_fresh_token(
                self.account, self._access_token
            )
        except ReauthenticationRequiredError as e:
            self._access_token = None
            self._audit_logger.log_error(e, self.session_id)
            raise
        return self._access_token

    async def request(
        self,
        method: Union[str, HttpMethod],
        endpoint: str,
        data: Any = None,
        params: Optional[Dict[str, Any]] = None,
        content_type: str = 'application/json'
    ) -> Any:
        """
        Send an authenticated request.

        The token is made fresh before the request is signed, so a refresh
        never races the signature's timestamp.
        """
        self._require_started()
        verb = HttpMethod(method.upper()) if isinstance(method, str) else method
        token = await self.get_access_token()

        if verb == HttpMethod.GET:
            return await self.api_client.get(endpoint, params=params, access_token=token)
        if verb == HttpMethod.DELETE:
            return await self.api_client.delete(endpoint, access_token=token)
        if verb == HttpMethod.PATCH:
            return await self.api_client.patch(endpoint, data=data, access_token=token)
        if verb == HttpMethod.PUT:
            return await self.api_client.put(endpoint, data=data, content_type=content_type,
                                             access_token=token)
        if params:
            return await self.api_client.post_with_params(endpoint, params=params, data=data,
                                                          access_token=token)
        return await self.api_client.post(endpoint, data=data, content_type=content_type,
                                          access_token=token)

    async def logout(self) -> None:
        """Forget the held token and wipe the active tier."""
        self._require_started()
        self._access_token = None
        self.store.clear()
        self._audit_logger.log_session_lifecycle(self.session_id, "logged_out", self._account_name())
        logger.info(f"Portal session {self.session_id} logged out")

    async def close(self) -> None:
        """Dispose the session store and release the HTTP client."""
        if not self.started:
            return

        session_id = self.session_id
        self._access_token = None
        self.store.dispose()
        await self.api_client.close()
        self._audit_logger.log_session_lifecycle(session_id, "closed", self._account_name())
        logger.info(f"Portal session {session_id} closed")

        self._session_id = session_id
        self.store = None
