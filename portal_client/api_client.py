"""
HTTP API Client for the Portal Client.

This module provides the per-verb request helpers used to talk to the portal
backend. Every attempt is signed by the RequestSigner. Network failures are
retried with exponential backoff (POST and PATCH only when no connection was
established), HTTP errors are mapped to client errors.
"""

import asyncio
import json
import logging
import random
from typing import Optional, Dict, Any, Union

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from portal_client.auth.request_signer import HttpMethod, RequestSigner

logger = logging.getLogger(__name__)


class APIClientError(Exception):
    """Base exception for API client errors."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationError(APIClientError):
    """The backend rejected the request's credentials (401)."""
    pass


class NetworkError(APIClientError):
    """Network-related errors."""
    pass


class ServerError(APIClientError):
    """Server-side errors."""
    pass


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class FormResponse:
    """Raw outcome of a form upload; the caller inspects validation errors."""

    def __init__(self, status: int, body: Any):
        self.status = status
        self.body = body

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def build_query(params: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Drop parameters whose value is None or an empty string."""
    if not params:
        return {}
    return {
        key: str(value) for key, value in params.items()
        if value is not None and value != ''
    }


class PortalAPIClient:
    """
    HTTP client for the portal backend.

    The client does not obtain tokens itself: callers pass the access token
    they got from the TokenManager, so that each request is signed with a
    token that has already finished refreshing.
    """

    def __init__(
        self,
        base_url: str,
        signer: RequestSigner,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.signer = signer
        self.timeout = ClientTimeout(total=timeout)
        self.retry_config = retry_config or RetryConfig()
        self._session: Optional[ClientSession] = None

        logger.info(f"API client initialized for server: {self.base_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            # skip_auto_headers keeps aiohttp from adding its own User-Agent
            self._session = ClientSession(
                timeout=self.timeout,
                skip_auto_headers=['User-Agent']
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint if endpoint.startswith('/') else '/' + endpoint}"

    def _headers(
        self,
        method: HttpMethod,
        access_token: Optional[str],
        content_type: Optional[str],
        authenticated: bool
    ) -> Dict[str, str]:
        if authenticated:
            signed = self.signer.sign(method, access_token, content_type)
        else:
            signed = self.signer.sign_without_authorization(method, content_type)
        return signed.to_headers()

    async def _make_request(
        self,
        method: HttpMethod,
        endpoint: str,
        data: Any = None,
        params: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
        authenticated: bool = True,
        content_type: Optional[str] = None,
        form: Optional[aiohttp.FormData] = None,
        retry: bool = True
    ) -> Any:
        """
        Make HTTP request with retry logic and error handling.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            data: Request body; JSON-encoded when the content type is JSON
            params: Query parameters
            access_token: Bearer token for the Authorization header
            authenticated: Whether to send the Authorization header at all
            content_type: Body content type (defaults to application/json)
            form: Multipart form body
            retry: Whether to retry on network failure

        Returns:
            Decoded JSON response body, or None for an empty body

        Raises:
            APIClientError: On request failure
        """
        await self._ensure_session()

        url = self._url(endpoint)
        query = build_query(params)
        content_type = content_type or 'application/json'

        body = None
        if form is not None:
            body = form
        elif method.has_body:
            if content_type == 'application/json':
                body = json.dumps(data if data is not None else {})
            else:
                body = data

        max_attempts = self.retry_config.max_retries if retry else 0
        attempt = 0
        last_exception = None

        while attempt <= max_attempts:
            # Re-sign on every attempt so the timestamp stays inside the server window
            headers = self._headers(method, access_token, content_type, authenticated)
            if form is not None:
                # aiohttp writes the multipart boundary into Content-Type itself
                headers.pop('Content-Type', None)

            try:
                logger.debug(f"Making {method.value} request to {url} (attempt {attempt + 1})")

                async with self._session.request(
                    method=method.value,
                    url=url,
                    params=query or None,
                    data=body,
                    headers=headers
                ) as response:
                    if form is not None:
                        return FormResponse(response.status, await self._read_body(response))

                    if 200 <= response.status < 300:
                        return await self._read_body(response)

                    await self._raise_for_status(response)

            except (ClientError, asyncio.TimeoutError, OSError) as e:
                last_exception = e
                logger.warning(f"Network error on attempt {attempt + 1}: {e}")

                if attempt >= max_attempts or not self._may_retry(method, e):
                    break

                delay = self.retry_config.delay_for(attempt)
                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)
                attempt += 1

        raise NetworkError(
            f"Network request failed after {attempt + 1} attempts: {last_exception}"
        )

    @staticmethod
    def _may_retry(method: HttpMethod, error: Exception) -> bool:
        """
        POST and PATCH are only re-sent when the connection was never made.

        Any later transport failure may have reached the server already.
        """
        return method.is_idempotent or isinstance(error, aiohttp.ClientConnectorError)

    @staticmethod
    async def _read_body(response) -> Any:
        text = await response.text()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    async def _raise_for_status(self, response) -> None:
        message = f"HTTP error! status: {response.status}"
        try:
            error_data = await response.json(content_type=None)
            if isinstance(error_data, dict) and error_data.get('message'):
                message = f"{message} - {error_data['message']}"
        except (json.JSONDecodeError, ValueError, ClientError):
            if response.reason:
                message = f"{message} - {response.reason}"

        if response.status == 401:
            raise AuthenticationError(message, response.status)
        if response.status >= 500:
            raise ServerError(message, response.status)
        raise APIClientError(message, response.status)

    # Per-verb helpers

    async def get(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None
    ) -> Any:
        return await self._make_request(HttpMethod.GET, endpoint, params=params,
                                        access_token=access_token)

    async def get_no_auth(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET for endpoints whose contract forbids the Authorization header."""
        return await self._make_request(HttpMethod.GET, endpoint, params=params,
                                        authenticated=False)

    async def post(
        self,
        endpoint: str,
        data: Any = None,
        content_type: str = 'application/json',
        access_token: Optional[str] = None
    ) -> Any:
        return await self._make_request(HttpMethod.POST, endpoint, data=data,
                                        content_type=content_type, access_token=access_token)

    async def put(
        self,
        endpoint: str,
        data: Any = None,
        content_type: str = 'application/json',
        access_token: Optional[str] = None
    ) -> Any:
        return await self._make_request(HttpMethod.PUT, endpoint, data=data,
                                        content_type=content_type, access_token=access_token)

    async def patch(self, endpoint: str, data: Any = None, access_token: Optional[str] = None) -> Any:
        return await self._make_request(HttpMethod.PATCH, endpoint, data=data,
                                        access_token=access_token)

    async def delete(self, endpoint: str, access_token: Optional[str] = None) -> Any:
        return await self._make_request(HttpMethod.DELETE, endpoint, access_token=access_token)

    async def post_with_params(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Any = None,
        access_token: Optional[str] = None
    ) -> Any:
        """POST with query parameters; an empty JSON object is sent when *data* is None."""
        return await self._make_request(HttpMethod.POST, endpoint, data=data or {},
                                        params=params, access_token=access_token)

    async def post_form_data(
        self,
        endpoint: str,
        form: Union[aiohttp.FormData, Dict[str, Any]],
        access_token: Optional[str] = None
    ) -> FormResponse:
        """Upload a multipart form. Returns the raw status instead of raising."""
        return await self._make_request(HttpMethod.POST, endpoint, form=self._as_form(form),
                                        content_type='multipart/form-data',
                                        access_token=access_token)

    async def put_form_data(
        self,
        endpoint: str,
        form: Union[aiohttp.FormData, Dict[str, Any]],
        access_token: Optional[str] = None
    ) -> FormResponse:
        return await self._make_request(HttpMethod.PUT, endpoint, form=self._as_form(form),
                                        content_type='multipart/form-data',
                                        access_token=access_token)

    @staticmethod
    def _as_form(form: Union[aiohttp.FormData, Dict[str, Any]]) -> aiohttp.FormData:
        if isinstance(form, aiohttp.FormData):
            return form
        form_data = aiohttp.FormData()
        for name, value in form.items():
            form_data.add_field(name, value if isinstance(value, (bytes, str)) else str(value))
        return form_data
