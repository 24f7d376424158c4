"""
HMAC Request Signer for the Portal Client.

Every call to the portal backend carries a UTC timestamp and an HMAC-SHA256
signature over ``method + client_id + timestamp``. The backend recomputes the
signature with the shared secret and rejects requests whose timestamp falls
outside its tolerance window, so a signature is only useful for a short time.
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Union

from portal_shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)


class HttpMethod(Enum):
    """HTTP verbs the portal backend accepts."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

    @property
    def has_body(self) -> bool:
        return self not in (HttpMethod.GET, HttpMethod.DELETE)

    @property
    def is_idempotent(self) -> bool:
        return self in (HttpMethod.GET, HttpMethod.PUT, HttpMethod.DELETE)


TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'
DEFAULT_CONTENT_TYPE = 'application/json'

# Sent instead of a bearer token when the caller has none; the backend
# rejects it, so it only shows up in diagnostics.
UNRESOLVED_TOKEN_PLACEHOLDER = 'Bearer {{access_token}}'

# Client-hint overrides. The backend contract expects these literals exactly.
FINGERPRINT_HEADERS: Dict[str, str] = {
    'sec-ch-ua': '""',
    'sec-ch-ua-mobile': '?0',
    'sec-ch-ua-platform': '""',
    'User-Agent': 'CustomApp/1.0',
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Format *moment* as a second-precision UTC timestamp ending in ``Z``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _coerce_method(method: Union[str, HttpMethod]) -> HttpMethod:
    if isinstance(method, HttpMethod):
        return method
    try:
        return HttpMethod(str(method).upper())
    except ValueError:
        raise ValueError(f"Unsupported HTTP method: {method}") from None


@dataclass(frozen=True)
class SignedRequestHeaders:
    """
    Headers for a single outgoing request.

    Recomputed for every call and never persisted.
    """
    method: HttpMethod
    timestamp: str
    signature: str
    client_id: str
    api_key: str
    origin: str
    access_token: Optional[str] = None
    content_type: Optional[str] = None
    include_authorization: bool = True

    def to_headers(self) -> Dict[str, str]:
        """Render the outbound header mapping."""
        headers: Dict[str, str] = {}

        if self.content_type is not None:
            headers['Content-Type'] = self.content_type

        if self.include_authorization:
            headers['Authorization'] = (
                f'Bearer {self.access_token}' if self.access_token else UNRESOLVED_TOKEN_PLACEHOLDER
            )

        headers['x-apikey'] = self.api_key
        headers['Origin'] = self.origin
        headers['requestid'] = self.signature
        headers['timestamp'] = self.timestamp
        headers.update(FINGERPRINT_HEADERS)

        return headers


class RequestSigner:
    """
    Builds signed header sets for portal API calls.

    The signer is pure apart from reading the clock: the same method signed
    twice within one second yields the same ``requestid``. There is no nonce,
    replay protection relies on the server's timestamp tolerance.
    """

    def __init__(
        self,
        client_id: str,
        shared_secret: str,
        api_key: str,
        origin: str,
        clock: Optional[Callable[[], datetime]] = None
    ):
        for name, value in (
            ('client_id', client_id),
            ('shared_secret', shared_secret),
            ('api_key', api_key),
            ('origin', origin),
        ):
            if not isinstance(value, str) or not value.strip():
                raise ConfigurationError(
                    f"Request signer setting '{name}' must be a non-empty string",
                    error_code=ErrorCode.CONFIG_INVALID_VALUE,
                    config_key=f"hmac.{name}" if name != 'origin' else 'portal.origin'
                )

        self.client_id = client_id
        self.api_key = api_key
        self.origin = origin
        self._secret = shared_secret.encode('utf-8')
        self._clock = clock or _utc_now

        logger.debug(f"Request signer initialized for client {client_id}")

    def compute_signature(self, method: Union[str, HttpMethod], timestamp: str) -> str:
        """
        Compute the base64 HMAC-SHA256 signature for *method* at *timestamp*.

        Args:
            method: HTTP verb
            timestamp: Timestamp string exactly as it will be sent

        Returns:
            Base64-encoded digest
        """
        verb = _coerce_method(method)
        message = f"{verb.value}{self.client_id}{timestamp}".encode('utf-8')
        digest = hmac.new(self._secret, message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode('ascii')

    def generate_hash(self, method: Union[str, HttpMethod]) -> Tuple[str, str]:
        """Return ``(timestamp, signature)`` for *method* at the current time."""
        timestamp = format_timestamp(self._clock())
        return timestamp, self.compute_signature(method, timestamp)

    def sign(
        self,
        method: Union[str, HttpMethod],
        access_token: Optional[str] = None,
        content_type: Optional[str] = None
    ) -> SignedRequestHeaders:
        """
        Sign a request that carries an ``Authorization`` header.

        Args:
            method: HTTP verb
            access_token: Bearer token; the unresolved placeholder is sent if omitted
            content_type: Body content type for body-bearing verbs

        Returns:
            Signed header set
        """
        return self._build(method, access_token, content_type, include_authorization=True)

    def sign_without_authorization(
        self,
        method: Union[str, HttpMethod],
        content_type: Optional[str] = None
    ) -> SignedRequestHeaders:
        """Sign a request for an endpoint whose contract forbids ``Authorization``."""
        return self._build(method, None, content_type, include_authorization=False)

    def _build(
        self,
        method: Union[str, HttpMethod],
        access_token: Optional[str],
        content_type: Optional[str],
        include_authorization: bool
    ) -> SignedRequestHeaders:
        verb = _coerce_method(method)
        timestamp, signature = self.generate_hash(verb)

        return SignedRequestHeaders(
            method=verb,
            timestamp=timestamp,
            signature=signature,
            client_id=self.client_id,
            api_key=self.api_key,
            origin=self.origin,
            access_token=access_token,
            content_type=(content_type or DEFAULT_CONTENT_TYPE) if verb.has_body else None,
            include_authorization=include_authorization,
        )
