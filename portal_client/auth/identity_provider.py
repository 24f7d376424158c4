"""
Identity provider contract for the Portal Client.

The token lifecycle manager never talks to the identity provider's SDK
directly. It depends on this small interface so that the provider session
(MSAL, a device-code flow, a test double) can be swapped without touching
the refresh logic.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

# Error codes with which a provider rejects silent acquisition when the user
# has to take part. Only these trigger the interactive fallback.
CONSENT_REQUIRED = "consent_required"
INTERACTION_REQUIRED = "interaction_required"
LOGIN_REQUIRED = "login_required"

INTERACTION_REQUIRED_CODES = frozenset([
    CONSENT_REQUIRED,
    INTERACTION_REQUIRED,
    LOGIN_REQUIRED,
])


@dataclass(frozen=True)
class TokenResponse:
    """Result of a successful token acquisition."""
    access_token: Optional[str]
    expires_on: Optional[datetime] = None
    account: Optional[Any] = None


class IdentityProviderError(Exception):
    """
    Raised by an identity provider when token acquisition fails.

    Attributes:
        error_code: Provider error code, e.g. ``interaction_required``
    """

    def __init__(self, error_code: str, message: Optional[str] = None):
        super().__init__(message or error_code)
        self.error_code = error_code

    @property
    def requires_interaction(self) -> bool:
        return self.error_code in INTERACTION_REQUIRED_CODES


class LoginCancelledError(IdentityProviderError):
    """The user abandoned the interactive login prompt."""

    def __init__(self, message: str = "User cancelled the login flow"):
        super().__init__("user_cancelled", message)


class IdentityProvider(ABC):
    """Interface for the external identity-provider session."""

    @abstractmethod
    async def acquire_token_silent(self, scopes: List[str], account: Any) -> TokenResponse:
        """Acquire a token for *account* without prompting the user."""
        pass

    @abstractmethod
    async def login_interactive(self, scopes: List[str]) -> TokenResponse:
        """Prompt the user to sign in and return the resulting token."""
        pass
