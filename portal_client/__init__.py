"""
Portal Client.

Client-side request authentication and session lifecycle for the portal API:
HMAC request signing, bearer token refresh and tiered session storage.
"""

__version__ = "1.0.0"
