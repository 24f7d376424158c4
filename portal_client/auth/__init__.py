"""
Authentication package for the Portal Client.

This package contains request signing, the identity-provider contract,
token lifecycle management and tiered session storage.
"""
