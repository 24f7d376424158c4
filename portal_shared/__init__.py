"""
Shared components for the Portal Client.

This package contains the structured exception hierarchy and the logging
configuration used by every client module.
"""
