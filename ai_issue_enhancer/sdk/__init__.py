"""
SDK for the issue enhancer.

Provides the transport used to reach model backends.
"""

from .transport import HttpTransport, Transport

__all__ = ["HttpTransport", "Transport"]
