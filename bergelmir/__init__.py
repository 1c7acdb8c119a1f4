"""
Bergelmir, a self-hosted Gemini capsule server with optional Tor onion service.
"""

from .config import VERSION

__version__ = VERSION
