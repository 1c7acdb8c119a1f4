"""
Exception classes for the capsule server.

Every start-up failure derives from BergelmirError; the command line turns
them into a diagnostic and a non-zero exit before any listener opens.
"""

from typing import Optional


class BergelmirError(Exception):
    """Base exception for all capsule errors."""

    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r})"

    def __str__(self) -> str:
        if not self.details:
            return self.message
        extra = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} ({extra})"


class ConfigError(BergelmirError):
    """Raised when the configuration file is missing or invalid."""

    pass


class HiddenServiceKeyError(BergelmirError):
    """Raised when the hidden service key file cannot be written."""

    pass


class CertificateError(BergelmirError):
    """Raised when the TLS certificate or key cannot be produced or persisted."""

    pass


class TorControlError(BergelmirError):
    """Raised when Tor cannot be started, reached, authenticated or provisioned."""

    pass


class ListenerError(BergelmirError):
    """Raised when a listening socket cannot be opened."""

    pass
