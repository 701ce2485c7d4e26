"""
Signing Exceptions Module

Exception hierarchy for the image signing pipeline. Every error aborts the
signing run; the command-line layer reports ``code`` and ``message``.
"""

from typing import Any, Dict, Optional


class SigningError(Exception):
    """Base exception for all signing errors."""

    def __init__(self,
                 message: str,
                 code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or "SIGNING_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class ConfigurationError(SigningError):
    """Raised when required inputs are missing or invalid."""

    def __init__(self, message: str, option: Optional[str] = None):
        super().__init__(message, code="CONFIGURATION_ERROR",
                         details={'option': option})
        self.option = option


class SigningIOError(SigningError, OSError):
    """Raised when an input file cannot be read."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, code="IO_ERROR", details={'path': path})
        self.path = path


class KeyLoadError(SigningError):
    """Raised when a private key or certificate cannot be loaded."""

    def __init__(self, message: str, source: Optional[str] = None,
                 code: str = "KEY_LOAD_ERROR"):
        # Explicit base call; KeyMismatchError also inherits EnvelopeConstructionError
        SigningError.__init__(self, message, code=code, details={'source': source})
        self.source = source


class DigestError(SigningError):
    """Raised when the image layout is inconsistent with its format."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, code="DIGEST_ERROR", details={'path': path})
        self.path = path


class EnvelopeConstructionError(SigningError):
    """Raised when the signature envelope cannot be built."""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message, code="ENVELOPE_CONSTRUCTION_ERROR",
                         details={'reason': reason})
        self.reason = reason


class KeyMismatchError(KeyLoadError, EnvelopeConstructionError):
    """Raised when the private key does not belong to the certificate."""

    def __init__(self, message: str, source: Optional[str] = None):
        KeyLoadError.__init__(self, message, source=source, code="KEY_MISMATCH")
        self.reason = "key/certificate mismatch"


class ChainParseError(SigningError):
    """Raised when supplementary certificates cannot be read or parsed."""

    def __init__(self, message: str, path: Optional[str] = None,
                 block: Optional[int] = None):
        super().__init__(message, code="CHAIN_PARSE_ERROR",
                         details={'path': path, 'block': block})
        self.path = path
        self.block = block


class SerializationError(SigningError):
    """Raised when the output artifact cannot be produced."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message, code="SERIALIZATION_ERROR",
                         details={'path': path})
        self.path = path
