"""
Hardware wallet exception hierarchy for hwsigner.

Every failure raised while framing a request, exchanging it with a device or
validating the reply derives from HardwareWalletError. All of them are
terminal for the current call: the engines never retry, and a retry by the
caller restarts the whole exchange from the beginning.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class HardwareWalletError(Exception):
    """Base exception for all hardware wallet errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ==================== Session Errors ====================


class ClosedDeviceError(HardwareWalletError):
    """Raised when a signing call is issued without an open device session."""
    pass


class UnsupportedFirmwareError(HardwareWalletError):
    """Raised when the device firmware is too old for the requested feature."""

    def __init__(
        self,
        feature: str,
        required: Any,
        found: Any,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            f"{feature} requires firmware >= {required} (found version v{found})",
            **kwargs,
        )
        self.feature = feature
        self.required = required
        self.found = found


# ==================== Schema Errors ====================


class SchemaError(HardwareWalletError):
    """Raised when typed data is missing a required struct or value.

    Covers a missing EIP712Domain or primary type, a value that does not fit
    its declared type, and device queries referencing undeclared structs.
    """
    pass


class TypeParseError(SchemaError):
    """Raised when a field type expression cannot be resolved."""

    def __init__(self, message: str, type_expression: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.type_expression = type_expression


class UnknownTypeError(TypeParseError):
    """Type name is neither a declared struct nor a known primitive."""
    pass


class InvalidLengthError(TypeParseError):
    """Sized type carries a width that is not allowed."""
    pass


class InvalidTypeError(TypeParseError):
    """Primitive type carries a size suffix it does not accept."""
    pass


class InvalidDerivationPathError(HardwareWalletError):
    """Raised when a derivation path cannot be parsed or flattened."""
    pass


# ==================== Protocol Errors ====================


class ProtocolError(HardwareWalletError):
    """Raised when a device reply has an unexpected shape or kind."""
    pass


class NestedArraysUnsupportedError(HardwareWalletError):
    """Raised when the firmware rejects a value inside a nested array."""
    pass


# ==================== Transport Errors ====================


class TransportError(HardwareWalletError):
    """Raised when the underlying device exchange fails."""
    pass


class DeviceTransportError(TransportError):
    """APDU exchange failed with a status word."""

    def __init__(self, message: str, status_word: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_word = status_word


class DeviceFailureError(TransportError):
    """Device answered with a Failure message."""

    def __init__(self, message: str, code: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.code = code
