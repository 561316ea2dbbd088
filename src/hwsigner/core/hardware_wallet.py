"""
Hardware wallet integration for hwsigner.

Provides:
- Protocol interface implemented by the device adapters
- DerivationPath parsing and flattening into device request bytes
- FirmwareVersion ordering used for feature gating

Supported devices (via separate modules):
- Ledger: hardware_wallet_ledger.py
- Trezor: hardware_wallet_trezor.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Protocol, Tuple, Union, runtime_checkable

from hwsigner.core import config
from hwsigner.core.hardware_wallet_exceptions import InvalidDerivationPathError
from hwsigner.core.typed_data import TypedDataDocument

logger = logging.getLogger(__name__)

HARDENED_OFFSET = 0x80000000
MAX_UINT32 = 0xFFFFFFFF
MAX_PATH_COMPONENTS = 0xFF  # count is sent as a single byte


@runtime_checkable
class HardwareWallet(Protocol):
    """
    Protocol interface for hardware wallet implementations.

    Security Requirements:
    - Private keys MUST never leave the hardware device
    - All signing operations MUST occur on the device
    - Callers MUST NOT issue concurrent requests on one device handle
    """

    def connect(self) -> bool:
        """
        Open a session with the device.

        Raises:
            TransportError: If the device is not found or does not answer
        """
        ...

    def sign_message(self, message: bytes) -> bytes:
        """
        Sign a personal message (EIP-191) on the device.

        Returns:
            65-byte signature laid out as r || s || v
        """
        ...

    def sign_typed_data(self, document: Union[TypedDataDocument, Mapping[str, Any]]) -> bytes:
        """
        Sign EIP-712 typed data on the device.

        Returns:
            65-byte signature laid out as r || s || v
        """
        ...


@dataclass(frozen=True)
class DerivationPath:
    """BIP32 derivation path as a sequence of uint32 components."""

    components: Tuple[int, ...]

    def __post_init__(self) -> None:
        for component in self.components:
            if not 0 <= component <= MAX_UINT32:
                raise InvalidDerivationPathError(f"path component out of range: {component}")
        if len(self.components) > MAX_PATH_COMPONENTS:
            raise InvalidDerivationPathError(
                f"derivation path has {len(self.components)} components, at most {MAX_PATH_COMPONENTS} fit a request"
            )
        if len(self.components) > config.MAX_DERIVATION_DEPTH:
            if config.STRICT_PATH_LENGTH:
                raise InvalidDerivationPathError(
                    f"derivation path has {len(self.components)} components, "
                    f"devices accept at most {config.MAX_DERIVATION_DEPTH}"
                )
            logger.warning(
                "Derivation path exceeds documented device depth",
                extra={
                    "event": "hw.path.depth_exceeded",
                    "depth": len(self.components),
                    "max_depth": config.MAX_DERIVATION_DEPTH,
                },
            )

    @classmethod
    def parse(cls, path: Union[str, "DerivationPath", Iterable[int]]) -> "DerivationPath":
        """
        Parse ``m/44'/60'/0'/0/0`` notation (``'`` or ``h`` marks hardened).

        Already-flattened component sequences are accepted as-is.
        """
        if isinstance(path, DerivationPath):
            return path
        if not isinstance(path, str):
            return cls(tuple(int(component) for component in path))

        if not path.startswith("m/"):
            raise InvalidDerivationPathError("BIP32 path must start with m/")
        components = []
        for element in path[2:].split("/"):
            hardened = element.endswith(("'", "h", "H"))
            index_str = element[:-1] if hardened else element
            try:
                index = int(index_str)
            except ValueError as exc:
                raise InvalidDerivationPathError(f"invalid path element {element!r} in {path}") from exc
            if index < 0 or index >= HARDENED_OFFSET:
                raise InvalidDerivationPathError("Invalid index in BIP32 path")
            if hardened:
                index |= HARDENED_OFFSET
            components.append(index)
        return cls(tuple(components))

    def to_bytes(self) -> bytes:
        """``[count][big-endian uint32 per component]``."""
        result = len(self.components).to_bytes(1, "big")
        for component in self.components:
            result += component.to_bytes(4, "big")
        return result

    def __str__(self) -> str:
        parts = ["m"]
        for component in self.components:
            if component & HARDENED_OFFSET:
                parts.append(f"{component & ~HARDENED_OFFSET}'")
            else:
                parts.append(str(component))
        return "/".join(parts)


@dataclass(frozen=True)
class FirmwareVersion:
    """Device firmware or app version."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, version: Union[str, Tuple[int, int, int], "FirmwareVersion"]) -> "FirmwareVersion":
        if isinstance(version, FirmwareVersion):
            return version
        if isinstance(version, str):
            major, minor, patch = (int(part) for part in version.lstrip("v").split("."))
            return cls(major, minor, patch)
        major, minor, patch = version
        return cls(int(major), int(minor), int(patch))

    def is_below(self, other: "FirmwareVersion") -> bool:
        """Lexicographic (major, minor, patch) comparison."""
        if self.major != other.major:
            return self.major < other.major
        if self.minor != other.minor:
            return self.minor < other.minor
        return self.patch < other.patch

    @property
    def is_unknown(self) -> bool:
        return (self.major, self.minor, self.patch) == (0, 0, 0)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def default_derivation_path() -> DerivationPath:
    return DerivationPath.parse(config.DEFAULT_DERIVATION_PATH)
