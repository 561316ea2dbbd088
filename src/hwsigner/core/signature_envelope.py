"""
Signature envelope handling shared by the Ledger and Trezor engines.

Devices return signatures as ``[v, r, s]``; callers expect the Ethereum
``[r, s, v]`` layout.
"""

from __future__ import annotations

from dataclasses import dataclass

from hwsigner.core.hardware_wallet_exceptions import ProtocolError

SIGNATURE_LENGTH = 65


def _require_length(signature: bytes) -> None:
    if len(signature) != SIGNATURE_LENGTH:
        raise ProtocolError(
            f"invalid signature length: {len(signature)}",
            details={"expected": SIGNATURE_LENGTH, "found": len(signature)},
        )


def to_host_order(reply: bytes) -> bytes:
    """Rotate a device reply ``[v, r, s]`` left by one byte to ``[r, s, v]``."""
    _require_length(reply)
    return bytes(reply[1:]) + bytes(reply[:1])


def to_device_order(signature: bytes) -> bytes:
    """Inverse of to_host_order."""
    _require_length(signature)
    return bytes(signature[-1:]) + bytes(signature[:-1])


@dataclass(frozen=True)
class SignatureEnvelope:
    recovery_id: int
    r: bytes
    s: bytes

    @classmethod
    def from_device(cls, reply: bytes) -> "SignatureEnvelope":
        _require_length(reply)
        return cls(recovery_id=reply[0], r=bytes(reply[1:33]), s=bytes(reply[33:65]))

    @classmethod
    def from_host(cls, signature: bytes) -> "SignatureEnvelope":
        return cls.from_device(to_device_order(signature))

    def to_bytes(self) -> bytes:
        """Host order ``[r, s, v]``."""
        return self.r + self.s + bytes([self.recovery_id])
