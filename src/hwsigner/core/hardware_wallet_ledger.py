"""
Ledger hardware wallet integration for hwsigner.

Implements the Ethereum app's EIP-712 "full implementation" flow: every struct
definition is uploaded, then the domain and message values, then the signing
request. See https://github.com/LedgerHQ/app-ethereum/blob/develop/doc/eip712.md.

All request frames are built before the first exchange, so a type or schema
error never leaves a half-uploaded struct definition on the device.

Dependencies:
- ledgerblue (for HID/APDU), only needed by connect()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, List, Mapping, Optional, Protocol, Union

from hwsigner.core import config
from hwsigner.core.hardware_wallet import DerivationPath, FirmwareVersion
from hwsigner.core.hardware_wallet_exceptions import (
    ClosedDeviceError,
    DeviceTransportError,
    HardwareWalletError,
    ProtocolError,
    SchemaError,
    TransportError,
    UnsupportedFirmwareError,
)
from hwsigner.core.signature_envelope import to_host_order
from hwsigner.core.type_resolver import DataKind
from hwsigner.core.typed_data import (
    DOMAIN_TYPE,
    ArrayNode,
    FieldDescriptor,
    PrimitiveNode,
    StructNode,
    TypedDataDocument,
    encode_leaf,
)

logger = logging.getLogger(__name__)

LEDGER_CLA = 0xE0
MAX_APDU_PAYLOAD = 0xFF

TYPE_DESC_HAS_SIZE = 0x40
TYPE_DESC_IS_ARRAY = 0x80


class LedgerOpcode(IntEnum):
    GET_APP_CONFIGURATION = 0x06
    SIGN_PERSONAL_MESSAGE = 0x08
    SIGN_TYPED_MESSAGE = 0x0C
    EIP712_SEND_STRUCT_DEF = 0x1A
    EIP712_SEND_STRUCT_IMPL = 0x1C


class LedgerParam1(IntEnum):
    COMPLETE_SEND = 0x00
    PARTIAL_SEND = 0x01
    FIRST_MESSAGE_CHUNK = 0x00
    SUBSEQUENT_MESSAGE_CHUNK = 0x80


class LedgerParam2(IntEnum):
    STRUCT_NAME = 0x00
    ROOT_STRUCT = 0x00
    FULL_IMPLEMENTATION = 0x01
    ARRAY = 0x0F
    STRUCT_FIELD = 0xFF


class LedgerChannel(Protocol):
    """Blocking request/response exchange with a Ledger app."""

    def exchange(self, opcode: int, p1: int, p2: int, payload: bytes) -> bytes:
        ...


@dataclass(frozen=True)
class LedgerFrame:
    """One APDU worth of request, before it is sent."""

    opcode: int
    p1: int
    p2: int
    payload: bytes


def _length_prefixed(data: bytes, what: str) -> bytes:
    if len(data) > 0xFF:
        raise SchemaError(f"{what} is too long for the device ({len(data)} bytes)")
    return bytes([len(data)]) + data


# ==================== Phase 1: struct definitions ====================


def encode_struct_field(document: TypedDataDocument, descriptor: FieldDescriptor) -> bytes:
    """
    Encode one struct member definition.

    Layout: ``[typeDesc][custom name]?[width]?[array levels]?[name]``.
    """
    canonical = document.resolve(descriptor)

    type_desc = int(canonical.kind)
    type_name = b""
    type_size = b""
    if canonical.kind is DataKind.CUSTOM:
        type_name = _length_prefixed(canonical.reference_name.encode("utf-8"), "struct name")
    elif canonical.is_sized:
        type_size = bytes([canonical.byte_width])
        type_desc |= TYPE_DESC_HAS_SIZE

    array_levels = b""
    if canonical.is_array:
        type_desc |= TYPE_DESC_IS_ARRAY
        array_levels = bytes([len(canonical.array_dimensions)])
        for length in canonical.array_dimensions:
            if length is None:
                array_levels += b"\x00"
            else:
                if length > 0xFF:
                    raise SchemaError(f"array length {length} of {descriptor.name} does not fit a byte")
                array_levels += bytes([1, length])

    return (
        bytes([type_desc])
        + type_name
        + type_size
        + array_levels
        + _length_prefixed(descriptor.name.encode("utf-8"), "field name")
    )


def struct_definition_frames(document: TypedDataDocument) -> List[LedgerFrame]:
    frames = []
    for name, fields in document.types.items():
        frames.append(
            LedgerFrame(
                LedgerOpcode.EIP712_SEND_STRUCT_DEF,
                0,
                LedgerParam2.STRUCT_NAME,
                name.encode("utf-8"),
            )
        )
        for descriptor in fields:
            frames.append(
                LedgerFrame(
                    LedgerOpcode.EIP712_SEND_STRUCT_DEF,
                    0,
                    LedgerParam2.STRUCT_FIELD,
                    encode_struct_field(document, descriptor),
                )
            )
    return frames


# ==================== Phase 2: struct values ====================


class _ValueFrameEmitter:
    """Walks a value tree and collects the struct-implementation frames."""

    def __init__(self) -> None:
        self.frames: List[LedgerFrame] = []

    def root(self, name: str, node: StructNode) -> None:
        self.frames.append(
            LedgerFrame(
                LedgerOpcode.EIP712_SEND_STRUCT_IMPL,
                LedgerParam1.COMPLETE_SEND,
                LedgerParam2.ROOT_STRUCT,
                name.encode("utf-8"),
            )
        )
        node.accept(self)

    def visit_struct(self, node: StructNode) -> None:
        for _descriptor, member in node.members:
            member.accept(self)

    def visit_array(self, node: ArrayNode) -> None:
        if len(node.items) > 0xFF:
            raise SchemaError(f"array {node.name} has {len(node.items)} elements, at most 255 fit a request")
        self.frames.append(
            LedgerFrame(
                LedgerOpcode.EIP712_SEND_STRUCT_IMPL,
                LedgerParam1.COMPLETE_SEND,
                LedgerParam2.ARRAY,
                bytes([len(node.items)]),
            )
        )
        for item in node.items:
            item.accept(self)

    def visit_primitive(self, node: PrimitiveNode) -> None:
        encoded = encode_leaf(node.canonical, node.value, node.name)
        if len(encoded) > 0xFFFF:
            raise SchemaError(f"value of field {node.name} is too long ({len(encoded)} bytes)")
        payload = len(encoded).to_bytes(2, "big") + encoded
        chunks = [payload[i : i + MAX_APDU_PAYLOAD] for i in range(0, len(payload), MAX_APDU_PAYLOAD)]
        for index, chunk in enumerate(chunks):
            last = index == len(chunks) - 1
            self.frames.append(
                LedgerFrame(
                    LedgerOpcode.EIP712_SEND_STRUCT_IMPL,
                    LedgerParam1.COMPLETE_SEND if last else LedgerParam1.PARTIAL_SEND,
                    LedgerParam2.STRUCT_FIELD,
                    chunk,
                )
            )


def struct_value_frames(document: TypedDataDocument) -> List[LedgerFrame]:
    emitter = _ValueFrameEmitter()
    emitter.root(DOMAIN_TYPE, document.domain_tree())
    emitter.root(document.primary_type, document.message_tree())
    return emitter.frames


def typed_data_frames(document: TypedDataDocument) -> List[LedgerFrame]:
    """All definition frames followed by all value frames."""
    document.require_roots()
    return struct_definition_frames(document) + struct_value_frames(document)


def personal_message_frames(path: DerivationPath, message: bytes) -> List[LedgerFrame]:
    """
    Frames for SIGN_PERSONAL_MESSAGE.

    Payload: ``[path][uint32 BE message length][message]``; anything beyond
    one APDU continues in SUBSEQUENT_MESSAGE_CHUNK frames.
    """
    payload = path.to_bytes() + len(message).to_bytes(4, "big") + message
    frames = []
    for offset in range(0, len(payload), MAX_APDU_PAYLOAD):
        p1 = LedgerParam1.FIRST_MESSAGE_CHUNK if offset == 0 else LedgerParam1.SUBSEQUENT_MESSAGE_CHUNK
        frames.append(
            LedgerFrame(
                LedgerOpcode.SIGN_PERSONAL_MESSAGE,
                p1,
                0,
                payload[offset : offset + MAX_APDU_PAYLOAD],
            )
        )
    return frames


# ==================== Encoder ====================


class LedgerTypedDataEncoder:
    """Drives one signing request over a LedgerChannel."""

    def __init__(self, channel: LedgerChannel) -> None:
        self.channel = channel

    def _exchange(self, frame: LedgerFrame) -> bytes:
        try:
            return bytes(self.channel.exchange(frame.opcode, frame.p1, frame.p2, frame.payload))
        except HardwareWalletError:
            raise
        except OSError as exc:
            raise TransportError(f"ledger exchange failed: {exc}") from exc

    def sign(self, path: DerivationPath, document: TypedDataDocument) -> bytes:
        """
        Upload typed data and request an EIP-712 signature.

        Returns:
            65-byte signature as r || s || v

        Raises:
            SchemaError: Missing EIP712Domain / primary type, or a bad value
            TypeParseError: A field type cannot be resolved
            ProtocolError: The device reply is not a 65-byte signature
            TransportError: The exchange failed
        """
        frames = typed_data_frames(document)
        logger.debug(
            "Uploading EIP-712 data to Ledger",
            extra={
                "event": "ledger.eip712.upload",
                "structs": len(document.types),
                "frames": len(frames),
            },
        )
        for frame in frames:
            self._exchange(frame)

        reply = self._exchange(
            LedgerFrame(
                LedgerOpcode.SIGN_TYPED_MESSAGE,
                0,
                LedgerParam2.FULL_IMPLEMENTATION,
                path.to_bytes(),
            )
        )
        return to_host_order(reply)

    def sign_personal_message(self, path: DerivationPath, message: bytes) -> bytes:
        reply = b""
        for frame in personal_message_frames(path, message):
            reply = self._exchange(frame)
        return to_host_order(reply)


# ==================== Transport adapter ====================


def _open_dongle(debug: bool = False) -> Any:
    try:
        from ledgerblue.comm import getDongle
        from ledgerblue.commException import CommException
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise ImportError("ledgerblue is required for Ledger support. pip install ledgerblue") from exc
    try:
        return getDongle(debug)
    except CommException as exc:
        raise DeviceTransportError(
            f"ledger not available: {exc.message}",
            status_word=exc.sw,
        ) from exc


class DongleChannel:
    """Adapts a ledgerblue dongle to the LedgerChannel contract."""

    def __init__(self, dongle: Any) -> None:
        try:
            from ledgerblue.commException import CommException
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise ImportError("ledgerblue is required for Ledger support. pip install ledgerblue") from exc
        self._dongle = dongle
        self._comm_exception = CommException

    def exchange(self, opcode: int, p1: int, p2: int, payload: bytes) -> bytes:
        if len(payload) > MAX_APDU_PAYLOAD:
            raise ProtocolError(f"APDU payload too long: {len(payload)} bytes")
        apdu = bytes([LEDGER_CLA, opcode, p1, p2, len(payload)]) + payload
        try:
            return bytes(self._dongle.exchange(apdu))
        except self._comm_exception as exc:
            raise DeviceTransportError(
                f"ledger returned status {exc.sw:#06x}: {exc.message}",
                status_word=exc.sw,
            ) from exc

    def close(self) -> None:
        self._dongle.close()


# ==================== Device adapter ====================


@dataclass
class LedgerHardwareWallet:
    bip32_path: str = config.DEFAULT_DERIVATION_PATH
    channel: Optional[LedgerChannel] = None
    version: FirmwareVersion = field(default_factory=lambda: FirmwareVersion(0, 0, 0))

    def connect(self) -> bool:
        self.channel = DongleChannel(_open_dongle())
        self.refresh_version()
        logger.info(
            "Ledger connected",
            extra={"event": "ledger.connect", "version": str(self.version)},
        )
        return True

    def refresh_version(self) -> FirmwareVersion:
        """Read the Ethereum app version (``[flags, major, minor, patch]``)."""
        if self.channel is None:
            raise ClosedDeviceError("Ledger session is not open")
        reply = self.channel.exchange(LedgerOpcode.GET_APP_CONFIGURATION, 0, 0, b"")
        if len(reply) < 4:
            raise ProtocolError(f"app configuration reply too short: {len(reply)} bytes")
        self.version = FirmwareVersion(reply[1], reply[2], reply[3])
        return self.version

    def _require_channel(self, feature: str) -> LedgerChannel:
        # A zero version means the Ethereum app is not running
        if self.channel is None or self.version.is_unknown:
            raise ClosedDeviceError("Ledger session is not open")
        minimum = FirmwareVersion.parse(config.LEDGER_MIN_EIP712_VERSION)
        if self.version.is_below(minimum):
            raise UnsupportedFirmwareError(f"Ledger {feature}", minimum, self.version)
        return self.channel

    def sign_message(self, message: bytes, path: Optional[str] = None) -> bytes:
        channel = self._require_channel("personal message signing")
        derivation = DerivationPath.parse(path or self.bip32_path)
        signature = LedgerTypedDataEncoder(channel).sign_personal_message(derivation, message)
        logger.info(
            "Ledger signed personal message",
            extra={"event": "ledger.sign_message.done", "message_size": len(message)},
        )
        return signature

    def sign_typed_data(
        self,
        document: Union[TypedDataDocument, Mapping[str, Any]],
        path: Optional[str] = None,
    ) -> bytes:
        channel = self._require_channel("EIP-712 signing")
        if not isinstance(document, TypedDataDocument):
            document = TypedDataDocument.from_dict(document)
        derivation = DerivationPath.parse(path or self.bip32_path)
        try:
            signature = LedgerTypedDataEncoder(channel).sign(derivation, document)
        except HardwareWalletError as exc:
            logger.warning(
                "Ledger EIP-712 signing failed: %s",
                exc,
                extra={"event": "ledger.sign_typed.failed", "error_type": type(exc).__name__},
            )
            raise
        logger.info(
            "Ledger signed typed data",
            extra={"event": "ledger.sign_typed.done", "primary_type": document.primary_type},
        )
        return signature
