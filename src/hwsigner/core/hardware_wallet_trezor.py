"""
Trezor hardware wallet integration for hwsigner.

Trezor firmware walks EIP-712 data itself: after the initial
EthereumSignTypedData request it asks the host for struct definitions
(EthereumTypedDataStructRequest) and for individual values addressed by a
member path (EthereumTypedDataValueRequest) until it returns a signature.
Model One devices (firmware 1.x) cannot do this and sign the two EIP-712
sub-hashes instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence, Tuple, Union

from trezorlib import messages
from trezorlib.exceptions import TrezorException, TrezorFailure

from hwsigner.core import config
from hwsigner.core.hardware_wallet import DerivationPath, FirmwareVersion
from hwsigner.core.hardware_wallet_exceptions import (
    ClosedDeviceError,
    DeviceFailureError,
    HardwareWalletError,
    NestedArraysUnsupportedError,
    ProtocolError,
    SchemaError,
    TransportError,
)
from hwsigner.core.signature_envelope import to_host_order
from hwsigner.core.type_resolver import CanonicalType, DataKind
from hwsigner.core.typed_data import (
    ArrayNode,
    PrimitiveNode,
    StructNode,
    TypedDataDocument,
    encode_padded_leaf,
)
from hwsigner.core.typed_signing import typed_data_sub_hashes

logger = logging.getLogger(__name__)

LEGACY_MAJOR_VERSION = 1

_DEVICE_KINDS = {
    DataKind.CUSTOM: messages.EthereumDataType.STRUCT,
    DataKind.INT: messages.EthereumDataType.INT,
    DataKind.UINT: messages.EthereumDataType.UINT,
    DataKind.ADDRESS: messages.EthereumDataType.ADDRESS,
    DataKind.BOOL: messages.EthereumDataType.BOOL,
    DataKind.STRING: messages.EthereumDataType.STRING,
    DataKind.FIXED_BYTES: messages.EthereumDataType.BYTES,
    DataKind.BYTES: messages.EthereumDataType.BYTES,
}


class TrezorChannel(Protocol):
    """Duplex protobuf exchange, as provided by trezorlib's client."""

    def call(self, message: Any) -> Any:
        ...


# ==================== Device replies ====================


@dataclass(frozen=True)
class SignatureReply:
    signature: bytes


@dataclass(frozen=True)
class StructQuery:
    name: str


@dataclass(frozen=True)
class ValueQuery:
    member_path: Tuple[int, ...]


DeviceReply = Union[SignatureReply, StructQuery, ValueQuery]


def decode_reply(message: Any) -> DeviceReply:
    """Map a device message onto one of the three reply kinds."""
    if isinstance(message, messages.Failure):
        raise DeviceFailureError(
            f"trezor: {message.message or 'device failure'}",
            code=message.code,
        )
    if isinstance(message, (messages.EthereumTypedDataSignature, messages.EthereumMessageSignature)):
        return SignatureReply(bytes(message.signature))
    if isinstance(message, messages.EthereumTypedDataStructRequest):
        return StructQuery(message.name)
    if isinstance(message, messages.EthereumTypedDataValueRequest):
        return ValueQuery(tuple(message.member_path))
    raise ProtocolError(f"trezor: unexpected reply {type(message).__name__}")


def _call(channel: TrezorChannel, request: Any) -> DeviceReply:
    try:
        response = channel.call(request)
    except TrezorFailure as exc:
        raise DeviceFailureError(
            f"trezor: {exc.message or 'device failure'}",
            code=exc.code,
        ) from exc
    except (TrezorException, OSError) as exc:
        raise TransportError(f"trezor exchange failed: {exc}") from exc
    return decode_reply(response)


# ==================== Struct definitions ====================


def field_type_for(document: TypedDataDocument, canonical: CanonicalType) -> messages.EthereumFieldType:
    """
    Describe a resolved type in the device vocabulary.

    Array levels wrap the element type one ARRAY per dimension, the last
    ``[..]`` suffix being the outermost.
    """
    data_type = _DEVICE_KINDS[canonical.kind]
    if canonical.kind is DataKind.CUSTOM:
        field_type = messages.EthereumFieldType(
            data_type=data_type,
            struct_name=canonical.reference_name,
            size=len(document.fields_of(canonical.reference_name)),
        )
    elif canonical.is_sized:
        field_type = messages.EthereumFieldType(data_type=data_type, size=canonical.byte_width)
    else:
        field_type = messages.EthereumFieldType(data_type=data_type)

    for length in canonical.array_dimensions:
        field_type = messages.EthereumFieldType(
            data_type=messages.EthereumDataType.ARRAY,
            size=length,
            entry_type=field_type,
        )
    return field_type


def build_struct_ack(document: TypedDataDocument, struct_name: str) -> messages.EthereumTypedDataStructAck:
    fields = document.fields_of(struct_name)
    if not fields:
        raise SchemaError(f"trezor: no fields for struct {struct_name}")
    members = [
        messages.EthereumStructMember(
            name=descriptor.name,
            type=field_type_for(document, document.resolve(descriptor)),
        )
        for descriptor in fields
    ]
    return messages.EthereumTypedDataStructAck(members=members)


# ==================== Value queries ====================


class _Descend:
    """Moves one member-path index down the value tree."""

    def __init__(self, member_path: Tuple[int, ...]) -> None:
        self.member_path = member_path
        self.depth = 1
        self.nested_array = False

    def _index(self, available: int, what: str) -> int:
        index = self.member_path[self.depth]
        if index >= available:
            raise ProtocolError(
                f"trezor: invalid {what} index {index} for path {list(self.member_path[: self.depth + 1])}"
            )
        return index

    def visit_struct(self, node: StructNode) -> Any:
        _descriptor, member = node.members[self._index(len(node.members), f"field ({node.name})")]
        if len(member.canonical.array_dimensions) > 1:
            self.nested_array = True
        return member

    def visit_array(self, node: ArrayNode) -> Any:
        return node.items[self._index(len(node.items), "array")]

    def visit_primitive(self, node: PrimitiveNode) -> Any:
        raise ProtocolError(
            f"trezor: expected struct or array at path {list(self.member_path[: self.depth])}, "
            f"got {node.type_expression}"
        )


class _EncodeTerminal:
    """Encodes the node a member path ends on."""

    def __init__(self, member_path: Tuple[int, ...]) -> None:
        self.member_path = member_path

    def visit_struct(self, node: StructNode) -> bytes:
        raise ProtocolError(
            f"trezor: cannot encode custom type {node.name} at path {list(self.member_path)}"
        )

    def visit_array(self, node: ArrayNode) -> bytes:
        if len(node.items) > 0xFFFF:
            raise ProtocolError(f"trezor: array {node.name} is too long ({len(node.items)} elements)")
        return len(node.items).to_bytes(2, "big")

    def visit_primitive(self, node: PrimitiveNode) -> bytes:
        return encode_padded_leaf(node.canonical, node.value, node.name)


def resolve_member_path(
    domain: StructNode,
    message: StructNode,
    member_path: Sequence[int],
) -> Tuple[bytes, bool]:
    """
    Resolve a value request against the domain and message trees.

    The first index picks the root (0 for the domain, anything else for the
    message); each further index selects a struct member by position or an
    array element.

    Returns:
        (encoded value, whether a field with nested arrays was traversed)
    """
    path = tuple(member_path)
    if not path:
        raise ProtocolError("trezor: empty member path")
    node: Any = domain if path[0] == 0 else message
    descend = _Descend(path)
    while descend.depth < len(path):
        node = node.accept(descend)
        descend.depth += 1
    return node.accept(_EncodeTerminal(path)), descend.nested_array


# ==================== Walker ====================


class TrezorTypedDataWalker:
    """Answers device queries for one EIP-712 signing request."""

    def __init__(self, document: TypedDataDocument, path: DerivationPath) -> None:
        self.document = document
        self.path = path

    def initial_request(self, message_hash: bytes) -> messages.EthereumSignTypedData:
        return messages.EthereumSignTypedData(
            address_n=list(self.path.components),
            primary_type=self.document.primary_type,
            metamask_v4_compat=True,
            show_message_hash=message_hash,
        )

    def run(self, channel: TrezorChannel) -> bytes:
        """
        Drive the exchange until the device returns a signature.

        Returns:
            65-byte signature as r || s || v

        Raises:
            SchemaError: A struct the device asks for is undeclared
            ProtocolError: A query does not match the data, or an unexpected reply
            NestedArraysUnsupportedError: The firmware failed on a nested array value
            TransportError: The exchange failed
        """
        self.document.require_roots()
        domain = self.document.domain_tree()
        message = self.document.message_tree()
        _domain_hash, message_hash = typed_data_sub_hashes(self.document)

        request: Any = self.initial_request(message_hash)
        nested_array = False
        rounds = 0
        while True:
            try:
                reply = _call(channel, request)
            except DeviceFailureError as exc:
                if nested_array and exc.code == messages.FailureType.FirmwareError:
                    raise NestedArraysUnsupportedError(
                        "trezor: nested arrays are not supported by this firmware version"
                    ) from exc
                raise
            nested_array = False
            rounds += 1

            if isinstance(reply, SignatureReply):
                logger.debug(
                    "Trezor returned typed data signature",
                    extra={"event": "trezor.eip712.signature", "rounds": rounds},
                )
                return to_host_order(reply.signature)
            if isinstance(reply, StructQuery):
                request = build_struct_ack(self.document, reply.name)
            else:
                value, nested_array = resolve_member_path(domain, message, reply.member_path)
                request = messages.EthereumTypedDataValueAck(value=value)


# ==================== Device adapter ====================


@dataclass
class TrezorHardwareWallet:
    bip32_path: str = config.DEFAULT_DERIVATION_PATH
    client: Optional[Any] = None

    def connect(self) -> bool:
        try:
            from trezorlib.client import TrezorClient
            from trezorlib.transport import enumerate_devices
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise ImportError("trezorlib is required for Trezor support. pip install trezor") from exc
        try:
            devices = enumerate_devices()
            if not devices:
                raise ConnectionError("No Trezor device found.")
            self.client = TrezorClient(devices[0])
        except TrezorException as exc:
            raise TransportError(f"trezor connection failed: {exc}") from exc
        logger.info(
            "Trezor connected",
            extra={"event": "trezor.connect", "version": str(self.version)},
        )
        return True

    @property
    def version(self) -> FirmwareVersion:
        if self.client is None:
            return FirmwareVersion(0, 0, 0)
        features = self.client.features
        return FirmwareVersion(features.major_version, features.minor_version, features.patch_version)

    def _require_client(self) -> TrezorChannel:
        if self.client is None:
            raise ClosedDeviceError("Trezor session is not open")
        return self.client

    def sign_message(self, message: bytes, path: Optional[str] = None) -> bytes:
        client = self._require_client()
        derivation = DerivationPath.parse(path or self.bip32_path)
        reply = _call(
            client,
            messages.EthereumSignMessage(address_n=list(derivation.components), message=message),
        )
        if not isinstance(reply, SignatureReply):
            raise ProtocolError(f"trezor: expected a signature, got {type(reply).__name__}")
        return to_host_order(reply.signature)

    def sign_typed_hash(self, domain_hash: bytes, message_hash: bytes, path: Optional[str] = None) -> bytes:
        """Sign precomputed EIP-712 sub-hashes (the only mode firmware 1.x supports)."""
        client = self._require_client()
        derivation = DerivationPath.parse(path or self.bip32_path)
        reply = _call(
            client,
            messages.EthereumSignTypedHash(
                address_n=list(derivation.components),
                domain_separator_hash=domain_hash,
                message_hash=message_hash,
            ),
        )
        if not isinstance(reply, SignatureReply):
            raise ProtocolError(f"trezor: expected a signature, got {type(reply).__name__}")
        return to_host_order(reply.signature)

    def sign_typed_data(
        self,
        document: Union[TypedDataDocument, Mapping[str, Any]],
        path: Optional[str] = None,
    ) -> bytes:
        client = self._require_client()
        if not isinstance(document, TypedDataDocument):
            document = TypedDataDocument.from_dict(document)

        if self.version.major == LEGACY_MAJOR_VERSION:
            # Legacy firmware cannot walk typed data; fall back to hash signing
            document.require_roots()
            domain_hash, message_hash = typed_data_sub_hashes(document)
            logger.info(
                "Trezor firmware 1.x, signing EIP-712 sub-hashes",
                extra={"event": "trezor.sign_typed.legacy", "version": str(self.version)},
            )
            return self.sign_typed_hash(domain_hash, message_hash, path)

        derivation = DerivationPath.parse(path or self.bip32_path)
        try:
            signature = TrezorTypedDataWalker(document, derivation).run(client)
        except HardwareWalletError as exc:
            logger.warning(
                "Trezor EIP-712 signing failed: %s",
                exc,
                extra={"event": "trezor.sign_typed.failed", "error_type": type(exc).__name__},
            )
            raise
        logger.info(
            "Trezor signed typed data",
            extra={"event": "trezor.sign_typed.done", "primary_type": document.primary_type},
        )
        return signature
