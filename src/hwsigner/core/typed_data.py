"""
EIP-712 typed data document and value tree.

A TypedDataDocument holds the standard ``{types, primaryType, domain,
message}`` structure. Before talking to a device, the engines turn the
domain and message into a tree of StructNode / ArrayNode / PrimitiveNode
values, resolving every field type up front. Walking that tree with a
visitor keeps the device encoders free of type-string parsing, and any
schema or type error surfaces before the first byte is sent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Protocol, Sequence, Tuple, TypeVar

from hwsigner.core.hardware_wallet_exceptions import SchemaError
from hwsigner.core.type_resolver import (
    CanonicalType,
    DataKind,
    resolve,
    resolve_type,
    strip_array_suffix,
)

DOMAIN_TYPE = "EIP712Domain"

T = TypeVar("T")


@dataclass(frozen=True)
class FieldDescriptor:
    """A struct member: its name and type expression."""

    name: str
    type: str

    @classmethod
    def from_value(cls, value: Any) -> "FieldDescriptor":
        if isinstance(value, FieldDescriptor):
            return value
        try:
            return cls(name=value["name"], type=value["type"])
        except (KeyError, TypeError) as exc:
            raise SchemaError(f"invalid field descriptor: {value!r}") from exc


@dataclass
class TypedDataDocument:
    """
    EIP-712 typed data to be signed.

    Attributes:
        types: Struct name -> ordered field descriptors
        primary_type: Name of the struct the message conforms to
        domain: EIP712Domain value
        message: Primary type value
    """

    types: Dict[str, List[FieldDescriptor]]
    primary_type: str
    domain: Dict[str, Any] = field(default_factory=dict)
    message: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TypedDataDocument":
        """Build a document from the JSON form used by eth_signTypedData_v4."""
        try:
            raw_types = data["types"]
            primary_type = data["primaryType"]
        except KeyError as exc:
            raise SchemaError(f"typed data is missing {exc.args[0]!r}") from exc
        types = {
            name: [FieldDescriptor.from_value(item) for item in fields]
            for name, fields in raw_types.items()
        }
        return cls(
            types=types,
            primary_type=primary_type,
            domain=data.get("domain") or {},
            message=data.get("message") or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "types": {
                name: [{"name": f.name, "type": f.type} for f in fields]
                for name, fields in self.types.items()
            },
            "primaryType": self.primary_type,
            "domain": self.domain,
            "message": self.message,
        }

    def fields_of(self, struct_name: str) -> List[FieldDescriptor]:
        """Declared fields of a struct, or an empty list when undeclared."""
        return self.types.get(struct_name) or []

    def require_roots(self) -> None:
        """Ensure EIP712Domain and the primary type are declared."""
        if DOMAIN_TYPE not in self.types:
            raise SchemaError(f"{DOMAIN_TYPE} type is required")
        if self.primary_type not in self.types:
            raise SchemaError(f"primary type {self.primary_type} not found in types")

    def resolve(self, descriptor: FieldDescriptor) -> CanonicalType:
        return resolve(self.types, descriptor)

    def domain_tree(self) -> "StructNode":
        return build_value_tree(self.types, DOMAIN_TYPE, self.domain, "domain")

    def message_tree(self) -> "StructNode":
        return build_value_tree(self.types, self.primary_type, self.message, "message")


# ==================== Value Tree ====================


class ValueVisitor(Protocol[T]):
    def visit_struct(self, node: "StructNode") -> T:
        ...

    def visit_array(self, node: "ArrayNode") -> T:
        ...

    def visit_primitive(self, node: "PrimitiveNode") -> T:
        ...


@dataclass(frozen=True)
class StructNode:
    type_expression: str
    canonical: CanonicalType
    name: str
    members: Tuple[Tuple[FieldDescriptor, "ValueNode"], ...]

    def accept(self, visitor: ValueVisitor[T]) -> T:
        return visitor.visit_struct(self)


@dataclass(frozen=True)
class ArrayNode:
    type_expression: str
    canonical: CanonicalType
    name: str
    items: Tuple["ValueNode", ...]

    def accept(self, visitor: ValueVisitor[T]) -> T:
        return visitor.visit_array(self)


@dataclass(frozen=True)
class PrimitiveNode:
    type_expression: str
    canonical: CanonicalType
    name: str
    value: Any

    def accept(self, visitor: ValueVisitor[T]) -> T:
        return visitor.visit_primitive(self)


ValueNode = StructNode | ArrayNode | PrimitiveNode


def build_value_tree(
    types: Mapping[str, Sequence[FieldDescriptor]],
    type_expression: str,
    value: Any,
    name: str,
) -> Any:
    """
    Build the value tree for ``value`` declared as ``type_expression``.

    The outermost array level of a type is its last ``[..]`` suffix, so
    ``uint8[2][]`` is a dynamic list of two-element lists.

    Raises:
        SchemaError: A value is missing or does not match its declared shape
        TypeParseError: A field type cannot be resolved
    """
    if value is None:
        raise SchemaError(f"nil value for field {name}")

    canonical = resolve_type(types, type_expression)

    if canonical.is_array:
        if not isinstance(value, (list, tuple)):
            raise SchemaError(f"expected array for field {name}, got {type(value).__name__}")
        expected = canonical.array_dimensions[-1]
        if expected is not None and len(value) != expected:
            raise SchemaError(
                f"field {name} declares {expected} elements, got {len(value)}"
            )
        element_type = strip_array_suffix(type_expression)
        items = tuple(build_value_tree(types, element_type, item, name) for item in value)
        return ArrayNode(type_expression, canonical, name, items)

    if canonical.is_custom:
        if not isinstance(value, Mapping):
            raise SchemaError(f"expected struct for field {name}, got {type(value).__name__}")
        members = tuple(
            (descriptor, build_value_tree(types, descriptor.type, value.get(descriptor.name), descriptor.name))
            for descriptor in types[canonical.reference_name]
        )
        return StructNode(type_expression, canonical, canonical.reference_name, members)

    return PrimitiveNode(type_expression, canonical, name, value)


# ==================== Leaf Encoding ====================


def _decode_hex(value: str, name: str) -> bytes:
    digits = value[2:]
    if len(digits) % 2:
        digits = "0" + digits
    try:
        return bytes.fromhex(digits)
    except ValueError as exc:
        raise SchemaError(f"failed to decode hex string for field {name}: {value}") from exc


def _encode_integer(canonical: CanonicalType, value: int, name: str) -> bytes:
    if value < 0:
        if canonical.kind is not DataKind.INT:
            raise SchemaError(f"negative value for unsigned field {name}: {value}")
        bits = canonical.byte_width * 8
        if value < -(1 << (bits - 1)):
            raise SchemaError(f"value for field {name} does not fit int{bits}: {value}")
        return (value + (1 << bits)).to_bytes(canonical.byte_width, "big")
    return value.to_bytes((value.bit_length() + 7) // 8, "big")


def encode_leaf(canonical: CanonicalType, value: Any, name: str = "") -> bytes:
    """
    Encode a primitive value the way both device families expect it.

    Strings of a ``string`` field are UTF-8, other strings must be 0x-prefixed
    hex (or decimal for integer fields). Booleans become a single byte,
    integers their minimal big-endian magnitude, and bytes pass through.
    """
    if canonical.kind is DataKind.STRING:
        if not isinstance(value, str):
            raise SchemaError(f"expected string for field {name}, got {type(value).__name__}")
        return value.encode("utf-8")
    if canonical.kind is DataKind.BOOL and not isinstance(value, bool):
        raise SchemaError(f"expected bool for field {name}, got {type(value).__name__}")

    if isinstance(value, str):
        if value[:2] in ("0x", "0X"):
            return _decode_hex(value, name)
        if canonical.kind in (DataKind.INT, DataKind.UINT):
            try:
                return _encode_integer(canonical, int(value, 10), name)
            except ValueError:
                pass
        raise SchemaError(f"invalid string value for field {name}: {value}")
    if isinstance(value, bool):
        return b"\x01" if value else b"\x00"
    if isinstance(value, int):
        return _encode_integer(canonical, value, name)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raise SchemaError(f"unsupported type for field {name}: {type(value).__name__}")


_PADDED_KINDS = (DataKind.INT, DataKind.UINT, DataKind.ADDRESS, DataKind.FIXED_BYTES)


def encode_padded_leaf(canonical: CanonicalType, value: Any, name: str = "") -> bytes:
    """encode_leaf, left-padded with zeros to the byte width of sized kinds."""
    encoded = encode_leaf(canonical, value, name)
    if canonical.kind in _PADDED_KINDS:
        width = canonical.byte_width
        if len(encoded) > width:
            raise SchemaError(
                f"value for field {name} is too long ({len(encoded)} bytes, expected {width})"
            )
        encoded = encoded.rjust(width, b"\x00")
    return encoded
