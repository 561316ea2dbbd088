"""
EIP-712 field type resolution.

Turns a field type expression such as ``uint256[3][]`` or ``Person`` into a
CanonicalType: the primitive kind (or referenced struct), its byte width and
its array dimensions. Both device encoders consume this instead of parsing
type strings themselves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Mapping, Optional, Tuple

from hwsigner.core.hardware_wallet_exceptions import (
    InvalidLengthError,
    InvalidTypeError,
    UnknownTypeError,
)

_ARRAY_SUFFIX = re.compile(r"\[(\d*)\]")
_TRAILING_ARRAY = re.compile(r"^(.*)\[(\d*)\]$")
_PREFIX_AND_DIGITS = re.compile(r"^(.+?)(\d*)$")

ADDRESS_WIDTH = 20
MAX_WIDTH = 32


class DataKind(IntEnum):
    """Resolved type kinds. Values are the Ledger type-descriptor codes."""

    CUSTOM = 0
    INT = 1
    UINT = 2
    ADDRESS = 3
    BOOL = 4
    STRING = 5
    FIXED_BYTES = 6
    BYTES = 7


_PRIMITIVE_PREFIXES = {
    "int": DataKind.INT,
    "uint": DataKind.UINT,
    "address": DataKind.ADDRESS,
    "bool": DataKind.BOOL,
    "string": DataKind.STRING,
    "bytes": DataKind.BYTES,
}


@dataclass(frozen=True)
class CanonicalType:
    """
    Resolved form of a field type expression.

    Attributes:
        kind: Primitive kind, or CUSTOM for a declared struct
        reference_name: Struct name for CUSTOM, primitive prefix otherwise
        byte_width: Width in bytes for sized kinds, 0 when not applicable
        array_dimensions: One entry per ``[..]`` suffix, outermost first;
            an int for fixed-length dimensions, None for dynamic ones
    """

    kind: DataKind
    reference_name: str
    byte_width: int = 0
    array_dimensions: Tuple[Optional[int], ...] = ()

    @property
    def is_array(self) -> bool:
        return bool(self.array_dimensions)

    @property
    def is_custom(self) -> bool:
        return self.kind is DataKind.CUSTOM

    @property
    def is_sized(self) -> bool:
        """True when the device expects an explicit byte width for this kind."""
        return self.kind in (DataKind.INT, DataKind.UINT, DataKind.FIXED_BYTES)


def strip_array_suffix(type_expression: str) -> str:
    """Remove the last ``[N]`` / ``[]`` suffix, yielding the element type."""
    match = _TRAILING_ARRAY.match(type_expression.strip())
    if not match:
        return type_expression.strip()
    return match.group(1)


def resolve_type(types: Mapping[str, Any], type_expression: str) -> CanonicalType:
    """
    Resolve a type expression against the declared struct types.

    Args:
        types: Declared struct types (name -> field list)
        type_expression: Type string as written in the field descriptor

    Returns:
        The canonical type

    Raises:
        UnknownTypeError: Base name is not a struct or known primitive
        InvalidLengthError: Size suffix is out of range or not a multiple of 8
        InvalidTypeError: Size suffix on a type that takes none
    """
    name = type_expression.strip()

    dimensions: Tuple[Optional[int], ...] = ()
    suffixes = _ARRAY_SUFFIX.findall(name)
    if suffixes:
        dimensions = tuple(int(length) if length else None for length in suffixes)
        name = name[: name.index("[")]

    if name in types:
        return CanonicalType(DataKind.CUSTOM, name, 0, dimensions)

    match = _PREFIX_AND_DIGITS.match(name)
    if not match or match.group(1) not in _PRIMITIVE_PREFIXES:
        raise UnknownTypeError(f"unknown type: {type_expression}", type_expression)
    prefix, digits = match.group(1), match.group(2)
    kind = _PRIMITIVE_PREFIXES[prefix]

    width = int(digits) if digits else 0
    if kind in (DataKind.INT, DataKind.UINT):
        if not digits:
            width = MAX_WIDTH
        elif width % 8 != 0:
            raise InvalidLengthError(
                f"invalid length for {type_expression}: {digits}", type_expression
            )
        else:
            width //= 8
    elif digits:
        if kind is not DataKind.BYTES:
            raise InvalidTypeError(f"invalid type: {type_expression}", type_expression)
        kind = DataKind.FIXED_BYTES
    elif kind is DataKind.ADDRESS:
        width = ADDRESS_WIDTH

    if digits and not 1 <= width <= MAX_WIDTH:
        raise InvalidLengthError(
            f"invalid length for {type_expression}: {digits}", type_expression
        )

    return CanonicalType(kind, prefix, width, dimensions)


def resolve(types: Mapping[str, Any], field: Any) -> CanonicalType:
    """Resolve the type of a field descriptor (anything with a ``type``)."""
    return resolve_type(types, field.type)
