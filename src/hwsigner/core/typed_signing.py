"""
EIP-712 / EIP-191 hashing helpers.

Devices that cannot walk typed data themselves sign the two EIP-712
sub-hashes instead: the domain separator and the message struct hash. Both
are cut from the 66-byte digest preimage ``0x19 0x01 || domainSeparator ||
hashStruct(message)`` produced by eth_account.
"""

from __future__ import annotations

from typing import Any, Mapping, Tuple, Union

from eth_account.messages import SignableMessage, encode_defunct, encode_typed_data
from eth_utils import keccak

from hwsigner.core.hardware_wallet_exceptions import SchemaError
from hwsigner.core.typed_data import TypedDataDocument

EIP191_PREFIX = b"\x19"
EIP712_DIGEST_LENGTH = 66


def _as_document(document: Union[TypedDataDocument, Mapping[str, Any]]) -> TypedDataDocument:
    if isinstance(document, TypedDataDocument):
        return document
    return TypedDataDocument.from_dict(document)


def _signable(document: TypedDataDocument) -> SignableMessage:
    try:
        return encode_typed_data(full_message=document.to_dict())
    except (KeyError, TypeError, ValueError) as exc:
        raise SchemaError(f"error hashing typed data: {exc}") from exc


def typed_data_digest(document: Union[TypedDataDocument, Mapping[str, Any]]) -> bytes:
    """
    Return the 66-byte EIP-712 digest preimage.

    Args:
        document: Typed data document or its JSON dict form

    Returns:
        ``0x19 0x01 || domainSeparator || hashStruct(message)``

    Raises:
        SchemaError: If eth_account cannot encode the document
    """
    signable = _signable(_as_document(document))
    digest = EIP191_PREFIX + signable.version + signable.header + signable.body
    if len(digest) != EIP712_DIGEST_LENGTH:
        raise SchemaError(f"unexpected EIP-712 digest length: {len(digest)}")
    return digest


def typed_data_sub_hashes(
    document: Union[TypedDataDocument, Mapping[str, Any]],
) -> Tuple[bytes, bytes]:
    """Split the digest into (domain hash, message hash)."""
    digest = typed_data_digest(document)
    return digest[2:34], digest[34:66]


def hash_typed_data(document: Union[TypedDataDocument, Mapping[str, Any]]) -> bytes:
    """Keccak-256 of the EIP-712 digest, i.e. the hash that gets signed."""
    return keccak(typed_data_digest(document))


def hash_personal_message(message: Union[str, bytes]) -> bytes:
    """
    Hash a personal message (EIP-191 version 0x45).

    Args:
        message: Message to hash (string or bytes)

    Returns:
        32-byte Keccak-256 hash the device signs for personal_sign
    """
    if isinstance(message, str):
        message = message.encode("utf-8")
    signable = encode_defunct(primitive=message)
    return keccak(EIP191_PREFIX + signable.version + signable.header + signable.body)
