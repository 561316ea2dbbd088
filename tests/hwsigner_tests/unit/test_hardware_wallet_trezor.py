"""Tests for the Trezor EIP-712 walker and device adapter."""

import copy
from types import SimpleNamespace

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data
from trezorlib import messages
from trezorlib.exceptions import TrezorFailure

from hwsigner.core.hardware_wallet import DerivationPath
from hwsigner.core.hardware_wallet_exceptions import (
    ClosedDeviceError,
    DeviceFailureError,
    NestedArraysUnsupportedError,
    ProtocolError,
    SchemaError,
    TransportError,
)
from hwsigner.core.hardware_wallet_trezor import (
    TrezorHardwareWallet,
    TrezorTypedDataWalker,
    build_struct_ack,
    resolve_member_path,
)
from hwsigner.core.signature_envelope import to_device_order
from hwsigner.core.typed_data import TypedDataDocument

PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
PATH = "m/44'/60'/0'/0/0"

MAIL = {
    "types": {
        "EIP712Domain": [
            {"name": "name", "type": "string"},
            {"name": "version", "type": "string"},
            {"name": "chainId", "type": "uint256"},
            {"name": "verifyingContract", "type": "address"},
        ],
        "Person": [
            {"name": "name", "type": "string"},
            {"name": "wallet", "type": "address"},
        ],
        "Mail": [
            {"name": "from", "type": "Person"},
            {"name": "to", "type": "Person"},
            {"name": "contents", "type": "string"},
        ],
    },
    "primaryType": "Mail",
    "domain": {
        "name": "Ether Mail",
        "version": "1",
        "chainId": 1,
        "verifyingContract": "0xCcCCccccCCCCcCCCCCCcCcCccCcCCCcCcccccccC",
    },
    "message": {
        "from": {"name": "Cow", "wallet": "0xCD2a3d9F938E13CD947Ec05AbC7FE734Df8DD826"},
        "to": {"name": "Bob", "wallet": "0xbBbBBBBbbBBBbbbBbbBbbbbBBbBbbbbBbBbbBBbB"},
        "contents": "Hello, Bob!",
    },
}

GRID = {
    "types": {
        "EIP712Domain": [{"name": "name", "type": "string"}],
        "Grid": [{"name": "cells", "type": "uint8[2][]"}],
    },
    "primaryType": "Grid",
    "domain": {"name": "Grid"},
    "message": {"cells": [[1, 2], [3, 4], [5, 6]]},
}

DOMAIN_SEPARATOR = bytes.fromhex("f2cee375fa42b42143804025fc449deafd50cc031ca257e0b194a650a912090f")
MESSAGE_HASH = bytes.fromhex("c52c0ee5d84264471806290a3f2c4cecfc5490626bf912d01f240d7a274b371e")

DEVICE_SIGNATURE = b"\x1c" + b"\x33" * 32 + b"\x44" * 32
HOST_SIGNATURE = b"\x33" * 32 + b"\x44" * 32 + b"\x1c"


class ScriptedClient:
    """Replays canned device responses and records every request."""

    def __init__(self, responses, major_version=2):
        self.responses = list(responses)
        self.requests = []
        self.features = SimpleNamespace(major_version=major_version, minor_version=6, patch_version=3)

    def call(self, message):
        self.requests.append(message)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _document(data):
    return TypedDataDocument.from_dict(copy.deepcopy(data))


def _struct_request(name):
    return messages.EthereumTypedDataStructRequest(name=name)


def _value_request(*path):
    return messages.EthereumTypedDataValueRequest(member_path=list(path))


def _typed_signature(signature=DEVICE_SIGNATURE):
    return messages.EthereumTypedDataSignature(
        signature=signature,
        address="0xCD2a3d9F938E13CD947Ec05AbC7FE734Df8DD826",
    )


class TestStructAck:
    def test_struct_members_describe_device_types(self):
        ack = build_struct_ack(_document(MAIL), "Mail")
        sender = ack.members[0]

        assert [m.name for m in ack.members] == ["from", "to", "contents"]
        assert sender.type.data_type == messages.EthereumDataType.STRUCT
        assert sender.type.struct_name == "Person"
        assert sender.type.size == 2
        assert ack.members[2].type.data_type == messages.EthereumDataType.STRING

    def test_sized_types_carry_width(self):
        ack = build_struct_ack(_document(MAIL), "EIP712Domain")
        chain_id = ack.members[2].type

        assert chain_id.data_type == messages.EthereumDataType.UINT
        assert chain_id.size == 32
        assert ack.members[3].type.data_type == messages.EthereumDataType.ADDRESS

    def test_last_array_suffix_is_outermost(self):
        cells = build_struct_ack(_document(GRID), "Grid").members[0].type

        assert cells.data_type == messages.EthereumDataType.ARRAY
        assert cells.size is None
        assert cells.entry_type.data_type == messages.EthereumDataType.ARRAY
        assert cells.entry_type.size == 2
        assert cells.entry_type.entry_type.data_type == messages.EthereumDataType.UINT
        assert cells.entry_type.entry_type.size == 1

    def test_undeclared_struct(self):
        with pytest.raises(SchemaError, match="Letter"):
            build_struct_ack(_document(MAIL), "Letter")


class TestMemberPath:
    def _trees(self, data):
        document = _document(data)
        return document.domain_tree(), document.message_tree()

    def test_primitive_values(self):
        domain, message = self._trees(MAIL)

        assert resolve_member_path(domain, message, [0, 0]) == (b"Ether Mail", False)
        assert resolve_member_path(domain, message, [0, 2]) == ((1).to_bytes(32, "big"), False)
        assert resolve_member_path(domain, message, [1, 1, 0]) == (b"Bob", False)
        assert resolve_member_path(domain, message, [1, 0, 1])[0] == bytes.fromhex(
            "cd2a3d9f938e13cd947ec05abc7fe734df8dd826"
        )

    def test_single_field_message(self):
        document = TypedDataDocument.from_dict(
            {
                "types": {"EIP712Domain": [], "Note": [{"name": "text", "type": "string"}]},
                "primaryType": "Note",
                "message": {"text": "x"},
            }
        )
        domain, message = document.domain_tree(), document.message_tree()

        assert resolve_member_path(domain, message, [1, 0]) == (b"x", False)
        with pytest.raises(ProtocolError, match="invalid field"):
            resolve_member_path(domain, message, [1, 5])

    def test_two_string_fields(self):
        document = TypedDataDocument.from_dict(
            {
                "types": {
                    "EIP712Domain": [],
                    "Mail": [{"name": "from", "type": "string"}, {"name": "to", "type": "string"}],
                },
                "primaryType": "Mail",
                "message": {"from": "x", "to": "y"},
            }
        )
        domain, message = document.domain_tree(), document.message_tree()

        assert resolve_member_path(domain, message, [1, 0]) == (b"\x78", False)
        assert resolve_member_path(domain, message, [1, 1]) == (b"y", False)
        with pytest.raises(ProtocolError):
            resolve_member_path(domain, message, [1, 5])

    def test_arrays_answer_with_their_length(self):
        domain, message = self._trees(GRID)

        assert resolve_member_path(domain, message, [1, 0]) == (b"\x00\x03", True)
        assert resolve_member_path(domain, message, [1, 0, 1]) == (b"\x00\x02", True)
        assert resolve_member_path(domain, message, [1, 0, 1, 0]) == (b"\x03", True)

    def test_bad_paths(self):
        domain, message = self._trees(MAIL)

        with pytest.raises(ProtocolError, match="cannot encode custom type"):
            resolve_member_path(domain, message, [1, 0])
        with pytest.raises(ProtocolError, match="expected struct or array"):
            resolve_member_path(domain, message, [1, 2, 0])
        with pytest.raises(ProtocolError):
            resolve_member_path(domain, message, [])


class TestWalker:
    def test_full_mail_flow(self):
        account = Account.from_key(PRIVATE_KEY)
        signed = account.sign_message(encode_typed_data(full_message=copy.deepcopy(MAIL)))
        client = ScriptedClient(
            [
                _struct_request("EIP712Domain"),
                _struct_request("Mail"),
                _struct_request("Person"),
                _value_request(0, 0),
                _value_request(0, 3),
                _value_request(1, 0, 0),
                _value_request(1, 2),
                _typed_signature(to_device_order(bytes(signed.signature))),
            ]
        )
        walker = TrezorTypedDataWalker(_document(MAIL), DerivationPath.parse(PATH))

        signature = walker.run(client)

        initial = client.requests[0]
        assert isinstance(initial, messages.EthereumSignTypedData)
        assert initial.primary_type == "Mail"
        assert initial.metamask_v4_compat is True
        assert initial.show_message_hash == MESSAGE_HASH
        assert list(initial.address_n) == list(DerivationPath.parse(PATH).components)

        acks = client.requests[1:4]
        assert [len(ack.members) for ack in acks] == [4, 3, 2]
        values = [request.value for request in client.requests[4:]]
        assert values == [
            b"Ether Mail",
            bytes.fromhex("cccccccccccccccccccccccccccccccccccccccc"),
            b"Cow",
            b"Hello, Bob!",
        ]

        recovered = Account.recover_message(encode_typed_data(full_message=copy.deepcopy(MAIL)), signature=signature)
        assert recovered == account.address

    def test_signature_is_rotated(self):
        client = ScriptedClient([_typed_signature()])
        walker = TrezorTypedDataWalker(_document(MAIL), DerivationPath.parse(PATH))

        assert walker.run(client) == HOST_SIGNATURE

    def test_undeclared_struct_stops_after_first_request(self):
        client = ScriptedClient([_struct_request("Letter"), _typed_signature()])
        walker = TrezorTypedDataWalker(_document(MAIL), DerivationPath.parse(PATH))

        with pytest.raises(SchemaError):
            walker.run(client)
        assert len(client.requests) == 1

    def test_missing_roots_send_nothing(self):
        client = ScriptedClient([])
        broken = dict(copy.deepcopy(MAIL), primaryType="Letter")
        walker = TrezorTypedDataWalker(_document(broken), DerivationPath.parse(PATH))

        with pytest.raises(SchemaError):
            walker.run(client)
        assert client.requests == []

    @pytest.mark.parametrize(
        "failure",
        [
            messages.Failure(code=messages.FailureType.FirmwareError, message="Invalid data"),
            TrezorFailure(messages.Failure(code=messages.FailureType.FirmwareError, message="Invalid data")),
        ],
    )
    def test_nested_array_failure(self, failure):
        client = ScriptedClient(
            [
                _struct_request("EIP712Domain"),
                _struct_request("Grid"),
                _value_request(1, 0, 0, 1),
                failure,
            ]
        )
        walker = TrezorTypedDataWalker(_document(GRID), DerivationPath.parse(PATH))

        with pytest.raises(NestedArraysUnsupportedError):
            walker.run(client)
        assert client.requests[-1].value == b"\x02"

    def test_failure_outside_nested_array(self):
        client = ScriptedClient(
            [
                _value_request(0, 0),
                messages.Failure(code=messages.FailureType.FirmwareError, message="Invalid data"),
            ]
        )
        walker = TrezorTypedDataWalker(_document(GRID), DerivationPath.parse(PATH))

        with pytest.raises(DeviceFailureError) as exc:
            walker.run(client)
        assert not isinstance(exc.value, NestedArraysUnsupportedError)
        assert exc.value.code == messages.FailureType.FirmwareError

    def test_unexpected_reply(self):
        client = ScriptedClient([messages.Success()])
        walker = TrezorTypedDataWalker(_document(MAIL), DerivationPath.parse(PATH))

        with pytest.raises(ProtocolError, match="unexpected reply"):
            walker.run(client)

    def test_transport_failure(self):
        client = ScriptedClient([OSError("usb gone")])
        walker = TrezorTypedDataWalker(_document(MAIL), DerivationPath.parse(PATH))

        with pytest.raises(TransportError, match="usb gone"):
            walker.run(client)


class TestTrezorHardwareWallet:
    def test_closed_device(self):
        wallet = TrezorHardwareWallet(bip32_path=PATH)

        with pytest.raises(ClosedDeviceError):
            wallet.sign_typed_data(MAIL)
        with pytest.raises(ClosedDeviceError):
            wallet.sign_message(b"hi")

    def test_legacy_firmware_signs_sub_hashes(self):
        client = ScriptedClient([_typed_signature()], major_version=1)
        wallet = TrezorHardwareWallet(bip32_path=PATH, client=client)

        assert wallet.sign_typed_data(MAIL) == HOST_SIGNATURE

        (request,) = client.requests
        assert isinstance(request, messages.EthereumSignTypedHash)
        assert request.domain_separator_hash == DOMAIN_SEPARATOR
        assert request.message_hash == MESSAGE_HASH

    def test_current_firmware_walks_typed_data(self):
        client = ScriptedClient([_typed_signature()])
        wallet = TrezorHardwareWallet(bip32_path=PATH, client=client)

        assert wallet.sign_typed_data(MAIL) == HOST_SIGNATURE
        assert isinstance(client.requests[0], messages.EthereumSignTypedData)
        assert str(wallet.version) == "2.6.3"

    def test_sign_message(self):
        client = ScriptedClient(
            [messages.EthereumMessageSignature(signature=DEVICE_SIGNATURE, address="0x" + "00" * 20)]
        )
        wallet = TrezorHardwareWallet(bip32_path=PATH, client=client)

        assert wallet.sign_message(b"hello") == HOST_SIGNATURE
        assert client.requests[0].message == b"hello"
        assert list(client.requests[0].address_n) == list(DerivationPath.parse(PATH).components)

    def test_connect_opens_first_device(self, monkeypatch):
        import trezorlib.client
        import trezorlib.transport

        opened = []

        class Client(ScriptedClient):
            def __init__(self, transport):
                super().__init__([])
                opened.append(transport)

        monkeypatch.setattr(trezorlib.transport, "enumerate_devices", lambda: ["usb-0", "usb-1"])
        monkeypatch.setattr(trezorlib.client, "TrezorClient", Client)
        wallet = TrezorHardwareWallet(bip32_path=PATH)

        assert wallet.connect() is True
        assert opened == ["usb-0"]
        assert str(wallet.version) == "2.6.3"

    def test_connect_without_device(self, monkeypatch):
        import trezorlib.transport

        monkeypatch.setattr(trezorlib.transport, "enumerate_devices", lambda: [])

        with pytest.raises(ConnectionError, match="No Trezor device"):
            TrezorHardwareWallet(bip32_path=PATH).connect()

    def test_installed_client_speaks_call_api(self):
        from trezorlib.client import TrezorClient

        assert callable(getattr(TrezorClient, "call", None))
