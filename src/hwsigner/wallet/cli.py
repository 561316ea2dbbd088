#!/usr/bin/env python3
"""
Hardware wallet signing CLI.

Signs EIP-712 typed data documents and personal messages on a connected
Ledger or Trezor device.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from hwsigner.core import config
from hwsigner.core.hardware_wallet import HardwareWallet
from hwsigner.core.hardware_wallet_exceptions import HardwareWalletError
from hwsigner.core.logging_config import setup_logging
from hwsigner.core.typed_data import TypedDataDocument
from hwsigner.core.typed_signing import hash_personal_message, hash_typed_data

# Configure module logger
logger = logging.getLogger(__name__)


def _wallet_class(device: str) -> Any:
    # Device modules are imported on demand so a missing driver only
    # affects the device that needs it
    if device == "ledger":
        from hwsigner.core.hardware_wallet_ledger import LedgerHardwareWallet
        return LedgerHardwareWallet
    from hwsigner.core.hardware_wallet_trezor import TrezorHardwareWallet
    return TrezorHardwareWallet


_DRIVER_PACKAGES = {"ledger": "ledgerblue", "trezor": "trezor"}


def _get_hardware_wallet(args: argparse.Namespace) -> HardwareWallet:
    """Connect to the device selected on the command line, or exit."""
    device = "ledger" if args.ledger else "trezor" if args.trezor else None
    if device is None:
        print("Specify --ledger or --trezor", file=sys.stderr)
        sys.exit(1)

    try:
        wallet = _wallet_class(device)(bip32_path=args.path)
        wallet.connect()
    except ImportError:
        print(f"{device.title()} support requires: pip install {_DRIVER_PACKAGES[device]}", file=sys.stderr)
        sys.exit(1)
    except (HardwareWalletError, ConnectionError, OSError) as e:
        logger.warning(
            "Device connection failed: %s",
            e,
            extra={"event": "cli.connect.failed", "device": device},
        )
        print(f"Failed to connect to {device.title()}: {e}", file=sys.stderr)
        sys.exit(1)
    return wallet


def _read_typed_data(path: str) -> TypedDataDocument:
    with open(path, "r", encoding="utf-8") as f:
        return TypedDataDocument.from_dict(json.load(f))


def _hw_sign_typed(args: argparse.Namespace) -> int:
    """Sign an EIP-712 typed data document."""
    try:
        document = _read_typed_data(args.file)
    except (OSError, ValueError, HardwareWalletError) as e:
        print(f"Error: cannot read typed data: {e}", file=sys.stderr)
        return 1

    hw = _get_hardware_wallet(args)
    try:
        print(f"Signing {document.primary_type} typed data", file=sys.stderr)
        print("Please confirm on your device...", file=sys.stderr)
        signature = hw.sign_typed_data(document)
        digest = hash_typed_data(document)
    except HardwareWalletError as e:
        logger.error("Typed data signing error: %s", e, extra={"event": "cli.sign_typed.failed"})
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({"signature": "0x" + signature.hex(), "hash": "0x" + digest.hex()}, indent=2))
    else:
        print(f"Signature: 0x{signature.hex()}")
    return 0


def _hw_sign_message(args: argparse.Namespace) -> int:
    """Sign a personal message."""
    if args.message_file:
        try:
            with open(args.message_file, "rb") as f:
                message = f.read()
        except OSError as e:
            print(f"Error: cannot read message file: {e}", file=sys.stderr)
            return 1
    elif args.message:
        message = args.message.encode("utf-8")
    else:
        print("Reading message from stdin (Ctrl+D to end):", file=sys.stderr)
        message = sys.stdin.buffer.read()

    hw = _get_hardware_wallet(args)
    try:
        msg_preview = message[:64].hex() if len(message) > 64 else message.hex()
        print(f"Signing {len(message)} bytes: {msg_preview}{'...' if len(message) > 64 else ''}", file=sys.stderr)
        print("Please confirm on your device...", file=sys.stderr)
        signature = hw.sign_message(message)
    except HardwareWalletError as e:
        logger.error("Signing error: %s", e, extra={"event": "cli.sign_message.failed"})
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({
            "signature": "0x" + signature.hex(),
            "message_hash": "0x" + hash_personal_message(message).hex(),
        }, indent=2))
    else:
        print(f"Signature: 0x{signature.hex()}")
    return 0


def _add_device_arguments(parser: argparse.ArgumentParser) -> None:
    device = parser.add_mutually_exclusive_group()
    device.add_argument("--ledger", action="store_true", help="Use Ledger device")
    device.add_argument("--trezor", action="store_true", help="Use Trezor device")
    parser.add_argument(
        "--path",
        default=config.DEFAULT_DERIVATION_PATH,
        help=f"BIP32 derivation path (default: {config.DEFAULT_DERIVATION_PATH})",
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON")


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Hardware wallet signing utilities")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Log level (default: %(default)s)")
    subparsers = parser.add_subparsers(dest="command")

    sign_typed = subparsers.add_parser(
        "hw-sign-typed",
        help="Sign EIP-712 typed data with hardware wallet",
        description=(
            "Sign an eth_signTypedData_v4 JSON document on the device.\n\n"
            "Example: hwsigner hw-sign-typed --ledger --file permit.json"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_device_arguments(sign_typed)
    sign_typed.add_argument("--file", required=True, help="Typed data JSON file")
    sign_typed.set_defaults(func=_hw_sign_typed)

    sign_message = subparsers.add_parser(
        "hw-sign-message",
        help="Sign a personal message with hardware wallet",
    )
    _add_device_arguments(sign_message)
    sign_message.add_argument("--message", help="Message to sign (text)")
    sign_message.add_argument("--message-file", help="File containing message to sign")
    sign_message.set_defaults(func=_hw_sign_message)

    return parser


def main(argv: Any = None) -> int:
    """Program entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    setup_logging(
        name="hwsigner",
        log_file=config.LOG_FILE,
        level=args.log_level,
        environment=config.ENVIRONMENT,
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
