"""
hwsigner - EIP-712 and personal message signing on hardware wallets

Main Components:
- Type resolution: EIP-712 field type expressions to canonical types
- Ledger: one-shot struct definition and value upload over APDUs
- Trezor: device-driven struct and value queries over protobuf
- Legacy fallback: EIP-712 sub-hash signing for older firmware
"""

__version__ = "0.1.0"
__author__ = "hwsigner Development Team"

__all__ = []
