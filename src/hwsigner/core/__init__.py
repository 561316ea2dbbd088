"""
hwsigner Core Module

Typed data model, type resolution, signature envelope handling and the
Ledger / Trezor signing engines.
"""

__all__ = []
