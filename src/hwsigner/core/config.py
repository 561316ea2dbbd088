"""
hwsigner configuration

Settings are read from the environment once, at import time. Tests that need
different values reload this module after patching os.environ.
"""

from __future__ import annotations

import os

_TRUTHY = {"1", "true", "yes", "on"}


class ConfigurationError(Exception):
    """Raised when a configuration value is missing or invalid."""
    pass


def _get_bool(env_var: str, default: bool = False) -> bool:
    raw = os.getenv(env_var)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _get_version(env_var: str, default: str) -> tuple[int, int, int]:
    """Parse a dotted ``major.minor.patch`` version from the environment."""
    raw = os.getenv(env_var, default).strip().lstrip("v")
    parts = raw.split(".")
    if len(parts) != 3:
        raise ConfigurationError(f"{env_var} must be major.minor.patch, got {raw!r}")
    try:
        major, minor, patch = (int(part) for part in parts)
    except ValueError as exc:
        raise ConfigurationError(f"{env_var} must be numeric, got {raw!r}") from exc
    return major, minor, patch


# Derivation path used when a caller does not pass one
DEFAULT_DERIVATION_PATH = os.getenv("HWSIGNER_DERIVATION_PATH", "m/44'/60'/0'/0/0")

# Ledger Ethereum app version that introduced full EIP-712 support
LEDGER_MIN_EIP712_VERSION = _get_version("HWSIGNER_LEDGER_MIN_EIP712_VERSION", "1.5.0")

# Devices document a maximum of 10 BIP32 derivations per request
MAX_DERIVATION_DEPTH = 10
STRICT_PATH_LENGTH = _get_bool("HWSIGNER_STRICT_PATH_LENGTH", False)

# Logging
LOG_LEVEL = os.getenv("HWSIGNER_LOG_LEVEL", "INFO").strip().upper()
LOG_FILE = os.getenv("HWSIGNER_LOG_FILE") or None
ENVIRONMENT = os.getenv("HWSIGNER_ENVIRONMENT", "production")
