from __future__ import annotations

import re
import secrets

from eth_account import Account

_PRIVATE_KEY_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def generate_private_key() -> str:
    """Return a fresh custodial key as ``0x`` followed by 64 hex chars."""
    return "0x" + secrets.token_bytes(32).hex()


def derive_address(private_key: str) -> str:
    if not is_valid_private_key(private_key):
        raise ValueError("invalid private key format")
    return Account.from_key(private_key).address


def generate_secure_id() -> str:
    """16 hex chars from 8 random bytes; used for pending work ids."""
    return secrets.token_hex(8)


def is_valid_private_key(value: object) -> bool:
    return isinstance(value, str) and bool(_PRIVATE_KEY_RE.match(value))


def is_valid_address(value: object) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def format_address(address: str) -> str:
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"
