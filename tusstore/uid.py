"""Generation of random upload identifiers."""

import secrets


def uid() -> str:
    """Return 128 random bits from a strong source as 32 lowercase hex digits."""
    return secrets.token_hex(16)