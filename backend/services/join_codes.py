"""Short human-shareable join codes."""

import secrets

# 32 symbols: no 0/O and no 1/I, so codes read back correctly off a screen or over voice.
JOIN_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
JOIN_CODE_LENGTH = 6


def generate_join_code() -> str:
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))


def normalize_join_code(raw: str) -> str | None:
    """Upper-case and validate a user-typed code; None if it cannot be a join code."""
    code = (raw or "").strip().upper()
    if len(code) != JOIN_CODE_LENGTH or any(ch not in JOIN_CODE_ALPHABET for ch in code):
        return None
    return code
