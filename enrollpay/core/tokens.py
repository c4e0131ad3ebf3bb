"""
Opaque bearer tokens for enrollment links.

Only the SHA-256 digest of a token is stored. The raw value exists just long
enough to be put into the link handed back to the CRM or admin.
"""
import hashlib
import re
import secrets
from typing import NamedTuple

TOKEN_BYTES = 32  # 256 bits of entropy, 64 hex chars
SUFFIX_LENGTH = 4

_TOKEN_RE = re.compile(r"^[0-9a-f]{%d}$" % (TOKEN_BYTES * 2))


class IssuedToken(NamedTuple):
    raw_token: str
    token_hash: str
    suffix: str


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def issue_token() -> IssuedToken:
    raw = secrets.token_hex(TOKEN_BYTES)
    return IssuedToken(raw_token=raw, token_hash=hash_token(raw), suffix=raw[-SUFFIX_LENGTH:])


def is_well_formed(raw_token) -> bool:
    """Shape check only. A well-formed token can still be unknown."""
    return isinstance(raw_token, str) and bool(_TOKEN_RE.match(raw_token))
