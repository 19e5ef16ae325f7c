# passwords.py
"""
Password credentials: encode a plaintext password into a storable string and
verify a plaintext password against what is stored.

New credentials use werkzeug's PBKDF2-SHA256 format:
    pbkdf2:sha256:<iterations>$<salt>$<hex key>

Also accepted on verify:
  * "<b64 salt>:<b64 key>"  PBKDF2-SHA256, 100k iterations (older rows)
  * legacy rows holding the raw password or its unsalted SHA-256 hex digest.
    These are re-encoded on a successful check (write-on-read migration).
    Drop LEGACY_FALLBACK once GET /api/admin/credentials/legacy reports zero.
"""
import base64
import binascii
import hashlib
import hmac
import re
from typing import Callable, Optional

from werkzeug.security import check_password_hash, generate_password_hash

PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 24
METHOD = f"pbkdf2:sha256:{PBKDF2_ITERATIONS}"

B64_ITERATIONS = 100_000
B64_SALT_BYTES = 16
KEY_BYTES = 32

LEGACY_FALLBACK = True

_B64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}:[A-Za-z0-9+/]+={0,2}$")


def encode(plaintext: str) -> str:
    if not isinstance(plaintext, str) or plaintext == "":
        raise ValueError("password must be a non-empty string")
    return generate_password_hash(plaintext, method=METHOD, salt_length=SALT_LENGTH)


def credential_kind(stored: Optional[str]) -> str:
    """'werkzeug', 'pbkdf2_b64', 'legacy' or 'empty'."""
    if not stored or not isinstance(stored, str):
        return "empty"
    if stored.startswith(("pbkdf2:", "scrypt:")) and stored.count("$") == 2:
        return "werkzeug"
    if _B64_RE.match(stored):
        return "pbkdf2_b64"
    return "legacy"


def is_legacy(stored: Optional[str]) -> bool:
    return credential_kind(stored) in ("legacy", "empty")


def needs_upgrade(stored: Optional[str]) -> bool:
    return credential_kind(stored) != "werkzeug"


def _check_werkzeug(stored: str, plaintext: str) -> bool:
    try:
        return check_password_hash(stored, plaintext)
    except (ValueError, TypeError):
        # unknown method or non-numeric iteration count
        return False


def _check_b64(stored: str, plaintext: str) -> bool:
    salt_b64, key_b64 = stored.split(":", 1)
    try:
        salt = base64.b64decode(salt_b64, validate=True)
        expected = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError):
        return False
    if len(salt) != B64_SALT_BYTES or len(expected) != KEY_BYTES:
        return False
    derived = hashlib.pbkdf2_hmac("sha256", plaintext.encode("utf-8"), salt, B64_ITERATIONS, KEY_BYTES)
    return hmac.compare_digest(derived, expected)


def _legacy_matches(stored: str, plaintext: str) -> bool:
    raw = plaintext.encode("utf-8")
    if hmac.compare_digest(stored.encode("utf-8"), raw):
        return True
    digest = hashlib.sha256(raw).hexdigest()
    return hmac.compare_digest(stored.lower().encode("utf-8"), digest.encode("ascii"))


def verify(plaintext: str, stored: Optional[str],
           upgrade: Optional[Callable[[str], None]] = None) -> bool:
    """
    True when `plaintext` matches `stored`. Never raises on a bad `stored`.
    When the match went through an outdated format and `upgrade` is given,
    it is called with a freshly encoded credential for the caller to persist.
    """
    if not isinstance(plaintext, str) or not plaintext:
        return False
    kind = credential_kind(stored)
    if kind == "empty":
        return False
    if kind == "werkzeug":
        return _check_werkzeug(stored, plaintext)

    ok = kind == "pbkdf2_b64" and _check_b64(stored, plaintext)
    if not ok and LEGACY_FALLBACK:
        # also covers a legacy plaintext that happens to look like "<b64>:<b64>"
        ok = _legacy_matches(stored, plaintext)
    if not ok:
        return False

    if upgrade is not None:
        try:
            upgrade(encode(plaintext))
        except Exception as e:
            print(f"[auth] credential upgrade failed: {e}", flush=True)
    return True


__all__ = ["encode", "verify", "is_legacy", "needs_upgrade", "credential_kind"]
