"""PKCE (RFC 7636) helpers. Only the S256 method is supported."""

import base64
import hashlib
import hmac
import re
import secrets


SUPPORTED_METHODS = ("S256",)

# unreserved characters, 43 to 128 long (RFC 7636 section 4.1 and 4.2)
_PKCE_VALUE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def is_valid_pkce_value(value: str) -> bool:
    """True if a verifier or challenge uses only the RFC 7636 charset and length."""
    return isinstance(value, str) and bool(_PKCE_VALUE.match(value))


def compute_challenge(verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce() -> tuple[str, str]:
    """
    Generate a verifier/challenge pair.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    verifier = _b64url(secrets.token_bytes(32))
    return verifier, compute_challenge(verifier)


def verify_pkce(code_verifier: str, code_challenge: str, method: str = "S256") -> bool:
    """Check a verifier against a stored challenge in constant time."""
    if method not in SUPPORTED_METHODS or not code_verifier or not code_challenge:
        return False
    try:
        expected = compute_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), code_challenge.encode("utf-8"))
