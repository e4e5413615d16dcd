"""PKCE (RFC 7636) verification for the token endpoint."""

import base64
import hashlib
import hmac

SUPPORTED_METHODS = ("S256", "plain")


def compute_s256_challenge(code_verifier: str) -> str:
    """BASE64URL-ENCODE(SHA256(ASCII(code_verifier))) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_code_challenge(code_verifier: str, code_challenge: str, method: str = "S256") -> bool:
    """Check a code_verifier against the challenge stored with the code.

    Unknown methods and non-ASCII verifiers never verify.
    """
    if method == "plain":
        expected = code_verifier
    elif method == "S256":
        try:
            expected = compute_s256_challenge(code_verifier)
        except UnicodeEncodeError:
            return False
    else:
        return False

    return hmac.compare_digest(expected.encode("utf-8"), code_challenge.encode("utf-8"))
