import base64
import hashlib
import secrets
from typing import Tuple

RANDOM_TOKEN_BYTES = 32


def random_token() -> str:
    """
    Generate a cryptographically secure random token.

    The token is used both as the anti-CSRF ``state`` parameter and as the PKCE
    verifier. It carries 256 bits of entropy, hex encoded, which keeps it inside the
    unreserved character set required for verifiers (RFC 7636 section 4.1).
    """
    return secrets.token_hex(RANDOM_TOKEN_BYTES)


def derive_challenge(verifier: str) -> str:
    """
    Derive the S256 code challenge for a PKCE verifier.

    BASE64URL(SHA256(verifier)) without padding, as expected by the authorization
    server for ``code_challenge_method=S256``.
    """
    hashed = hashlib.sha256(verifier.encode("utf-8")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    return encoded.decode("ascii").rstrip("=")


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its challenge.

    Returns:
        Tuple[str, str]: (pkce_verifier, pkce_challenge)
    """
    pkce_verifier = random_token()
    return (pkce_verifier, derive_challenge(pkce_verifier))
