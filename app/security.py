"""
Security utilities: JWT verification, wallet-key encryption, and webhook
signatures.

This module centralizes all cryptographic operations so they're easy to
audit and update. Three concerns are handled here:

1. JWT TOKENS (JSON Web Tokens)
   - Tokens are issued by the identity service after login; their "sub"
     claim is the caller's account id
   - They are signed with SECRET_KEY using HS256 (HMAC-SHA256)
   - create_access_token exists for provisioning scripts and tests

2. FERNET ENCRYPTION (AES-128-CBC + HMAC-SHA256)
   - Used for provider credentials at rest: each account's wallet invoice
     key and admin key, and the minting key stored on every invoice
   - Fernet provides authenticated encryption: data is both encrypted and
     integrity-checked, preventing tampering
   - The encryption key is loaded from environment variables, never hardcoded

3. WEBHOOK SIGNATURES (HMAC-SHA256)
   - Providers sign the raw request body with a shared secret; the hex
     digest arrives in a header
   - Comparison uses hmac.compare_digest so verification time does not leak
     how many leading characters matched
"""

import hashlib
import hmac
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet
from jose import jwt

from app.config import settings


# ---------------------------------------------------------------------------
# 1. JWT Tokens
# ---------------------------------------------------------------------------


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Sign a bearer token for an account.

    Production tokens come from the identity service; this is used by
    demo/provision.py and the test suite.

    Args:
        data: Claims to encode; "sub" must be the account id as a string.
        expires_delta: Lifetime; ACCESS_TOKEN_EXPIRE_MINUTES by default.
    """
    lifetime = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {**data, "exp": datetime.now(timezone.utc) + lifetime}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Verify a bearer token's signature and expiry and return its claims.

    Raises:
        JWTError: If the token is expired, tampered with, or malformed.
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


# ---------------------------------------------------------------------------
# 2. Wallet key encryption
# ---------------------------------------------------------------------------

_fernet = Fernet(settings.WALLET_ENCRYPTION_KEY.encode())


def encrypt_value(plaintext: str) -> bytes:
    """Encrypt a provider key for a LargeBinary column."""
    return _fernet.encrypt(plaintext.encode())


def decrypt_value(ciphertext: bytes) -> str:
    """
    Decrypt a stored provider key.

    Raises:
        cryptography.fernet.InvalidToken: If the value was encrypted under a
            different WALLET_ENCRYPTION_KEY or has been altered.
    """
    return _fernet.decrypt(ciphertext).decode()


def decrypt_optional(ciphertext: bytes | None) -> str | None:
    """decrypt_value for nullable columns."""
    return decrypt_value(ciphertext) if ciphertext else None


# ---------------------------------------------------------------------------
# 3. Webhook signatures
# ---------------------------------------------------------------------------


def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """
    Verify a webhook signature header against the raw body.

    Accepts a bare hex digest or the "sha256=<hex>" form. A missing header
    never verifies.
    """
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = compute_webhook_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())
