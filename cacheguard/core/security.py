"""Security primitives for secrets, token hashing and device-bound encryption."""

from __future__ import annotations

import base64
import hashlib
import hmac
import os

from cryptography.fernet import Fernet, InvalidToken

API_KEY_PREFIX = "lm_"
API_KEY_RANDOM_BYTES = 32
SESSION_TOKEN_BYTES = 64
DEVICE_KEY_NAMESPACE = "cacheguard.device-credential.v2"


def b64url_encode(raw: bytes) -> str:
    """Return URL-safe base64 string without padding."""
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def b64url_decode(value: str) -> bytes:
    """Decode URL-safe base64 string with optional missing padding."""
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def generate_api_key() -> str:
    """Generate a prefixed admin credential with 256 bits of randomness."""
    return API_KEY_PREFIX + b64url_encode(os.urandom(API_KEY_RANDOM_BYTES))


def constant_time_equals(expected: str, candidate: str) -> bool:
    """Compare strings without leaking where or whether their lengths differ.

    The candidate is truncated or zero-padded to the expected length so the
    byte comparison always runs over ``len(expected)`` bytes.
    """
    expected_bytes = expected.encode("utf-8")
    candidate_bytes = candidate.encode("utf-8")
    size = len(expected_bytes)
    padded = candidate_bytes[:size].ljust(size, b"\x00")
    same_bytes = hmac.compare_digest(expected_bytes, padded)
    return same_bytes and len(candidate_bytes) == size


def hash_token(token: str) -> str:
    """Hash raw token for storage/comparison."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_session_token() -> tuple[str, str]:
    """Return a fresh ``(raw_token, token_hash)`` pair."""
    raw_token = b64url_encode(os.urandom(SESSION_TOKEN_BYTES))
    return raw_token, hash_token(raw_token)


def credential_fingerprint(credential: str) -> str:
    """Short non-reversible fingerprint identifying which credential minted a record."""
    return hashlib.sha256(f"fingerprint:{credential}".encode("utf-8")).hexdigest()[:32]


def derive_device_key(device_id: str) -> bytes:
    """Derive the Fernet key for a device from namespace and device id."""
    digest = hashlib.sha256(f"{DEVICE_KEY_NAMESPACE}:{device_id}".encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_for_device(plaintext: str, device_id: str) -> str:
    """Encrypt ``plaintext`` with the device key and a fresh random IV."""
    return Fernet(derive_device_key(device_id)).encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_for_device(ciphertext: str, device_id: str) -> str:
    """Decrypt device payload, raising ``ValueError`` on failure."""
    if not ciphertext:
        raise ValueError("Empty device payload")
    try:
        raw = Fernet(derive_device_key(device_id)).decrypt(ciphertext.encode("utf-8"))
    except (InvalidToken, ValueError) as exc:
        raise ValueError("Invalid device payload") from exc
    return raw.decode("utf-8")
