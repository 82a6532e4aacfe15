"""
Vault Crypto Core: In-memory sealing of decrypted secret values.

Decrypted values never sit in the Secret Store as plain ``str``:
- Store key: HKDF(random seed, "shadow-secret-store") → 32 bytes (bytearray)
- Sealed value: AEAD(store key) → [nonce 12B][payload + tag 16B] (bytearray)

Both buffers are mutable so they can be overwritten with zeros when the
session ends.

Security Note:
    Never log plaintext or sealed values.
    Transient ``bytes`` produced by the AEAD primitives cannot be wiped;
    this is an accepted limitation of a garbage-collected runtime.
"""
import os
import logging
from typing import Union

from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

logger = logging.getLogger("shadow_secret.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256
SEED_LENGTH = 32

_STORE_CONTEXT = "shadow-secret-store"

Buffer = Union[bytes, bytearray, memoryview]


def _get_cipher_cls() -> type:
    """Return the AEAD cipher class based on SHADOW_SECRET_CIPHER_BACKEND."""
    backend = os.environ.get("SHADOW_SECRET_CIPHER_BACKEND", "aesgcm").lower()
    if backend == "chacha20":
        return ChaCha20Poly1305
    return AESGCM


# Resolved once so seal/unseal cannot disagree within a process.
CIPHER_CLS = _get_cipher_cls()


# ---------------------------------------------------------------------------
# Key handling
# ---------------------------------------------------------------------------

def derive_key(seed: Buffer, context: str) -> bytearray:
    """Derive a 32-byte key using HKDF-SHA256.

    Args:
        seed: Input key material.
        context: Context string for domain separation.

    Returns:
        32-byte derived key in a wipeable buffer.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=context.encode("utf-8"),
    )
    return bytearray(hkdf.derive(bytes(seed)))


def new_store_key() -> bytearray:
    """Generate a fresh, random per-store key."""
    seed = bytearray(os.urandom(SEED_LENGTH))
    try:
        return derive_key(seed, _STORE_CONTEXT)
    finally:
        wipe(seed)


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------

def seal(plaintext: Buffer, key: bytearray) -> bytearray:
    """Seal plaintext under the store key.

    Format: [nonce 12B][encrypted_payload + tag 16B]
    """
    cipher = CIPHER_CLS(bytes(key))
    nonce = os.urandom(NONCE_SIZE)
    sealed = bytearray(nonce)
    sealed += cipher.encrypt(nonce, bytes(plaintext), None)
    return sealed


def unseal(sealed: Buffer, key: bytearray) -> bytearray:
    """Recover plaintext from a sealed buffer.

    Raises:
        ValueError: If the buffer is shorter than nonce + tag.
    """
    _min = NONCE_SIZE + TAG_SIZE
    if len(sealed) < _min:
        raise ValueError(
            f"sealed value too short: {len(sealed)} bytes (minimum {_min})"
        )
    cipher = CIPHER_CLS(bytes(key))
    view = bytes(sealed)
    return bytearray(cipher.decrypt(view[:NONCE_SIZE], view[NONCE_SIZE:], None))


# ---------------------------------------------------------------------------
# Memory hygiene
# ---------------------------------------------------------------------------

def wipe(buffer: bytearray) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    if not isinstance(buffer, bytearray):
        raise TypeError(f"cannot wipe immutable {type(buffer).__name__}")
    buffer[:] = bytes(len(buffer))
