from __future__ import annotations

import base64
import binascii
import hashlib
import os
import unicodedata
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import AuthenticationError, MalformedInputError

# Shared by every note. Changing any of these breaks existing records.
KDF_SALT = b"fixed-salt"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


def normalize_title(title: str) -> str:
    return unicodedata.normalize("NFC", title)


# ---------- Fingerprint ----------
def fingerprint(title: str) -> str:
    data = normalize_title(title).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


# ---------- Key derivation ----------
def derive_key(title: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(normalize_title(title).encode("utf-8"))


# ---------- Cipher ----------
def encrypt(content: bytes, key: bytes) -> Tuple[bytes, bytes]:
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(key).encrypt(nonce, content, None)
    return nonce, ciphertext


def decrypt(nonce: bytes, ciphertext: bytes, key: bytes) -> bytes:
    if len(nonce) != NONCE_LENGTH:
        raise MalformedInputError(f"Nonce must be {NONCE_LENGTH} bytes, got {len(nonce)}")
    if len(ciphertext) < TAG_LENGTH:
        raise MalformedInputError("Ciphertext is shorter than the authentication tag")
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise AuthenticationError("Failed to decrypt content") from e


# ---------- Record codec ----------
def encode_record(nonce: bytes, ciphertext: bytes) -> str:
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decode_record(record: str) -> Tuple[bytes, bytes]:
    try:
        raw = base64.b64decode(record, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedInputError("Stored record is not valid base64") from e
    if len(raw) < NONCE_LENGTH:
        raise MalformedInputError(f"Stored record is shorter than the {NONCE_LENGTH}-byte nonce")
    return raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]


def encrypt_text(content: str, title: str) -> str:
    """Encrypt ``content`` under the key derived from ``title`` and encode it for storage."""
    nonce, ciphertext = encrypt(content.encode("utf-8"), derive_key(title))
    return encode_record(nonce, ciphertext)


def decrypt_text(record: str, title: str) -> str:
    nonce, ciphertext = decode_record(record)
    plaintext = decrypt(nonce, ciphertext, derive_key(title))
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedInputError("Decrypted content is not valid UTF-8") from e
