"""
Encryption utilities for stored SSH credentials.

Uses AES-256-GCM with a key derived from a master secret via PBKDF2.
Encrypted values are stored as JSON objects with base64 fields:
{"ciphertext": ..., "iv": ..., "salt": ..., "tag": ...}
"""

import os
import json
import base64
from typing import Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


KEY_DERIVATION_ITERATIONS = 100000
SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16


class CryptoError(Exception):
    """Raised when a payload cannot be decrypted with the given secret."""
    pass


def derive_key(master_key: str, salt: bytes) -> bytes:
    """Derive a 256-bit key from a master secret using PBKDF2-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KEY_DERIVATION_ITERATIONS,
    )
    return kdf.derive(master_key.encode())


def encrypt(plaintext: str, master_key: str) -> Dict[str, str]:
    """
    Encrypt a string.

    Args:
        plaintext: String to encrypt
        master_key: Secret the encryption key is derived from

    Returns:
        Payload dict with base64-encoded ciphertext, iv, salt and tag
    """
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(master_key, salt)

    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, plaintext.encode(), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return {
        'ciphertext': base64.b64encode(ciphertext).decode(),
        'iv': base64.b64encode(iv).decode(),
        'salt': base64.b64encode(salt).decode(),
        'tag': base64.b64encode(tag).decode(),
    }


def decrypt(payload: Union[Dict[str, str], str], master_key: str) -> str:
    """
    Decrypt a payload produced by encrypt().

    Args:
        payload: Payload dict, or its JSON text
        master_key: Secret the encryption key is derived from

    Returns:
        Decrypted plaintext string

    Raises:
        CryptoError: If the secret is wrong or the payload is corrupted
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise CryptoError(f"Malformed encrypted payload: {e}")

    try:
        salt = base64.b64decode(payload['salt'])
        iv = base64.b64decode(payload['iv'])
        tag = base64.b64decode(payload['tag'])
        ciphertext = base64.b64decode(payload['ciphertext'])
    except (KeyError, TypeError, ValueError) as e:
        raise CryptoError(f"Malformed encrypted payload: {e}")

    key = derive_key(master_key, salt)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag:
        raise CryptoError("Decryption failed (wrong key or corrupted data)")

    return plaintext.decode()


def is_encrypted_payload(value) -> bool:
    """Stored values that are encrypted are JSON objects."""
    return isinstance(value, str) and value.startswith('{')
