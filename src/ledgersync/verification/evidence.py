"""AES-256-GCM encryption for submitted verification evidence."""

import base64
import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

ALGORITHM = "aes-256-gcm"
NONCE_SIZE = 12
TAG_SIZE = 16


@dataclass
class EncryptedEvidence:
    algorithm: str
    key_id: str
    iv: str
    auth_tag: str
    ciphertext: str
    mime_type: str
    size_bytes: int


def derive_key(secret: str) -> bytes:
    """Hash the configured secret down to a 256-bit AES key."""
    return hashlib.sha256(secret.encode("utf-8")).digest()


def key_id_for(key: bytes) -> str:
    """Short public identifier of a key, stored beside each ciphertext."""
    return hashlib.sha256(key).hexdigest()[:16]


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def encrypt_evidence(evidence: dict[str, Any], secret: str) -> EncryptedEvidence:
    """Encrypt the evidence object (mime_type + data) as JSON.

    A fresh random nonce is drawn for every call.
    """
    key = derive_key(secret)
    plaintext = json.dumps(evidence, sort_keys=True, separators=(",", ":")).encode("utf-8")

    nonce = os.urandom(NONCE_SIZE)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    ciphertext = encryptor.update(plaintext) + encryptor.finalize()

    return EncryptedEvidence(
        algorithm=ALGORITHM,
        key_id=key_id_for(key),
        iv=_b64(nonce),
        auth_tag=_b64(encryptor.tag),
        ciphertext=_b64(ciphertext),
        mime_type=evidence["mime_type"],
        size_bytes=len(evidence["data"].encode("utf-8")),
    )


def decrypt_evidence(iv: str, auth_tag: str, ciphertext: str, secret: str) -> dict[str, Any]:
    """Decrypt stored evidence. Raises cryptography's InvalidTag on a wrong key or tampering."""
    key = derive_key(secret)
    decryptor = Cipher(
        algorithms.AES(key),
        modes.GCM(base64.b64decode(iv), base64.b64decode(auth_tag)),
    ).decryptor()
    plaintext = decryptor.update(base64.b64decode(ciphertext)) + decryptor.finalize()
    return json.loads(plaintext.decode("utf-8"))
