"""
teams_relay/crypto.py — AES-256-GCM envelopes for data at rest.

Envelope format (JSON object, so it can sit in a .json file):

    {"v": 1, "alg": "AES-256-GCM", "nonce": "<b64>", "data": "<b64>"}

`data` is ciphertext + GCM tag. The key is 32 random bytes, generated once per
installation and kept in an owner-only key file next to the documents it
protects. TEAMS_RELAY_KEY (urlsafe base64) overrides the key file.
"""
import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from teams_relay.utils import atomic_write_bytes

log = logging.getLogger("teams_relay.crypto")

ENVELOPE_VERSION = 1
ALGORITHM        = "AES-256-GCM"
NONCE_BYTES      = 12
KEY_BYTES        = 32
KEY_FILE_NAME    = ".session-key"


class DecryptionError(Exception):
    """Envelope is malformed or was sealed with a different key."""


def is_encrypted(blob: Any) -> bool:
    """True when `blob` (parsed JSON) looks like one of our envelopes."""
    return (
        isinstance(blob, dict)
        and blob.get("alg") == ALGORITHM
        and isinstance(blob.get("nonce"), str)
        and isinstance(blob.get("data"), str)
    )


def load_or_create_key(key_dir: Path) -> bytes:
    """Return the installation key, creating the key file on first use."""
    override = os.getenv("TEAMS_RELAY_KEY")
    if override:
        key = base64.urlsafe_b64decode(override.encode("ascii"))
        if len(key) != KEY_BYTES:
            raise ValueError(f"TEAMS_RELAY_KEY must decode to {KEY_BYTES} bytes.")
        return key

    key_path = key_dir / KEY_FILE_NAME
    if key_path.exists():
        key = key_path.read_bytes()
        if len(key) == KEY_BYTES:
            return key
        log.warning("Key file %s is corrupt — generating a new key (stored sessions become unreadable).", key_path)

    key = AESGCM.generate_key(bit_length=KEY_BYTES * 8)
    atomic_write_bytes(key_path, key)
    log.info("Generated new encryption key at %s", key_path)
    return key


class Cipher:
    """Seal/open JSON documents with a fixed AES-GCM key."""

    def __init__(self, key: bytes) -> None:
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> dict:
        nonce = os.urandom(NONCE_BYTES)
        data  = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return {
            "v":     ENVELOPE_VERSION,
            "alg":   ALGORITHM,
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "data":  base64.b64encode(data).decode("ascii"),
        }

    def decrypt(self, envelope: dict) -> str:
        if not is_encrypted(envelope):
            raise DecryptionError("Not an encrypted envelope.")
        try:
            nonce = base64.b64decode(envelope["nonce"], validate=True)
            data  = base64.b64decode(envelope["data"], validate=True)
            return self._aead.decrypt(nonce, data, None).decode("utf-8")
        except (InvalidTag, binascii.Error, ValueError) as exc:
            raise DecryptionError(str(exc) or exc.__class__.__name__) from exc


def cipher_for(key_dir: Path, key: Optional[bytes] = None) -> Cipher:
    return Cipher(key if key is not None else load_or_create_key(key_dir))


def seal_json(cipher: Cipher, document: Any) -> bytes:
    """Serialise + encrypt a document, returning the bytes to write to disk."""
    envelope = cipher.encrypt(json.dumps(document, indent=2))
    return json.dumps(envelope, indent=2).encode("utf-8")
