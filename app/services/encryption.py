"""AES-256-GCM encryption for patient demographics stored in patients.encrypted_data.

Serialized form: base64(iv):base64(tag):base64(ciphertext). The plaintext is the
JSON of a PatientData dict (name, date_of_birth, medicare_number, mrn, ...).
"""
from __future__ import annotations

import base64
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

PATIENT_FIELDS = (
    "name", "date_of_birth", "sex", "medicare_number", "mrn", "urn", "address", "phone", "email",
)


class EncryptionError(Exception):
    pass


def _load_key(key_b64: str | None = None) -> bytes:
    if key_b64 is None:
        from app.config import PHI_ENCRYPTION_KEY
        key_b64 = PHI_ENCRYPTION_KEY
    if not key_b64:
        raise EncryptionError("PHI_ENCRYPTION_KEY is not set")
    try:
        key = base64.b64decode(key_b64)
    except ValueError as e:
        raise EncryptionError(f"PHI_ENCRYPTION_KEY is not valid base64: {e}")
    if len(key) != KEY_LENGTH:
        raise EncryptionError(f"PHI_ENCRYPTION_KEY must decode to {KEY_LENGTH} bytes, got {len(key)}")
    return key


def generate_key() -> str:
    """New random base64 key, for provisioning."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def encrypt(plaintext: str, key_b64: str | None = None) -> str:
    key = _load_key(key_b64)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return ":".join(base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext))


def decrypt(payload: str, key_b64: str | None = None) -> str:
    key = _load_key(key_b64)
    parts = (payload or "").split(":")
    if len(parts) != 3:
        raise EncryptionError("Invalid encrypted payload format")
    try:
        iv, tag, ciphertext = (base64.b64decode(p) for p in parts)
    except ValueError as e:
        raise EncryptionError(f"Invalid encrypted payload encoding: {e}")
    try:
        plain = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag:
        raise EncryptionError("Decryption failed: authentication tag mismatch")
    return plain.decode("utf-8")


def encrypt_patient_data(data: dict, key_b64: str | None = None) -> str:
    clean = {k: data.get(k) for k in PATIENT_FIELDS if data.get(k) is not None}
    return encrypt(json.dumps(clean, sort_keys=True), key_b64)


def decrypt_patient_data(payload: str, key_b64: str | None = None) -> dict:
    try:
        data = json.loads(decrypt(payload, key_b64))
    except json.JSONDecodeError as e:
        raise EncryptionError(f"Decrypted patient data is not JSON: {e}")
    if not isinstance(data, dict):
        raise EncryptionError("Decrypted patient data is not an object")
    return data
