"""Tests for PHI encryption of patient demographics."""
import base64

import pytest

from app.services.encryption import (
    EncryptionError,
    decrypt,
    decrypt_patient_data,
    encrypt,
    encrypt_patient_data,
    generate_key,
)


def test_payload_format_is_iv_tag_ciphertext(phi_key):
    payload = encrypt("Jane Citizen")
    iv, tag, ciphertext = payload.split(":")
    assert len(base64.b64decode(iv)) == 12
    assert len(base64.b64decode(tag)) == 16
    assert len(base64.b64decode(ciphertext)) == len("Jane Citizen".encode("utf-8"))
    assert "Jane" not in payload


def test_fresh_iv_per_encryption(phi_key):
    assert encrypt("same text") != encrypt("same text")


def test_patient_data_drops_unknown_and_empty_fields(phi_key):
    payload = encrypt_patient_data({"name": "Jane Citizen", "date_of_birth": "1975-03-02",
                                    "mrn": None, "favourite_colour": "blue"})
    assert decrypt_patient_data(payload) == {"name": "Jane Citizen", "date_of_birth": "1975-03-02"}


def test_wrong_key_is_rejected(phi_key):
    payload = encrypt("secret")
    with pytest.raises(EncryptionError, match="authentication"):
        decrypt(payload, key_b64=generate_key())


def test_tampered_payload_is_rejected(phi_key):
    iv, tag, ciphertext = encrypt("secret").split(":")
    flipped = base64.b64encode(bytes([base64.b64decode(ciphertext)[0] ^ 1]) + base64.b64decode(ciphertext)[1:])
    with pytest.raises(EncryptionError):
        decrypt(":".join([iv, tag, flipped.decode("ascii")]))


@pytest.mark.parametrize("payload", ["", "onlyonepart", "a:b"])
def test_malformed_payload(phi_key, payload):
    with pytest.raises(EncryptionError):
        decrypt(payload)


@pytest.mark.parametrize("key", ["", base64.b64encode(b"short").decode("ascii")])
def test_bad_key(key):
    with pytest.raises(EncryptionError):
        encrypt("x", key_b64=key)


def test_missing_configured_key(monkeypatch):
    monkeypatch.setattr("app.config.PHI_ENCRYPTION_KEY", "")
    with pytest.raises(EncryptionError, match="not set"):
        encrypt("x")
