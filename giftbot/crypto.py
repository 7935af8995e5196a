import os
import re
import json
import base64
import binascii
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from giftbot import config

ADDRESS_SCHEMA_VERSION = 1
NONCE_BYTES = 12
_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class EncryptedAddress:
    ciphertext: str
    nonce: str
    version: int


def load_key(raw: str) -> bytes:
    """Accept a 32-byte key as 64 hex characters or base64."""
    raw = (raw or "").strip()
    if _HEX_KEY.match(raw):
        key = bytes.fromhex(raw)
    else:
        try:
            key = base64.b64decode(raw, validate=True)
        except binascii.Error:
            key = raw.encode("utf-8")
    if len(key) != 32:
        raise RuntimeError("ADDRESS_ENCRYPTION_KEY must be 32 bytes (hex or base64).")
    return key


class AddressCipher:
    def __init__(self, key: bytes):
        self._aead = AESGCM(key)

    def encrypt(self, address: dict) -> EncryptedAddress:
        nonce = os.urandom(NONCE_BYTES)
        plaintext = json.dumps(address).encode("utf-8")
        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = self._aead.encrypt(nonce, plaintext, None)
        return EncryptedAddress(
            ciphertext=base64.b64encode(sealed).decode("ascii"),
            nonce=base64.b64encode(nonce).decode("ascii"),
            version=ADDRESS_SCHEMA_VERSION,
        )

    def decrypt(self, ciphertext: str, nonce: str, version: int = ADDRESS_SCHEMA_VERSION) -> dict:
        if version != ADDRESS_SCHEMA_VERSION:
            raise ValueError(f"unsupported address schema version {version}")
        try:
            plaintext = self._aead.decrypt(base64.b64decode(nonce), base64.b64decode(ciphertext), None)
        except InvalidTag as e:
            raise ValueError("address ciphertext failed authentication") from e
        return json.loads(plaintext.decode("utf-8"))


_cipher: AddressCipher | None = None


def get_cipher() -> AddressCipher:
    global _cipher
    if _cipher is None:
        _cipher = AddressCipher(load_key(config.ADDRESS_ENCRYPTION_KEY or ""))
    return _cipher


def set_cipher(cipher: AddressCipher | None):
    global _cipher
    _cipher = cipher


def decrypt_person_address(person) -> dict:
    return get_cipher().decrypt(
        person["address_ciphertext"], person["address_nonce"], person["address_version"]
    )
