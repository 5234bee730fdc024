from __future__ import annotations

import base64
import hashlib
import os
import re

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

RSA_KEY_SIZE = 3072
RSA_PUBLIC_EXPONENT = 65537
GCM_NONCE_SIZE = 12
GCM_TAG_SIZE = 16
AES_KEY_SIZE = 32

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class CanonicalEncodingError(ValueError):
    pass


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def b64url_decode_canonical(data: str) -> bytes:
    # Non-minimal encodings (stray trailing bits, padding) decode to the same
    # bytes, so only accept input that re-encodes to itself.
    if not data or not _B64URL_RE.match(data):
        raise CanonicalEncodingError("not base64url")
    if len(data) % 4 == 1:
        raise CanonicalEncodingError("invalid base64url length")
    decoded = b64url_decode(data)
    if not decoded or b64url_encode(decoded) != data:
        raise CanonicalEncodingError("non-canonical base64url")
    return decoded


def generate_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_SIZE)


def private_key_to_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def load_private_key_pem(pem: str | bytes) -> rsa.RSAPrivateKey:
    raw = pem.encode("ascii") if isinstance(pem, str) else pem
    key = serialization.load_pem_private_key(raw, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise TypeError("private key is not an RSA private key")
    return key


def load_public_key_spki(der: bytes) -> rsa.RSAPublicKey:
    key = serialization.load_der_public_key(der)
    if not isinstance(key, rsa.RSAPublicKey):
        raise TypeError("public key is not an RSA public key")
    return key


def pubkey_to_der(pubkey: rsa.RSAPublicKey) -> bytes:
    return pubkey.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def key_id_for_spki(spki_der: bytes) -> str:
    return b64url_encode(hashlib.sha256(spki_der).digest())


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def rsa_encrypt(pubkey: rsa.RSAPublicKey, plaintext: bytes) -> bytes:
    return pubkey.encrypt(plaintext, _oaep())


def rsa_decrypt(privkey: rsa.RSAPrivateKey, ciphertext: bytes) -> bytes:
    return privkey.decrypt(ciphertext, _oaep())


def aes_gcm_encrypt(key: bytes, nonce: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
    # Returns ciphertext || 16-byte tag.
    return AESGCM(key).encrypt(nonce, plaintext, aad)


def aes_gcm_decrypt(key: bytes, nonce: bytes, data: bytes, aad: bytes | None = None) -> bytes:
    if len(data) < GCM_TAG_SIZE + 1:
        raise ValueError("ciphertext too short")
    return AESGCM(key).decrypt(nonce, data, aad)


def random_bytes(n: int = 32) -> bytes:
    return os.urandom(n)
