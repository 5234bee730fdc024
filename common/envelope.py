from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any

from cryptography.exceptions import InvalidTag

from common.crypto import (
    AES_KEY_SIZE,
    GCM_NONCE_SIZE,
    GCM_TAG_SIZE,
    CanonicalEncodingError,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    b64url_decode,
    b64url_decode_canonical,
    b64url_encode,
    load_private_key_pem,
    load_public_key_spki,
    random_bytes,
    rsa_decrypt,
    rsa_encrypt,
)
from common.errors import CryptoError, ResourceExceededError, ValidationError

SEALED_INPUT_ALG = "rsa-oaep-3072/aes-256-gcm"
ENVELOPE_VERSION = 1
MAX_ENVELOPE_CHARS = 2 * 1024 * 1024


class EnvelopeError(ValidationError):
    pass


class EnvelopeTooLargeError(ResourceExceededError):
    pass


class AlgorithmMismatchError(CryptoError):
    pass


class AlgorithmUnsupportedError(CryptoError):
    pass


class KeyChangedError(CryptoError):
    """The envelope was sealed to a key generation this runner no longer holds.

    Callers should treat this as a request to re-seal against the currently
    advertised key, not as a transient failure.
    """


@dataclass(frozen=True)
class SealedEnvelope:
    alg: str
    kid: str
    iv: str
    w: str
    ct: str
    v: int = ENVELOPE_VERSION

    @classmethod
    def parse(cls, raw: str) -> "SealedEnvelope":
        try:
            obj = json.loads(raw)
        except ValueError as exc:
            raise EnvelopeError("sealed input envelope invalid JSON") from exc
        if not isinstance(obj, dict):
            raise EnvelopeError("sealed input envelope invalid")
        v = obj.get("v")
        if v != ENVELOPE_VERSION or isinstance(v, bool):
            raise EnvelopeError("sealed input envelope version unsupported")
        fields: dict[str, str] = {}
        for name in ("alg", "kid", "iv", "w", "ct"):
            value = obj.get(name)
            if not isinstance(value, str) or not value.strip():
                raise EnvelopeError("sealed input envelope missing fields")
            fields[name] = value.strip()
        return cls(**fields)

    def to_json(self) -> str:
        data: dict[str, Any] = {"v": self.v}
        data.update({k: v for k, v in asdict(self).items() if k != "v"})
        return json.dumps(data, separators=(",", ":"))

    def encode(self) -> str:
        return b64url_encode(self.to_json().encode("utf-8"))


def _decode_field(value: str, field: str) -> bytes:
    try:
        return b64url_decode_canonical(value)
    except (CanonicalEncodingError, ValueError) as exc:
        raise EnvelopeError(f"sealed input {field} invalid") from exc


def seal(plaintext: str | bytes, public_key_spki_b64: str, key_id: str, aad: str) -> str:
    pubkey = load_public_key_spki(b64url_decode(public_key_spki_b64))
    data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
    aes_key = random_bytes(AES_KEY_SIZE)
    iv = random_bytes(GCM_NONCE_SIZE)
    envelope = SealedEnvelope(
        alg=SEALED_INPUT_ALG,
        kid=key_id,
        iv=b64url_encode(iv),
        w=b64url_encode(rsa_encrypt(pubkey, aes_key)),
        ct=b64url_encode(aes_gcm_encrypt(aes_key, iv, data, aad.encode("utf-8"))),
    )
    return envelope.encode()


def unseal(
    private_key_pem: str,
    aad: str,
    envelope_b64: str,
    expected_alg: str | None = None,
    expected_key_id: str | None = None,
) -> str:
    encoded = (envelope_b64 or "").strip()
    if not encoded:
        raise EnvelopeError("sealed input envelope missing")
    if len(encoded) > MAX_ENVELOPE_CHARS:
        raise EnvelopeTooLargeError("sealed input envelope too large")

    raw = _decode_field(encoded, "envelope")
    try:
        envelope_json = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EnvelopeError("sealed input envelope invalid") from exc
    envelope = SealedEnvelope.parse(envelope_json)

    if expected_alg and envelope.alg != expected_alg:
        raise AlgorithmMismatchError("sealed input algorithm mismatch")
    if expected_key_id and envelope.kid != expected_key_id:
        raise KeyChangedError("sealed input key changed, retry reserve/finalize")
    if envelope.alg != SEALED_INPUT_ALG:
        raise AlgorithmUnsupportedError("sealed input algorithm unsupported")

    iv = _decode_field(envelope.iv, "iv")
    if len(iv) != GCM_NONCE_SIZE:
        raise EnvelopeError("sealed input iv invalid")
    wrapped = _decode_field(envelope.w, "wrapped key")
    ct_and_tag = _decode_field(envelope.ct, "ciphertext")
    if len(ct_and_tag) < GCM_TAG_SIZE + 1:
        raise EnvelopeError("sealed input ciphertext invalid")

    privkey = load_private_key_pem(private_key_pem)
    try:
        aes_key = rsa_decrypt(privkey, wrapped)
    except ValueError as exc:
        raise CryptoError("sealed input key unwrap failed") from exc
    if len(aes_key) != AES_KEY_SIZE:
        raise CryptoError("sealed input aes key invalid")

    try:
        plaintext = aes_gcm_decrypt(aes_key, iv, ct_and_tag, aad.encode("utf-8"))
    except InvalidTag as exc:
        raise CryptoError("sealed input authentication failed") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EnvelopeError("sealed input plaintext is not utf-8") from exc
