"""Minimal WebAuthn ceremony checks.

Only what an authentication core needs: client data validation, authenticator
data parsing, and signature verification with ``cryptography``. Public keys are
exchanged as base64url SubjectPublicKeyInfo DER so no CBOR/COSE decoding is
required on the server.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import struct
from dataclasses import dataclass
from typing import Any, Dict

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from keyward.service.errors import ChallengeMismatch, InvalidProof

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_ATTESTED_DATA = 0x40


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    if not isinstance(value, str):
        raise InvalidProof("malformed proof")
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (binascii.Error, ValueError):
        raise InvalidProof("malformed proof")


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)


def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    # rpIdHash (32) | flags (1) | signCount (4, big endian) | ...
    if len(raw) < 37:
        raise InvalidProof("malformed authenticator data")
    flags = raw[32]
    (sign_count,) = struct.unpack(">I", raw[33:37])
    return AuthenticatorData(rp_id_hash=raw[:32], flags=flags, sign_count=sign_count)


def parse_client_data(raw: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise InvalidProof("malformed client data")
    if not isinstance(data, dict):
        raise InvalidProof("malformed client data")
    return data


def check_client_data(
    client_data: Dict[str, Any], *, expected_type: str, challenge: str, origin: str
) -> None:
    if client_data.get("type") != expected_type:
        raise InvalidProof("unexpected ceremony type")
    presented = client_data.get("challenge")
    if not isinstance(presented, str) or not hmac.compare_digest(presented, challenge):
        raise ChallengeMismatch("challenge mismatch")
    if client_data.get("origin") != origin:
        raise InvalidProof("origin mismatch")


def check_authenticator_data(auth_data: AuthenticatorData, *, rp_id: str) -> None:
    if not hmac.compare_digest(auth_data.rp_id_hash, hashlib.sha256(rp_id.encode()).digest()):
        raise InvalidProof("relying party mismatch")
    if not auth_data.user_present:
        raise InvalidProof("user presence required")


def load_public_key(spki_b64: str):
    try:
        key = serialization.load_der_public_key(b64url_decode(spki_b64))
    except (ValueError, UnsupportedAlgorithm):
        raise InvalidProof("unsupported public key")
    if isinstance(key, ec.EllipticCurvePublicKey):
        if not isinstance(key.curve, ec.SECP256R1):
            raise InvalidProof("unsupported curve")
        return key
    if isinstance(key, ed25519.Ed25519PublicKey):
        return key
    raise InvalidProof("unsupported public key")


def verify_signature(public_key, signature: bytes, signed_data: bytes) -> bool:
    try:
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, signed_data, ec.ECDSA(hashes.SHA256()))
        else:
            public_key.verify(signature, signed_data)
    except InvalidSignature:
        return False
    return True


def assertion_signed_data(auth_data_raw: bytes, client_data_raw: bytes) -> bytes:
    return auth_data_raw + hashlib.sha256(client_data_raw).digest()
