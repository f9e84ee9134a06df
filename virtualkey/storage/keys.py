"""
VirtualKey Private Key Sealing

Client credentials never store a raw private key. The P-256 scalar is
sealed with AES-GCM under a key derived (HKDF-SHA256) from the credential
id, and the base64 of nonce || ciphertext || tag is stored as the
credential's ``private_key_ref``. A credential whose reference cannot be
opened is not usable for signing and is skipped on import.
"""

from __future__ import annotations

import base64
import binascii
import os
import secrets
from datetime import datetime
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from virtualkey.errors import PrivateKeyReferenceError
from virtualkey.types import ClientCredential

KEY_SALT = b"WebAuthnClient.PrivateKey.Salt"
KEY_INFO = b"WebAuthnClient.Encryption"
NONCE_LENGTH = 12
SCALAR_LENGTH = 32


def _derive_key(credential_id: str) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KEY_SALT,
        info=KEY_INFO,
    )
    return hkdf.derive(credential_id.encode("utf-8"))


def seal_private_key(private_key: ec.EllipticCurvePrivateKey, credential_id: str) -> str:
    """Seal a P-256 private key for storage alongside ``credential_id``."""
    scalar = private_key.private_numbers().private_value.to_bytes(SCALAR_LENGTH, "big")
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(_derive_key(credential_id)).encrypt(nonce, scalar, None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def open_private_key(reference: str, credential_id: str) -> ec.EllipticCurvePrivateKey:
    """Recover the private key sealed by ``seal_private_key``."""
    try:
        combined = base64.b64decode(reference, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PrivateKeyReferenceError(
            f"Private key reference for {credential_id} is not valid base64", cause=e
        ) from e

    if len(combined) <= NONCE_LENGTH:
        raise PrivateKeyReferenceError(f"Private key reference for {credential_id} is truncated")

    nonce, sealed = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
    try:
        scalar = AESGCM(_derive_key(credential_id)).decrypt(nonce, sealed, None)
    except InvalidTag as e:
        raise PrivateKeyReferenceError(
            f"Private key reference for {credential_id} failed authentication", cause=e
        ) from e

    try:
        return ec.derive_private_key(int.from_bytes(scalar, "big"), ec.SECP256R1())
    except ValueError as e:
        raise PrivateKeyReferenceError(
            f"Private key reference for {credential_id} holds an invalid scalar", cause=e
        ) from e


def has_usable_private_key(credential: ClientCredential) -> bool:
    """True if the credential carries a reference that opens to a key."""
    if not credential.private_key_ref:
        return False
    try:
        open_private_key(credential.private_key_ref, credential.id)
    except PrivateKeyReferenceError:
        return False
    return True


def public_key_bytes(private_key: ec.EllipticCurvePrivateKey) -> bytes:
    """65-byte uncompressed X9.62 point of the key's public half."""
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


def new_credential_id() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(16)).decode("ascii").rstrip("=")


def generate_client_credential(
    rp_id: str,
    user_handle: bytes,
    user_display_name: Optional[str] = None,
    credential_id: Optional[str] = None,
    is_resident: bool = True,
) -> tuple[ClientCredential, ec.EllipticCurvePrivateKey]:
    """Create a fresh P-256 client credential with a sealed private key."""
    credential_id = credential_id or new_credential_id()
    private_key = ec.generate_private_key(ec.SECP256R1())
    credential = ClientCredential(
        id=credential_id,
        rp_id=rp_id,
        user_handle=user_handle,
        public_key=public_key_bytes(private_key),
        private_key_ref=seal_private_key(private_key, credential_id),
        created_at=datetime.now(),
        is_resident=is_resident,
        user_display_name=user_display_name,
    )
    return credential, private_key
