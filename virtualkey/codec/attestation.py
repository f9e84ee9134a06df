"""
Attestation Objects

Encodes the ``none``-format attestation object returned at registration and
decodes CBOR payloads read back from containers.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Any, Optional, Union

import cbor2

from virtualkey.codec.authdata import (
    DEFAULT_AAGUID,
    REGISTRATION_FLAGS,
    AuthenticatorData,
    encode_authenticator_data,
    parse_authenticator_data,
)
from virtualkey.codec.cose import encode_cose_key_from_point
from virtualkey.errors import CodecError


ATTESTATION_FORMAT_NONE = "none"


@dataclass(frozen=True)
class AttestationObject:
    """Decoded attestation object."""
    fmt: str
    att_stmt: dict[str, Any]
    auth_data: AuthenticatorData
    raw_auth_data: bytes


def encode_attestation_object(authenticator_data: bytes) -> bytes:
    """
    Wrap authenticator data in a ``none`` attestation object.

    Encoded canonically: ``A3 63 "fmt" 64 "none" 67 "attStmt" A0 68 "authData" <bstr>``.
    """
    return cbor2.dumps(
        {
            "fmt": ATTESTATION_FORMAT_NONE,
            "attStmt": {},
            "authData": bytes(authenticator_data),
        },
        canonical=True,
    )


def decode_cbor(data: bytes) -> Any:
    """Decode exactly one CBOR item; trailing bytes are an error."""
    fp = io.BytesIO(data)
    try:
        value = cbor2.CBORDecoder(fp).decode()
    except cbor2.CBORDecodeError as e:
        raise CodecError(f"Invalid CBOR: {e}", cause=e)
    if fp.tell() != len(data):
        raise CodecError(f"{len(data) - fp.tell()} trailing bytes after CBOR item")
    return value


def parse_attestation_object(data: bytes) -> AttestationObject:
    """Decode an attestation object and its embedded authenticator data."""
    decoded = decode_cbor(data)
    if not isinstance(decoded, dict):
        raise CodecError("Attestation object must be a CBOR map")

    missing = {"fmt", "attStmt", "authData"} - set(decoded)
    if missing:
        raise CodecError(f"Attestation object missing keys: {sorted(missing)}")

    raw_auth_data = decoded["authData"]
    if not isinstance(raw_auth_data, bytes):
        raise CodecError("authData must be a byte string")
    if not isinstance(decoded["attStmt"], dict):
        raise CodecError("attStmt must be a map")

    return AttestationObject(
        fmt=decoded["fmt"],
        att_stmt=decoded["attStmt"],
        auth_data=parse_authenticator_data(raw_auth_data),
        raw_auth_data=raw_auth_data,
    )


def build_registration_attestation(
    rp_id: str,
    credential_id: Union[bytes, str],
    public_key: bytes,
    counter: int = 0,
    flags: int = REGISTRATION_FLAGS,
    aaguid: Optional[bytes] = None,
) -> bytes:
    """Attestation object for a credential whose public key is a 65-byte uncompressed point."""
    auth_data = encode_authenticator_data(
        rp_id=rp_id,
        flags=flags,
        counter=counter,
        aaguid=aaguid or DEFAULT_AAGUID,
        credential_id=credential_id,
        cose_public_key=encode_cose_key_from_point(public_key),
    )
    return encode_attestation_object(auth_data)
