"""
Authenticator Data

Fixed-layout binary structure signed by the authenticator:

    rpIdHash (32) | flags (1) | signCount (4, big-endian)
    [ aaguid (16) | credIdLen (2, big-endian) | credId | COSE key ]   if AT
    [ extensions (CBOR map) ]                                           if ED
"""

from __future__ import annotations

import hashlib
import io
import struct
from dataclasses import dataclass
from typing import Any, Optional, Union

import cbor2

from virtualkey.errors import CodecError


FLAG_UP = 0x01  # User present
FLAG_UV = 0x04  # User verified
FLAG_BE = 0x08  # Backup eligible
FLAG_BS = 0x10  # Backup state
FLAG_AT = 0x40  # Attested credential data included
FLAG_ED = 0x80  # Extension data included

REGISTRATION_FLAGS = FLAG_UP | FLAG_UV | FLAG_AT  # 0x45

AAGUID_LENGTH = 16
RP_ID_HASH_LENGTH = 32
MIN_LENGTH = RP_ID_HASH_LENGTH + 1 + 4
MAX_COUNTER = 0xFFFFFFFF
MAX_CREDENTIAL_ID_LENGTH = 0xFFFF

# Platform authenticator model id used when a record carries none of its own.
DEFAULT_AAGUID = bytes.fromhex("adce000235bcc60a648b0b25f1f05503")


@dataclass(frozen=True)
class AuthenticatorData:
    """Parsed authenticator data."""
    rp_id_hash: bytes
    flags: int
    sign_count: int
    aaguid: Optional[bytes] = None
    credential_id: Optional[bytes] = None
    credential_public_key: Optional[bytes] = None
    extensions: Optional[dict[str, Any]] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_UP)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_UV)

    @property
    def backup_eligible(self) -> bool:
        return bool(self.flags & FLAG_BE)

    @property
    def backup_state(self) -> bool:
        return bool(self.flags & FLAG_BS)

    @property
    def has_attested_credential_data(self) -> bool:
        return bool(self.flags & FLAG_AT)

    @property
    def has_extensions(self) -> bool:
        return bool(self.flags & FLAG_ED)

    def matches_rp_id(self, rp_id: str) -> bool:
        return self.rp_id_hash == rp_id_hash(rp_id)


def rp_id_hash(rp_id: str) -> bytes:
    return hashlib.sha256(rp_id.encode("utf-8")).digest()


def encode_authenticator_data(
    rp_id: str,
    flags: int,
    counter: int,
    aaguid: Optional[bytes] = None,
    credential_id: Union[bytes, str, None] = None,
    cose_public_key: Optional[bytes] = None,
) -> bytes:
    """
    Build authenticator data.

    The attested credential block is written only when ``flags`` has the AT
    bit; in that case ``aaguid``, ``credential_id`` and ``cose_public_key``
    are required. String credential ids are written as their UTF-8 bytes.
    """
    if not 0 <= flags <= 0xFF:
        raise CodecError(f"Flags must fit in one byte, got {flags}")
    if not 0 <= counter <= MAX_COUNTER:
        raise CodecError(f"Counter out of range: {counter}")

    data = bytearray(rp_id_hash(rp_id))
    data += struct.pack(">BI", flags, counter)

    if flags & FLAG_AT:
        if aaguid is None or credential_id is None or cose_public_key is None:
            raise CodecError(
                "Attested credential data requires aaguid, credential_id and cose_public_key"
            )
        if len(aaguid) != AAGUID_LENGTH:
            raise CodecError(f"AAGUID must be {AAGUID_LENGTH} bytes, got {len(aaguid)}")

        if isinstance(credential_id, str):
            credential_id = credential_id.encode("utf-8")
        if not credential_id or len(credential_id) > MAX_CREDENTIAL_ID_LENGTH:
            raise CodecError(f"Credential ID length out of range: {len(credential_id)}")

        data += aaguid
        data += struct.pack(">H", len(credential_id))
        data += credential_id
        data += cose_public_key

    return bytes(data)


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    """Parse authenticator data, consuming exactly one CBOR item for the COSE key."""
    if len(data) < MIN_LENGTH:
        raise CodecError(f"Authenticator data too short: {len(data)} bytes")

    flags, sign_count = struct.unpack(">BI", data[32:37])
    offset = MIN_LENGTH

    aaguid = None
    credential_id = None
    credential_public_key = None
    extensions = None

    if flags & FLAG_AT:
        if len(data) < offset + AAGUID_LENGTH + 2:
            raise CodecError("Attested credential data too short")

        aaguid = data[offset:offset + AAGUID_LENGTH]
        offset += AAGUID_LENGTH

        (cred_id_len,) = struct.unpack(">H", data[offset:offset + 2])
        offset += 2

        if len(data) < offset + cred_id_len:
            raise CodecError("Credential ID truncated")
        credential_id = data[offset:offset + cred_id_len]
        offset += cred_id_len

        _, consumed = _decode_one(data[offset:])
        credential_public_key = data[offset:offset + consumed]
        offset += consumed

    if flags & FLAG_ED:
        extensions, consumed = _decode_one(data[offset:])
        offset += consumed

    if offset != len(data):
        raise CodecError(f"{len(data) - offset} trailing bytes in authenticator data")

    return AuthenticatorData(
        rp_id_hash=data[:32],
        flags=flags,
        sign_count=sign_count,
        aaguid=aaguid,
        credential_id=credential_id,
        credential_public_key=credential_public_key,
        extensions=extensions,
    )


def _decode_one(data: bytes) -> tuple[Any, int]:
    """Decode the first CBOR item in ``data`` and report how many bytes it used."""
    if not data:
        raise CodecError("Expected a CBOR item, found end of data")
    fp = io.BytesIO(data)
    try:
        value = cbor2.CBORDecoder(fp).decode()
    except cbor2.CBORDecodeError as e:
        raise CodecError("Malformed CBOR item in authenticator data", cause=e)
    return value, fp.tell()
