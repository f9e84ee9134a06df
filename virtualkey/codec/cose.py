"""
COSE Key Encoding

EC2 / ES256 / P-256 public keys in the compact CBOR map form carried inside
attested credential data.

References:
- RFC 9053 section 7.1 (EC2 keys)
- W3C WebAuthn Level 3, 6.5.1.1 (credential public key examples)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

import cbor2
from cryptography.hazmat.primitives.asymmetric import ec

from virtualkey.errors import CodecError, InvalidPublicKeyError


COORDINATE_LENGTH = 32
UNCOMPRESSED_POINT_LENGTH = 65
UNCOMPRESSED_POINT_PREFIX = 0x04


class COSEKeyParam(IntEnum):
    """COSE key map labels."""
    KTY = 1
    ALG = 3
    CRV = -1
    X = -2
    Y = -3


class COSEKeyType(IntEnum):
    EC2 = 2


class COSEAlgorithm(IntEnum):
    ES256 = -7


class COSECurve(IntEnum):
    P256 = 1


@dataclass(frozen=True)
class COSEKey:
    """Decoded EC2 public key."""
    kty: int
    alg: int
    crv: int
    x: bytes
    y: bytes

    def to_public_key(self) -> ec.EllipticCurvePublicKey:
        """Load as a P-256 public key. Raises InvalidPublicKeyError if the point is off-curve."""
        try:
            numbers = ec.EllipticCurvePublicNumbers(
                int.from_bytes(self.x, "big"),
                int.from_bytes(self.y, "big"),
                ec.SECP256R1(),
            )
            return numbers.public_key()
        except ValueError as e:
            raise InvalidPublicKeyError("COSE key is not a valid P-256 point", cause=e)


def encode_cose_key(x: bytes, y: bytes) -> bytes:
    """
    Encode an ES256 public key as a canonical 5-entry COSE map.

    Output is ``A5 01 02 03 26 20 01 21 58 20 <x> 22 58 20 <y>``.
    """
    if len(x) != COORDINATE_LENGTH or len(y) != COORDINATE_LENGTH:
        raise InvalidPublicKeyError(
            f"EC2 coordinates must be {COORDINATE_LENGTH} bytes "
            f"(got x={len(x)}, y={len(y)})"
        )

    key = {
        COSEKeyParam.KTY.value: COSEKeyType.EC2.value,
        COSEKeyParam.ALG.value: COSEAlgorithm.ES256.value,
        COSEKeyParam.CRV.value: COSECurve.P256.value,
        COSEKeyParam.X.value: bytes(x),
        COSEKeyParam.Y.value: bytes(y),
    }
    return cbor2.dumps(key, canonical=True)


def split_uncompressed_point(public_key: bytes) -> tuple[bytes, bytes]:
    """Split a 65-byte ``04 || X || Y`` point into its coordinates."""
    if len(public_key) != UNCOMPRESSED_POINT_LENGTH:
        raise InvalidPublicKeyError(
            f"Expected {UNCOMPRESSED_POINT_LENGTH}-byte uncompressed point, "
            f"got {len(public_key)} bytes"
        )
    if public_key[0] != UNCOMPRESSED_POINT_PREFIX:
        raise InvalidPublicKeyError(
            f"Expected uncompressed point prefix 0x04, got 0x{public_key[0]:02x}"
        )
    return public_key[1:33], public_key[33:65]


def encode_cose_key_from_point(public_key: bytes) -> bytes:
    """Encode a COSE key straight from an uncompressed point."""
    x, y = split_uncompressed_point(public_key)
    return encode_cose_key(x, y)


def decode_cose_key(data: bytes | dict) -> COSEKey:
    """Decode and validate an ES256 COSE key (raw bytes or an already-decoded map)."""
    if isinstance(data, (bytes, bytearray)):
        try:
            key = cbor2.loads(bytes(data))
        except cbor2.CBORDecodeError as e:
            raise CodecError("COSE key is not valid CBOR", cause=e)
    else:
        key = data

    if not isinstance(key, dict):
        raise CodecError(f"COSE key must be a map, got {type(key).__name__}")

    try:
        decoded = COSEKey(
            kty=key[COSEKeyParam.KTY],
            alg=key[COSEKeyParam.ALG],
            crv=key[COSEKeyParam.CRV],
            x=key[COSEKeyParam.X],
            y=key[COSEKeyParam.Y],
        )
    except KeyError as e:
        raise CodecError(f"COSE key missing label {e.args[0]}", cause=e)

    if decoded.kty != COSEKeyType.EC2:
        raise CodecError(f"Unsupported COSE key type: {decoded.kty}")
    if decoded.alg != COSEAlgorithm.ES256:
        raise CodecError(f"Unsupported COSE algorithm: {decoded.alg}")
    if decoded.crv != COSECurve.P256:
        raise CodecError(f"Unsupported COSE curve: {decoded.crv}")
    if not isinstance(decoded.x, bytes) or not isinstance(decoded.y, bytes):
        raise InvalidPublicKeyError("COSE key coordinates must be byte strings")
    if len(decoded.x) != COORDINATE_LENGTH or len(decoded.y) != COORDINATE_LENGTH:
        raise InvalidPublicKeyError("COSE key coordinates must be 32 bytes")

    return decoded
