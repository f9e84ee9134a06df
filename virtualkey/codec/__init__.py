"""
VirtualKey Binary Codec

Byte-exact encoders and decoders for COSE keys, authenticator data and
attestation objects. Pure functions, no I/O.
"""

from virtualkey.codec.attestation import (
    ATTESTATION_FORMAT_NONE,
    AttestationObject,
    build_registration_attestation,
    decode_cbor,
    encode_attestation_object,
    parse_attestation_object,
)
from virtualkey.codec.authdata import (
    DEFAULT_AAGUID,
    FLAG_AT,
    FLAG_BE,
    FLAG_BS,
    FLAG_ED,
    FLAG_UP,
    FLAG_UV,
    REGISTRATION_FLAGS,
    AuthenticatorData,
    encode_authenticator_data,
    parse_authenticator_data,
    rp_id_hash,
)
from virtualkey.codec.cose import (
    COSEKey,
    decode_cose_key,
    encode_cose_key,
    encode_cose_key_from_point,
    split_uncompressed_point,
)

__all__ = [
    "ATTESTATION_FORMAT_NONE",
    "AttestationObject",
    "AuthenticatorData",
    "COSEKey",
    "DEFAULT_AAGUID",
    "FLAG_AT",
    "FLAG_BE",
    "FLAG_BS",
    "FLAG_ED",
    "FLAG_UP",
    "FLAG_UV",
    "REGISTRATION_FLAGS",
    "build_registration_attestation",
    "decode_cbor",
    "decode_cose_key",
    "encode_attestation_object",
    "encode_authenticator_data",
    "encode_cose_key",
    "encode_cose_key_from_point",
    "parse_attestation_object",
    "parse_authenticator_data",
    "rp_id_hash",
    "split_uncompressed_point",
]
