"""
Authenticode Structures Module

ASN.1 types, object identifiers and digest descriptors used to build
Authenticode (PKCS#7 SignedData over SpcIndirectDataContent) signatures for
PE/COFF images.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cryptography.hazmat.primitives import hashes
from pyasn1.type import namedtype, tag, univ
from pyasn1_modules import rfc2315

from .exceptions import DigestError

# PKCS#7 / PKCS#9
PKCS7_SIGNED_DATA_OID = '1.2.840.113549.1.7.2'
PKCS9_CONTENT_TYPE_OID = '1.2.840.113549.1.9.3'
PKCS9_MESSAGE_DIGEST_OID = '1.2.840.113549.1.9.4'

# Microsoft Authenticode
SPC_INDIRECT_DATA_OBJID = '1.3.6.1.4.1.311.2.1.4'
SPC_SP_OPUS_INFO_OBJID = '1.3.6.1.4.1.311.2.1.12'
SPC_PE_IMAGE_DATAOBJ = '1.3.6.1.4.1.311.2.1.15'

# Signature algorithms
RSA_ENCRYPTION_OID = '1.2.840.113549.1.1.1'
ECDSA_WITH_SHA_OIDS = {
    'sha256': '1.2.840.10045.4.3.2',
    'sha384': '1.2.840.10045.4.3.3',
    'sha512': '1.2.840.10045.4.3.4',
}

# SpcPeImageData { flags: '', file: SpcLink.file(SpcString.unicode("<<<Obsolete>>>")) }
SPC_PE_IMAGE_DATA_OBSOLETE = bytes.fromhex(
    '3025030100a020a21e801c'
    '003c003c003c004f00620073006f006c006500740065003e003e003e'
)

# Empty SpcSpOpusInfo SEQUENCE
SPC_SP_OPUS_INFO_EMPTY = b'\x30\x00'

ASN1_NULL = b'\x05\x00'


class DigestAlgorithm(Enum):
    """Hash algorithms usable for the image digest and the signature."""

    SHA256 = 'sha256'
    SHA384 = 'sha384'
    SHA512 = 'sha512'

    @property
    def oid(self) -> str:
        return _DIGEST_OIDS[self]

    @property
    def digest_size(self) -> int:
        return self.hash_algorithm().digest_size

    def hash_algorithm(self) -> hashes.HashAlgorithm:
        """Return a fresh ``cryptography`` hash algorithm instance."""
        return _HASH_CLASSES[self]()

    @classmethod
    def from_oid(cls, oid: str) -> 'DigestAlgorithm':
        for algorithm, algorithm_oid in _DIGEST_OIDS.items():
            if algorithm_oid == oid:
                return algorithm
        raise ValueError(f"Unsupported digest algorithm OID: {oid}")


_DIGEST_OIDS = {
    DigestAlgorithm.SHA256: '2.16.840.1.101.3.4.2.1',
    DigestAlgorithm.SHA384: '2.16.840.1.101.3.4.2.2',
    DigestAlgorithm.SHA512: '2.16.840.1.101.3.4.2.3',
}

_HASH_CLASSES = {
    DigestAlgorithm.SHA256: hashes.SHA256,
    DigestAlgorithm.SHA384: hashes.SHA384,
    DigestAlgorithm.SHA512: hashes.SHA512,
}


@dataclass(frozen=True)
class DigestResult:
    """Content digest of an image, tagged with the algorithm that produced it."""

    algorithm: DigestAlgorithm
    digest: bytes

    def __post_init__(self):
        if len(self.digest) != self.algorithm.digest_size:
            raise DigestError(
                f"{self.algorithm.value} digest must be {self.algorithm.digest_size} bytes, "
                f"got {len(self.digest)}"
            )

    def hex(self) -> str:
        return self.digest.hex()


class SpcAttributeTypeAndOptionalValue(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('type', univ.ObjectIdentifier()),
        namedtype.OptionalNamedType('value', univ.Any())
    )


class SpcIndirectDataContent(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('data', SpcAttributeTypeAndOptionalValue()),
        namedtype.NamedType('messageDigest', rfc2315.DigestInfo())
    )


class IssuerAndSerialNumber(univ.Sequence):
    """Issuer kept as raw DER so it matches the certificate byte for byte."""

    componentType = namedtype.NamedTypes(
        namedtype.NamedType('issuer', univ.Any()),
        namedtype.NamedType('serialNumber', univ.Integer())
    )


class AttributeSet(univ.SetOf):
    """SET OF Attribute, each attribute held as its DER encoding."""

    componentType = univ.Any()


class CertificateSet(univ.SetOf):
    """SET OF Certificate, each certificate held as its DER encoding."""

    componentType = univ.Any()


class SignerInfo(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('version', univ.Integer()),
        namedtype.NamedType('issuerAndSerialNumber', IssuerAndSerialNumber()),
        namedtype.NamedType('digestAlgorithm', rfc2315.DigestAlgorithmIdentifier()),
        namedtype.OptionalNamedType('authenticatedAttributes', AttributeSet().subtype(
            implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatConstructed, 0))),
        namedtype.NamedType('digestEncryptionAlgorithm', rfc2315.DigestEncryptionAlgorithmIdentifier()),
        namedtype.NamedType('encryptedDigest', univ.OctetString()),
        namedtype.OptionalNamedType('unauthenticatedAttributes', AttributeSet().subtype(
            implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatConstructed, 1)))
    )


class SignerInfos(univ.SetOf):
    componentType = SignerInfo()


class SignedData(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType('version', univ.Integer()),
        namedtype.NamedType('digestAlgorithms', rfc2315.DigestAlgorithmIdentifiers()),
        namedtype.NamedType('contentInfo', rfc2315.ContentInfo()),
        namedtype.OptionalNamedType('certificates', CertificateSet().subtype(
            implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatConstructed, 0))),
        namedtype.OptionalNamedType('crls', CertificateSet().subtype(
            implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatConstructed, 1))),
        namedtype.NamedType('signerInfos', SignerInfos())
    )


def der_content(der: bytes) -> bytes:
    """Strip the tag and length header from a single DER TLV."""
    length = der[1]
    if length & 0x80:
        return der[2 + (length & 0x7f):]
    return der[2:]


def der_tlv_length(der: bytes) -> Optional[int]:
    """Encoded size of the DER TLV at the start of ``der``, or None if it does not fit."""
    if len(der) < 2:
        return None
    length = der[1]
    header = 2
    if length & 0x80:
        count = length & 0x7f
        if count == 0 or len(der) < header + count:
            return None
        length = int.from_bytes(der[header:header + count], 'big')
        header += count
    total = header + length
    return total if total <= len(der) else None


def set_algorithm(target, oid: str, null_parameters: bool = True) -> None:
    """Fill an AlgorithmIdentifier component in place."""
    target['algorithm'] = univ.ObjectIdentifier(oid)
    if null_parameters:
        target['parameters'] = ASN1_NULL


def der_set_order(encodings) -> tuple:
    """Order encoded elements the way DER sorts the members of a SET OF."""
    encodings = tuple(encodings)
    if not encodings:
        return ()
    width = max(len(encoding) for encoding in encodings)
    return tuple(sorted(encodings, key=lambda encoding: encoding.ljust(width, b'\x00')))
