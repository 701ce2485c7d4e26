"""
Envelope Builder Module

Builds Authenticode signature envelopes: PKCS#7 SignedData structures that
bind an image digest to a signer certificate, and extends their certificate
sets with supplementary chain certificates.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Tuple, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from pyasn1.codec.der import decoder, encoder
from pyasn1.error import PyAsn1Error
from pyasn1.type import tag, univ
from pyasn1_modules import rfc2315

from .authenticode import (
    ECDSA_WITH_SHA_OIDS,
    PKCS7_SIGNED_DATA_OID,
    PKCS9_CONTENT_TYPE_OID,
    PKCS9_MESSAGE_DIGEST_OID,
    RSA_ENCRYPTION_OID,
    SPC_INDIRECT_DATA_OBJID,
    SPC_PE_IMAGE_DATA_OBSOLETE,
    SPC_PE_IMAGE_DATAOBJ,
    SPC_SP_OPUS_INFO_EMPTY,
    SPC_SP_OPUS_INFO_OBJID,
    AttributeSet,
    CertificateSet,
    DigestAlgorithm,
    DigestResult,
    SignedData,
    SignerInfo,
    SpcIndirectDataContent,
    der_content,
    der_tlv_length,
    der_set_order,
    set_algorithm,
)
from .exceptions import DigestError, EnvelopeConstructionError, KeyMismatchError
from .identity import SigningIdentity
from .key_manager import KeyManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureEnvelope:
    """
    An immutable Authenticode signature.

    ``der`` holds the encoded PKCS#7 ContentInfo. It is computed from the
    other fields unless supplied, which keeps signatures read back from an
    image byte-exact.
    """

    digest: DigestResult
    signer_certificate: x509.Certificate
    signature_value: bytes
    signature_algorithm: str
    indirect_data: bytes
    authenticated_attributes: Tuple[bytes, ...]
    embedded_certificates: Tuple[x509.Certificate, ...] = ()
    content_type: str = SPC_INDIRECT_DATA_OBJID
    der: bytes = field(default=b'', repr=False, compare=False)

    def __post_init__(self):
        if not self.der:
            object.__setattr__(self, 'der', _encode_envelope(self))

    @property
    def digest_algorithm(self) -> DigestAlgorithm:
        return self.digest.algorithm

    @property
    def certificates(self) -> Tuple[x509.Certificate, ...]:
        """Signer certificate followed by every embedded certificate."""
        return (self.signer_certificate,) + tuple(self.embedded_certificates)

    def to_der(self) -> bytes:
        return self.der

    @classmethod
    def from_der(cls, data: bytes) -> 'SignatureEnvelope':
        """
        Decode an encoded Authenticode signature.

        Trailing bytes after the ContentInfo (alignment padding) are ignored.

        Raises:
            ValueError: If ``data`` is not an Authenticode SignedData
        """
        try:
            content_info, rest = decoder.decode(data, asn1Spec=rfc2315.ContentInfo())
            if str(content_info['contentType']) != PKCS7_SIGNED_DATA_OID:
                raise ValueError(f"Not a signedData structure: {content_info['contentType']}")

            signed_data, _ = decoder.decode(bytes(content_info['content']), asn1Spec=SignedData())
            inner = signed_data['contentInfo']
            indirect_data = bytes(inner['content'])
            idc, _ = decoder.decode(indirect_data, asn1Spec=SpcIndirectDataContent())

            algorithm = DigestAlgorithm.from_oid(str(idc['messageDigest']['digestAlgorithm']['algorithm']))
            digest = DigestResult(algorithm, bytes(idc['messageDigest']['digest']))

            certificates = []
            if signed_data['certificates'].isValue:
                certificates = [x509.load_der_x509_certificate(bytes(cert))
                                for cert in signed_data['certificates']]

            signer_info = signed_data['signerInfos'][0]
            issuer_and_serial = signer_info['issuerAndSerialNumber']
            serial_number = int(issuer_and_serial['serialNumber'])
            issuer = bytes(issuer_and_serial['issuer'])

            attributes = ()
            if signer_info['authenticatedAttributes'].isValue:
                attributes = tuple(bytes(attribute) for attribute in signer_info['authenticatedAttributes'])
        except (PyAsn1Error, DigestError, IndexError) as e:
            raise ValueError(f"Malformed signature structure: {e}") from e

        signer = None
        for certificate in certificates:
            if (certificate.serial_number == serial_number
                    and certificate.issuer.public_bytes() == issuer):
                signer = certificate
                break
        if signer is None:
            raise ValueError(f"Signer certificate (serial {serial_number:x}) not present in signature")

        embedded = list(certificates)
        embedded.remove(signer)

        return cls(
            digest=digest,
            signer_certificate=signer,
            signature_value=bytes(signer_info['encryptedDigest']),
            signature_algorithm=str(signer_info['digestEncryptionAlgorithm']['algorithm']),
            indirect_data=indirect_data,
            authenticated_attributes=attributes,
            embedded_certificates=tuple(embedded),
            content_type=str(inner['contentType']),
            der=data[:len(data) - len(rest)]
        )


@dataclass(frozen=True)
class OpaqueSignature:
    """
    An existing signature kept as encoded bytes.

    Used for certificate table entries that cannot be decoded as
    :class:`SignatureEnvelope` (other digest algorithms, signer certificate
    not embedded, foreign content). They are written back unchanged.
    """

    der: bytes
    reason: str = field(default='', compare=False)

    def to_der(self) -> bytes:
        return self.der

    @classmethod
    def from_entry(cls, data: bytes, reason: str = '') -> 'OpaqueSignature':
        """Keep ``data`` up to the end of its leading DER element; alignment padding is dropped."""
        length = der_tlv_length(data)
        return cls(data[:length] if length else data, reason)


StoredSignature = Union[SignatureEnvelope, OpaqueSignature]


def _tagged_attribute_set() -> AttributeSet:
    return AttributeSet().subtype(implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatConstructed, 0))


def _encode_attribute(oid: str, value_der: bytes) -> bytes:
    attribute = rfc2315.Attribute()
    attribute['type'] = univ.ObjectIdentifier(oid)
    attribute['values'][0] = value_der
    return encoder.encode(attribute)


def _encode_attribute_set(attributes: Tuple[bytes, ...]) -> bytes:
    """DER of the [0] IMPLICIT authenticated attributes."""
    attribute_set = _tagged_attribute_set()
    for index, attribute in enumerate(attributes):
        attribute_set[index] = attribute
    return encoder.encode(attribute_set)


def _signed_attributes_input(attributes: Tuple[bytes, ...]) -> bytes:
    """Bytes covered by the signature: the attributes re-tagged as a universal SET."""
    return b'\x31' + _encode_attribute_set(attributes)[1:]


def _encode_envelope(envelope: SignatureEnvelope) -> bytes:
    signer_certificate = envelope.signer_certificate

    signer_info = SignerInfo()
    signer_info['version'] = 1
    signer_info['issuerAndSerialNumber']['issuer'] = signer_certificate.issuer.public_bytes()
    signer_info['issuerAndSerialNumber']['serialNumber'] = signer_certificate.serial_number
    set_algorithm(signer_info['digestAlgorithm'], envelope.digest_algorithm.oid)
    for index, attribute in enumerate(envelope.authenticated_attributes):
        signer_info['authenticatedAttributes'][index] = attribute
    set_algorithm(signer_info['digestEncryptionAlgorithm'], envelope.signature_algorithm,
                  null_parameters=envelope.signature_algorithm == RSA_ENCRYPTION_OID)
    signer_info['encryptedDigest'] = envelope.signature_value

    certificates = CertificateSet().subtype(
        implicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatConstructed, 0)
    )
    for index, certificate in enumerate(envelope.certificates):
        certificates[index] = certificate.public_bytes(serialization.Encoding.DER)

    signed_data = SignedData()
    signed_data['version'] = 1
    set_algorithm(signed_data['digestAlgorithms'][0], envelope.digest_algorithm.oid)
    signed_data['contentInfo']['contentType'] = univ.ObjectIdentifier(envelope.content_type)
    signed_data['contentInfo']['content'] = envelope.indirect_data
    signed_data['certificates'] = certificates
    signed_data['signerInfos'][0] = signer_info

    content_info = rfc2315.ContentInfo()
    content_info['contentType'] = univ.ObjectIdentifier(PKCS7_SIGNED_DATA_OID)
    content_info['content'] = encoder.encode(signed_data)
    return encoder.encode(content_info)


def encode_indirect_data(digest_result: DigestResult) -> bytes:
    """Encode the SpcIndirectDataContent binding a PE image digest."""
    idc = SpcIndirectDataContent()
    idc['data']['type'] = univ.ObjectIdentifier(SPC_PE_IMAGE_DATAOBJ)
    idc['data']['value'] = SPC_PE_IMAGE_DATA_OBSOLETE
    set_algorithm(idc['messageDigest']['digestAlgorithm'], digest_result.algorithm.oid)
    idc['messageDigest']['digest'] = digest_result.digest
    return encoder.encode(idc)


def _check_embedded_digest(indirect_data: bytes, digest_result: DigestResult) -> None:
    idc, _ = decoder.decode(indirect_data, asn1Spec=SpcIndirectDataContent())
    embedded_oid = str(idc['messageDigest']['digestAlgorithm']['algorithm'])
    embedded_digest = bytes(idc['messageDigest']['digest'])
    if embedded_oid != digest_result.algorithm.oid or embedded_digest != digest_result.digest:
        raise EnvelopeConstructionError(
            "Encoded image digest differs from the computed digest",
            reason="digest mismatch"
        )


def _signature_algorithm_oid(certificate: x509.Certificate, algorithm: DigestAlgorithm) -> str:
    try:
        public_key = certificate.public_key()
    except (ValueError, UnsupportedAlgorithm) as e:
        raise EnvelopeConstructionError(f"Cannot read certificate public key: {e}",
                                        reason="unsupported key type") from e

    if isinstance(public_key, rsa.RSAPublicKey):
        return RSA_ENCRYPTION_OID
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        return ECDSA_WITH_SHA_OIDS[algorithm.value]
    raise EnvelopeConstructionError(
        f"Unsupported certificate key type for Authenticode: {type(public_key).__name__}",
        reason="unsupported key type"
    )


def _verify_key_pair(certificate: x509.Certificate, signature: bytes, data: bytes,
                     algorithm: DigestAlgorithm) -> None:
    """Check the fresh signature against the certificate's public key."""
    public_key = certificate.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), algorithm.hash_algorithm())
        else:
            public_key.verify(signature, data, ec.ECDSA(algorithm.hash_algorithm()))
    except InvalidSignature:
        raise KeyMismatchError(
            f"Error in key/certificate chain: private key does not match certificate "
            f"{certificate.subject.rfc4514_string()}"
        ) from None


def build_signature(identity: SigningIdentity, digest_result: DigestResult) -> SignatureEnvelope:
    """
    Build a signature envelope over an image digest.

    Args:
        identity: Signing identity providing key and certificate
        digest_result: Digest of the image's signable content

    Returns:
        SignatureEnvelope with an empty embedded certificate set

    Raises:
        KeyMismatchError: If the key does not belong to the certificate
        EnvelopeConstructionError: If the key type is unsupported or signing fails
    """
    algorithm = digest_result.algorithm
    signature_algorithm = _signature_algorithm_oid(identity.certificate, algorithm)

    indirect_data = encode_indirect_data(digest_result)
    _check_embedded_digest(indirect_data, digest_result)

    content_digest = hashes.Hash(algorithm.hash_algorithm())
    content_digest.update(der_content(indirect_data))

    attributes = der_set_order((
        _encode_attribute(PKCS9_CONTENT_TYPE_OID,
                          encoder.encode(univ.ObjectIdentifier(SPC_INDIRECT_DATA_OBJID))),
        _encode_attribute(SPC_SP_OPUS_INFO_OBJID, SPC_SP_OPUS_INFO_EMPTY),
        _encode_attribute(PKCS9_MESSAGE_DIGEST_OID,
                          encoder.encode(univ.OctetString(content_digest.finalize()))),
    ))
    to_be_signed = _signed_attributes_input(attributes)

    try:
        signature = identity.private_key.sign(to_be_signed, algorithm.hash_algorithm())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise EnvelopeConstructionError(f"Signing primitive rejected the key: {e}",
                                        reason="signing failure") from e

    _verify_key_pair(identity.certificate, signature, to_be_signed, algorithm)

    envelope = SignatureEnvelope(
        digest=digest_result,
        signer_certificate=identity.certificate,
        signature_value=signature,
        signature_algorithm=signature_algorithm,
        indirect_data=indirect_data,
        authenticated_attributes=attributes
    )
    logger.debug(f"Built {algorithm.value} signature for {identity.subject} ({len(envelope.der)} bytes)")
    return envelope


def augment_certificates(envelope: SignatureEnvelope, chain_source: str) -> SignatureEnvelope:
    """
    Return a copy of ``envelope`` whose certificate set also holds every
    certificate from the PEM bundle at ``chain_source``.

    Certificates are added without any trust, ordering or uniqueness checks.
    The original envelope is unchanged whatever the outcome.

    Raises:
        ChainParseError: If the bundle cannot be read or a certificate is malformed
    """
    chain = KeyManager().load_certificate_chain(chain_source)
    if not chain:
        logger.warning(f"No certificates found in intermediate certificates file {chain_source}")

    augmented = dataclasses.replace(
        envelope,
        embedded_certificates=tuple(envelope.embedded_certificates) + chain,
        der=b''
    )
    logger.debug(f"Added {len(chain)} intermediate certificate(s) from {chain_source}")
    return augmented

