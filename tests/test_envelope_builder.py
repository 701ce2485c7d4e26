"""
Test suite for Authenticode envelope construction.
"""

import hashlib
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding
from cryptography.x509.oid import NameOID
from pyasn1.codec.der import decoder

from builders import create_identity, write_chain
from signing.authenticode import (
    SPC_INDIRECT_DATA_OBJID,
    SPC_PE_IMAGE_DATAOBJ,
    DigestAlgorithm,
    DigestResult,
    SpcIndirectDataContent,
    der_content,
)
from signing.envelope_builder import (
    SignatureEnvelope,
    _signed_attributes_input,
    augment_certificates,
    build_signature,
)
from signing.exceptions import (
    ChainParseError,
    EnvelopeConstructionError,
    KeyLoadError,
    KeyMismatchError,
)
from signing.identity import SigningIdentity
from signing.key_providers import LocalSigningKey, ProviderKind

DIGEST = DigestResult(DigestAlgorithm.SHA256, hashlib.sha256(b'image content').digest())


def embedded_digest(envelope: SignatureEnvelope):
    idc, _ = decoder.decode(envelope.indirect_data, asn1Spec=SpcIndirectDataContent())
    return (str(idc['messageDigest']['digestAlgorithm']['algorithm']),
            bytes(idc['messageDigest']['digest']),
            str(idc['data']['type']))


class TestBuildSignature:
    """Test cases for build_signature."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_embedded_digest_equals_input(self, rsa_identity):
        """Test that the envelope carries the supplied digest unchanged."""
        envelope = build_signature(rsa_identity, DIGEST)

        algorithm_oid, digest, data_type = embedded_digest(envelope)
        assert algorithm_oid == DigestAlgorithm.SHA256.oid
        assert digest == DIGEST.digest
        assert data_type == SPC_PE_IMAGE_DATAOBJ
        assert envelope.digest == DIGEST
        assert envelope.content_type == SPC_INDIRECT_DATA_OBJID

    def test_signer_and_empty_certificate_set(self, rsa_identity):
        """Test that only the signer certificate is embedded."""
        envelope = build_signature(rsa_identity, DIGEST)

        assert envelope.signer_certificate == rsa_identity.certificate
        assert envelope.embedded_certificates == ()
        assert envelope.certificates == (rsa_identity.certificate,)

    def test_rsa_signature_verifies(self, rsa_identity):
        """Test the signature over the authenticated attributes."""
        envelope = build_signature(rsa_identity, DIGEST)

        rsa_identity.certificate.public_key().verify(
            envelope.signature_value,
            _signed_attributes_input(envelope.authenticated_attributes),
            padding.PKCS1v15(),
            hashes.SHA256()
        )

    def test_message_digest_attribute(self, rsa_identity):
        """Test that the messageDigest attribute hashes the indirect data content."""
        envelope = build_signature(rsa_identity, DIGEST)

        expected = hashlib.sha256(der_content(envelope.indirect_data)).digest()
        assert any(attribute.endswith(expected) for attribute in envelope.authenticated_attributes)

    def test_rsa_signature_is_deterministic(self, rsa_identity):
        """Test that identical inputs give identical encodings."""
        assert build_signature(rsa_identity, DIGEST).to_der() == build_signature(rsa_identity, DIGEST).to_der()

    def test_ecdsa_identity(self):
        """Test signing with an ECDSA key."""
        files = create_identity(self.temp_dir, "EC Signer", key_type='ec')
        identity = SigningIdentity(LocalSigningKey(files.key), files.certificate, ProviderKind.FILE)

        envelope = build_signature(identity, DIGEST)

        files.certificate.public_key().verify(
            envelope.signature_value,
            _signed_attributes_input(envelope.authenticated_attributes),
            ec.ECDSA(hashes.SHA256())
        )
        assert envelope.signature_algorithm == '1.2.840.10045.4.3.2'

    def test_sha384_digest(self, rsa_identity):
        """Test that the signature hash follows the digest algorithm."""
        digest = DigestResult(DigestAlgorithm.SHA384, hashlib.sha384(b'image').digest())

        envelope = build_signature(rsa_identity, digest)

        assert envelope.digest_algorithm is DigestAlgorithm.SHA384
        assert embedded_digest(envelope)[1] == digest.digest

    def test_key_certificate_mismatch(self, rsa_identity):
        """Test a private key that does not belong to the certificate."""
        other = create_identity(self.temp_dir, "Other Signer")
        identity = SigningIdentity(LocalSigningKey(other.key), rsa_identity.certificate, ProviderKind.FILE)

        with pytest.raises(KeyMismatchError) as excinfo:
            build_signature(identity, DIGEST)

        assert isinstance(excinfo.value, KeyLoadError)
        assert isinstance(excinfo.value, EnvelopeConstructionError)
        assert excinfo.value.code == "KEY_MISMATCH"

    def test_unsupported_key_type(self):
        """Test that keys other than RSA and ECDSA are rejected."""
        key = ed25519.Ed25519PrivateKey.generate()
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Ed25519 Signer")])
        now = datetime.now(timezone.utc)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=1))
            .sign(key, None)
        )
        identity = SigningIdentity(LocalSigningKey(key), certificate, ProviderKind.FILE)

        with pytest.raises(EnvelopeConstructionError) as excinfo:
            build_signature(identity, DIGEST)
        assert excinfo.value.reason == "unsupported key type"


class TestSignatureEnvelope:
    """Test cases for SignatureEnvelope encoding."""

    def test_from_der_round_trip(self, rsa_identity):
        """Test decoding an encoded envelope."""
        envelope = build_signature(rsa_identity, DIGEST)

        decoded = SignatureEnvelope.from_der(envelope.to_der())

        assert decoded == envelope
        assert decoded.to_der() == envelope.to_der()

    def test_from_der_ignores_padding(self, rsa_identity):
        """Test that alignment padding after the structure is dropped."""
        envelope = build_signature(rsa_identity, DIGEST)

        decoded = SignatureEnvelope.from_der(envelope.to_der() + b'\x00' * 5)

        assert decoded.to_der() == envelope.to_der()

    def test_from_der_rejects_garbage(self):
        """Test decoding bytes that are not a signature."""
        with pytest.raises(ValueError):
            SignatureEnvelope.from_der(b'\x30\x03\x02\x01\x01')

    def test_envelope_is_immutable(self, rsa_identity):
        """Test that envelope fields cannot be reassigned."""
        envelope = build_signature(rsa_identity, DIGEST)

        with pytest.raises(AttributeError):
            envelope.signature_value = b''


class TestAugmentCertificates:
    """Test cases for augment_certificates."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_adds_every_certificate(self, rsa_identity):
        """Test that a two-certificate bundle gives three certificates in total."""
        root = create_identity(self.temp_dir, "Root CA")
        intermediate = create_identity(self.temp_dir, "Intermediate CA", issuer=root)
        chain_path = write_chain(os.path.join(self.temp_dir, "chain.pem"), [intermediate, root])
        envelope = build_signature(rsa_identity, DIGEST)

        augmented = augment_certificates(envelope, chain_path)

        assert len(augmented.certificates) == 3
        assert augmented.embedded_certificates == (intermediate.certificate, root.certificate)
        assert augmented.signature_value == envelope.signature_value
        assert envelope.embedded_certificates == ()

        decoded = SignatureEnvelope.from_der(augmented.to_der())
        assert len(decoded.certificates) == 3
        assert set(decoded.embedded_certificates) == {intermediate.certificate, root.certificate}

    def test_unrelated_certificates_are_not_validated(self, rsa_identity):
        """Test that certificates are embedded without any chain checks."""
        stranger = create_identity(self.temp_dir, "Stranger")
        chain_path = write_chain(os.path.join(self.temp_dir, "chain.pem"), [stranger, stranger])

        augmented = augment_certificates(build_signature(rsa_identity, DIGEST), chain_path)

        assert len(augmented.certificates) == 3

    def test_malformed_block(self, rsa_identity):
        """Test a bundle whose second certificate is corrupt."""
        good = create_identity(self.temp_dir, "Good CA")
        chain_path = write_chain(os.path.join(self.temp_dir, "chain.pem"), [good])
        with open(chain_path, 'ab') as f:
            f.write(b'-----BEGIN CERTIFICATE-----\nbm90IGEgY2VydGlmaWNhdGU=\n-----END CERTIFICATE-----\n')
        envelope = build_signature(rsa_identity, DIGEST)

        with pytest.raises(ChainParseError) as excinfo:
            augment_certificates(envelope, chain_path)

        assert excinfo.value.block == 1
        assert envelope.embedded_certificates == ()

    def test_truncated_last_block(self, rsa_identity):
        """Test a bundle ending in a certificate without its END line."""
        good = create_identity(self.temp_dir, "Good CA")
        chain_path = write_chain(os.path.join(self.temp_dir, "chain.pem"), [good])
        with open(chain_path, 'ab') as f:
            f.write(b'-----BEGIN CERTIFICATE-----\nMIIBtruncated\n')
        envelope = build_signature(rsa_identity, DIGEST)

        with pytest.raises(ChainParseError) as excinfo:
            augment_certificates(envelope, chain_path)

        assert excinfo.value.block == 1
        assert envelope.embedded_certificates == ()

    def test_unterminated_block_before_good_one(self, rsa_identity):
        """Test a bundle whose first certificate runs into the second."""
        good = create_identity(self.temp_dir, "Good CA")
        chain_path = os.path.join(self.temp_dir, "chain.pem")
        with open(chain_path, 'wb') as f:
            f.write(b'-----BEGIN CERTIFICATE-----\nMIIBtruncated\n')
        write_chain(chain_path + ".good", [good])
        with open(chain_path + ".good", 'rb') as src, open(chain_path, 'ab') as f:
            f.write(src.read())

        with pytest.raises(ChainParseError) as excinfo:
            augment_certificates(build_signature(rsa_identity, DIGEST), chain_path)

        assert excinfo.value.block == 0

    def test_unreadable_chain_file(self, rsa_identity):
        """Test a chain file that does not exist."""
        envelope = build_signature(rsa_identity, DIGEST)

        with pytest.raises(ChainParseError):
            augment_certificates(envelope, os.path.join(self.temp_dir, "missing.pem"))

    def test_empty_chain_file(self, rsa_identity):
        """Test a chain file without certificates."""
        chain_path = os.path.join(self.temp_dir, "empty.pem")
        with open(chain_path, 'w') as f:
            f.write("# no certificates here\n")

        augmented = augment_certificates(build_signature(rsa_identity, DIGEST), chain_path)

        assert augmented.certificates == (rsa_identity.certificate,)
