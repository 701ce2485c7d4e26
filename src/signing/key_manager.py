"""
Key Manager Module

Loads signing keys and X.509 certificates from files. Supports RSA and ECDSA
keys in PEM or DER encoding, and PEM bundles of chain certificates.
"""

import re
from pathlib import Path
from typing import Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePrivateKey
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from .exceptions import ChainParseError, KeyLoadError, SigningIOError

PrivateKey = Union[RSAPrivateKey, EllipticCurvePrivateKey]

_PEM_CERTIFICATE_BEGIN = re.compile(rb'-----BEGIN (?:X509 |TRUSTED )?CERTIFICATE-----')
_PEM_CERTIFICATE_BLOCK = re.compile(
    rb'-----BEGIN (?:X509 |TRUSTED )?CERTIFICATE-----.*?-----END (?:X509 |TRUSTED )?CERTIFICATE-----',
    re.DOTALL
)


def _read_file(file_path: str, what: str) -> bytes:
    if not Path(file_path).exists():
        raise SigningIOError(f"{what} file not found: {file_path}", path=file_path)
    try:
        with open(file_path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise SigningIOError(f"Cannot read {what} file {file_path}: {e}", path=file_path) from e


class KeyManager:
    """Loads cryptographic keys and certificates for the signing system."""

    def load_private_key(self,
                         file_path: str,
                         encoding: str = 'PEM',
                         password: Optional[bytes] = None) -> PrivateKey:
        """
        Load a private key from a PEM or DER file.

        Args:
            file_path: Path to the private key file
            encoding: 'PEM' or 'DER'
            password: Optional password for decryption

        Returns:
            Private key object

        Raises:
            SigningIOError: If the file cannot be read
            KeyLoadError: If the key cannot be decoded
        """
        key_data = _read_file(file_path, "Private key")

        try:
            if encoding.upper() == 'DER':
                private_key = serialization.load_der_private_key(key_data, password=password)
            else:
                private_key = serialization.load_pem_private_key(key_data, password=password)
        except (ValueError, TypeError) as e:
            raise KeyLoadError(f"Cannot decode {encoding.upper()} private key {file_path}: {e}",
                               source=file_path) from e

        return private_key

    def load_certificate(self, file_path: str) -> x509.Certificate:
        """
        Load an X.509 certificate from a PEM or DER file.

        PEM is tried first, DER is used as a fallback.
        """
        cert_data = _read_file(file_path, "Certificate")

        try:
            if b'-----BEGIN' in cert_data:
                return x509.load_pem_x509_certificate(cert_data)
            return x509.load_der_x509_certificate(cert_data)
        except ValueError as e:
            raise KeyLoadError(f"Cannot decode certificate {file_path}: {e}", source=file_path) from e

    def load_certificate_chain(self, file_path: str) -> Tuple[x509.Certificate, ...]:
        """
        Load every certificate from a PEM bundle.

        Each PEM block is parsed on its own; nothing is returned unless all
        of them parse. A BEGIN line without its END line counts as a
        malformed block.

        Raises:
            ChainParseError: If the file cannot be read or any block is malformed
        """
        try:
            bundle = _read_file(file_path, "Certificate chain")
        except SigningIOError as e:
            raise ChainParseError(f"Error reading intermediate certificates file: {e.message}",
                                  path=file_path) from e

        certificates = []
        for number, match in enumerate(_PEM_CERTIFICATE_BLOCK.finditer(bundle)):
            block = match.group(0)
            if len(_PEM_CERTIFICATE_BEGIN.findall(block)) != 1:
                raise ChainParseError(
                    f"Certificate #{number} in intermediate certificates file {file_path} is not terminated",
                    path=file_path, block=number
                )
            try:
                certificates.append(x509.load_pem_x509_certificate(block))
            except ValueError as e:
                raise ChainParseError(
                    f"Error parsing certificate #{number} in intermediate certificates file {file_path}: {e}",
                    path=file_path, block=number
                ) from e

        if len(_PEM_CERTIFICATE_BEGIN.findall(bundle)) != len(certificates):
            number = len(certificates)
            raise ChainParseError(
                f"Certificate #{number} in intermediate certificates file {file_path} is truncated",
                path=file_path, block=number
            )

        return tuple(certificates)

    def get_key_info(self, certificate: x509.Certificate) -> dict:
        """
        Describe the public key carried by a certificate.

        Args:
            certificate: Certificate to analyze

        Returns:
            Dictionary containing key information
        """
        public_key = certificate.public_key()
        info = {
            'subject': certificate.subject.rfc4514_string(),
            'serial_number': certificate.serial_number,
            'type': type(public_key).__name__
        }

        if isinstance(public_key, rsa.RSAPublicKey):
            info.update({
                'algorithm': 'RSA',
                'key_size': public_key.key_size
            })
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            info.update({
                'algorithm': 'ECDSA',
                'curve': public_key.curve.name,
                'key_size': public_key.curve.key_size
            })

        return info
