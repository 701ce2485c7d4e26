"""
Builders for test images and signing identities.
"""

import os
import struct
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

PE_OFFSET = 0x80
OPTIONAL_HEADER_OFFSET = PE_OFFSET + 4 + 20
CHECKSUM_OFFSET = OPTIONAL_HEADER_OFFSET + 64
CERTDIR_OFFSET = OPTIONAL_HEADER_OFFSET + 112 + 4 * 8
SECTION_OFFSET = 0x200
SECTION_SIZE = 0x200


def build_pe_image(payload: bytes = b'', checksum: int = 0, trailing: bytes = b'') -> bytes:
    """Build a minimal PE32+ EFI application with one .text section."""
    dos_header = bytearray(0x40)
    dos_header[0:2] = b'MZ'
    struct.pack_into('<I', dos_header, 0x3C, PE_OFFSET)

    coff_header = struct.pack('<HHIIIHH', 0x8664, 1, 0, 0, 0, 240, 0x0022)

    optional_header = struct.pack(
        '<HBBIIIIIQIIHHHHHHIIIIHHQQQQII',
        0x20B, 0, 0,
        SECTION_SIZE, 0, 0,
        0x1000, 0x1000,
        0x10000000,
        0x1000, 0x200,
        0, 0, 0, 0, 0, 0,
        0, 0x2000, SECTION_OFFSET, checksum,
        10, 0,
        0x100000, 0x1000, 0x100000, 0x1000,
        0, 16
    )
    data_directories = b'\x00' * (16 * 8)

    section_header = struct.pack(
        '<8sIIIIIIHHI',
        b'.text', SECTION_SIZE, 0x1000, SECTION_SIZE, SECTION_OFFSET, 0, 0, 0, 0, 0x60000020
    )

    image = bytearray(dos_header)
    image += b'\x00' * (PE_OFFSET - len(image))
    image += b'PE\x00\x00' + coff_header + optional_header + data_directories + section_header
    image += b'\x00' * (SECTION_OFFSET - len(image))

    body = (payload or b'\xc3') + bytes(range(256)) * 2
    image += body[:SECTION_SIZE].ljust(SECTION_SIZE, b'\x00')
    image += trailing
    return bytes(image)


def write_pe_image(path: str, **kwargs) -> str:
    with open(path, 'wb') as f:
        f.write(build_pe_image(**kwargs))
    return path


def without_signing_fields(data: bytes) -> bytes:
    """Zero the CheckSum field and the certificate-table directory entry."""
    image = bytearray(data)
    image[CHECKSUM_OFFSET:CHECKSUM_OFFSET + 4] = bytes(4)
    image[CERTDIR_OFFSET:CERTDIR_OFFSET + 8] = bytes(8)
    return bytes(image)


def create_certificate(private_key, common_name: str, issuer_key=None, issuer_name=None,
                       valid_days: int = 365) -> x509.Certificate:
    """Create a code-signing certificate, self-signed unless an issuer key is given."""
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issuer = subject
    if issuer_key is not None:
        issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name or common_name)])

    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]), critical=False)
    )
    return builder.sign(issuer_key or private_key, hashes.SHA256())


def public_keys_match(private_key, certificate: x509.Certificate) -> bool:
    """Check that ``certificate`` carries the public half of ``private_key``."""
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    return (
        private_key.public_key().public_bytes(serialization.Encoding.DER, spki)
        == certificate.public_key().public_bytes(serialization.Encoding.DER, spki)
    )


def create_identity(directory: str,
                    name: str,
                    key_type: str = 'rsa',
                    key_encoding: str = 'PEM',
                    issuer=None) -> SimpleNamespace:
    """Generate a key and code-signing certificate and save them under ``directory``."""
    if key_type == 'rsa':
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    else:
        private_key = ec.generate_private_key(ec.SECP256R1())

    if issuer is not None:
        certificate = create_certificate(private_key, name, issuer_key=issuer.key, issuer_name=issuer.name)
    else:
        certificate = create_certificate(private_key, name)

    extension = 'der' if key_encoding == 'DER' else 'key'
    key_path = os.path.join(directory, f'{name}.{extension}')
    cert_path = os.path.join(directory, f'{name}.crt')
    with open(key_path, 'wb') as f:
        f.write(private_key.private_bytes(
            encoding=serialization.Encoding.DER if key_encoding == 'DER' else serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ))
    with open(cert_path, 'wb') as f:
        f.write(certificate.public_bytes(serialization.Encoding.PEM))

    return SimpleNamespace(
        name=name,
        key=private_key,
        certificate=certificate,
        key_path=key_path,
        cert_path=cert_path
    )


def write_chain(path: str, identities) -> str:
    """Write the certificates of ``identities`` into one PEM bundle."""
    with open(path, 'wb') as f:
        for identity in identities:
            f.write(identity.certificate.public_bytes(serialization.Encoding.PEM))
    return path


SIGNING_TOOL = '''#!{python}
import sys

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding

args = sys.argv[1:]
with open({log!r}, 'a') as f:
    f.write(' '.join(args) + '\\n')
with open({key!r}, 'rb') as f:
    key = serialization.load_pem_private_key(f.read(), password=None)
with open(args[args.index('--input-file') + 1], 'rb') as f:
    data = f.read()
if isinstance(key, ec.EllipticCurvePrivateKey):
    signature = key.sign(data, ec.ECDSA(hashes.SHA256()))
else:
    signature = key.sign(data, padding.PKCS1v15(), hashes.SHA256())
with open(args[args.index('--output-file') + 1], 'wb') as f:
    f.write(signature)
'''


def write_tool(path: str, script: str) -> str:
    """Write an executable script standing in for ``pkcs11-tool``."""
    with open(path, 'w') as f:
        f.write(script)
    os.chmod(path, 0o755)
    return path


def write_signing_tool(directory: str, identity, log_path: str) -> str:
    """A ``pkcs11-tool`` stand-in that signs with ``identity``'s key and logs its arguments."""
    script = SIGNING_TOOL.format(python=sys.executable, log=log_path, key=identity.key_path)
    return write_tool(os.path.join(directory, 'pkcs11-tool'), script)
