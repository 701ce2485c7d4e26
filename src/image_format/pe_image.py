"""
PE Image Module

Loads PE/COFF (EFI) images, separates their certificate table from the
signable content, and writes signed images back out with a patched
certificate-table directory entry and a recomputed checksum.
"""

import logging
import struct
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

import pefile

from signature_storage.output_writer import atomic_write_bytes
from signature_storage.signature_store import SignatureStore
from signing.envelope_builder import OpaqueSignature, SignatureEnvelope
from signing.exceptions import DigestError, SerializationError, SigningIOError

logger = logging.getLogger(__name__)

SECURITY_DIRECTORY_INDEX = pefile.DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_SECURITY']

WIN_CERTIFICATE_HEADER = struct.Struct('<IHH')
WIN_CERT_REVISION_2_0 = 0x0200
WIN_CERT_TYPE_PKCS_SIGNED_DATA = 0x0002

IMAGE_ALIGNMENT = 8


def _align(size: int, alignment: int = IMAGE_ALIGNMENT) -> int:
    return (size + alignment - 1) & ~(alignment - 1)


def pe_checksum(data: bytes) -> int:
    """Compute the PE optional header CheckSum of ``data``."""
    pe = pefile.PE(data=data, fast_load=True)
    try:
        return pe.generate_checksum()
    finally:
        pe.close()


def create_win_certificate(pkcs7_data: bytes) -> bytes:
    """
    Wrap an encoded signature in a WIN_CERTIFICATE entry.

    ``dwLength`` covers the header, the signature and the zero padding up to
    the next 8-byte boundary.
    """
    total_length = _align(WIN_CERTIFICATE_HEADER.size + len(pkcs7_data))
    header = WIN_CERTIFICATE_HEADER.pack(total_length, WIN_CERT_REVISION_2_0, WIN_CERT_TYPE_PKCS_SIGNED_DATA)
    entry = header + pkcs7_data
    return entry + b'\x00' * (total_length - len(entry))


def parse_certificate_table(table: bytes, path: Optional[str] = None) -> List[bytes]:
    """
    Split a certificate table into the signatures of its WIN_CERTIFICATE entries.

    Raises:
        DigestError: If an entry is truncated or is not a PKCS#7 signature
    """
    signatures = []
    offset = 0

    while offset < len(table):
        if offset + WIN_CERTIFICATE_HEADER.size > len(table):
            raise DigestError(f"Truncated certificate table entry at offset {offset}", path=path)

        length, revision, certificate_type = WIN_CERTIFICATE_HEADER.unpack_from(table, offset)
        if length < WIN_CERTIFICATE_HEADER.size or offset + length > len(table):
            raise DigestError(f"Invalid certificate length {length} at offset {offset}", path=path)
        if certificate_type != WIN_CERT_TYPE_PKCS_SIGNED_DATA:
            raise DigestError(
                f"Unsupported certificate type 0x{certificate_type:04x} at offset {offset}",
                path=path
            )
        if revision != WIN_CERT_REVISION_2_0:
            logger.warning(f"Certificate table entry at offset {offset} has revision 0x{revision:04x}")

        signatures.append(table[offset + WIN_CERTIFICATE_HEADER.size:offset + length])
        offset = _align(offset + length)

    return signatures


class PEImage:
    """A PE/COFF image and the signatures it carries."""

    def __init__(self,
                 path: str,
                 data: bytes,
                 checksum_offset: int,
                 certdir_offset: int,
                 signatures: Optional[SignatureStore] = None):
        self.path = path
        self.data = data
        self.checksum_offset = checksum_offset
        self.certdir_offset = certdir_offset
        self.signatures = signatures if signatures is not None else SignatureStore()

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'PEImage':
        """
        Load an image from disk.

        Signatures already present in the certificate table are decoded into
        the image's signature store in table order; entries that do not decode
        are stored as :class:`OpaqueSignature` and written back unchanged. The
        remaining content is zero padded to an 8-byte boundary.

        Args:
            path: Path to the PE/COFF image

        Returns:
            PEImage

        Raises:
            SigningIOError: If the file cannot be read
            DigestError: If the file is not a PE image or its certificate table is malformed
        """
        path = str(path)
        try:
            with open(path, 'rb') as f:
                raw = f.read()
        except OSError as e:
            raise SigningIOError(f"Cannot read image {path}: {e}", path=path) from e

        try:
            pe = pefile.PE(data=raw, fast_load=True)
        except pefile.PEFormatError as e:
            raise DigestError(f"{path} is not a PE/COFF image: {e}", path=path) from e

        try:
            directories = pe.OPTIONAL_HEADER.DATA_DIRECTORY
            if len(directories) <= SECURITY_DIRECTORY_INDEX:
                raise DigestError(f"{path} has no certificate table data directory", path=path)

            security_directory = directories[SECURITY_DIRECTORY_INDEX]
            checksum_offset = pe.OPTIONAL_HEADER.dump_dict()['CheckSum']['FileOffset']
            certdir_offset = security_directory.dump_dict()['VirtualAddress']['FileOffset']
            table_offset = security_directory.VirtualAddress
            table_size = security_directory.Size
        finally:
            pe.close()

        table = b''
        data = raw
        if table_size:
            if table_offset + table_size != len(raw):
                raise DigestError(
                    f"Certificate table of {path} (0x{table_offset:x}+0x{table_size:x}) "
                    f"is not at the end of the image ({len(raw)} bytes)",
                    path=path
                )
            if table_offset < certdir_offset + 8:
                raise DigestError(f"Certificate table of {path} overlaps the image headers", path=path)
            data = raw[:table_offset]
            table = raw[table_offset:]

        if len(data) % IMAGE_ALIGNMENT:
            padding = _align(len(data)) - len(data)
            logger.warning(f"Image size {len(data)} is not 8-byte aligned; padding {path} with {padding} bytes")
            data += b'\x00' * padding

        signatures = SignatureStore()
        for number, signature in enumerate(parse_certificate_table(table, path)):
            try:
                signatures.append(SignatureEnvelope.from_der(signature))
            except ValueError as e:
                logger.warning(f"Keeping existing signature #{number} in {path} undecoded: {e}")
                signatures.append(OpaqueSignature.from_entry(signature, reason=str(e)))

        image = cls(path, data, checksum_offset, certdir_offset, signatures)
        logger.debug(f"Loaded {path}: {len(data)} bytes of image data, {signatures.count()} existing signature(s)")
        return image

    def append_signature(self, envelope: SignatureEnvelope) -> int:
        """Add ``envelope`` after the existing signatures and return its index."""
        return self.signatures.append(envelope)

    def iterate_signatures(self) -> Iterator[Tuple[int, bytes]]:
        """Yield ``(index, encoded signature)`` for every stored signature in order."""
        for index, envelope in enumerate(self.signatures):
            yield index, envelope.to_der()

    def certificate_table(self) -> bytes:
        return b''.join(create_win_certificate(signature) for _, signature in self.iterate_signatures())

    def to_bytes(self) -> bytes:
        """Serialize the image with its certificate table and an updated checksum."""
        table = self.certificate_table()

        output = bytearray(self.data)
        if table:
            struct.pack_into('<II', output, self.certdir_offset, len(self.data), len(table))
        else:
            struct.pack_into('<II', output, self.certdir_offset, 0, 0)
        output += table

        struct.pack_into('<I', output, self.checksum_offset, pe_checksum(bytes(output)))
        return bytes(output)

    def write_combined(self, output_path: Union[str, Path]) -> None:
        """Write the signed image to ``output_path``."""
        atomic_write_bytes(output_path, self.to_bytes())

    def write_detached(self, index: int, output_path: Union[str, Path]) -> None:
        """Write only the encoded signature at ``index`` to ``output_path``."""
        envelope = self.signatures.get(index)
        if envelope is None:
            raise SerializationError(f"Image {self.path} has no signature #{index}", path=str(output_path))
        atomic_write_bytes(output_path, envelope.to_der())
