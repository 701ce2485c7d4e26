"""
Authenticode Digest Module

Computes the canonical Authenticode hash of a PE/COFF image: the whole file
except the CheckSum field, the certificate-table data directory entry and the
certificate table itself.
"""

import logging
from typing import List, Tuple

from cryptography.hazmat.primitives import hashes

from signing.authenticode import DigestAlgorithm, DigestResult
from signing.exceptions import DigestError

logger = logging.getLogger(__name__)

CHECKSUM_FIELD_SIZE = 4
DATA_DIRECTORY_ENTRY_SIZE = 8


def signable_regions(image) -> List[Tuple[int, int]]:
    """
    Return the ``(start, end)`` byte ranges of ``image.data`` covered by the digest.

    Raises:
        DigestError: If the header offsets are inconsistent with the image size
    """
    size = len(image.data)
    checksum_offset = image.checksum_offset
    certdir_offset = image.certdir_offset

    if checksum_offset < 0 or checksum_offset + CHECKSUM_FIELD_SIZE > certdir_offset:
        raise DigestError(
            f"CheckSum field at 0x{checksum_offset:x} is not before the "
            f"certificate table entry at 0x{certdir_offset:x}",
            path=image.path
        )
    if certdir_offset + DATA_DIRECTORY_ENTRY_SIZE > size:
        raise DigestError(
            f"Certificate table entry at 0x{certdir_offset:x} lies outside the image ({size} bytes)",
            path=image.path
        )

    return [
        (0, checksum_offset),
        (checksum_offset + CHECKSUM_FIELD_SIZE, certdir_offset),
        (certdir_offset + DATA_DIRECTORY_ENTRY_SIZE, size),
    ]


def compute_digest(image, algorithm: DigestAlgorithm = DigestAlgorithm.SHA256) -> DigestResult:
    """
    Compute the Authenticode digest of a loaded image.

    Args:
        image: Loaded :class:`~image_format.pe_image.PEImage`
        algorithm: Hash algorithm to use (default: SHA256)

    Returns:
        DigestResult tagged with ``algorithm``

    Raises:
        DigestError: If the image layout is inconsistent
    """
    hasher = hashes.Hash(algorithm.hash_algorithm())
    for start, end in signable_regions(image):
        hasher.update(image.data[start:end])

    result = DigestResult(algorithm, hasher.finalize())
    logger.debug(f"{algorithm.value} Authenticode digest of {image.path}: {result.hex()}")
    return result
