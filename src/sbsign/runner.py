"""
Signing Runner

Drives one signing run: validate the configuration, load the image, open the
signing identity, build and attach the signature, and write the output.
"""

import logging
from dataclasses import dataclass

from image_format.authenticode_digest import compute_digest
from image_format.pe_image import PEImage
from signature_storage.output_writer import OutputWriter
from signing.authenticode import DigestResult
from signing.envelope_builder import SignatureEnvelope, augment_certificates, build_signature
from signing.identity import load_identity

from .config import SignConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningResult:
    """Outcome of a successful signing run."""

    output_path: str
    signature_index: int
    signature_count: int
    digest: DigestResult
    envelope: SignatureEnvelope
    detached: bool = False


def run_signing(config: SignConfig) -> SigningResult:
    """
    Sign the image described by ``config``.

    The engine (if any) is released exactly once whether or not the run
    succeeds. Nothing is written unless every step succeeds.

    Args:
        config: Signing configuration

    Returns:
        SigningResult

    Raises:
        SigningError: Any failure; the run is aborted at the point of detection
    """
    config.validate()
    algorithm = config.digest_algorithm
    output_path = config.output_path

    image = PEImage.load(config.image_path)
    if image.signatures.count():
        logger.info(f"{config.image_path} already carries {image.signatures.count()} signature(s)")

    with load_identity(config.key,
                       config.key_format,
                       config.cert,
                       provider=config.engine,
                       **config.provider_options()) as identity:
        digest = compute_digest(image, algorithm)
        logger.info(f"Image digest ({algorithm.value}): {digest.hex()}")

        envelope = build_signature(identity, digest)
        if config.addcert:
            envelope = augment_certificates(envelope, config.addcert)

        index = image.append_signature(envelope)
        OutputWriter(detached=config.detached).write(image, output_path)

    return SigningResult(
        output_path=output_path,
        signature_index=index,
        signature_count=image.signatures.count(),
        digest=digest,
        envelope=envelope,
        detached=config.detached
    )
