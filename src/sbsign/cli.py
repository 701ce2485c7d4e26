"""
sbsign CLI

Sign an EFI boot image for use with Secure Boot.
"""

import argparse
import logging
import sys
from typing import List, Optional

from signing.exceptions import SigningError

from . import __version__
from .config import SignConfig
from .runner import run_signing

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="sbsign",
        usage="%(prog)s [options] --key <keyfile> --cert <certfile> <efi-boot-image>",
        description="Sign an EFI boot image for use with secure boot.",
    )

    parser.add_argument(
        "image_path",
        metavar="efi-boot-image",
        help="PE/COFF image to sign",
    )
    parser.add_argument(
        "-e", "--engine",
        help="use the specified engine to load the key",
    )
    parser.add_argument(
        "-f", "--keyform",
        metavar="format",
        help="key format: PEM, DER, or engine",
    )
    parser.add_argument(
        "-k", "--key",
        metavar="keyfile",
        help="signing key (PEM-encoded private key, or a key reference for --engine)",
    )
    parser.add_argument(
        "-c", "--cert",
        metavar="certfile",
        help="certificate (x509 certificate)",
    )
    parser.add_argument(
        "-a", "--addcert",
        metavar="addcertfile",
        help="additional intermediate certificates in a file",
    )
    parser.add_argument(
        "-d", "--detached",
        action="store_true",
        help="write a detached signature, instead of a signed binary",
    )
    parser.add_argument(
        "-o", "--output",
        metavar="file",
        help="write signed data to <file> (default <efi-boot-image>.signed, "
             "or <efi-boot-image>.pk7 for detached signatures)",
    )
    parser.add_argument(
        "--config",
        help="YAML signing profile",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging("DEBUG" if args.verbose else "INFO")

    try:
        config = SignConfig.from_args(args)
        result = run_signing(config)
    except SigningError as e:
        logger.error(f"[{e.code}] {e.message}")
        logger.debug(f"Error details: {e.to_dict()}")
        return 1

    if result.detached:
        logger.info(f"Detached signature #{result.signature_index} written to {result.output_path}")
    else:
        logger.info(f"Signed image ({result.signature_count} signature(s)) written to {result.output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
