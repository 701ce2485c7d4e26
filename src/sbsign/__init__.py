"""
Image Signer - sbsign

Command-line signing of PE/COFF (EFI) images for UEFI Secure Boot.
"""

__version__ = "0.9.5"

from .config import SignConfig
from .runner import SigningResult, run_signing

__all__ = ['SignConfig', 'SigningResult', 'run_signing', '__version__']
