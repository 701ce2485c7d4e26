"""
Image Signer - Image Format Module

This module loads PE/COFF images, computes their Authenticode digest and
writes them back out carrying an updated certificate table.
"""

from .authenticode_digest import compute_digest
from .pe_image import PEImage

__all__ = ['compute_digest', 'PEImage']
