"""
Image Signer - Signature Storage Module

This module keeps the ordered signatures carried by an image and writes
signed images or detached signatures to disk.
"""

from .output_writer import OutputWriter, atomic_write_bytes
from .signature_store import SignatureStore

__all__ = ['OutputWriter', 'SignatureStore', 'atomic_write_bytes']
