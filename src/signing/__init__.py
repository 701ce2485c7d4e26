"""
Image Signer - Signing Module

This module builds Authenticode signature envelopes for PE/COFF images from
a signing identity (private key, certificate and optional engine) and an
image digest.
"""

from .authenticode import DigestAlgorithm, DigestResult
from .envelope_builder import OpaqueSignature, SignatureEnvelope, augment_certificates, build_signature
from .identity import SigningIdentity, load_identity
from .key_manager import KeyManager
from .key_providers import KeyFormat, KeyProvider, ProviderKind

__all__ = [
    'DigestAlgorithm',
    'DigestResult',
    'OpaqueSignature',
    'SignatureEnvelope',
    'augment_certificates',
    'build_signature',
    'SigningIdentity',
    'load_identity',
    'KeyManager',
    'KeyFormat',
    'KeyProvider',
    'ProviderKind',
]
