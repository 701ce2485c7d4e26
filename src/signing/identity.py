"""
Signing Identity Module

Acquires the private key, certificate and optional engine binding used to
produce one signature.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Union

from cryptography import x509

from .exceptions import ConfigurationError
from .key_manager import KeyManager
from .key_providers import (
    KeyFormat,
    KeyProvider,
    ProviderKind,
    SigningKey,
    create_provider,
    provider_session,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningIdentity:
    """Private key, signer certificate and the kind of provider holding the key."""

    private_key: SigningKey
    certificate: x509.Certificate
    provider: ProviderKind
    key_source: str = ''

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()


@contextmanager
def load_identity(key_source: str,
                  key_format: Union[str, KeyFormat],
                  cert_source: str,
                  provider: Union[None, str, KeyProvider] = None,
                  key_password: Optional[bytes] = None,
                  **provider_options) -> Iterator[SigningIdentity]:
    """
    Open a signing identity for the duration of a ``with`` block.

    The key provider is initialized on entry and shut down exactly once on
    exit, including when loading the key or certificate fails.

    Args:
        key_source: Key file path, or a PKCS#11 URI for ENGINE keys
        key_format: 'PEM', 'DER' or 'ENGINE'
        cert_source: Path to the signer certificate
        provider: Engine name, a provider instance, or None for file keys
        key_password: Optional password for encrypted key files
        **provider_options: Passed to the provider when created by name

    Yields:
        SigningIdentity
    """
    key_format = KeyFormat.parse(key_format)
    if key_format is KeyFormat.ENGINE and provider is None:
        raise ConfigurationError("Key format ENGINE requires an engine (--engine)", option='engine')

    if isinstance(provider, KeyProvider):
        key_provider = provider
    else:
        key_provider = create_provider(provider, **provider_options)

    key_manager = KeyManager()
    with provider_session(key_provider):
        certificate = key_manager.load_certificate(cert_source)
        private_key = key_provider.load_private_key(key_source, key_format, certificate, key_password)

        identity = SigningIdentity(
            private_key=private_key,
            certificate=certificate,
            provider=key_provider.kind,
            key_source=key_source
        )
        key_info = key_manager.get_key_info(certificate)
        logger.debug(f"Loaded signing identity {identity.subject} "
                     f"({key_info.get('algorithm', key_info['type'])} key) via {key_provider.name} provider")
        yield identity
