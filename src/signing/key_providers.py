"""
Key Provider Module

Pluggable sources of signing keys. A provider is initialized once per
signing run, hands out a :class:`SigningKey`, and is shut down exactly once
when the run ends, whether it succeeded or failed.

Available providers:
- FileKeyProvider: PEM/DER private keys on disk
- Pkcs11KeyProvider: keys held on a PKCS#11 token, driven through OpenSC's
  ``pkcs11-tool``
"""

import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, Optional, Type
from urllib.parse import unquote, unquote_to_bytes

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from .exceptions import ConfigurationError, EnvelopeConstructionError, KeyLoadError
from .key_manager import KeyManager, PrivateKey

logger = logging.getLogger(__name__)


class ProviderKind(Enum):
    """Where the private key lives."""

    FILE = 'file'
    HARDWARE = 'hardware'


class KeyFormat(Enum):
    """Encodings accepted for the signing key reference."""

    PEM = 'PEM'
    DER = 'DER'
    ENGINE = 'ENGINE'

    @classmethod
    def parse(cls, value) -> 'KeyFormat':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            supported = ', '.join(member.value for member in cls)
            raise ConfigurationError(
                f"Unknown key format '{value}' (expected one of: {supported})",
                option='keyform'
            ) from None


class SigningKey(ABC):
    """A private key usable for producing signatures."""

    @abstractmethod
    def sign(self, data: bytes, hash_algorithm: hashes.HashAlgorithm) -> bytes:
        """Sign ``data`` with the given hash; RSA keys use PKCS#1 v1.5."""
        pass


class LocalSigningKey(SigningKey):
    """Private key loaded into memory by ``cryptography``."""

    def __init__(self, private_key: PrivateKey):
        self.private_key = private_key

    def sign(self, data: bytes, hash_algorithm: hashes.HashAlgorithm) -> bytes:
        if isinstance(self.private_key, rsa.RSAPrivateKey):
            return self.private_key.sign(data, padding.PKCS1v15(), hash_algorithm)
        elif isinstance(self.private_key, ec.EllipticCurvePrivateKey):
            return self.private_key.sign(data, ec.ECDSA(hash_algorithm))
        raise EnvelopeConstructionError(
            f"Unsupported key type for Authenticode signing: {type(self.private_key).__name__}",
            reason="unsupported key type"
        )


class Pkcs11SigningKey(SigningKey):
    """Reference to a private key object on a PKCS#11 token."""

    def __init__(self, provider: 'Pkcs11KeyProvider', attributes: Dict[str, str], key_algorithm: str):
        self.provider = provider
        self.attributes = attributes
        self.key_algorithm = key_algorithm

    def sign(self, data: bytes, hash_algorithm: hashes.HashAlgorithm) -> bytes:
        # Token operations go through the engine registered for the run
        engine = get_default_provider()
        if engine is not self.provider:
            raise KeyLoadError(
                f"Token key {self.attributes} used outside its engine session",
                source=self.provider.name
            )

        hash_name = hash_algorithm.name.upper()
        if self.key_algorithm == 'RSA':
            return engine.sign(self, data, f"{hash_name}-RSA-PKCS")
        elif self.key_algorithm == 'EC':
            return engine.sign(self, data, f"ECDSA-{hash_name}", der_signature=True)
        raise EnvelopeConstructionError(
            f"Unsupported token key type for Authenticode signing: {self.key_algorithm}",
            reason="unsupported key type"
        )


class KeyProvider(ABC):
    """Supplies a usable private key for one signing run."""

    kind = ProviderKind.FILE
    name = 'file'

    @abstractmethod
    def initialize(self) -> None:
        """Acquire provider resources."""
        pass

    @abstractmethod
    def load_private_key(self,
                         key_source: str,
                         key_format: KeyFormat,
                         certificate: x509.Certificate,
                         password: Optional[bytes] = None) -> SigningKey:
        """Resolve ``key_source`` into a signing key."""
        pass

    @abstractmethod
    def shutdown(self) -> None:
        """Release provider resources."""
        pass


class FileKeyProvider(KeyProvider):
    """Loads PEM or DER private keys from the file system."""

    def __init__(self):
        self.key_manager = KeyManager()

    def initialize(self) -> None:
        pass

    def load_private_key(self,
                         key_source: str,
                         key_format: KeyFormat,
                         certificate: x509.Certificate,
                         password: Optional[bytes] = None) -> SigningKey:
        if key_format is KeyFormat.ENGINE:
            raise ConfigurationError("Key format ENGINE requires an engine (--engine)", option='engine')
        private_key = self.key_manager.load_private_key(key_source, key_format.value, password)
        return LocalSigningKey(private_key)

    def shutdown(self) -> None:
        pass


_default_provider: Optional[KeyProvider] = None


def set_default_provider(provider: KeyProvider) -> None:
    """Route token key operations of the current run through ``provider``."""
    global _default_provider
    _default_provider = provider


def get_default_provider() -> Optional[KeyProvider]:
    return _default_provider


def clear_default_provider(provider: KeyProvider) -> None:
    global _default_provider
    if _default_provider is provider:
        _default_provider = None


def _parse_pkcs11_uri(key_source: str) -> Dict[str, str]:
    """Parse ``pkcs11:object=label;id=%01`` into attributes; a bare value is a label."""
    if not key_source.startswith('pkcs11:'):
        return {'object': key_source}

    attributes = {}
    path = key_source[len('pkcs11:'):].split('?', 1)[0]
    for part in filter(None, path.split(';')):
        name, _, value = part.partition('=')
        if name == 'id':
            attributes['id'] = unquote_to_bytes(value).hex()
        else:
            attributes[name] = unquote(value)

    if 'id' not in attributes and 'object' not in attributes:
        raise ConfigurationError(f"PKCS#11 key URI names no object or id: {key_source}", option='key')
    return attributes


class Pkcs11KeyProvider(KeyProvider):
    """Signs with keys on a PKCS#11 token via ``pkcs11-tool``."""

    kind = ProviderKind.HARDWARE
    name = 'pkcs11'

    def __init__(self,
                 module: Optional[str] = None,
                 pin: Optional[str] = None,
                 tool: Optional[str] = None):
        self.module = module or os.getenv('SBSIGN_PKCS11_MODULE')
        self.pin = pin if pin is not None else os.getenv('SBSIGN_PKCS11_PIN')
        self.tool = tool or os.getenv('SBSIGN_PKCS11_TOOL', 'pkcs11-tool')
        self._tool_path: Optional[str] = None
        self._workdir: Optional[tempfile.TemporaryDirectory] = None

    @property
    def is_initialized(self) -> bool:
        return self._workdir is not None

    def initialize(self) -> None:
        if self.is_initialized:
            raise KeyLoadError(f"Engine '{self.name}' is already initialized", source=self.name)

        tool_path = shutil.which(self.tool)
        if tool_path is None:
            raise KeyLoadError(f"Engine '{self.name}' unavailable: {self.tool} not found (install opensc)",
                               source=self.name)
        if self.module and not Path(self.module).exists():
            raise KeyLoadError(f"PKCS#11 module not found: {self.module}", source=self.module)

        self._tool_path = tool_path
        self._workdir = tempfile.TemporaryDirectory(prefix='sbsign-pkcs11-')
        set_default_provider(self)
        logger.debug(f"Initialized engine {self.name} ({tool_path})")

    def load_private_key(self,
                         key_source: str,
                         key_format: KeyFormat,
                         certificate: x509.Certificate,
                         password: Optional[bytes] = None) -> SigningKey:
        if key_format is not KeyFormat.ENGINE:
            # Plain key file; signed in memory, not on the token
            return FileKeyProvider().load_private_key(key_source, key_format, certificate, password)

        public_key = certificate.public_key()
        if isinstance(public_key, rsa.RSAPublicKey):
            key_algorithm = 'RSA'
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            key_algorithm = 'EC'
        else:
            key_algorithm = type(public_key).__name__

        return Pkcs11SigningKey(self, _parse_pkcs11_uri(key_source), key_algorithm)

    def sign(self, key: Pkcs11SigningKey, data: bytes, mechanism: str,
             der_signature: bool = False) -> bytes:
        """Run one signing operation on the token."""
        if not self.is_initialized:
            raise KeyLoadError(f"Engine '{self.name}' used before initialization", source=self.name)

        input_path = os.path.join(self._workdir.name, 'tbs.bin')
        output_path = os.path.join(self._workdir.name, 'sig.bin')
        with open(input_path, 'wb') as f:
            f.write(data)

        cmd = [self._tool_path]
        if self.module:
            cmd.extend(['--module', self.module])
        if 'slot-id' in key.attributes:
            cmd.extend(['--slot', key.attributes['slot-id']])
        cmd.extend(['--sign', '--mechanism', mechanism,
                    '--input-file', input_path, '--output-file', output_path])
        if 'id' in key.attributes:
            cmd.extend(['--id', key.attributes['id']])
        else:
            cmd.extend(['--label', key.attributes['object']])
        if der_signature:
            cmd.extend(['--signature-format', 'openssl'])
        if self.pin:
            cmd.extend(['--login', '--pin', self.pin])

        try:
            proc = subprocess.run(cmd, capture_output=True, check=False)
        except OSError as e:
            raise EnvelopeConstructionError(f"Cannot run {self.tool}: {e}", reason="engine failure") from e

        if proc.returncode != 0:
            stderr = proc.stderr.decode('utf-8', errors='replace').strip()
            raise EnvelopeConstructionError(
                f"{self.tool} failed to sign with mechanism {mechanism}: {stderr}",
                reason="engine failure"
            )

        try:
            with open(output_path, 'rb') as f:
                return f.read()
        except FileNotFoundError:
            raise EnvelopeConstructionError(f"{self.tool} produced no signature",
                                            reason="engine failure") from None

    def shutdown(self) -> None:
        if not self.is_initialized:
            return
        clear_default_provider(self)
        self._workdir.cleanup()
        self._workdir = None
        self._tool_path = None
        logger.debug(f"Engine {self.name} shut down")


PROVIDER_REGISTRY: Dict[str, Type[KeyProvider]] = {
    'pkcs11': Pkcs11KeyProvider,
}


def create_provider(name: Optional[str] = None, **options) -> KeyProvider:
    """
    Create the key provider for an engine name.

    Args:
        name: Engine name from the configuration, or None for file keys
        **options: Provider specific settings

    Returns:
        An uninitialized provider
    """
    if name is None:
        return FileKeyProvider()

    provider_class = PROVIDER_REGISTRY.get(name.lower())
    if provider_class is None:
        raise ConfigurationError(
            f"Unknown engine '{name}'. Supported engines: {sorted(PROVIDER_REGISTRY)}",
            option='engine'
        )
    return provider_class(**options)


@contextmanager
def provider_session(provider: KeyProvider) -> Iterator[KeyProvider]:
    """Initialize ``provider`` and shut it down exactly once when the block exits."""
    provider.initialize()
    try:
        yield provider
    finally:
        provider.shutdown()
