"""
Signing Configuration

Settings for one signing run, assembled from defaults, an optional YAML
signing profile, environment variables and command-line options (in
increasing order of precedence).
"""

import argparse
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from signing.authenticode import DigestAlgorithm
from signing.exceptions import ConfigurationError
from signing.key_providers import PROVIDER_REGISTRY, KeyFormat

ENVIRONMENT_VARIABLES = {
    'pkcs11_module': 'SBSIGN_PKCS11_MODULE',
    'pkcs11_pin': 'SBSIGN_PKCS11_PIN',
    'pkcs11_tool': 'SBSIGN_PKCS11_TOOL',
}

# Profile keys that map onto command-line options
PROFILE_KEYS = ('key', 'cert', 'addcert', 'engine', 'keyform', 'detached', 'output', 'digest')


@dataclass
class SignConfig:
    """Inputs of one signing run."""

    image_path: Optional[str] = None
    key: Optional[str] = None
    cert: Optional[str] = None
    addcert: Optional[str] = None
    engine: Optional[str] = None
    keyform: str = 'PEM'
    detached: bool = False
    output: Optional[str] = None
    digest: str = 'sha256'
    pkcs11_module: Optional[str] = None
    pkcs11_pin: Optional[str] = None
    pkcs11_tool: Optional[str] = None
    verbose: bool = False

    @classmethod
    def from_file(cls, config_path: str) -> 'SignConfig':
        """
        Load a signing profile from a YAML file.

        Args:
            config_path: Path to the profile

        Returns:
            Populated SignConfig
        """
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}", option='config')

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load config file {config_path}: {e}", option='config') from e

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'SignConfig':
        """
        Create configuration from a profile dictionary.

        Provider settings live under a ``pkcs11`` mapping with ``module``,
        ``pin`` and ``tool`` keys.
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Signing profile must be a mapping", option='config')

        config = cls()
        for key in PROFILE_KEYS:
            if key in data:
                setattr(config, key, data[key])

        pkcs11 = data.get('pkcs11') or {}
        if not isinstance(pkcs11, Mapping):
            raise ConfigurationError("'pkcs11' profile section must be a mapping", option='pkcs11')
        for name in ('module', 'pin', 'tool'):
            if name in pkcs11:
                setattr(config, f'pkcs11_{name}', str(pkcs11[name]))

        unknown = set(data) - set(PROFILE_KEYS) - {'pkcs11'}
        if unknown:
            raise ConfigurationError(f"Unknown profile keys: {sorted(unknown)}", option='config')

        return config

    @classmethod
    def from_args(cls,
                  args: argparse.Namespace,
                  environ: Optional[Mapping[str, str]] = None) -> 'SignConfig':
        """Build the configuration for a command-line invocation."""
        config_path = getattr(args, 'config', None)
        config = cls.from_file(config_path) if config_path else cls()
        config.apply_environment(os.environ if environ is None else environ)
        config.apply_args(args)
        return config

    def apply_environment(self, environ: Mapping[str, str]) -> None:
        for attribute, variable in ENVIRONMENT_VARIABLES.items():
            value = environ.get(variable)
            if value:
                setattr(self, attribute, value)

    def apply_args(self, args: argparse.Namespace) -> None:
        """Override settings with every option given on the command line."""
        names = {f.name for f in fields(self)}
        for name, value in vars(args).items():
            if name not in names or value is None:
                continue
            if isinstance(value, bool) and not value:
                continue
            setattr(self, name, value)

    @property
    def output_path(self) -> Optional[str]:
        """Explicit output path, or ``<image>.signed`` / ``<image>.pk7``."""
        if self.output:
            return self.output
        if self.image_path is None:
            return None
        return f"{self.image_path}.{'pk7' if self.detached else 'signed'}"

    @property
    def key_format(self) -> KeyFormat:
        return KeyFormat.parse(self.keyform)

    @property
    def digest_algorithm(self) -> DigestAlgorithm:
        try:
            return DigestAlgorithm(str(self.digest).lower())
        except ValueError:
            supported = ', '.join(algorithm.value for algorithm in DigestAlgorithm)
            raise ConfigurationError(
                f"Unsupported digest '{self.digest}' (expected one of: {supported})",
                option='digest'
            ) from None

    def provider_options(self) -> Dict[str, Any]:
        """Settings handed to the engine's key provider."""
        if self.engine is None:
            return {}
        return {
            'module': self.pkcs11_module,
            'pin': self.pkcs11_pin,
            'tool': self.pkcs11_tool,
        }

    def validate(self) -> None:
        """
        Check that every required input is present.

        Runs before the image is opened.

        Raises:
            ConfigurationError: If an input is missing or invalid
        """
        if not self.image_path:
            raise ConfigurationError("No image specified", option='image')
        if not self.cert:
            raise ConfigurationError("No certificate specified (with --cert)", option='cert')
        if not self.key:
            raise ConfigurationError("No key specified (with --key)", option='key')

        if self.key_format is KeyFormat.ENGINE and not self.engine:
            raise ConfigurationError("Key format ENGINE requires an engine (--engine)", option='engine')
        if self.engine and self.engine.lower() not in PROVIDER_REGISTRY:
            raise ConfigurationError(
                f"Unknown engine '{self.engine}'. Supported engines: {sorted(PROVIDER_REGISTRY)}",
                option='engine'
            )
        # Raises for unsupported digests
        self.digest_algorithm

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary, without the token PIN."""
        return {
            'image_path': self.image_path,
            'key': self.key,
            'cert': self.cert,
            'addcert': self.addcert,
            'engine': self.engine,
            'keyform': self.keyform,
            'detached': self.detached,
            'output': self.output_path,
            'digest': self.digest,
            'pkcs11': {
                'module': self.pkcs11_module,
                'tool': self.pkcs11_tool,
            },
        }
