"""
Shared fixtures for the image signer test suite.
"""

import shutil
import tempfile

import pytest

from builders import create_identity, write_pe_image
from signing.key_providers import LocalSigningKey, ProviderKind
from signing.identity import SigningIdentity


@pytest.fixture
def temp_dir():
    """Temporary working directory removed after the test."""
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def unsigned_image(temp_dir):
    """Path of a minimal unsigned PE32+ image."""
    return write_pe_image(f"{temp_dir}/image.efi")


@pytest.fixture(scope="session")
def rsa_identity_files():
    """RSA key and certificate shared by the whole session."""
    path = tempfile.mkdtemp()
    yield create_identity(path, "Test Signer")
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def rsa_identity(rsa_identity_files):
    """In-memory signing identity for the session RSA key."""
    return SigningIdentity(
        private_key=LocalSigningKey(rsa_identity_files.key),
        certificate=rsa_identity_files.certificate,
        provider=ProviderKind.FILE,
        key_source=rsa_identity_files.key_path
    )
