"""
Signature Store Module

Ordered, append-only collection of the signature envelopes carried by one
image. Indices are dense and start at 0; envelopes are never removed or
reordered.
"""

import logging
from typing import Iterator, List, Optional

from signing.envelope_builder import OpaqueSignature, SignatureEnvelope, StoredSignature

logger = logging.getLogger(__name__)


class SignatureStore:
    """Append-only sequence of signature envelopes."""

    def __init__(self):
        self._envelopes: List[StoredSignature] = []

    def append(self, envelope: StoredSignature) -> int:
        """
        Store an envelope after the existing ones.

        Args:
            envelope: Signature envelope, or an existing signature kept opaque

        Returns:
            Index assigned to the envelope
        """
        if not isinstance(envelope, (SignatureEnvelope, OpaqueSignature)):
            raise TypeError(f"Expected SignatureEnvelope, got {type(envelope).__name__}")

        self._envelopes.append(envelope)
        index = len(self._envelopes) - 1
        if isinstance(envelope, OpaqueSignature):
            logger.debug(f"Stored signature #{index} (undecoded, {len(envelope.der)} bytes)")
        else:
            logger.debug(f"Stored signature #{index} ({envelope.signer_certificate.subject.rfc4514_string()})")
        return index

    def get(self, index: int) -> Optional[StoredSignature]:
        """Return the envelope at ``index``, or None if there is none."""
        if 0 <= index < len(self._envelopes):
            return self._envelopes[index]
        return None

    def count(self) -> int:
        return len(self._envelopes)

    def last_index(self) -> Optional[int]:
        """Index of the newest envelope, or None for an empty store."""
        if not self._envelopes:
            return None
        return len(self._envelopes) - 1

    def latest(self) -> Optional[StoredSignature]:
        last = self.last_index()
        return None if last is None else self._envelopes[last]

    def __len__(self) -> int:
        return len(self._envelopes)

    def __iter__(self) -> Iterator[StoredSignature]:
        return iter(tuple(self._envelopes))
