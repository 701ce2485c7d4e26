"""
Output Writer Module

Writes the result of a signing run: either the whole signed image or the
newest signature on its own (detached). Output files are replaced
atomically, so a failed run never leaves a partial artifact behind.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from signing.exceptions import SerializationError

logger = logging.getLogger(__name__)

OUTPUT_MODE = 0o644


def atomic_write_bytes(path: Union[str, Path], blob: bytes) -> None:
    """
    Write ``blob`` to ``path`` through a temporary file in the same directory.

    The temporary file gets a unique name, so no other file next to ``path``
    is overwritten or removed.

    Raises:
        SerializationError: If the file cannot be written
    """
    path = Path(path)
    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(dir=str(path.parent), prefix=f'.{path.name}.',
                                         suffix='.tmp', delete=False) as f:
            tmp_name = f.name
            f.write(blob)
            f.flush()
            os.fsync(f.fileno())
        # Temporary files are created owner-only
        os.chmod(tmp_name, OUTPUT_MODE)
        os.replace(tmp_name, str(path))
    except OSError as e:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
        raise SerializationError(f"Cannot write output file {path}: {e}", path=str(path)) from e

    logger.debug(f"Wrote {len(blob)} bytes to {path}")


class OutputWriter:
    """Serializes a signed image in combined or detached mode."""

    def __init__(self, detached: bool = False):
        self.detached = detached

    def write(self, image, output_path: Union[str, Path]) -> int:
        """
        Write the signing result for ``image``.

        Combined mode writes the image followed by every stored signature in
        store order. Detached mode writes only the encoded signature at the
        highest index.

        Args:
            image: Loaded image holding the signature store
            output_path: Destination file

        Returns:
            Number of signatures written

        Raises:
            SerializationError: If there is nothing to write or the write fails
        """
        store = image.signatures
        if self.detached:
            index = store.last_index()
            if index is None:
                raise SerializationError(
                    f"No signature to write in detached mode for {image.path}",
                    path=str(output_path)
                )
            image.write_detached(index, output_path)
            logger.debug(f"Wrote detached signature #{index} to {output_path}")
            return 1

        image.write_combined(output_path)
        logger.debug(f"Wrote signed image with {store.count()} signature(s) to {output_path}")
        return store.count()
