"""
Attachment blob storage.

The sync core only carries opaque references to attachment bytes. A blob
store turns bytes into such a reference.
"""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol, Union

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Stores attachment bytes and returns an opaque reference."""

    def store(self, data: bytes) -> str: ...


class LocalBlobStore:
    """
    Content-addressed blob store on the local filesystem.

    Blobs are written to <root>/<first two hex chars>/<sha256>. Storing the
    same bytes twice returns the same reference and writes nothing.

    Usage:
        blobs = LocalBlobStore("~/.msgsync/blobs")
        ref = blobs.store(b"...")
        data = blobs.load(ref)
    """

    REF_PREFIX = "sha256:"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    def _path_for(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def store(self, data: bytes) -> str:
        """
        Store bytes and return their reference.

        Args:
            data: Attachment bytes

        Returns:
            Reference of the form "sha256:<hex digest>"
        """
        digest = hashlib.sha256(data).hexdigest()
        path = self._path_for(digest)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a temp file first so readers never see partial blobs
            fd, tmp_name = tempfile.mkstemp(dir=path.parent)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except OSError:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            logger.debug(f"Stored blob {digest} ({len(data)} bytes)")
        return f"{self.REF_PREFIX}{digest}"

    def load(self, ref: str) -> bytes:
        """
        Read the bytes behind a reference.

        Raises:
            ValueError: If the reference was not produced by this store
            FileNotFoundError: If the blob does not exist
        """
        if not ref.startswith(self.REF_PREFIX):
            raise ValueError(f"Not a local blob reference: {ref}")
        return self._path_for(ref[len(self.REF_PREFIX):]).read_bytes()

    def exists(self, ref: str) -> bool:
        if not ref.startswith(self.REF_PREFIX):
            return False
        return self._path_for(ref[len(self.REF_PREFIX):]).exists()
