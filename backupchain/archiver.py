import gzip
import shutil
from typing import BinaryIO


CHUNK_SIZE = 64 * 1024


class Archiver:
    """
    Moves bytes between a stream and a stored artifact.

    Implementations may transform the bytes on the way in (compression,
    encryption) as long as read() gives back exactly what write() consumed.
    """

    name = None

    def write(self, path, stream: BinaryIO) -> int:
        """Write everything readable from stream to path, returning bytes stored."""
        raise NotImplementedError

    def read(self, path) -> BinaryIO:
        """Open the artifact at path for reading the original bytes."""
        raise NotImplementedError


class PlainArchiver(Archiver):
    """Store content as-is."""

    name = "plain"

    def write(self, path, stream: BinaryIO) -> int:
        with open(path, 'wb') as f:
            shutil.copyfileobj(stream, f, CHUNK_SIZE)
            f.flush()
            return f.tell()

    def read(self, path) -> BinaryIO:
        return open(path, 'rb')


class GzipArchiver(Archiver):
    """Store content gzip-compressed."""

    name = "gzip"

    def __init__(self, compresslevel: int = 6):
        self.compresslevel = compresslevel

    def write(self, path, stream: BinaryIO) -> int:
        with open(path, 'wb') as raw:
            with gzip.GzipFile(fileobj=raw, mode='wb', compresslevel=self.compresslevel) as f:
                shutil.copyfileobj(stream, f, CHUNK_SIZE)
            raw.flush()
            return raw.tell()

    def read(self, path) -> BinaryIO:
        return gzip.open(path, 'rb')


ARCHIVERS = {
    PlainArchiver.name: PlainArchiver,
    GzipArchiver.name: GzipArchiver,
}


def get_archiver(name: str) -> Archiver:
    """Build an archiver from its configured name."""
    if name in (None, "", "none"):
        name = PlainArchiver.name
    try:
        return ARCHIVERS[name]()
    except KeyError:
        raise ValueError(f"Unknown archiver '{name}', expected one of: none, {', '.join(sorted(ARCHIVERS))}")
