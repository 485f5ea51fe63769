"""
Chunk planner for chunked uploads.

Splits an archive into contiguous parts of the server-assigned part size.
Each part carries its own SHA-1 digest, computed over that part only.
"""

import base64
import hashlib
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List


# Block size for whole-file digests
DIGEST_BLOCK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class FilePart:
    """
    One byte range of an archive.

    begin and end are both inclusive offsets.
    """
    index: int
    begin: int
    end: int
    data: bytes
    digest: str

    @property
    def size(self) -> int:
        return self.end - self.begin + 1


def sha1_digest(data: bytes) -> str:
    """Base64 encoded SHA-1 of data."""
    return base64.b64encode(hashlib.sha1(data).digest()).decode('ascii')


def _read_window(stream: BinaryIO, size: int) -> bytes:
    """Read up to size bytes, topping up short reads until EOF."""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)


def iter_parts(stream: BinaryIO, part_size: int) -> Iterator[FilePart]:
    """
    Yield the parts of stream lazily, in offset order.

    Args:
        stream: Binary stream positioned at the start of the archive
        part_size: Bytes per part; the last part may be shorter

    Raises:
        ValueError: If part_size is not positive
        OSError: If reading the stream fails
    """
    if part_size < 1:
        raise ValueError(f"part_size must be positive, got {part_size}")

    offset = 0
    index = 0
    while True:
        data = _read_window(stream, part_size)
        if not data:
            return

        yield FilePart(
            index=index,
            begin=offset,
            end=offset + len(data) - 1,
            data=data,
            digest=sha1_digest(data)
        )

        offset += len(data)
        index += 1


def plan_parts(stream: BinaryIO, part_size: int) -> List[FilePart]:
    """
    Partition stream into parts.

    Args:
        stream: Binary stream positioned at the start of the archive
        part_size: Bytes per part

    Returns:
        Parts ordered by begin offset

    Raises:
        ValueError: If part_size is not positive or the stream is empty
        OSError: If reading the stream fails
    """
    parts = list(iter_parts(stream, part_size))
    if not parts:
        raise ValueError("Cannot plan parts for an empty archive")
    return parts


def count_parts(total_size: int, part_size: int) -> int:
    """Number of parts a file of total_size splits into."""
    return -(-total_size // part_size)


def file_digest(path: str) -> str:
    """
    Base64 encoded SHA-1 of a whole file, read from disk in blocks.

    Raises:
        OSError: If the file cannot be read
    """
    h = hashlib.sha1()
    with open(path, 'rb') as f:
        for block in iter(lambda: f.read(DIGEST_BLOCK_SIZE), b''):
            h.update(block)
    return base64.b64encode(h.digest()).decode('ascii')
