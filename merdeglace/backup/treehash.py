"""
SHA-256 tree hash as required by Amazon Glacier uploads.

The payload is split into 1 MB chunks, each chunk is hashed, and adjacent
hashes are concatenated and hashed pairwise level by level until a single
root hash remains. An unpaired hash at the end of a level moves up unchanged.

See: https://docs.aws.amazon.com/amazonglacier/latest/dev/checksum-calculations.html
"""

import hashlib
from typing import BinaryIO, Iterable, List

ONE_MB = 1024 * 1024


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def combine_hashes(hashes: Iterable[bytes]) -> bytes:
    """
    Reduce a list of chunk digests to the root digest.

    Args:
        hashes: SHA-256 digests of consecutive 1 MB chunks

    Returns:
        Root digest (raw bytes)
    """
    level: List[bytes] = list(hashes)
    if not level:
        return _sha256(b'')

    while len(level) > 1:
        next_level = []
        for i in range(0, len(level), 2):
            if i + 1 < len(level):
                next_level.append(_sha256(level[i] + level[i + 1]))
            else:
                next_level.append(level[i])
        level = next_level

    return level[0]


def chunk_hashes(stream: BinaryIO, chunk_size: int = ONE_MB) -> List[bytes]:
    hashes = []
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        hashes.append(_sha256(chunk))
    return hashes


def tree_hash_bytes(data: bytes) -> str:
    """Tree hash of an in-memory payload as a lowercase hex string."""
    hashes = [_sha256(data[i:i + ONE_MB]) for i in range(0, len(data), ONE_MB)]
    return combine_hashes(hashes).hex()


def tree_hash(path: str) -> str:
    """Tree hash of a file as a lowercase hex string."""
    with open(path, 'rb') as f:
        return combine_hashes(chunk_hashes(f)).hex()
