import hashlib


def partition_for(partition_key: str, partitions: int) -> int:
    """Map a partition key onto [0, partitions). Stable across processes and restarts."""
    if partitions < 1:
        raise ValueError('partitions must be >= 1')
    digest = hashlib.blake2b(partition_key.encode(), digest_size=8).digest()
    return int.from_bytes(digest, 'big') % partitions
