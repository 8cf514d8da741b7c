import hashlib


def hash_bytes(data: bytes) -> str:
    """
    Returns the SHA-256 hash of an in-memory payload.
    Used as the integrity checksum of stored audio artifacts.
    """
    return hashlib.sha256(data).hexdigest()
