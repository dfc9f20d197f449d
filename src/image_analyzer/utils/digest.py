"""Digest calculation and validation utilities."""

import hashlib
import re
from typing import Union

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")

SUPPORTED_ALGORITHMS = ("sha256", "sha512")


def calculate_digest(data: Union[bytes, bytearray], algorithm: str = "sha256") -> str:
    """Calculate digest of data.

    Args:
        data: Data to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Digest string in format "algorithm:hex"

    Raises:
        ValueError: If algorithm is not supported
        ValueError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError("Data must be bytes or bytearray")

    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if valid digest format
    """
    if not isinstance(digest, str):
        return False

    if not DIGEST_PATTERN.match(digest):
        return False

    algorithm, _ = digest.split(":", 1)
    return algorithm in SUPPORTED_ALGORITHMS


class DigestVerifier:
    """Incremental digest check for streamed blobs."""

    def __init__(self, expected_digest: str) -> None:
        """Initialize the verifier.

        Args:
            expected_digest: Digest the complete stream must hash to

        Raises:
            ValueError: If the digest format is invalid
        """
        if not validate_digest(expected_digest):
            raise ValueError(f"Invalid digest format: {expected_digest}")
        self.expected = expected_digest
        algorithm, _ = expected_digest.split(":", 1)
        self._algorithm = algorithm
        self._hasher = hashlib.new(algorithm)

    def update(self, chunk: bytes) -> None:
        self._hasher.update(chunk)

    @property
    def digest(self) -> str:
        return f"{self._algorithm}:{self._hasher.hexdigest()}"

    def verify(self) -> bool:
        """Check the bytes seen so far against the expected digest."""
        return self.digest == self.expected
