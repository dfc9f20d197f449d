"""Utility functions for the image analyzer."""

from .digest import DigestVerifier, calculate_digest, validate_digest
from .reference import ImageReference, parse_reference
from .validator import confine_entry_path

__all__ = [
    "calculate_digest",
    "validate_digest",
    "DigestVerifier",
    "ImageReference",
    "parse_reference",
    "confine_entry_path",
]
