"""
Dot detection: image -> blobs -> validated conics -> lattice lines.
"""

from .conics import find_conics, validate_blob
from .image_processing import find_blobs
from .lines import dominant_directions, extract_lines, index_lattice

__all__ = [
    "find_blobs",
    "find_conics",
    "validate_blob",
    "dominant_directions",
    "extract_lines",
    "index_lattice",
]
