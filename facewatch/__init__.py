"""
Core package init for facewatch.

Makes the `facewatch` modules importable without requiring an editable install.
"""

__all__ = [
    "config",
    "detectors",
    "errors",
    "recognition",
    "stream",
    "io_utils",
    "types",
]
