"""Exception types raised by the recognition pipeline and its collaborators."""

from __future__ import annotations


class FacewatchError(Exception):
    """Base class for facewatch errors."""


class EmbeddingError(FacewatchError):
    """Embedding model could not produce a vector for a face crop."""


class ClassificationError(FacewatchError):
    """Covering classifier could not label a face crop."""


class GalleryEmptyError(FacewatchError):
    """A match was requested against a gallery with no enrolled entries."""


class DimensionMismatchError(FacewatchError, ValueError):
    """Two embeddings that must be compared have different lengths."""


class ZeroMagnitudeError(FacewatchError, ValueError):
    """Cosine similarity is undefined because a vector has zero magnitude."""
