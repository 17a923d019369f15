"""Read-only access to on-chain document state."""

from .resolver import DocumentResolver

__all__ = ["DocumentResolver"]
