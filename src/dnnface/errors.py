"""Exceptions raised by the decoding pipeline."""

from __future__ import annotations


class InvalidInputError(ValueError):
    """Raised when inputs violate a precondition, before any decode work starts."""
