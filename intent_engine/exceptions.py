"""Exceptions raised by the intent engine."""

from __future__ import annotations


class IntentEngineError(Exception):
    """Base class for intent engine errors."""


class TransientStoreError(IntentEngineError):
    """The persistence layer failed; the whole operation is safe to retry."""

    retryable = True


class UnknownStepError(IntentEngineError, ValueError):
    """The step has no processing definition (it is a pure review gate)."""
