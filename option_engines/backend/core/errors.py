"""
Error types and cooperative cancellation.

Numerical instability is never raised; it travels as an ``Unstable`` result
(see ``results.py``) and is resolved by a fallback pricer. The exceptions
below are the failures a caller is expected to handle.
"""

import threading
from typing import Optional


class BracketExhaustedError(RuntimeError):
    """Implied-volatility bracket grew past its ceiling without enclosing the price."""


class PriceFileFormatError(ValueError):
    """Malformed close-price file. ``line`` is 1-based, or None for file-level problems."""

    def __init__(self, message: str, line: Optional[int] = None):
        if line is not None:
            message = f"Line {line}: {message}"
        super().__init__(message)
        self.line = line


class OperationCancelledError(RuntimeError):
    """Raised inside a long-running loop once its token has been cancelled."""


class CancellationToken:
    """
    Thread-safe cancellation flag shared between a caller and a worker loop.

    The calibrators, the VG fitter and the Monte Carlo simulator call
    ``raise_if_cancelled()`` once per outer iteration.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled")


def check_cancelled(token: Optional[CancellationToken]) -> None:
    """No-op for a missing token."""
    if token is not None:
        token.raise_if_cancelled()
