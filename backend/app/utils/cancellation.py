"""Cooperative cancellation for planning runs.

The coordinator owns one token per active run and hands it down to the phase
runner, which checks it before every model call and every tool batch.
"""

from __future__ import annotations


class RunCancelledError(Exception):
    """The user cancelled the run. Never retried."""


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RunCancelledError("Run cancelled by user")
