"""Compensation log for multi-step writes that MongoDB cannot wrap in one transaction."""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class Saga:
    """
    Collects an undo action for every completed step of an operation.

    Used as a context manager: if the block raises, the recorded undo actions run
    newest first and the original exception propagates unchanged. An undo action
    that itself fails is logged and the remaining ones still run.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._undo: list[tuple[str, Callable[..., Any], tuple]] = []

    def on_failure(self, description: str, action: Callable[..., Any], *args) -> None:
        self._undo.append((description, action, args))

    def __enter__(self) -> "Saga":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None or not self._undo:
            return False
        logger.warning(f"{self.name} failed ({exc}); running {len(self._undo)} compensation step(s)")
        for description, action, args in reversed(self._undo):
            try:
                action(*args)
            except Exception as undo_error:
                logger.error(f"Compensation '{description}' for {self.name} failed: {undo_error}")
        return False
