"""
Compensation stack - Undo closures for multi-write creation steps.

Entity and run creation are two separate writes. Each successful write
pushes an undo closure; if a later write fails, the closures run in
reverse order so no orphaned pending entity remains.
"""

import logging
from collections.abc import Callable
from types import TracebackType

logger = logging.getLogger(__name__)


class CompensationStack:
    """
    Context manager that runs pushed undo closures when the block raises.

    Usage:
        with CompensationStack() as undo:
            domain = repo.create_domain(...)
            undo.push(lambda: repo.delete(domain.id), f"delete domain {domain.id}")
            run = ledger.create_run(...)
    """

    def __init__(self) -> None:
        self._undo: list[tuple[Callable[[], None], str]] = []

    def push(self, undo: Callable[[], None], description: str) -> None:
        self._undo.append((undo, description))

    def __enter__(self) -> "CompensationStack":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if exc is not None:
            self.rollback()
        # Never suppress the original error
        return False

    def rollback(self) -> None:
        while self._undo:
            undo, description = self._undo.pop()
            try:
                logger.info("Compensating: %s", description)
                undo()
            except Exception:
                logger.exception("Compensation failed: %s", description)
