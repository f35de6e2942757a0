"""
Savepoints for in-memory pool state.

A batch opens a savepoint on every stateful part it may touch, then either
releases the savepoints (success) or rolls them back (failure). Parts record
one undo callable per mutation while a savepoint is open, so the cost of a
rollback is proportional to the batch, not to the size of the state.
"""

from typing import Callable, List

from shieldpool.core.errors import StateError


class UndoJournal:
    """
    Mixin providing ``checkpoint`` / ``rollback`` / ``release``.

    Subclasses call ``_record(undo)`` right after each mutation with a
    callable that reverses it. Nothing is recorded outside a savepoint.
    """

    def __init__(self):
        self._undo_log: List[Callable[[], None]] = []
        self._open_savepoints = 0

    @property
    def journal_size(self) -> int:
        """Undo entries currently held."""
        return len(self._undo_log)

    def checkpoint(self) -> int:
        """
        Open a savepoint.

        Returns:
            Savepoint handle for ``rollback`` or ``release``
        """
        self._open_savepoints += 1
        return len(self._undo_log)

    def rollback(self, savepoint: int) -> None:
        """Undo every mutation since ``savepoint`` and close it."""
        while len(self._undo_log) > savepoint:
            undo = self._undo_log.pop()
            undo()
        self._close_savepoint()

    def release(self, savepoint: int) -> None:
        """Close ``savepoint`` keeping its mutations."""
        self._close_savepoint()

    def _close_savepoint(self) -> None:
        if self._open_savepoints == 0:
            raise StateError("No open savepoint")
        self._open_savepoints -= 1
        # Outermost savepoint closed: nothing can roll back any more
        if self._open_savepoints == 0:
            self._undo_log.clear()

    def _record(self, undo: Callable[[], None]) -> None:
        if self._open_savepoints:
            self._undo_log.append(undo)
