"""
Nullifier set - the pool's record of spent notes.

A nullifier is H(nullifying_key, leaf_index). Publishing it marks the note at
that position as spent without revealing which commitment it belongs to.
Membership is monotonic: nullifiers are never removed, except when a failed
batch rolls back its own insertions through a savepoint.

Entries are scoped by tree number, because leaf indices restart at zero in
every tree.
"""

from functools import partial
from typing import Dict, Iterable, Iterator, List, Set, Tuple

from shieldpool.core.errors import StateError
from shieldpool.utils.journal import UndoJournal
from shieldpool.utils.logger import get_logger

logger = get_logger("nullifiers")


class NullifierSet(UndoJournal):
    """
    Insert-only set of (tree_number, nullifier) pairs.
    """

    def __init__(self):
        super().__init__()
        self._spent: Dict[int, Set[int]] = {}

    def contains(self, tree_number: int, nullifier: int) -> bool:
        return nullifier in self._spent.get(tree_number, ())

    def insert(self, tree_number: int, nullifier: int) -> None:
        """
        Mark a nullifier as spent.

        Raises:
            StateError: If it was already spent
        """
        spent = self._spent.setdefault(tree_number, set())
        if nullifier in spent:
            raise StateError(f"Nullifier {hex(nullifier)[:12]}... already seen in tree {tree_number}")
        spent.add(nullifier)
        self._record(partial(spent.discard, nullifier))

    def insert_batch(self, tree_number: int, nullifiers: Iterable[int]) -> None:
        """
        Insert several nullifiers, all or nothing.

        Raises:
            StateError: On a duplicate inside the batch or against the set
        """
        batch = list(nullifiers)
        seen: Set[int] = set()
        for nullifier in batch:
            if nullifier in seen or self.contains(tree_number, nullifier):
                raise StateError(f"Nullifier {hex(nullifier)[:12]}... already seen in tree {tree_number}")
            seen.add(nullifier)

        spent = self._spent.setdefault(tree_number, set())
        spent.update(batch)
        self._record(partial(spent.difference_update, batch))
        logger.debug(f"Nullified {len(batch)} notes in tree {tree_number}")

    def load(self, entries: Iterable[Tuple[int, int]]) -> None:
        """Restore persisted (tree_number, nullifier) pairs."""
        for tree_number, nullifier in entries:
            self._spent.setdefault(tree_number, set()).add(nullifier)

    def for_tree(self, tree_number: int) -> List[int]:
        return sorted(self._spent.get(tree_number, ()))

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        for tree_number, spent in self._spent.items():
            for nullifier in spent:
                yield tree_number, nullifier

    def __len__(self) -> int:
        return sum(len(s) for s in self._spent.values())

    def __repr__(self) -> str:
        return f"NullifierSet(trees={len(self._spent)}, size={len(self)})"
