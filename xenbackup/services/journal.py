"""
Side-effect journal for backup and restore operations.

Each remote or local object an operation creates is recorded together with
the action that would undo it. When the operation fails the journal is
unwound in reverse order: undo actions marked ``always`` run unconditionally,
the others only when rollback is enabled. Whatever is left behind is logged
so an operator can reconcile it by hand.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from xenbackup.core.errors import BackupEngineError

logger = logging.getLogger(__name__)


@dataclass
class JournalEntry:
    description: str
    undo: Optional[Callable[[], None]] = None
    always: bool = False


class SideEffectJournal:
    """Ordered record of side effects with their undo actions."""

    def __init__(self, operation: str):
        self.operation = operation
        self.entries: List[JournalEntry] = []

    def record(self, description: str, undo: Optional[Callable[[], None]] = None, always: bool = False) -> JournalEntry:
        entry = JournalEntry(description=description, undo=undo, always=always)
        self.entries.append(entry)
        logger.debug(f"{self.operation}: created {description}")
        return entry

    def unwind(self, rollback: bool = False) -> List[str]:
        """
        Undo recorded side effects in reverse order.

        Args:
            rollback: Also run undo actions not marked ``always``

        Returns:
            Descriptions of side effects left in place
        """
        leftovers = []
        for entry in reversed(self.entries):
            if entry.undo is not None and (entry.always or rollback):
                try:
                    entry.undo()
                    logger.info(f"{self.operation}: cleaned up {entry.description}")
                    continue
                except BackupEngineError as e:
                    logger.error(f"{self.operation}: failed to clean up {entry.description}: {e}")
            leftovers.append(entry.description)

        self.entries = []
        for description in leftovers:
            logger.warning(f"{self.operation}: left behind {description}")
        return leftovers
