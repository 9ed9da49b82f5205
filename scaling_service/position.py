# Binlog position tracking for incremental sync

import logging
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger("position")


def _log_file_order(log_file):
    """Sort key of a binlog file name such as mysql-bin.000042."""
    base, _, sequence = log_file.rpartition(".")
    if sequence.isdigit():
        return base, int(sequence)
    return log_file, -1


class BinlogPosition(BaseModel):
    """
    How far incremental replay has progressed in the source binlog.

    A position is owned by one binlog reader and only ever moves forward.
    """

    log_file: Optional[str] = None
    log_pos: Optional[int] = None
    server_id: Optional[str] = None

    @property
    def is_marked(self) -> bool:
        return bool(self.log_file) and self.log_pos is not None

    def is_after(self, other: "BinlogPosition") -> bool:
        """True if this position lies strictly after other in the binlog."""
        if not other.is_marked:
            return self.is_marked
        if not self.is_marked:
            return False
        return ((_log_file_order(self.log_file), self.log_pos)
                > (_log_file_order(other.log_file), other.log_pos))

    def advance(self, log_file: str, log_pos: int) -> bool:
        """
        Move the position to log_file:log_pos if that lies further ahead.

        Returns:
            bool: True if the position moved, False otherwise
        """
        candidate = BinlogPosition(log_file=log_file, log_pos=log_pos, server_id=self.server_id)
        if self.is_marked and not candidate.is_after(self):
            return False
        self.log_file = log_file
        self.log_pos = log_pos
        return True

    def __str__(self):
        return f"{self.log_file}:{self.log_pos}"
