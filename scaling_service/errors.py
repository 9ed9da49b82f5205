# Exceptions raised by the sync pipeline


class PrimaryKeyNotFoundError(RuntimeError):
    """Raised when a table has no primary key the splitter can partition on."""


class PositionMarkError(RuntimeError):
    """Raised when the current binlog coordinates cannot be read from the source."""


class StreamConnectionError(RuntimeError):
    """Raised when the binlog stream cannot be re-established after retrying."""


class ColumnDecodeError(RuntimeError):
    """Raised when a captured column value cannot be interpreted."""


class ChannelClosedError(RuntimeError):
    """Raised on push after the consuming side of a channel went away."""


class SyncFailedError(RuntimeError):
    """Raised when a full sync finished with failed slices."""

    def __init__(self, message, summary=None):
        super().__init__(message)
        self.summary = summary
