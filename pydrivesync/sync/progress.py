"""Progress events emitted by the transfer executor."""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..utils import PROGRESS_INTERVAL


class TransferProgressEvent(str, Enum):
    """Lifecycle of a single transfer as seen by a progress observer."""

    TRANSFER_START = "transfer_start"
    TRANSFER_PROGRESS = "transfer_progress"
    TRANSFER_COMPLETE = "transfer_complete"
    TRANSFER_FAILED = "transfer_failed"


@dataclass
class TransferProgressInfo:
    """Snapshot of one transfer."""

    event: TransferProgressEvent
    relative_path: str
    action: str
    """``upload`` or ``download``"""

    bytes_transferred: int = 0
    total_size: int = 0

    @property
    def fraction(self) -> float:
        if self.total_size <= 0:
            return 1.0
        return min(1.0, self.bytes_transferred / self.total_size)


ProgressCallback = Callable[[TransferProgressInfo], None]


class ProgressThrottle:
    """Rate limits the progress events of one transfer.

    Every transfer owns its own throttle. Chunk callbacks may arrive at any
    rate; at most one ``TRANSFER_PROGRESS`` event is forwarded per interval.
    Start, completion and failure events are always forwarded.
    """

    def __init__(
        self,
        callback: Optional[ProgressCallback],
        interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the throttle.

        Args:
            callback: Observer to forward events to (None drops everything)
            interval: Minimum number of seconds between two progress events
            clock: Monotonic time source
        """
        self.callback = callback
        self.interval = interval
        self.clock = clock
        self._last_emit: Optional[float] = None
        self.emitted = 0
        """Number of progress events forwarded"""

    def progress(self, info: TransferProgressInfo) -> bool:
        """Forward a progress event unless one was sent less than an interval ago.

        Returns:
            True if the event was forwarded
        """
        if self.callback is None:
            return False
        now = self.clock()
        if self._last_emit is not None and now - self._last_emit < self.interval:
            return False
        self._last_emit = now
        self.emitted += 1
        self.callback(info)
        return True

    def lifecycle(self, info: TransferProgressInfo) -> None:
        """Forward a start, completion or failure event unthrottled."""
        if self.callback is not None:
            self.callback(info)
