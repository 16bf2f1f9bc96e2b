"""
Batch Status

The batch status state machine. Status is a pure function of the four
photo counters and is re-evaluated after every photo-level transition.
"""
import math

from photobatch.db.models import BatchStatus, PhotoStatus

TERMINAL_BATCH_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.PARTIAL, BatchStatus.FAILED})
TERMINAL_PHOTO_STATUSES = frozenset({PhotoStatus.DONE, PhotoStatus.ERROR})

# Photo status -> batch counter column it is counted under
COUNTER_FOR_STATUS = {
    PhotoStatus.PENDING: "count_queued",
    PhotoStatus.PROCESSING: "count_processing",
    PhotoStatus.DONE: "count_completed",
    PhotoStatus.ERROR: "count_failed",
}


def derive_batch_status(queued: int, processing: int, completed: int, failed: int) -> BatchStatus:
    """
    Derive the batch status from its counters.

    QUEUED until any worker touches a photo, PROCESSING while anything is
    outstanding after that, then COMPLETED / PARTIAL / FAILED once every
    photo is accounted for. An empty batch is QUEUED.
    """
    total = queued + processing + completed + failed
    if total == 0:
        return BatchStatus.QUEUED

    if completed + failed == total:
        if failed == 0:
            return BatchStatus.COMPLETED
        if failed == total:
            return BatchStatus.FAILED
        return BatchStatus.PARTIAL

    if processing == 0 and completed == 0 and failed == 0:
        return BatchStatus.QUEUED

    return BatchStatus.PROCESSING


def compute_progress(completed: int, failed: int, total: int) -> int:
    """Percentage of accounted-for photos, rounded half up, clamped to [0, 100]."""
    if total <= 0:
        return 0
    value = math.floor(100 * (completed + failed) / total + 0.5)
    return max(0, min(100, value))


def is_terminal(status: BatchStatus | str) -> bool:
    return BatchStatus(status) in TERMINAL_BATCH_STATUSES
