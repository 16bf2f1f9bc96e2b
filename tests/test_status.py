"""Tests for the batch status state machine and progress formula."""
import pytest

from photobatch.batch.status import compute_progress, derive_batch_status, is_terminal
from photobatch.db.models import BatchStatus


class TestDeriveBatchStatus:
    """Status is a pure function of the four counters."""

    def test_untouched_batch_is_queued(self):
        assert derive_batch_status(queued=5, processing=0, completed=0, failed=0) == BatchStatus.QUEUED

    def test_empty_batch_is_queued(self):
        assert derive_batch_status(0, 0, 0, 0) == BatchStatus.QUEUED

    def test_processing_when_a_photo_is_in_flight(self):
        assert derive_batch_status(queued=4, processing=1, completed=0, failed=0) == BatchStatus.PROCESSING

    def test_processing_when_started_with_nothing_in_flight(self):
        assert derive_batch_status(queued=2, processing=0, completed=1, failed=0) == BatchStatus.PROCESSING
        assert derive_batch_status(queued=2, processing=0, completed=0, failed=1) == BatchStatus.PROCESSING

    def test_completed_when_all_succeed(self):
        assert derive_batch_status(0, 0, 3, 0) == BatchStatus.COMPLETED

    def test_failed_when_all_fail(self):
        assert derive_batch_status(0, 0, 0, 2) == BatchStatus.FAILED

    def test_partial_on_mixed_outcome(self):
        assert derive_batch_status(0, 0, 3, 1) == BatchStatus.PARTIAL

    @pytest.mark.parametrize("status,terminal", [
        (BatchStatus.QUEUED, False),
        (BatchStatus.PROCESSING, False),
        (BatchStatus.COMPLETED, True),
        (BatchStatus.PARTIAL, True),
        ("FAILED", True),
    ])
    def test_is_terminal(self, status, terminal):
        assert is_terminal(status) is terminal


class TestComputeProgress:
    def test_example_ninety_percent(self):
        # 10 photos, 7 completed, 2 failed, 1 processing
        assert compute_progress(completed=7, failed=2, total=10) == 90

    def test_zero_total(self):
        assert compute_progress(0, 0, 0) == 0

    def test_rounds_half_up(self):
        assert compute_progress(completed=1, failed=0, total=8) == 13
        assert compute_progress(completed=1, failed=0, total=3) == 33
        assert compute_progress(completed=2, failed=0, total=3) == 67

    def test_clamped_to_range(self):
        assert compute_progress(completed=5, failed=1, total=4) == 100
        assert compute_progress(completed=4, failed=0, total=4) == 100
