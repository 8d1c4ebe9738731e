"""Tests for the per-instance lock manager and the transient-retry helper.

Tests:
  1. test_lock_held_elsewhere_times_out
  2. test_lock_released_after_block
  3. test_lock_table_shrinks_after_release
  4. test_transient_error_is_retried
  5. test_retries_exhausted_reraises
  6. test_domain_error_is_not_retried
"""
import threading
import uuid
from unittest.mock import MagicMock, patch

import pytest

from approval_routing.core.errors import InvalidTransitionError, LockTimeoutError
from approval_routing.services.locking import InstanceLockManager, run_with_backoff


def test_lock_held_elsewhere_times_out():
    locks = InstanceLockManager(timeout=0.05)
    instance_id = uuid.uuid4()
    entered, release = threading.Event(), threading.Event()

    def holder():
        with locks.hold(instance_id):
            entered.set()
            release.wait(2)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert entered.wait(2)
        with pytest.raises(LockTimeoutError):
            with locks.hold(instance_id):
                pass
        # other instances are unaffected
        with locks.hold(uuid.uuid4()):
            pass
    finally:
        release.set()
        thread.join()
    assert len(locks) == 0


def test_lock_released_after_block():
    locks = InstanceLockManager(timeout=0.05)
    instance_id = uuid.uuid4()

    with pytest.raises(ValueError):
        with locks.hold(instance_id):
            raise ValueError("boom")

    with locks.hold(instance_id):
        pass


def test_lock_table_shrinks_after_release():
    locks = InstanceLockManager(timeout=0.05)

    for _ in range(1000):
        with locks.hold(uuid.uuid4()):
            assert len(locks) == 1

    assert len(locks) == 0


@patch("approval_routing.services.locking.time.sleep")
def test_transient_error_is_retried(mock_sleep):
    fn = MagicMock(side_effect=[LockTimeoutError("busy"), LockTimeoutError("busy"), "done"])
    on_retry = MagicMock()

    result = run_with_backoff(fn, attempts=3, base_delay=0.01, on_retry=on_retry)

    assert result == "done"
    assert fn.call_count == 3
    assert on_retry.call_count == 2
    assert mock_sleep.call_count == 2


@patch("approval_routing.services.locking.time.sleep")
def test_retries_exhausted_reraises(mock_sleep):
    fn = MagicMock(side_effect=LockTimeoutError("busy"))

    with pytest.raises(LockTimeoutError):
        run_with_backoff(fn, attempts=2, base_delay=0.01)

    assert fn.call_count == 2
    assert mock_sleep.call_count == 1


@patch("approval_routing.services.locking.time.sleep")
def test_domain_error_is_not_retried(mock_sleep):
    fn = MagicMock(side_effect=InvalidTransitionError("terminal"))

    with pytest.raises(InvalidTransitionError):
        run_with_backoff(fn, attempts=3, base_delay=0.01)

    assert fn.call_count == 1
    mock_sleep.assert_not_called()
