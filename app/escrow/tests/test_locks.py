"""
Tests for escrow row locks and the Redis distributed lock.
"""

from unittest.mock import patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from escrow.exceptions import EntityNotFound, InvalidState, LockAcquisitionError
from escrow.locks import DistributedLock, lock_row
from escrow.models import Deal


@pytest.mark.django_db
class TestLockRow:
    def test_returns_instance(self, draft_deal):
        deal = lock_row(Deal, draft_deal.pk)
        assert deal.pk == draft_deal.pk

    def test_missing_row_raises_not_found(self):
        with pytest.raises(EntityNotFound) as exc_info:
            lock_row(Deal, "00000000-0000-0000-0000-000000000000")

        assert exc_info.value.details["entity"] == "deal"

    def test_version_mismatch_raises_invalid_state(self, draft_deal):
        with pytest.raises(InvalidState) as exc_info:
            lock_row(Deal, draft_deal.pk, expected_version=draft_deal.version + 1)

        assert exc_info.value.details["current_version"] == draft_deal.version


class TestDistributedLock:
    def test_key_is_prefixed(self):
        lock = DistributedLock("payout:1")
        assert lock.key == "lock:escrow:payout:1"

    def test_acquire_and_release(self, mock_redis):
        lock = DistributedLock("payout:1", ttl=30, blocking=False)

        with lock:
            assert lock.is_held
            args, kwargs = mock_redis.set.call_args
            assert args[0] == "lock:escrow:payout:1"
            assert kwargs == {"nx": True, "ex": 30}

        assert not lock.is_held
        mock_redis.eval.assert_called_once()

    def test_non_blocking_raises_when_held(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("payout:1", blocking=False)

        with pytest.raises(LockAcquisitionError, match="already held"):
            lock.acquire()

    def test_blocking_times_out(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("payout:1", blocking=True, timeout=0.1)

        with patch("escrow.locks.time.sleep"):
            with pytest.raises(LockAcquisitionError) as exc_info:
                lock.acquire()

        assert exc_info.value.details["timeout"] == 0.1

    def test_redis_outage_becomes_lock_error(self, mock_redis):
        mock_redis.set.side_effect = RedisConnectionError("connection refused")
        lock = DistributedLock("payout:1", blocking=False)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert exc_info.value.is_retryable
        assert exc_info.value.details == {"lock_key": "lock:escrow:payout:1"}

    def test_release_without_acquire_is_noop(self, mock_redis):
        lock = DistributedLock("payout:1")

        assert lock.release() is False
        mock_redis.eval.assert_not_called()

    def test_extend_uses_default_ttl(self, mock_redis):
        lock = DistributedLock("payout:1", ttl=45, blocking=False)
        lock.acquire()

        assert lock.extend() is True
        assert mock_redis.eval.call_args[0][-1] == 45
