"""
Tests for step-by-step operation results and keyed locks
"""

import pytest
import threading
import time

from lending_core.errors import DeadlineExceededError, NotFoundError, OperationFailedError
from lending_core.locks import KeyedLockRegistry
from lending_core.results import Deadline, OperationResult, StepStatus


class TestOperationResult:
    """Test recording of persistence steps"""

    def test_successful_steps(self):
        result = OperationResult(operation="payments.pay_installment")

        assert result.run("update_installment", lambda: "saved") == "saved"
        result.run("append_ledger_entry", lambda: None)

        assert result.completed_steps == ["update_installment", "append_ledger_entry"]
        assert result.ok
        assert result.failed_step is None

    def test_failure_is_wrapped_and_chained(self):
        """Test that the caller learns which step failed and why"""
        result = OperationResult(operation="payments.pay_installment")
        result.run("update_installment", lambda: None)

        def adjust_source():
            raise NotFoundError("capital_sources record S1 not found")

        with pytest.raises(OperationFailedError, match="failed at adjust_source") as exc_info:
            result.run("adjust_source", adjust_source)

        error = exc_info.value
        assert isinstance(error.__cause__, NotFoundError)
        assert error.result is result
        assert error.partially_applied
        assert result.failed_step == "adjust_source"
        assert not result.ok

    def test_failure_before_any_step(self):
        result = OperationResult(operation="loans.issue")

        def boom():
            raise RuntimeError("disk full")

        with pytest.raises(OperationFailedError) as exc_info:
            result.run("save_loan", boom)
        assert not exc_info.value.partially_applied

    def test_expired_deadline_stops_before_step(self):
        result = OperationResult(operation="ledger.post")
        called = []

        with pytest.raises(OperationFailedError, match="deadline exceeded") as exc_info:
            result.run("append_ledger_entry", lambda: called.append(True), Deadline.after(-1))

        assert called == []
        assert isinstance(exc_info.value.__cause__, DeadlineExceededError)
        assert result.steps[0].status == StepStatus.FAILED

    def test_to_dict(self):
        result = OperationResult(operation="agreements.create", correlation_id="corr-1")
        result.run("create_agreement", lambda: None)
        result.skipped("link_loan", "nothing to link")

        assert result.to_dict() == {
            "operation": "agreements.create",
            "correlation_id": "corr-1",
            "ok": True,
            "steps": [
                {"name": "create_agreement", "status": "succeeded", "detail": None},
                {"name": "link_loan", "status": "skipped", "detail": "nothing to link"},
            ],
        }


class TestDeadline:
    """Test caller-supplied deadlines"""

    def test_from_seconds(self):
        assert Deadline.from_seconds(None) is None
        deadline = Deadline.from_seconds(60)
        assert not deadline.expired()
        assert 0 < deadline.remaining() <= 60

    def test_expired(self):
        assert Deadline.after(0).expired()


class TestKeyedLockRegistry:
    """Test per-key serialisation"""

    def setup_method(self):
        self.locks = KeyedLockRegistry()

    def test_reentrant(self):
        with self.locks.hold("inst-1"):
            with self.locks.hold("inst-1", "inst-2"):
                assert sorted(self.locks.known_keys()) == ["inst-1", "inst-2"]
            assert list(self.locks.known_keys()) == ["inst-1"]

    def test_empty_keys_ignored(self):
        with self.locks.hold(None, "", "entry-1"):
            assert list(self.locks.known_keys()) == ["entry-1"]

    def test_released_keys_are_evicted(self):
        """Test that the registry does not keep a lock per key ever seen"""
        for number in range(50):
            with self.locks.hold(f"inst-{number}", "loan-1"):
                pass
        assert list(self.locks.known_keys()) == []

    def test_waiter_keeps_key_alive(self):
        """Test that a key stays registered while another thread waits for it"""
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with self.locks.hold("loan-1"):
                acquired.set()
                release.wait(5)

        def waiter():
            with self.locks.hold("loan-1"):
                pass

        first = threading.Thread(target=holder)
        second = threading.Thread(target=waiter)
        first.start()
        acquired.wait(5)
        second.start()
        time.sleep(0.05)
        assert list(self.locks.known_keys()) == ["loan-1"]

        release.set()
        first.join()
        second.join()
        assert list(self.locks.known_keys()) == []

    def test_timeout_releases_registration(self):
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with self.locks.hold("inst-1"):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            acquired.wait(5)
            with pytest.raises(DeadlineExceededError):
                with self.locks.hold("inst-0", "inst-1", timeout=0.05):
                    pass
            assert list(self.locks.known_keys()) == ["inst-1"]
        finally:
            release.set()
            thread.join()
        assert list(self.locks.known_keys()) == []

    def test_timeout_while_held_elsewhere(self):
        """Test that a waiter gives up once its timeout passes"""
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with self.locks.hold("inst-1"):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            acquired.wait(5)
            with pytest.raises(DeadlineExceededError, match="inst-1"):
                with self.locks.hold("inst-1", timeout=0.05):
                    pass
        finally:
            release.set()
            thread.join()

    def test_serialises_same_key(self):
        """Test that critical sections on one key never overlap"""
        inside = []
        overlaps = []

        def worker():
            with self.locks.hold("inst-1"):
                if inside:
                    overlaps.append(True)
                inside.append(True)
                time.sleep(0.001)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []
