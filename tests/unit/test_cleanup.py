#!/usr/bin/env python3
"""
test_cleanup.py - Signal/Cleanup Coordinator tests

Uses a fake process group so no real processes are signaled. Real
process-group teardown is covered by tests/integration.
"""

import pytest
import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

# Add project root to path
_project_root = Path(__file__).parent.parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from testbed.harness.cleanup import CleanupCoordinator, CleanupState, signal_name
from testbed.harness.errors import HarnessInterrupted


class FakeGroup:
    """Records signals; dies on SIGTERM unless stubborn."""

    def __init__(self, stubborn=False, pgids=(100,)):
        self.pgids = list(pgids)
        self.signals = []
        self.stubborn = stubborn
        self.alive = bool(self.pgids)
        self.spawning = False
        self.deferred = []
        self.handles = [self._handle(pid) for pid in self.pgids]

    def _handle(self, pid):
        handle = MagicMock()
        handle.pid = pid
        handle.process = MagicMock()
        handle.poll.side_effect = lambda: None if self.alive else -15
        return handle

    def defer_signal(self, signum):
        self.deferred.append(signum)

    def signal(self, sig):
        self.signals.append(sig)
        if sig == signal.SIGKILL or not self.stubborn:
            self.alive = False

    def any_alive(self):
        return self.alive

    def running(self):
        return [h for h in self.handles if h.poll() is None]


@pytest.fixture
def group():
    return FakeGroup()


@pytest.fixture
def coordinator(group):
    coordinator = CleanupCoordinator(group, grace_period_s=0.2, poll_interval_s=0.01)
    yield coordinator
    coordinator.disarm()


class TestStateMachine:

    def test_initial_state(self, coordinator):
        assert coordinator.state is CleanupState.IDLE

    def test_arm(self, coordinator):
        coordinator.arm()
        assert coordinator.state is CleanupState.ARMED

    def test_trigger_reaches_cleaned_up(self, coordinator):
        coordinator.arm()

        assert coordinator.trigger('test') is True

        assert coordinator.state is CleanupState.CLEANED_UP
        assert coordinator.trigger_reason == 'test'

    def test_trigger_is_idempotent(self, coordinator, group):
        coordinator.arm()

        assert coordinator.trigger('first') is True
        assert coordinator.trigger('second') is False

        assert group.signals == [signal.SIGTERM]
        assert coordinator.trigger_reason == 'first'

    def test_concurrent_triggers_collapse(self, group):
        coordinator = CleanupCoordinator(group, grace_period_s=0.2, poll_interval_s=0.01)
        results = []

        threads = [
            threading.Thread(target=lambda: results.append(coordinator.trigger('thread')))
            for _ in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [False, False, False, False, True]
        assert group.signals == [signal.SIGTERM]

    def test_trigger_without_arming_still_cleans(self, group):
        coordinator = CleanupCoordinator(group)

        coordinator.trigger('exit')

        assert coordinator.state is CleanupState.CLEANED_UP
        assert group.signals == [signal.SIGTERM]


class TestTermination:

    def test_sigterm_sent_to_group(self, coordinator, group):
        coordinator.trigger()

        assert group.signals == [signal.SIGTERM]

    def test_handles_reaped(self, coordinator, group):
        coordinator.trigger()

        for handle in group.handles:
            handle.wait.assert_called_once()

    def test_sigkill_after_grace_period(self):
        group = FakeGroup(stubborn=True)
        coordinator = CleanupCoordinator(group, grace_period_s=0.1, poll_interval_s=0.01)

        start = time.monotonic()
        coordinator.trigger()
        elapsed = time.monotonic() - start

        assert group.signals == [signal.SIGTERM, signal.SIGKILL]
        assert elapsed < 2.0

    def test_wait_timeout_tolerated(self, coordinator, group):
        group.handles[0].wait.side_effect = subprocess.TimeoutExpired('sucredb', 0.2)

        coordinator.trigger()  # Should not raise

        assert coordinator.state is CleanupState.CLEANED_UP

    def test_empty_group(self):
        group = FakeGroup(pgids=())
        coordinator = CleanupCoordinator(group)

        coordinator.trigger()

        assert group.signals == []
        assert coordinator.state is CleanupState.CLEANED_UP

    @patch('os.killpg', side_effect=ProcessLookupError)
    def test_exited_group_tolerated(self, mock_killpg):
        from testbed.harness.launcher import ProcessGroup

        group = ProcessGroup()
        group.pgids = [99999]
        coordinator = CleanupCoordinator(group, grace_period_s=0.1)

        coordinator.trigger()  # Should not raise

        assert coordinator.state is CleanupState.CLEANED_UP


class TestCallbacks:

    def test_callbacks_run_once(self, coordinator):
        callback = Mock()
        coordinator.register(callback)

        coordinator.trigger()
        coordinator.trigger()

        callback.assert_called_once_with()

    def test_callbacks_run_after_group_signaled(self, coordinator, group):
        seen = []
        coordinator.register(lambda: seen.append(list(group.signals)))

        coordinator.trigger()

        assert seen == [[signal.SIGTERM]]

    def test_failing_callback_does_not_stop_others(self, coordinator):
        second = Mock()
        coordinator.register(Mock(side_effect=RuntimeError("boom")))
        coordinator.register(second)

        coordinator.trigger()

        second.assert_called_once_with()
        assert coordinator.state is CleanupState.CLEANED_UP


class TestSignalHandling:

    def test_arm_installs_handlers(self, coordinator):
        coordinator.arm()

        assert signal.getsignal(signal.SIGINT) == coordinator._handle_signal
        assert signal.getsignal(signal.SIGTERM) == coordinator._handle_signal

    def test_disarm_restores_handlers(self, group):
        before_int = signal.getsignal(signal.SIGINT)
        before_term = signal.getsignal(signal.SIGTERM)
        coordinator = CleanupCoordinator(group)

        coordinator.arm()
        coordinator.disarm()

        assert signal.getsignal(signal.SIGINT) == before_int
        assert signal.getsignal(signal.SIGTERM) == before_term

    def test_arm_registers_atexit_hook(self, group):
        coordinator = CleanupCoordinator(group)

        with patch('atexit.register') as mock_register, patch('atexit.unregister') as mock_unregister:
            coordinator.arm()
            coordinator.disarm()

        mock_register.assert_called_once_with(coordinator._handle_exit)
        mock_unregister.assert_called_once_with(coordinator._handle_exit)

    def test_exit_hook_triggers_cleanup(self, coordinator, group):
        coordinator.arm()

        coordinator._handle_exit()

        assert coordinator.state is CleanupState.CLEANED_UP
        assert coordinator.trigger_reason == 'exit'

    def test_signal_triggers_then_raises(self, coordinator, group):
        coordinator.arm()

        with pytest.raises(HarnessInterrupted) as exc_info:
            coordinator._handle_signal(signal.SIGINT, None)

        assert exc_info.value.signum == signal.SIGINT
        assert coordinator.state is CleanupState.CLEANED_UP
        assert coordinator.trigger_reason == 'SIGINT'
        assert group.signals == [signal.SIGTERM]

    def test_second_signal_ignored(self, coordinator, group):
        coordinator.arm()

        with pytest.raises(HarnessInterrupted):
            coordinator._handle_signal(signal.SIGINT, None)
        coordinator._handle_signal(signal.SIGINT, None)  # Should not raise

        assert group.signals == [signal.SIGTERM]

    def test_signal_during_spawn_is_deferred(self, coordinator, group):
        coordinator.arm()
        group.spawning = True

        coordinator._handle_signal(signal.SIGINT, None)  # Should not raise

        assert coordinator.state is CleanupState.ARMED
        assert group.deferred == [signal.SIGINT]
        assert group.signals == []

    def test_real_sigterm_delivery(self, coordinator, group):
        coordinator.arm()

        with pytest.raises(HarnessInterrupted) as exc_info:
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(1.0)

        assert exc_info.value.signum == signal.SIGTERM
        assert coordinator.state is CleanupState.CLEANED_UP

    def test_context_manager(self, group):
        with CleanupCoordinator(group) as coordinator:
            assert coordinator.state is CleanupState.ARMED

        assert coordinator.state is CleanupState.CLEANED_UP
        assert signal.getsignal(signal.SIGINT) != coordinator._handle_signal

    def test_handlers_kept_after_exit_when_not_restoring(self, group):
        saved = {signum: signal.getsignal(signum) for signum in (signal.SIGINT, signal.SIGTERM)}
        try:
            with CleanupCoordinator(group, restore_on_exit=False) as coordinator:
                pass

            assert signal.getsignal(signal.SIGINT) == coordinator._handle_signal
            assert signal.getsignal(signal.SIGTERM) == coordinator._handle_signal
            # A late interrupt is ignored instead of raising KeyboardInterrupt
            coordinator._handle_signal(signal.SIGINT, None)
            assert group.signals == [signal.SIGTERM]
        finally:
            for signum, handler in saved.items():
                signal.signal(signum, handler)

    def test_context_manager_cleans_up_on_error(self, group):
        with pytest.raises(RuntimeError):
            with CleanupCoordinator(group) as coordinator:
                raise RuntimeError("spawn went wrong")

        assert coordinator.state is CleanupState.CLEANED_UP
        assert group.signals == [signal.SIGTERM]


def test_signal_name():
    assert signal_name(signal.SIGINT) == 'SIGINT'
    assert signal_name(9999) == '9999'


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
