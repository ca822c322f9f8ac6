"""
cleanup.py - Signal/Cleanup Coordinator

Guarantees that no node process outlives the harness.

State machine:
    IDLE → ARMED → TRIGGERED → CLEANED_UP

Armed before the first launch, triggered by SIGINT, SIGTERM or normal
interpreter exit (atexit). Triggering is idempotent: near-simultaneous
triggers collapse into a single cleanup run.

Cleanup sequence:
1. SIGTERM to every tracked process group (covers helpers the nodes forked)
2. Wait up to the grace period for the group to disappear
3. SIGKILL whatever is left
4. Reap the tracked node processes
5. Run extra registered cleanup actions
"""

import atexit
import signal
import subprocess
import threading
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

from testbed.harness.errors import HarnessInterrupted
from testbed.harness.launcher import ProcessGroup


HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CleanupState(Enum):
    IDLE = 'idle'
    ARMED = 'armed'
    TRIGGERED = 'triggered'
    CLEANED_UP = 'cleaned_up'


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


class CleanupCoordinator:
    """
    Owns the signal handlers and the teardown of a ProcessGroup.

    Usage:
        group = ProcessGroup()
        with CleanupCoordinator(group) as coordinator:
            coordinator.register(stop_event.set)
            ...launch nodes, follow logs...

    arm() must run on the main thread (Python only installs signal
    handlers there).
    """

    def __init__(self, group: ProcessGroup, grace_period_s: float = 5.0,
                 poll_interval_s: float = 0.05, restore_on_exit: bool = True):
        self.group = group
        self.grace_period_s = grace_period_s
        self.poll_interval_s = poll_interval_s
        self.restore_on_exit = restore_on_exit
        self.state = CleanupState.IDLE
        self.trigger_reason: Optional[str] = None

        self._lock = threading.RLock()
        self._callbacks: List[Callable[[], None]] = []
        self._previous_handlers: Dict[int, object] = {}
        self._atexit_registered = False

    def register(self, callback: Callable[[], None]):
        """Add an action to run after the process group is torn down."""
        self._callbacks.append(callback)

    def arm(self):
        """Install SIGINT/SIGTERM handlers and the atexit hook."""
        if self.state is not CleanupState.IDLE:
            return

        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        atexit.register(self._handle_exit)
        self._atexit_registered = True

        self.state = CleanupState.ARMED
        print("[Cleanup] Armed (SIGINT, SIGTERM, exit)")

    def disarm(self, restore_handlers: bool = True):
        """
        Drop the atexit hook and restore the previous signal handlers.

        With restore_handlers=False the coordinator's handlers stay
        installed; once cleaned up they ignore further signals.
        """
        if restore_handlers:
            for signum, handler in self._previous_handlers.items():
                signal.signal(signum, handler)
            self._previous_handlers.clear()

        if self._atexit_registered:
            atexit.unregister(self._handle_exit)
            self._atexit_registered = False

    def _handle_signal(self, signum, frame):
        # Repeated signals while cleaning up are ignored
        if self.state is not CleanupState.ARMED:
            return
        if self.group.spawning:
            # Re-raised by the group once the new node is tracked
            self.group.defer_signal(signum)
            return
        self.trigger(signal_name(signum))
        raise HarnessInterrupted(signum)

    def _handle_exit(self):
        self.trigger('exit')

    def trigger(self, reason: str = 'exit') -> bool:
        """
        Tear down the process group.

        Returns:
            True if this call performed the cleanup, False if an earlier
            trigger already did (or is doing) it
        """
        with self._lock:
            if self.state in (CleanupState.TRIGGERED, CleanupState.CLEANED_UP):
                return False
            self.state = CleanupState.TRIGGERED
            self.trigger_reason = reason

            print("\n" + "="*60)
            print(f"Cleaning up cluster ({reason})...")
            print("="*60)

            self._terminate_group()
            self._run_callbacks()

            self.state = CleanupState.CLEANED_UP
            print("[Cleanup] ✓ Cleaned up")
            return True

    def _terminate_group(self):
        if not self.group.pgids:
            print("[Cleanup] No node processes were started")
            return

        print(f"[Cleanup] Sending SIGTERM to process group(s) {self.group.pgids}...")
        self.group.signal(signal.SIGTERM)

        deadline = time.monotonic() + self.grace_period_s
        while self.group.any_alive() and time.monotonic() < deadline:
            self._reap_exited()
            time.sleep(self.poll_interval_s)

        if self.group.any_alive():
            print(f"[Cleanup] WARNING: Processes survived {self.grace_period_s}s grace period, killing...")
            self.group.signal(signal.SIGKILL)

        for handle in self.group.handles:
            if handle.process is None:
                continue
            try:
                handle.wait(timeout=self.grace_period_s)
            except subprocess.TimeoutExpired:
                print(f"[Cleanup] WARNING: PID {handle.pid} did not exit after SIGKILL")

        survivors = self.group.running()
        if survivors:
            print(f"[Cleanup] WARNING: {len(survivors)} node process(es) still running!")
            for handle in survivors:
                print(f"  - {handle}")
        else:
            print(f"[Cleanup] ✓ {len(self.group.handles)} node process(es) terminated")

    def _reap_exited(self):
        # Zombie children keep their group alive until waited on
        for handle in self.group.handles:
            handle.poll()

    def _run_callbacks(self):
        for callback in self._callbacks:
            try:
                callback()
            except Exception as e:
                print(f"[Cleanup] WARNING: Cleanup action {callback!r} failed: {e}")

    def __enter__(self) -> 'CleanupCoordinator':
        self.arm()
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            self.trigger('exit')
        finally:
            self.disarm(restore_handlers=self.restore_on_exit)
        return False
