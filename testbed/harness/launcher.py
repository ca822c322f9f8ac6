"""
launcher.py - Node Process Launcher

Starts one database node per call:
- Builds the node command line from the scenario's flag contract
- Truncates the node's log file and redirects stdout/stderr into it
- Places the node in the harness-owned process group

Design philosophy:
- Fail-fast (executable and log file checked before spawn)
- Capture at spawn time (the node writes its log directly, nothing is polled)
- Never retry (a second launch of the same node corrupts its data dir)
"""

import os
import signal
import subprocess
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from testbed.config.scenario import ClusterScenario, NodeSpec, ROLE_INIT, ROLE_JOIN
from testbed.harness.errors import SpawnFailure


class ProcessState(Enum):
    STARTING = 'starting'
    RUNNING = 'running'
    TERMINATED = 'terminated'


class ProcessHandle:
    """
    A spawned node process.

    Owned by the ProcessGroup that launched it; only the cleanup
    coordinator signals or reaps it.
    """

    def __init__(self, spec: NodeSpec):
        self.spec = spec
        self.state = ProcessState.STARTING
        self.process: Optional[subprocess.Popen] = None

    def attach(self, process: subprocess.Popen):
        self.process = process
        self.state = ProcessState.RUNNING
        self.poll()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def is_running(self) -> bool:
        return self.poll() is None and self.state is ProcessState.RUNNING

    def poll(self) -> Optional[int]:
        """Refresh state; return the exit code or None while running."""
        if self.process is None:
            return None
        returncode = self.process.poll()
        if returncode is not None:
            self.state = ProcessState.TERMINATED
        return returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        """
        Wait for the process to exit.

        Raises:
            subprocess.TimeoutExpired: If still running after timeout
        """
        returncode = self.process.wait(timeout=timeout)
        self.state = ProcessState.TERMINATED
        return returncode

    def __repr__(self) -> str:
        return f"ProcessHandle(node={self.spec.node_id}, pid={self.pid}, state={self.state.value})"


class ProcessGroup:
    """
    The process group(s) holding every node of one harness run.

    The first node becomes the group leader; later nodes join its group,
    so helpers forked by any node are members too. If the group has
    emptied out before a later launch, that node starts a new group and
    both are tracked.
    """

    def __init__(self):
        self.pgids: List[int] = []
        self.handles: List[ProcessHandle] = []
        self.spawning = False
        self.deferred_signal: Optional[int] = None

    def spawn_pgid(self) -> int:
        """Process group for the next spawn (0 means start a new one)."""
        if self.pgids and self._group_exists(self.pgids[-1]):
            return self.pgids[-1]
        return 0

    @contextmanager
    def spawn_window(self):
        """
        Hold back interrupts while a process is started but not yet tracked.

        The cleanup coordinator defers a signal that arrives inside the
        window; it is raised again once the new process group is recorded.
        """
        self.spawning = True
        try:
            yield
        finally:
            self.spawning = False
            signum, self.deferred_signal = self.deferred_signal, None
            if signum is not None:
                signal.raise_signal(signum)

    def defer_signal(self, signum: int):
        if self.deferred_signal is None:
            self.deferred_signal = signum

    def add(self, handle: ProcessHandle, pgid: int):
        self.handles.append(handle)
        if pgid not in self.pgids:
            self.pgids.append(pgid)

    def signal(self, sig: int):
        """Send sig to every tracked group; exited groups are skipped."""
        for pgid in self.pgids:
            try:
                os.killpg(pgid, sig)
            except ProcessLookupError:
                # Group already gone
                pass

    def any_alive(self) -> bool:
        return any(self._group_exists(pgid) for pgid in self.pgids)

    def running(self) -> List[ProcessHandle]:
        return [h for h in self.handles if h.poll() is None]

    @staticmethod
    def _group_exists(pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to someone else
            return True
        return True


class NodeLauncher:
    """
    Spawns node processes for a scenario.

    Usage:
        group = ProcessGroup()
        launcher = NodeLauncher(scenario, group)
        handle = launcher.launch(scenario.init_node)
    """

    def __init__(self, scenario: ClusterScenario, group: ProcessGroup):
        self.scenario = scenario
        self.group = group

    def build_command(self, spec: NodeSpec) -> List[str]:
        """Node command line, e.g. sucredb -d n1 -l 127.0.0.1:6379 -f 127.0.0.1:16379 init"""
        flags = self.scenario.flags
        cmd = [
            self.scenario.binary,
            flags.data_dir, spec.node_id,
            flags.listen, spec.listen_addr,
            flags.fabric, spec.fabric_addr,
        ]
        if spec.role == ROLE_INIT:
            cmd.append(flags.init)
        elif spec.role == ROLE_JOIN:
            cmd.extend([flags.seed, spec.seed_addr])
        return cmd

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.scenario.env)
        return env

    def _check_executable(self, spec: NodeSpec):
        binary = Path(self.scenario.binary)
        if not binary.is_file():
            raise SpawnFailure(spec.node_id, f"Executable not found: {binary}")
        if not os.access(binary, os.X_OK):
            raise SpawnFailure(spec.node_id, f"Executable is not executable: {binary}")

    def launch(self, spec: NodeSpec) -> ProcessHandle:
        """
        Start one node.

        Args:
            spec: Node to start

        Returns:
            Handle of the running node, already registered in the group

        Raises:
            SpawnFailure: If the executable or log file is unusable, or
                the OS refuses to start the process
        """
        self._check_executable(spec)

        log_path = Path(spec.log_path)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, 'wb')
        except OSError as e:
            raise SpawnFailure(spec.node_id, f"Cannot open log file {log_path}: {e}") from e

        cmd = self.build_command(spec)
        pgid = self.group.spawn_pgid()
        handle = ProcessHandle(spec)

        print(f"[Launcher] Starting {spec.node_id} ({spec.role})...")
        print(f"[Launcher] Command: {' '.join(cmd)}")
        print(f"[Launcher] Log: {log_path}")

        with self.group.spawn_window():
            try:
                with log_file:
                    process = subprocess.Popen(
                        cmd,
                        stdin=subprocess.DEVNULL,
                        stdout=log_file,
                        stderr=subprocess.STDOUT,
                        env=self.build_env(),
                        process_group=pgid,
                    )
            except OSError as e:
                raise SpawnFailure(spec.node_id, f"Failed to start {cmd[0]}: {e}") from e

            handle.attach(process)
            self.group.add(handle, pgid or process.pid)

        if handle.state is ProcessState.TERMINATED:
            print(
                f"[Launcher] WARNING: {spec.node_id} exited immediately "
                f"with code {process.returncode} (see {log_path})"
            )
        else:
            print(f"[Launcher] ✓ {spec.node_id} running (PID {process.pid})")

        return handle

