"""
testbed.harness - Two-node cluster orchestration

Launches the init and join nodes, follows their logs, and guarantees
every node process is terminated when the harness exits.
"""

from .errors import HarnessError, BuildFailure, SpawnFailure, HarnessInterrupted
from .launcher import NodeLauncher, ProcessGroup, ProcessHandle, ProcessState
from .cleanup import CleanupCoordinator, CleanupState
from .bootstrap import ClusterBootstrapper, BootstrapResult
from .log_tail import LogAggregator, LogLine
from .build import build_binary

__all__ = [
    'HarnessError',
    'BuildFailure',
    'SpawnFailure',
    'HarnessInterrupted',
    'NodeLauncher',
    'ProcessGroup',
    'ProcessHandle',
    'ProcessState',
    'CleanupCoordinator',
    'CleanupState',
    'ClusterBootstrapper',
    'BootstrapResult',
    'LogAggregator',
    'LogLine',
    'build_binary',
]
