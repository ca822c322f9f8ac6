"""
errors.py - Harness failure types

None of these are retried: a node launched twice would corrupt its
on-disk state, so every failure is terminal for the affected node.
"""


class HarnessError(Exception):
    """Base class for harness-level failures."""
    pass


class BuildFailure(HarnessError):
    """Raised when the build step does not produce a runnable binary."""
    pass


class SpawnFailure(HarnessError):
    """Raised when a node process cannot be started."""

    def __init__(self, node_id: str, message: str):
        super().__init__(f"Node {node_id}: {message}")
        self.node_id = node_id


class HarnessInterrupted(HarnessError):
    """Raised on the main thread after SIGINT/SIGTERM has triggered cleanup."""

    def __init__(self, signum: int):
        super().__init__(f"Interrupted by signal {signum}")
        self.signum = signum
