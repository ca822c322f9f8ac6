"""
bootstrap.py - Cluster Bootstrapper

Brings up the fixed two-node topology in order:
1. Launch the init node
2. Sleep for the settle delay so the init node can bind and prepare storage
3. Launch the join node, seeded with the init node's fabric address

There is no readiness polling and no rollback: if the join launch fails,
the init node keeps running and is torn down by the cleanup coordinator
like any other member of the process group.
"""

import time
from dataclasses import dataclass
from typing import Callable

from testbed.config.scenario import ClusterScenario
from testbed.harness.launcher import NodeLauncher, ProcessHandle


@dataclass
class BootstrapResult:
    """Handles of the two started nodes."""
    init_handle: ProcessHandle
    join_handle: ProcessHandle


class ClusterBootstrapper:

    def __init__(self, scenario: ClusterScenario, launcher: NodeLauncher,
                 sleep: Callable[[float], None] = time.sleep):
        self.scenario = scenario
        self.launcher = launcher
        self._sleep = sleep

    def bootstrap(self) -> BootstrapResult:
        """
        Start the init node, wait, start the join node.

        Raises:
            SpawnFailure: From either launch. An init failure means the
                join node is never attempted.
        """
        init_node = self.scenario.init_node
        join_node = self.scenario.join_node

        print(f"\n[Bootstrap] Launching init node {init_node.node_id}...")
        init_handle = self.launcher.launch(init_node)

        delay = self.scenario.settle_delay_s
        if delay > 0:
            print(f"[Bootstrap] WAITING {delay:g}s for {init_node.node_id} to settle")
            self._sleep(delay)

        print(f"\n[Bootstrap] Launching join node {join_node.node_id} (seed {join_node.seed_addr})...")
        join_handle = self.launcher.launch(join_node)

        print(f"[Bootstrap] ✓ Cluster started: {init_node.node_id}, {join_node.node_id}")
        return BootstrapResult(init_handle=init_handle, join_handle=join_handle)
