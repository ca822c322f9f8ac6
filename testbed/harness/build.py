"""
build.py - Node Binary Build Step

Runs the scenario's build command once (default `cargo build --release`)
and checks that it left a runnable binary behind. Build output goes
straight to the harness's own stdout/stderr so a failure is visible where
it happens.
"""

import os
import subprocess
from pathlib import Path
from typing import Callable

from testbed.config.scenario import ClusterScenario
from testbed.harness.errors import BuildFailure


def check_binary(binary: Path):
    """
    Raises:
        BuildFailure: If binary is missing or not executable
    """
    if not binary.is_file():
        raise BuildFailure(f"Build did not produce {binary}")
    if not os.access(binary, os.X_OK):
        raise BuildFailure(f"Build artifact is not executable: {binary}")


def build_binary(scenario: ClusterScenario,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> Path:
    """
    Build the node binary.

    Args:
        scenario: Scenario providing build_command, build_cwd and binary
        runner: subprocess.run-compatible callable

    Returns:
        Path to the built binary

    Raises:
        BuildFailure: If the build command is missing, fails, or produces
            no runnable binary
    """
    binary = Path(scenario.binary)

    if not scenario.build_command:
        print("[Build] No build command configured, using existing binary")
        check_binary(binary)
        return binary

    cmd = scenario.build_command
    if not Path(scenario.build_cwd).is_dir():
        raise BuildFailure(f"Build directory not found: {scenario.build_cwd}")

    print(f"[Build] Running: {' '.join(cmd)} (in {scenario.build_cwd})")

    try:
        runner(cmd, cwd=scenario.build_cwd, check=True)
    except FileNotFoundError as e:
        raise BuildFailure(f"Build command not found: {cmd[0]}") from e
    except subprocess.CalledProcessError as e:
        raise BuildFailure(f"Build failed with exit code {e.returncode}: {' '.join(cmd)}") from e

    check_binary(binary)
    print(f"[Build] ✓ Binary ready: {binary}")
    return binary
