"""
testbed.config - Cluster scenario configuration

Provides the fixed two-node topology and YAML-based overrides.
"""

from .scenario import ClusterScenario, NodeFlags, NodeSpec, load_scenario, parse_address

__all__ = ['ClusterScenario', 'NodeFlags', 'NodeSpec', 'load_scenario', 'parse_address']
