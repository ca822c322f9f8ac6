"""
scenario.py - Two-Node Cluster Scenario

Describes the fixed test topology: one node that initializes a fresh
cluster and one node that joins it. Defaults reproduce the stock local
setup; an optional YAML file can override addresses, paths and the
settle delay.

Design philosophy:
- Keep it simple: minimal validation, no schema framework
- Fail fast: raise clear exceptions on errors
- Fixed topology: exactly one init node followed by one join node

Example YAML:
    cluster:
      binary: ./target/release/sucredb
      build_command: cargo build --release
      settle_delay_s: 2

    env:
      RUST_BACKTRACE: "1"
      RUST_LOG: sucredb=info

    nodes:
      - id: n1
        role: init
        listen: 127.0.0.1:6379
        fabric: 127.0.0.1:16379
        log: log1.txt

      - id: n2
        role: join
        listen: 127.0.0.1:6378
        fabric: 127.0.0.1:16378
        log: log2.txt
        seed: 127.0.0.1:16379  # optional, defaults to the init node's fabric address
"""

import shlex
import yaml
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple
from pathlib import Path


ROLE_INIT = 'init'
ROLE_JOIN = 'join'
NODE_ROLES = (ROLE_INIT, ROLE_JOIN)

DEFAULT_BINARY = './target/release/sucredb'
DEFAULT_BUILD_COMMAND = ['cargo', 'build', '--release']
DEFAULT_SETTLE_DELAY_S = 2.0
DEFAULT_ENV = {
    'RUST_BACKTRACE': '1',
    'RUST_LOG': 'sucredb=info',
}


def parse_address(addr: str) -> Tuple[str, int]:
    """
    Split a host:port address.

    IPv6 hosts must be bracketed ("[::1]:6379").

    Raises:
        ValueError: If the address is not a valid host:port pair
    """
    if not isinstance(addr, str) or not addr:
        raise ValueError(f"Address must be a non-empty 'host:port' string, got {addr!r}")

    host, sep, port_text = addr.rpartition(':')
    if not sep or not host:
        raise ValueError(f"Address must be 'host:port', got '{addr}'")

    if host.startswith('['):
        if not host.endswith(']') or len(host) < 3:
            raise ValueError(f"Malformed IPv6 host in address '{addr}'")
        host = host[1:-1]
    elif ':' in host:
        raise ValueError(f"IPv6 host must be bracketed in address '{addr}'")

    if any(c.isspace() for c in host):
        raise ValueError(f"Host must not contain whitespace in address '{addr}'")

    if not port_text.isdigit():
        raise ValueError(f"Port must be numeric in address '{addr}'")
    port = int(port_text)
    if not (1 <= port <= 65535):
        raise ValueError(f"Port must be in [1, 65535] in address '{addr}', got {port}")

    return host, port


@dataclass(frozen=True)
class NodeSpec:
    """
    One node of the test cluster.

    Attributes:
        node_id: Node identifier passed to the binary
        role: "init" (creates the cluster) or "join" (joins an existing one)
        listen_addr: host:port for the client protocol
        fabric_addr: host:port for inter-node communication
        log_path: File receiving the node's stdout and stderr
        seed_addr: Fabric address of the node to join (join role only)
    """
    node_id: str
    role: str
    listen_addr: str
    fabric_addr: str
    log_path: str
    seed_addr: Optional[str] = None

    def __post_init__(self):
        """Validate node specification."""
        if not self.node_id:
            raise ValueError("node_id must be non-empty")

        if self.role not in NODE_ROLES:
            raise ValueError(f"Node {self.node_id}: role must be 'init' or 'join', got '{self.role}'")

        parse_address(self.listen_addr)
        parse_address(self.fabric_addr)

        if self.listen_addr == self.fabric_addr:
            raise ValueError(f"Node {self.node_id}: listen and fabric addresses must differ")

        if not self.log_path:
            raise ValueError(f"Node {self.node_id}: log_path must be non-empty")

        if self.role == ROLE_INIT and self.seed_addr is not None:
            raise ValueError(f"Node {self.node_id}: init node must not have a seed address")

        if self.role == ROLE_JOIN:
            if self.seed_addr is None:
                raise ValueError(f"Node {self.node_id}: join node requires a seed address")
            parse_address(self.seed_addr)


@dataclass(frozen=True)
class NodeFlags:
    """Command-line flags understood by the node binary."""
    data_dir: str = '-d'  # takes the node id, which doubles as its data directory
    listen: str = '-l'
    fabric: str = '-f'
    init: str = 'init'
    seed: str = '-s'


def default_nodes() -> List[NodeSpec]:
    """The stock local two-node topology."""
    return [
        NodeSpec(
            node_id='n1',
            role=ROLE_INIT,
            listen_addr='127.0.0.1:6379',
            fabric_addr='127.0.0.1:16379',
            log_path='log1.txt',
        ),
        NodeSpec(
            node_id='n2',
            role=ROLE_JOIN,
            listen_addr='127.0.0.1:6378',
            fabric_addr='127.0.0.1:16378',
            log_path='log2.txt',
            seed_addr='127.0.0.1:16379',
        ),
    ]


@dataclass
class ClusterScenario:
    """
    Cluster test scenario configuration.

    Attributes:
        binary: Path to the node executable
        build_command: Command producing the binary (None or empty to skip)
        build_cwd: Working directory for the build command
        settle_delay_s: Pause between launching the init and join nodes
        env: Extra environment for node processes
        flags: Node command-line contract
        nodes: Exactly [init node, join node]
    """
    binary: str = DEFAULT_BINARY
    build_command: Optional[List[str]] = field(default_factory=lambda: list(DEFAULT_BUILD_COMMAND))
    build_cwd: str = '.'
    settle_delay_s: float = DEFAULT_SETTLE_DELAY_S
    env: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENV))
    flags: NodeFlags = field(default_factory=NodeFlags)
    nodes: List[NodeSpec] = field(default_factory=default_nodes)

    def __post_init__(self):
        """Validate scenario after initialization."""
        if not self.binary:
            raise ValueError("binary must be non-empty")

        if self.settle_delay_s < 0:
            raise ValueError(f"settle_delay_s must be non-negative, got {self.settle_delay_s}")

        if len(self.nodes) != 2:
            raise ValueError(f"Scenario must define exactly 2 nodes, got {len(self.nodes)}")

        init_node, join_node = self.nodes
        if init_node.role != ROLE_INIT:
            raise ValueError(f"First node must have role 'init', got '{init_node.role}'")
        if join_node.role != ROLE_JOIN:
            raise ValueError(f"Second node must have role 'join', got '{join_node.role}'")

        if init_node.node_id == join_node.node_id:
            raise ValueError(f"Node ids must be unique, got '{init_node.node_id}' twice")

        init_addrs = {init_node.listen_addr, init_node.fabric_addr}
        join_addrs = {join_node.listen_addr, join_node.fabric_addr}
        overlap = init_addrs & join_addrs
        if overlap:
            raise ValueError(f"Nodes must not share addresses: {sorted(overlap)}")

        if Path(init_node.log_path) == Path(join_node.log_path):
            raise ValueError(f"Nodes must not share a log file: {init_node.log_path}")

        if join_node.seed_addr != init_node.fabric_addr:
            raise ValueError(
                f"Node {join_node.node_id}: seed address {join_node.seed_addr} "
                f"must be the init node's fabric address {init_node.fabric_addr}"
            )

    @property
    def init_node(self) -> NodeSpec:
        return self.nodes[0]

    @property
    def join_node(self) -> NodeSpec:
        return self.nodes[1]

    @property
    def log_paths(self) -> List[Path]:
        return [Path(node.log_path) for node in self.nodes]


def _parse_command(value: Any, name: str) -> Optional[List[str]]:
    """Accept a command as a shell-style string or a list of arguments."""
    if value is None:
        return None
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list) and all(isinstance(arg, (str, int, float)) for arg in value):
        return [str(arg) for arg in value]
    raise ValueError(f"{name} must be a string or a list of strings")


def _parse_node(i: int, node: Any, seed_default: Optional[str]) -> NodeSpec:
    if not isinstance(node, dict):
        raise ValueError(f"Node {i} must be a dict, got {type(node)}")

    for key in ('id', 'role', 'listen', 'fabric', 'log'):
        if key not in node:
            raise ValueError(f"Node {i}: Missing required field '{key}'")

    role = node['role']
    seed = node.get('seed')
    if role == ROLE_JOIN and seed is None:
        seed = seed_default

    return NodeSpec(
        node_id=str(node['id']),
        role=role,
        listen_addr=str(node['listen']),
        fabric_addr=str(node['fabric']),
        log_path=str(node['log']),
        seed_addr=seed,
    )


def load_scenario(yaml_path: str) -> ClusterScenario:
    """
    Load scenario from YAML file.

    Every section is optional; omitted values fall back to the stock
    two-node defaults.

    Args:
        yaml_path: Path to YAML scenario file

    Returns:
        ClusterScenario object with parsed configuration

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValueError: If fields are missing or invalid
        yaml.YAMLError: If YAML syntax is invalid
    """
    path = Path(yaml_path)
    if not path.exists():
        raise FileNotFoundError(f"Scenario file not found: {yaml_path}")

    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML syntax in {yaml_path}: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Scenario file must contain a YAML dict, got {type(data)}")

    kwargs: Dict[str, Any] = {}

    cluster = data.get('cluster', {}) or {}
    if not isinstance(cluster, dict):
        raise ValueError("'cluster' section must be a dict")

    if 'binary' in cluster:
        kwargs['binary'] = str(cluster['binary'])
    if 'build_command' in cluster:
        kwargs['build_command'] = _parse_command(cluster['build_command'], 'cluster.build_command')
    if 'build_cwd' in cluster:
        kwargs['build_cwd'] = str(cluster['build_cwd'])
    if 'settle_delay_s' in cluster:
        kwargs['settle_delay_s'] = float(cluster['settle_delay_s'])

    if 'env' in data:
        env = data['env'] or {}
        if not isinstance(env, dict):
            raise ValueError("'env' section must be a dict")
        kwargs['env'] = {str(k): str(v) for k, v in env.items()}

    if 'flags' in data:
        flags = data['flags'] or {}
        if not isinstance(flags, dict):
            raise ValueError("'flags' section must be a dict")
        unknown = set(flags) - set(NodeFlags.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown flags: {sorted(unknown)}")
        kwargs['flags'] = NodeFlags(**{k: str(v) for k, v in flags.items()})

    if 'nodes' in data:
        nodes = data['nodes']
        if not isinstance(nodes, list):
            raise ValueError("'nodes' section must be a list")
        if len(nodes) != 2:
            raise ValueError(f"Scenario must define exactly 2 nodes, got {len(nodes)}")

        init_node = _parse_node(0, nodes[0], seed_default=None)
        join_node = _parse_node(1, nodes[1], seed_default=init_node.fabric_addr)
        kwargs['nodes'] = [init_node, join_node]

    return ClusterScenario(**kwargs)
