"""
Data models for the PE HA upgrade tool.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Transport(Enum):
    """Connection protocol used to reach a node."""

    SSH = "ssh"
    PCP = "pcp"  # push-style agent protocol brokered by the orchestrator


class Role(Enum):
    """Infrastructure role a node plays for the duration of a run."""

    PRIMARY = "primary"
    PRIMARY_REPLICA = "primary-replica"
    COMPILER = "compiler"
    DATABASE = "database"
    DATABASE_REPLICA = "database-replica"


class Architecture(Enum):
    """Supported PE architectures."""

    STANDALONE = "standalone"
    HA = "ha"
    LARGE = "large"
    EXTRA_LARGE = "extra-large"


class Phase(Enum):
    """Upgrade phases, in execution order."""

    VALIDATE = "validate"
    PREPARE = "prepare"
    UPGRADE_PRIMARY_SIDE = "upgrade_primary_side"
    UPGRADE_REPLICA_SIDE = "upgrade_replica_side"
    FINALIZE = "finalize"


@dataclass(frozen=True)
class Node:
    """An addressable host."""

    name: str  # hostname or address, also the PCP certname
    transport: Transport = Transport.SSH

    @classmethod
    def parse(cls, target: str) -> "Node":
        """
        Build a Node from a target such as ``pcp://db1.example.com``.

        A target without a scheme is reached over SSH.
        """
        target = target.strip()
        if "://" in target:
            scheme, _, host = target.partition("://")
            try:
                transport = Transport(scheme.lower())
            except ValueError:
                raise ValueError(f"Unsupported transport '{scheme}' in '{target}'")
        else:
            host, transport = target, Transport.SSH
        host = host.strip("/")
        if not host:
            raise ValueError(f"Empty host in target '{target}'")
        return cls(name=host, transport=transport)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class NodeIdentity:
    """Trusted identity data read from a node's host certificate."""

    certname: str
    role: Optional[str]  # raw role value, e.g. "puppet/server"
    availability_group: Optional[str]  # e.g. "A" or "B"
    extensions: Dict[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Topology:
    """Resolved and validated set of nodes by role."""

    architecture: Architecture
    primary: Node
    replica: Optional[Node] = None
    primary_database: Optional[Node] = None
    replica_database: Optional[Node] = None
    compilers: Tuple[Node, ...] = ()
    compilers_a: Tuple[Node, ...] = ()
    compilers_b: Tuple[Node, ...] = ()
    identities: Dict[Node, NodeIdentity] = field(default_factory=dict, compare=False)

    @property
    def all_nodes(self) -> List[Node]:
        """Every in-scope node, each listed once."""
        return compact_nodes(
            [self.primary, self.replica, self.primary_database, self.replica_database]
            + list(self.compilers)
        )

    @property
    def install_targets(self) -> List[Node]:
        """Nodes the PE installer runs on directly, which need the artifact."""
        return compact_nodes([self.primary, self.primary_database, self.replica_database])

    @property
    def has_pcp_nodes(self) -> bool:
        return any(n.transport == Transport.PCP for n in self.all_nodes)

    @property
    def is_extra_large(self) -> bool:
        return self.architecture == Architecture.EXTRA_LARGE

    @property
    def description(self) -> str:
        """Architecture name as reported to operators."""
        if self.replica is not None and self.architecture != Architecture.HA:
            return f"{self.architecture.value}-with-dr"
        return self.architecture.value

    def certname(self, node: Node) -> str:
        identity = self.identities.get(node)
        return identity.certname if identity else node.name

    def certnames(self, nodes) -> List[str]:
        return [self.certname(n) for n in nodes]

    def role_of(self, node: Node) -> Role:
        if node == self.primary:
            return Role.PRIMARY
        if node == self.replica:
            return Role.PRIMARY_REPLICA
        if node == self.primary_database:
            return Role.DATABASE
        if node == self.replica_database:
            return Role.DATABASE_REPLICA
        if node in self.compilers:
            return Role.COMPILER
        raise KeyError(f"{node} is not part of this topology")


@dataclass(frozen=True)
class UpgradePlan:
    """Immutable description of one upgrade run."""

    version: str
    platform: str
    topology: Topology
    artifact_url: str
    artifact_path: str  # host-local path of the tarball on install targets
    current_version: Optional[str] = None


@dataclass
class PhaseResult:
    """Outcome of a single phase."""

    phase: Phase
    status: str  # "success", "failed", "skipped"
    targets: List[str] = field(default_factory=list)
    detail: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    duration_seconds: Optional[float] = None


@dataclass
class CommandResult:
    """Result of a command run on a node."""

    host: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def compact_nodes(nodes) -> List[Node]:
    """Drop empty slots and duplicates, keeping first-seen order."""
    seen = []
    for node in nodes:
        if node is not None and node not in seen:
            seen.append(node)
    return seen
