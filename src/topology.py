"""
Topology validation against the supported PE architectures.

Everything in this module is a pure function of its inputs and must run
before any remote mutation.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from errors import UnsupportedTopologyError, UnsupportedTransportError
from models import Architecture, Node, NodeIdentity, Topology, Transport, compact_nodes
from resolver import COMPILER, DATABASE, SERVER, partition_compilers, role_class

# (architecture, predicate over (replica?, compiler count, primary db?, replica db?))
ARCHITECTURE_RULES: List[Tuple[Architecture, Callable[[bool, int, bool, bool], bool]]] = [
    (
        Architecture.STANDALONE,
        lambda replica, compilers, pdb, rdb: not replica and not compilers and not pdb and not rdb,
    ),
    (
        Architecture.HA,
        lambda replica, compilers, pdb, rdb: replica and not compilers and not pdb and not rdb,
    ),
    (
        Architecture.LARGE,
        lambda replica, compilers, pdb, rdb: compilers > 0 and not pdb and not rdb,
    ),
    (
        Architecture.EXTRA_LARGE,
        lambda replica, compilers, pdb, rdb: pdb and rdb == replica,
    ),
]


@dataclass(frozen=True)
class DeclaredTopology:
    """Nodes as the operator declared them, before discovery."""

    primary: Node
    replica: Optional[Node] = None
    compilers: Tuple[Node, ...] = ()
    primary_database: Optional[Node] = None
    replica_database: Optional[Node] = None

    @classmethod
    def from_config(cls, config) -> "DeclaredTopology":
        def node(target):
            return Node.parse(target) if target else None

        return cls(
            primary=Node.parse(config.primary_host),
            replica=node(config.replica_host),
            compilers=tuple(Node.parse(c) for c in config.compiler_hosts),
            primary_database=node(config.primary_postgresql_host),
            replica_database=node(config.replica_postgresql_host),
        )

    @property
    def nodes(self) -> List[Node]:
        return compact_nodes(
            [self.primary, self.replica, self.primary_database, self.replica_database]
            + list(self.compilers)
        )


def classify_architecture(
    has_replica: bool,
    compiler_count: int,
    has_primary_database: bool,
    has_replica_database: bool,
) -> Architecture:
    """
    Map a combination of declared roles onto exactly one architecture.

    Raises:
        UnsupportedTopologyError: If no architecture, or more than one, matches
    """
    matches = [
        arch
        for arch, rule in ARCHITECTURE_RULES
        if rule(has_replica, compiler_count, has_primary_database, has_replica_database)
    ]
    summary = (
        f"replica={'yes' if has_replica else 'no'}, compilers={compiler_count}, "
        f"primary database={'yes' if has_primary_database else 'no'}, "
        f"replica database={'yes' if has_replica_database else 'no'}"
    )
    if not matches:
        raise UnsupportedTopologyError(f"No supported architecture matches ({summary})")
    if len(matches) > 1:
        names = ", ".join(a.value for a in matches)
        raise UnsupportedTopologyError(f"Ambiguous topology ({summary}) matches: {names}")
    return matches[0]


def validate_topology(
    declared: DeclaredTopology, identities: Dict[Node, NodeIdentity]
) -> Topology:
    """
    Check declared nodes and their trusted identities and build the Topology.

    Args:
        declared: Nodes per role as configured
        identities: Resolved identity of every declared node

    Returns:
        The validated Topology

    Raises:
        UnsupportedTopologyError: On duplicate nodes, role or group mismatches,
            or an unsupported combination of roles
        UnsupportedTransportError: If the primary is reached over pcp
    """
    slots = [declared.primary, declared.replica, declared.primary_database, declared.replica_database]
    declared_names = [n.name for n in slots if n is not None] + [c.name for c in declared.compilers]
    duplicates = sorted({name for name in declared_names if declared_names.count(name) > 1})
    if duplicates:
        raise UnsupportedTopologyError(
            f"Node(s) declared in more than one role: {', '.join(duplicates)}"
        )

    if declared.primary.transport == Transport.PCP:
        raise UnsupportedTransportError(
            f"The primary {declared.primary.name} cannot be upgraded over pcp; use ssh"
        )

    architecture = classify_architecture(
        declared.replica is not None,
        len(declared.compilers),
        declared.primary_database is not None,
        declared.replica_database is not None,
    )

    expected = [
        (declared.primary, SERVER),
        (declared.replica, SERVER),
        (declared.primary_database, DATABASE),
        (declared.replica_database, DATABASE),
    ] + [(c, COMPILER) for c in declared.compilers]
    mismatches = []
    for node, wanted in expected:
        if node is None:
            continue
        actual = role_class(identities[node])
        if actual != wanted:
            mismatches.append(
                f"{identities[node].certname} is declared as {wanted} but its "
                f"certificate says '{identities[node].role}'"
            )
    if mismatches:
        raise UnsupportedTopologyError("; ".join(mismatches))

    primary_group = identities[declared.primary].availability_group
    if declared.replica is not None:
        if identities[declared.replica].availability_group == primary_group:
            raise UnsupportedTopologyError(
                f"Primary and replica share availability group '{primary_group}'"
            )
    for database, anchor in (
        (declared.primary_database, declared.primary),
        (declared.replica_database, declared.replica),
    ):
        if database is None or anchor is None:
            continue
        if identities[database].availability_group != identities[anchor].availability_group:
            raise UnsupportedTopologyError(
                f"Database {identities[database].certname} is not in the same "
                f"availability group as {identities[anchor].certname}"
            )

    compilers_a, compilers_b = partition_compilers(
        declared.compilers, identities, declared.primary, declared.replica
    )

    return Topology(
        architecture=architecture,
        primary=declared.primary,
        replica=declared.replica,
        primary_database=declared.primary_database,
        replica_database=declared.replica_database,
        compilers=tuple(declared.compilers),
        compilers_a=tuple(compilers_a),
        compilers_b=tuple(compilers_b),
        identities=dict(identities),
    )
