"""
Compiler node group definitions derived from the topology.

Each availability group gets a "PE Compiler Group" whose compilers use the
group's own PuppetDB database and fall back to the other group's compiler
pool for PuppetDB queries.
"""

import logging
from typing import Dict, List, Optional

from models import Node, Topology
from resolver import AVAILABILITY_GROUP_OID, PP_AUTH_ROLE

logger = logging.getLogger(__name__)

PE_COMPILER_GROUP = "PE Compiler"
CERTNAME_INTERPOLATION = "${trusted['certname']}"


def compiler_group(
    topology: Topology, anchor: Node, database: Optional[Node], other_pool_address: Optional[str]
) -> Dict:
    """Node group definition for the compilers anchored to one server."""
    group = topology.identities[anchor].availability_group
    puppetdb_hosts = [CERTNAME_INTERPOLATION]
    if other_pool_address:
        puppetdb_hosts.append(other_pool_address)

    return {
        "name": f"{PE_COMPILER_GROUP} Group {group}",
        "parent": PE_COMPILER_GROUP,
        "rule": [
            "and",
            ["=", ["trusted", "extensions", PP_AUTH_ROLE], "pe_compiler"],
            ["=", ["trusted", "extensions", AVAILABILITY_GROUP_OID], group],
        ],
        "classes": {
            "puppet_enterprise::profile::puppetdb": {
                "database_host": topology.certname(database or anchor),
            },
            "puppet_enterprise::profile::master": {
                "puppetdb_host": puppetdb_hosts,
                "puppetdb_port": [8081],
            },
        },
        "config_data": {
            "puppet_enterprise::profile::master::puppetdb": {"ha_enabled_replicas": []},
        },
    }


def compiler_groups(
    topology: Topology,
    pool_a_address: Optional[str] = None,
    pool_b_address: Optional[str] = None,
) -> List[Dict]:
    """
    Definitions for every availability group present in the topology.

    Args:
        topology: Validated topology
        pool_a_address: Load balancer address of the primary's compilers
        pool_b_address: Load balancer address of the replica's compilers
    """
    groups = [compiler_group(topology, topology.primary, topology.primary_database, pool_b_address)]
    if topology.replica is not None:
        groups.append(
            compiler_group(topology, topology.replica, topology.replica_database, pool_a_address)
        )
    return groups


def sync_compiler_groups(
    classifier,
    topology: Topology,
    pool_a_address: Optional[str] = None,
    pool_b_address: Optional[str] = None,
) -> List[str]:
    """
    Create or update the compiler node groups through the classifier API.

    Returns:
        Names of the groups written
    """
    existing = classifier.list_groups()
    names = []
    for definition in compiler_groups(topology, pool_a_address, pool_b_address):
        classifier.ensure_group(definition, groups=existing)
        names.append(definition["name"])
    return names
