"""
Puppet Enterprise HA Rolling Upgrade Tool.
"""

from config import UpgraderConfig
from errors import UpgradeError
from installer import InstallerWrapper, reinterpret_exit_code
from log_utils import setup_logging
from models import Architecture, Node, Phase, PhaseResult, Role, Topology, UpgradePlan
from readiness import ReadinessWaiter
from resolver import RoleResolver
from staging import ArtifactStager
from topology import classify_architecture, validate_topology
from upgrader import InfrastructureUpgrader

__all__ = [
    "UpgraderConfig",
    "UpgradeError",
    "InstallerWrapper",
    "reinterpret_exit_code",
    "setup_logging",
    "Architecture",
    "Node",
    "Phase",
    "PhaseResult",
    "Role",
    "Topology",
    "UpgradePlan",
    "ReadinessWaiter",
    "RoleResolver",
    "ArtifactStager",
    "classify_architecture",
    "validate_topology",
    "InfrastructureUpgrader",
]
