"""Console entry point for the PE HA rolling upgrade CLI."""

from __future__ import annotations

import argparse
import logging
from typing import List

import yaml

from config import DownloadMode, UpgraderConfig
from errors import UpgradeError
from log_utils import setup_logging
from upgrader import InfrastructureUpgrader

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description=(
            "Puppet Enterprise HA Rolling Upgrade Tool\n\n"
            "Upgrades a running PE installation (primary, optional replica, compilers\n"
            "and PuppetDB database hosts) one availability group at a time."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Validate the topology and show the plan\n"
            "  pe-ha-upgrade --primary-host pe-primary --target-version 2021.7.1 --dry-run\n\n"
            "  # Upgrade a large installation with disaster recovery\n"
            "  pe-ha-upgrade --primary-host pe-primary --replica-host pe-replica \\\n"
            "      --compiler-hosts compiler-a1 compiler-b1 --target-version 2021.7.1\n\n"
            "  # Read inputs from a YAML file\n"
            "  pe-ha-upgrade --config upgrade.yaml\n\n"
            "Hosts may be prefixed with ssh:// or pcp://; ssh is the default.\n"
            "Never run two upgrades against the same infrastructure at once."
        ),
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="YAML file with settings; flags given on the command line override it",
    )

    nodes = parser.add_argument_group("infrastructure")
    nodes.add_argument("--primary-host", metavar="HOST", help="Primary server")
    nodes.add_argument("--replica-host", metavar="HOST", help="Primary replica")
    nodes.add_argument(
        "--compiler-hosts", nargs="+", metavar="HOST", help="Compilers of both availability groups"
    )
    nodes.add_argument(
        "--primary-postgresql-host", metavar="HOST", help="PuppetDB database host of the primary"
    )
    nodes.add_argument(
        "--replica-postgresql-host", metavar="HOST", help="PuppetDB database host of the replica"
    )
    nodes.add_argument(
        "--internal-compiler-a-pool-address",
        metavar="ADDRESS",
        help="Load balancer address of the primary's compilers",
    )
    nodes.add_argument(
        "--internal-compiler-b-pool-address",
        metavar="ADDRESS",
        help="Load balancer address of the replica's compilers",
    )

    upgrade = parser.add_argument_group("upgrade")
    upgrade.add_argument(
        "--target-version",
        dest="version",
        metavar="VERSION",
        help="PE version to upgrade to, e.g. 2021.7.1",
    )
    upgrade.add_argument(
        "--download-mode",
        choices=[m.value for m in DownloadMode],
        help="bolthost: download here and upload to targets (default); direct: targets download",
    )
    upgrade.add_argument("--release-url", metavar="URL", help="Base URL of PE release tarballs")
    upgrade.add_argument(
        "--stagingdir", metavar="DIR", help="Local directory for downloads (default: /tmp)"
    )
    upgrade.add_argument(
        "--upload-dir",
        metavar="DIR",
        help="Directory on targets receiving the tarball (default: /tmp)",
    )
    upgrade.add_argument(
        "--pe-installer-answer-file",
        metavar="PATH",
        help="pe.conf on the primary passed to the installer",
    )
    upgrade.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the topology and print the plan without changing anything",
    )

    access = parser.add_argument_group("access")
    access.add_argument(
        "--ssh-user", metavar="USER", help="SSH user; non-root users need passwordless sudo"
    )
    access.add_argument("--ssh-key", dest="ssh_key_path", metavar="PATH", help="SSH private key")
    access.add_argument("--ssh-port", type=int, metavar="PORT")
    access.add_argument(
        "--api-token-file",
        metavar="PATH",
        help="Local RBAC token file (default: ~/.puppetlabs/token)",
    )
    access.add_argument(
        "--token-file",
        metavar="PATH",
        help="RBAC token file on the primary for 'puppet infrastructure upgrade'",
    )
    access.add_argument("--ca-cert", metavar="PATH", help="PE CA certificate used to verify API TLS")
    access.add_argument("--environment", metavar="NAME", help="Code environment for orchestrator tasks")

    timeouts = parser.add_argument_group("timeouts")
    timeouts.add_argument(
        "--service-ready-timeout",
        type=int,
        metavar="SECONDS",
        help="Wait for the orchestrator service after a restart (default: 300)",
    )
    timeouts.add_argument(
        "--reachable-timeout",
        type=int,
        metavar="SECONDS",
        help="Wait for nodes to reconnect after a restart (default: 120)",
    )
    timeouts.add_argument(
        "--poll-interval",
        type=int,
        metavar="SECONDS",
        help="Time between readiness polls (default: 5)",
    )
    timeouts.add_argument(
        "--command-timeout",
        type=int,
        metavar="SECONDS",
        help="Limit for one remote command (default: 3600)",
    )
    timeouts.add_argument(
        "--max-parallel",
        type=int,
        metavar="N",
        help="Nodes acted on concurrently within a step (default: 5)",
    )

    logging_group = parser.add_argument_group("logging and output")
    logging_group.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    logging_group.add_argument(
        "--log-file",
        metavar="PATH",
        default="pe-upgrade.log",
        help="Log file (default: pe-upgrade.log)",
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        config = UpgraderConfig.from_args(args)
    except (ValueError, OSError, yaml.YAMLError) as e:
        parser.error(str(e))

    try:
        InfrastructureUpgrader(config).run()
    except UpgradeError as e:
        logger.error(f"Upgrade aborted: {e}")
        return 1
    return 0
