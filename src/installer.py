"""
Per-node PE installer wrapper.

Runs the PE installer from a staged tarball on one node. Two behaviours are
specific to a clustered install, the primary of an extra-large
installation, whose PuppetDB uses a separate PostgreSQL host:

* PuppetDB cannot start until its database host is upgraded, so a
  short-circuit systemd drop-in makes its start fail fast instead of letting
  the installer block on the default start timeout.
* The installer exits 1 because PuppetDB did not start. The install is
  treated as successful when the core PE services are active.
"""

import logging
import posixpath
import shlex
from typing import Mapping, Optional

from config import AgentServiceState
from errors import InstallerError, RemoteCommandError, UpgradeError
from models import Node

logger = logging.getLogger(__name__)

SHORTCIRCUIT_DIR = "/etc/systemd/system/pe-puppetdb.service.d"
SHORTCIRCUIT_CONF = f"{SHORTCIRCUIT_DIR}/10-shortcircuit.conf"
SHORTCIRCUIT_UNIT = "[Service]\nTimeoutStartSec=1\nTimeoutStopSec=1\nRestart=no\n"

HEALTH_CHECK_SERVICES = (
    "pe-puppetserver",
    "pe-orchestration-services",
    "pe-console-services",
)

INSTALLER_ENV = "LANG=en_US.UTF-8 LANGUAGE=en_US.UTF-8 LC_ALL=en_US.UTF-8"


def reinterpret_exit_code(
    raw_exit_code: int, clustered: bool, service_health: Mapping[str, bool]
) -> int:
    """
    Decide the final exit code of an install.

    Args:
        raw_exit_code: Exit code of the PE installer
        clustered: Whether the node hosts a clustered PuppetDB database
        service_health: Service name -> active, for HEALTH_CHECK_SERVICES

    Returns:
        0 for a clustered install whose health-check services are all
        active, otherwise the installer's own exit code
    """
    if raw_exit_code == 0 or not clustered:
        return raw_exit_code
    if all(service_health.get(svc, False) for svc in HEALTH_CHECK_SERVICES):
        return 0
    return raw_exit_code


class InstallerWrapper:
    """Drives the PE installer on a node through the remote executor."""

    def __init__(self, executor, timeout: int = 3600):
        self.executor = executor
        self.timeout = timeout

    def install(
        self,
        node: Node,
        tarball: str,
        clustered: bool = False,
        puppet_service_ensure: AgentServiceState = AgentServiceState.RUNNING,
        peconf: Optional[str] = None,
    ) -> int:
        """
        Install PE from a tarball already present on the node.

        Args:
            node: Target node
            tarball: Path of the PE tarball on the node
            clustered: Node hosts a clustered PuppetDB database
            puppet_service_ensure: Agent service state to leave behind
            peconf: Optional path of a pe.conf answer file on the node

        Returns:
            0 on success

        Raises:
            InstallerError: With the installer's exit code if it failed
        """
        logger.info(
            f"Installing {posixpath.basename(tarball)} on {node.name} "
            f"(clustered={clustered}, puppet service {puppet_service_ensure.value})"
        )
        if clustered:
            self._install_shortcircuit(node)
        installed = False
        try:
            result = self._run_installer(node, tarball, peconf)
            installed = True
        finally:
            if clustered:
                self._remove_shortcircuit(node, strict=installed)

        if puppet_service_ensure == AgentServiceState.STOPPED:
            stop = self.executor.run(node, "systemctl stop puppet.service")
            if not stop.ok:
                logger.warning(f"{node.name}: could not stop puppet.service: {stop.stderr.strip()}")

        health = {}
        if clustered and result.exit_code != 0:
            health = self.service_health(node)
        exit_code = reinterpret_exit_code(result.exit_code, clustered, health)

        if exit_code != result.exit_code:
            logger.warning(
                f"{node.name}: installer exited {result.exit_code} but "
                f"{', '.join(HEALTH_CHECK_SERVICES)} are active; treating as success"
            )
        if exit_code != 0:
            raise InstallerError(node.name, exit_code, result.stdout + result.stderr)

        logger.info(f"✓ Install COMPLETED on {node.name}")
        return exit_code

    def service_health(self, node: Node) -> dict:
        """Map each health-check service to whether systemd reports it active."""
        return {
            svc: self.executor.run(node, f"systemctl is-active --quiet {svc}.service").ok
            for svc in HEALTH_CHECK_SERVICES
        }

    def _run_installer(self, node: Node, tarball: str, peconf: Optional[str]):
        tgzdir = posixpath.dirname(tarball)
        listing = self.executor.check(node, f"tar -tzf {shlex.quote(tarball)} | head -n 1")
        pedir = listing.stdout.strip().split("/")[0]
        if not pedir:
            raise RemoteCommandError(listing, f"{tarball} on {node.name} is empty")

        self.executor.check(node, f"tar -C {shlex.quote(tgzdir)} -xzf {shlex.quote(tarball)}")

        installer = posixpath.join(tgzdir, pedir, "puppet-enterprise-installer")
        command = f"{INSTALLER_ENV} /bin/bash {shlex.quote(installer)} -y"
        if peconf:
            command += f" -c {shlex.quote(peconf)}"
        result = self.executor.run(node, command, timeout=self.timeout)
        logger.debug(f"{node.name}: installer exited {result.exit_code}")
        return result

    def _install_shortcircuit(self, node: Node) -> None:
        self.executor.check(
            node,
            f"mkdir -p {SHORTCIRCUIT_DIR} && "
            f"printf %s {shlex.quote(SHORTCIRCUIT_UNIT)} > {SHORTCIRCUIT_CONF} && "
            "systemctl daemon-reload",
        )

    def _remove_shortcircuit(self, node: Node, strict: bool = True) -> None:
        """Remove the drop-in; when not strict, failures are logged so an earlier error propagates."""
        try:
            self.executor.run(node, "systemctl stop pe-puppetdb.service")
            self.executor.check(node, f"rm -f {SHORTCIRCUIT_CONF} && systemctl daemon-reload")
        except UpgradeError as e:
            if strict:
                raise
            logger.error(f"{node.name}: could not remove {SHORTCIRCUIT_CONF}, remove it by hand: {e}")
