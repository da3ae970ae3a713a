"""
Rolling upgrade orchestration for Puppet Enterprise HA installations.

The upgrade runs as a fixed sequence of phases. The primary's availability
group (its database, the primary itself, then its compilers) is upgraded
completely before anything in the replica's group is touched, so one
database and coordination path stays serviceable throughout.
"""

import json
import logging
import os
import re
import time
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from certificates import CertificateUpdater
from classification import sync_compiler_groups
from clients import ClassifierClient, OrchestratorClient, StatusClient
from config import AgentServiceState, UpgraderConfig
from errors import PreconditionError, TransferError, UnsupportedVersionError
from installer import InstallerWrapper
from models import Node, Phase, PhaseResult, Topology, UpgradePlan
from readiness import ReadinessWaiter
from remote import RemoteExecutor
from resolver import PP_AUTH_ROLE, RoleResolver, needs_auth_role
from staging import ArtifactStager, artifact_url, discover_platform
from topology import DeclaredTopology, validate_topology

logger = logging.getLogger(__name__)

PUPPET = "/opt/puppetlabs/bin/puppet"
PE_VERSION_FILE = "/opt/puppetlabs/server/pe_version"
MIN_SUPPORTED_VERSION = (2019, 7, 0)

AGENT_STOP = f"{PUPPET} resource service puppet ensure=stopped"
AGENT_START = f"{PUPPET} resource service puppet ensure=running"
PUPPETDB_STOP = "systemctl stop pe-puppetdb"
RUN_ONCE = (
    f"{PUPPET} agent --onetime --verbose --no-daemonize --no-usecacheonfailure "
    "--no-splay --no-use_cached_catalog --detailed-exitcodes"
)
# --detailed-exitcodes: 0 no changes, 2 changes applied
RUN_ONCE_OK = (0, 2)

PHASE_ORDER = [
    Phase.VALIDATE,
    Phase.PREPARE,
    Phase.UPGRADE_PRIMARY_SIDE,
    Phase.UPGRADE_REPLICA_SIDE,
    Phase.FINALIZE,
]


def parse_pe_version(version: str) -> Tuple[int, int, int]:
    """Parse a PE version such as '2021.7.1' into a comparable tuple."""
    match = re.match(r"^(\d+)\.(\d+)\.(\d+)", version.strip())
    if not match:
        raise UnsupportedVersionError(f"'{version}' is not a PE version (YYYY.M.P)")
    return tuple(int(p) for p in match.groups())


def check_version(target: str, current: Optional[str] = None) -> None:
    """
    Require a supported target version that is not a downgrade.

    Re-running with the installed version is allowed.
    """
    wanted = parse_pe_version(target)
    if wanted < MIN_SUPPORTED_VERSION:
        minimum = ".".join(str(p) for p in MIN_SUPPORTED_VERSION)
        raise UnsupportedVersionError(f"Upgrading to PE {target} is not supported (minimum {minimum})")
    if current is not None and wanted < parse_pe_version(current):
        raise UnsupportedVersionError(
            f"PE {current} is installed; cannot downgrade to {target}"
        )


def read_token(path: str) -> Optional[str]:
    """Read an RBAC token file, returning None if it does not exist."""
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        return None
    with open(path) as f:
        return f.read().strip() or None


class InfrastructureUpgrader:
    """Runs the phased rolling upgrade of a PE infrastructure."""

    def __init__(
        self,
        config: UpgraderConfig,
        executor: Optional[RemoteExecutor] = None,
        resolver=None,
        stager=None,
        waiter=None,
        installer=None,
        classifier=None,
        certificates=None,
    ):
        """
        Initialize the upgrader.

        Collaborators not passed in are built from the configuration.

        Args:
            config: Upgrade configuration
            executor: Remote command executor
            resolver: Role resolver
            stager: Artifact stager
            waiter: Readiness waiter
            installer: Installer wrapper
            classifier: Classifier API client
            certificates: Certificate updater
        """
        self.config = config
        self.declared = DeclaredTopology.from_config(config)
        primary_host = self.declared.primary.name

        token = read_token(config.api_token_file)
        self._missing_token = token is None and classifier is None

        if executor is None:
            orchestrator = OrchestratorClient(
                primary_host, token, environment=config.environment, ca_cert=config.ca_cert
            )
            executor = RemoteExecutor.from_config(config, orchestrator=orchestrator)
        self.executor = executor
        self.classifier = classifier or ClassifierClient(
            primary_host, token, ca_cert=config.ca_cert
        )
        self.resolver = resolver or RoleResolver(executor)
        self.stager = stager or ArtifactStager(
            executor,
            download_mode=config.download_mode,
            stagingdir=config.stagingdir,
            upload_dir=config.upload_dir,
            release_url=config.release_url,
        )
        self.waiter = waiter or ReadinessWaiter(
            StatusClient(ca_cert=config.ca_cert), executor, poll_interval=config.poll_interval
        )
        self.installer = installer or InstallerWrapper(executor, timeout=config.command_timeout)
        self.certificates = certificates or CertificateUpdater(executor)

        self.plan: Optional[UpgradePlan] = None
        self.results: List[PhaseResult] = []
        self.run_start_time: Optional[float] = None
        self.run_end_time: Optional[float] = None
        self._phase_index = -1

    def run(self) -> str:
        """
        Execute every phase in order.

        Returns:
            Success message naming the architecture

        Raises:
            UpgradeError: From the first phase that fails; later phases are
                never entered
        """
        self.run_start_time = time.time()
        self._print_banner()

        phases: List[Tuple[Phase, Callable[..., PhaseResult]]] = [
            (Phase.PREPARE, self._prepare),
            (Phase.UPGRADE_PRIMARY_SIDE, self._upgrade_primary_side),
            (Phase.UPGRADE_REPLICA_SIDE, self._upgrade_replica_side),
            (Phase.FINALIZE, self._finalize),
        ]
        try:
            self._run_phase(Phase.VALIDATE, self._validate)
            if self.config.dry_run:
                self._log_plan(self.plan)
                return (
                    f"DRY RUN: upgrade of Puppet Enterprise "
                    f"{self.plan.topology.description} to {self.plan.version} validated."
                )

            for phase, fn in phases:
                self._run_phase(phase, fn, self.plan)

            message = f"Upgrade of Puppet Enterprise {self.plan.topology.description} succeeded."
            logger.info(message)
            return message
        finally:
            self.run_end_time = time.time()
            self.executor.close()
            self._print_report()

    def _run_phase(self, phase: Phase, fn: Callable[..., PhaseResult], *args) -> PhaseResult:
        index = PHASE_ORDER.index(phase)
        if index <= self._phase_index:
            raise RuntimeError(f"Phase {phase.value} cannot be re-entered")
        self._phase_index = index

        logger.info("=" * 70)
        logger.info(f"PHASE {index + 1}/{len(PHASE_ORDER)}: {phase.value}")
        logger.info("=" * 70)

        start = time.time()
        try:
            result = fn(*args)
        except Exception as e:
            end = time.time()
            logger.error(f"Phase {phase.value} FAILED: {e}")
            self.results.append(
                PhaseResult(
                    phase=phase,
                    status="failed",
                    detail=str(e),
                    start_time=start,
                    end_time=end,
                    duration_seconds=end - start,
                )
            )
            raise

        result.start_time = start
        result.end_time = time.time()
        result.duration_seconds = result.end_time - start
        self.results.append(result)
        logger.info(
            f"✓ Phase {phase.value} {result.status.upper()} in "
            f"{self._format_duration(result.duration_seconds)}"
        )
        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _validate(self) -> PhaseResult:
        """Resolve and validate the topology and compute the plan."""
        version = self.config.version
        check_version(version)
        if self._missing_token and not self.config.dry_run:
            raise PreconditionError(
                f"No RBAC token at {self.config.api_token_file}; run 'puppet access login' first"
            )

        identities = self.resolver.resolve(self.declared.nodes)
        topology = validate_topology(self.declared, identities)
        logger.info(f"Architecture: {topology.description}")

        current = self._installed_version(topology.primary)
        check_version(version, current)
        platform = discover_platform(self.executor, topology.primary)

        self.plan = UpgradePlan(
            version=version,
            platform=platform,
            topology=topology,
            artifact_url=artifact_url(version, platform, self.config.release_url),
            artifact_path=self.stager.remote_path(version, platform),
            current_version=current,
        )
        return PhaseResult(
            phase=Phase.VALIDATE,
            status="success",
            targets=self._names(topology.all_nodes),
            detail=f"{topology.description}, PE {current} -> {version} ({platform})",
        )

    def _prepare(self, plan: UpgradePlan) -> PhaseResult:
        """Stage the tarball and stop the agent everywhere."""
        topology = plan.topology
        targets = topology.install_targets
        path = self.stager.ensure_artifact(targets, plan.version, plan.platform)
        if path != plan.artifact_path:
            raise TransferError(f"Artifact staged at {path}, expected {plan.artifact_path}")

        logger.info("Stopping the puppet agent service on all nodes")
        self.executor.broadcast(topology.all_nodes, AGENT_STOP)
        return PhaseResult(
            phase=Phase.PREPARE,
            status="success",
            targets=self._names(topology.all_nodes),
            detail=f"staged on {', '.join(self._names(targets))}",
        )

    def _upgrade_primary_side(self, plan: UpgradePlan) -> PhaseResult:
        """Upgrade the primary's database, the primary and its compilers."""
        topology = plan.topology
        acted: List[Node] = []

        # Compilers must not hold connections to the database being upgraded
        self._stop_puppetdb(topology.compilers_a)

        if topology.primary_database is not None:
            self.installer.install(
                topology.primary_database,
                plan.artifact_path,
                puppet_service_ensure=AgentServiceState.STOPPED,
            )
            acted.append(topology.primary_database)

        # An extra-large primary runs PuppetDB against a database host not yet upgraded
        self.installer.install(
            topology.primary,
            plan.artifact_path,
            clustered=topology.is_extra_large,
            puppet_service_ensure=AgentServiceState.STOPPED,
            peconf=self.config.pe_installer_answer_file,
        )
        acted.append(topology.primary)

        self._wait_for_orchestrator(topology)
        # The installer resets the access rules compilers and databases rely on
        self._converge([topology.primary, topology.primary_database])
        # Puppet may restart the orchestrator again
        self._wait_for_orchestrator(topology)

        self._add_auth_role(topology)
        groups = sync_compiler_groups(
            self.classifier,
            topology,
            self.config.internal_compiler_a_pool_address,
            self.config.internal_compiler_b_pool_address,
        )
        logger.info(f"Classification updated: {', '.join(groups)}")

        self._infra_upgrade("compiler", topology.compilers_a, topology)
        acted.extend(topology.compilers_a)

        return PhaseResult(
            phase=Phase.UPGRADE_PRIMARY_SIDE, status="success", targets=self._names(acted)
        )

    def _upgrade_replica_side(self, plan: UpgradePlan) -> PhaseResult:
        """Upgrade the replica's database, the replica and its compilers."""
        topology = plan.topology
        if topology.replica is None and not topology.compilers_b:
            logger.info("No replica-side nodes; nothing to upgrade")
            return PhaseResult(
                phase=Phase.UPGRADE_REPLICA_SIDE, status="skipped", detail="no replica-side nodes"
            )

        acted: List[Node] = []
        self._stop_puppetdb(topology.compilers_b)

        if topology.replica_database is not None:
            self.installer.install(
                topology.replica_database,
                plan.artifact_path,
                puppet_service_ensure=AgentServiceState.STOPPED,
            )
            acted.append(topology.replica_database)
            # Restores the access rules replica services need before upgrading
            self._converge([topology.replica_database])

        if topology.replica is not None:
            self._infra_upgrade("replica", [topology.replica], topology)
            acted.append(topology.replica)

        self._infra_upgrade("compiler", topology.compilers_b, topology)
        acted.extend(topology.compilers_b)

        return PhaseResult(
            phase=Phase.UPGRADE_REPLICA_SIDE, status="success", targets=self._names(acted)
        )

    def _finalize(self, plan: UpgradePlan) -> PhaseResult:
        """Start the agent everywhere."""
        nodes = plan.topology.all_nodes
        logger.info("Starting the puppet agent service on all nodes")
        self.executor.broadcast(nodes, AGENT_START)
        return PhaseResult(
            phase=Phase.FINALIZE,
            status="success",
            targets=self._names(nodes),
            detail=f"Puppet Enterprise {plan.topology.description} at {plan.version}",
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _installed_version(self, primary: Node) -> str:
        result = self.executor.run(primary, f"cat {PE_VERSION_FILE}", timeout=60)
        if not result.ok or not result.stdout.strip():
            raise PreconditionError(
                f"Cannot read {PE_VERSION_FILE} on {primary.name}; is PE installed?"
            )
        return result.stdout.strip()

    def _stop_puppetdb(self, compilers: Iterable[Node]) -> None:
        compilers = list(compilers)
        if compilers:
            logger.info(f"Stopping pe-puppetdb on {', '.join(self._names(compilers))}")
            self.executor.broadcast(compilers, PUPPETDB_STOP)

    def _converge(self, nodes: Iterable[Optional[Node]]) -> None:
        nodes = [n for n in nodes if n is not None]
        logger.info(f"Running puppet once on {', '.join(self._names(nodes))}")
        self.executor.broadcast(nodes, RUN_ONCE, ok_codes=RUN_ONCE_OK)

    def _wait_for_orchestrator(self, topology: Topology) -> None:
        """PCP connections drop whenever the orchestrator restarts."""
        if not topology.has_pcp_nodes:
            return
        self.waiter.wait_ready(
            "orchestrator-service", topology.primary.name, self.config.service_ready_timeout
        )
        self.waiter.wait_reachable(topology.all_nodes, self.config.reachable_timeout)

    def _add_auth_role(self, topology: Topology) -> None:
        for node in topology.compilers:
            identity = topology.identities[node]
            if needs_auth_role(identity):
                self.certificates.add_extensions(
                    node,
                    identity.certname,
                    identity.extensions,
                    {PP_AUTH_ROLE: "pe_compiler"},
                    primary=topology.primary,
                )

    def _infra_upgrade(self, kind: str, nodes: Iterable[Node], topology: Topology) -> None:
        certnames = topology.certnames(nodes)
        if not certnames:
            return
        command = f"{PUPPET} infrastructure upgrade {kind} {','.join(certnames)}"
        if self.config.token_file:
            command += f" --token-file {self.config.token_file}"
        logger.info(f"Upgrading {kind} node(s) {', '.join(certnames)} from the primary")
        self.executor.check(topology.primary, command)
        logger.info(f"✓ Upgrade COMPLETED for {kind} node(s) {', '.join(certnames)}")

    @staticmethod
    def _names(nodes: Iterable[Node]) -> List[str]:
        return [n.name for n in nodes]

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _print_banner(self) -> None:
        c = self.config
        logger.info("=" * 70)
        logger.info("Puppet Enterprise HA Rolling Upgrade")
        logger.info("=" * 70)
        logger.info(f"Target version: {c.version}")
        logger.info(f"Primary: {c.primary_host}")
        logger.info(f"Replica: {c.replica_host or '-'}")
        logger.info(f"Compilers: {', '.join(c.compiler_hosts) or '-'}")
        logger.info(f"Primary PostgreSQL: {c.primary_postgresql_host or '-'}")
        logger.info(f"Replica PostgreSQL: {c.replica_postgresql_host or '-'}")
        logger.info(f"Download mode: {c.download_mode.value}")
        logger.info(f"Dry run: {c.dry_run}")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=" * 70)

    def _log_plan(self, plan: UpgradePlan) -> None:
        t = plan.topology
        logger.info("")
        logger.info("DRY RUN - UPGRADE PLAN")
        logger.info("-" * 40)
        logger.info(f"Architecture:     {t.description}")
        logger.info(f"Version:          {plan.current_version} -> {plan.version}")
        logger.info(f"Artifact:         {plan.artifact_url}")
        logger.info(f"Staged to:        {plan.artifact_path} on {', '.join(self._names(t.install_targets))}")
        logger.info(f"Group A compilers: {', '.join(t.certnames(t.compilers_a)) or '-'}")
        logger.info(f"Group B compilers: {', '.join(t.certnames(t.compilers_b)) or '-'}")

    def _format_duration(self, seconds: float) -> str:
        """Format duration in human-readable format."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = seconds % 60
            return f"{mins}m {secs:.0f}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            secs = seconds % 60
            return f"{hours}h {mins}m {secs:.0f}s"

    def _print_report(self) -> None:
        """Print timing and per-phase status report."""
        total_duration = self.run_end_time - self.run_start_time

        logger.info("")
        logger.info("=" * 70)
        logger.info("UPGRADE REPORT")
        logger.info("=" * 70)
        logger.info(
            f"Start time:      {datetime.fromtimestamp(self.run_start_time).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(
            f"End time:        {datetime.fromtimestamp(self.run_end_time).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(f"Total duration:  {self._format_duration(total_duration)}")

        logger.info("")
        logger.info(f"{'Phase':<24} {'Status':<10} {'Duration':<12} {'Detail'}")
        logger.info("-" * 70)
        for r in self.results:
            duration = self._format_duration(r.duration_seconds) if r.duration_seconds else "N/A"
            detail = r.detail or ""
            if len(detail) > 40:
                detail = detail[:40] + "..."
            logger.info(f"{r.phase.value:<24} {r.status:<10} {duration:<12} {detail}")

        not_run = PHASE_ORDER[len(self.results):]
        if not_run and not self.config.dry_run:
            logger.info("")
            logger.info(f"Not run: {', '.join(p.value for p in not_run)}")

        logger.info("=" * 70)
        self._export_results_json()

    def _export_results_json(self) -> None:
        """Export results to JSON file for further processing."""
        report = {
            "version": self.config.version,
            "architecture": self.plan.topology.description if self.plan else None,
            "dry_run": self.config.dry_run,
            "start_time": datetime.fromtimestamp(self.run_start_time).isoformat(),
            "end_time": datetime.fromtimestamp(self.run_end_time).isoformat(),
            "total_duration_seconds": self.run_end_time - self.run_start_time,
            "phases": [
                {
                    "phase": r.phase.value,
                    "status": r.status,
                    "targets": r.targets,
                    "detail": r.detail,
                    "duration_seconds": r.duration_seconds,
                }
                for r in self.results
            ],
        }

        filename = f"upgrade-report-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json"
        with open(filename, "w") as f:
            json.dump(report, f, indent=2)
        logger.info(f"Detailed report exported to: {filename}")
