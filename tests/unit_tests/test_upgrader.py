"""
Unit tests for the phased infrastructure upgrader.
"""

import unittest
from unittest.mock import MagicMock, call, patch

from config import AgentServiceState, UpgraderConfig
from errors import (
    InstallerError,
    PreconditionError,
    ReadinessTimeoutError,
    RemoteCommandError,
    UnsupportedVersionError,
)
from models import CommandResult, Node, NodeIdentity, Phase, Transport
from upgrader import (
    AGENT_START,
    AGENT_STOP,
    PUPPETDB_STOP,
    RUN_ONCE,
    RUN_ONCE_OK,
    InfrastructureUpgrader,
    check_version,
    parse_pe_version,
)

ARTIFACT = "/tmp/puppet-enterprise-2021.7.1-el-8-x86_64.tar.gz"


def identity(name, role, group):
    return NodeIdentity(f"{name}.example.com", role, group, {"pp_auth_role": "pe_compiler"})


class TestVersionChecks(unittest.TestCase):
    """Test PE version parsing and checks."""

    def test_parse_pe_version(self):
        """Test versions parse to comparable tuples."""
        self.assertEqual(parse_pe_version("2021.7.1"), (2021, 7, 1))
        self.assertEqual(parse_pe_version("2019.8.12-rc1"), (2019, 8, 12))
        with self.assertRaises(UnsupportedVersionError):
            parse_pe_version("latest")

    def test_check_version(self):
        """Test minimum version and downgrade checks."""
        check_version("2021.7.1")
        check_version("2021.7.1", "2021.7.1")
        check_version("2021.7.1", "2019.8.5")
        with self.assertRaises(UnsupportedVersionError):
            check_version("2018.1.0")
        with self.assertRaises(UnsupportedVersionError):
            check_version("2019.8.0", "2021.7.1")


@patch("upgrader.discover_platform", return_value="el-8-x86_64")
@patch.object(InfrastructureUpgrader, "_export_results_json")
class TestInfrastructureUpgrader(unittest.TestCase):
    """Test end-to-end phase sequencing with mocked collaborators."""

    def setUp(self):
        """Set up collaborators sharing one parent mock to record call order."""
        self.parent = MagicMock()
        self.executor = self.parent.executor
        self.executor.run.return_value = CommandResult("primary", "cat", 0, "2021.7.0\n")
        self.parent.stager.remote_path.return_value = ARTIFACT
        self.parent.stager.ensure_artifact.return_value = ARTIFACT
        self.parent.classifier.list_groups.return_value = []
        self.identities = {}
        self.parent.resolver.resolve.side_effect = lambda nodes: {
            n: self.identities[n.name] for n in nodes
        }

    def make_upgrader(self, **config_values):
        values = {
            "primary_host": "primary",
            "version": "2021.7.1",
            "api_token_file": "/nonexistent/token",
        }
        values.update(config_values)
        config = UpgraderConfig(**values)
        return InfrastructureUpgrader(
            config,
            executor=self.executor,
            resolver=self.parent.resolver,
            stager=self.parent.stager,
            waiter=self.parent.waiter,
            installer=self.parent.installer,
            classifier=self.parent.classifier,
            certificates=self.parent.certificates,
        )

    def named_calls(self, *prefixes):
        """Recorded (name, args, kwargs) of collaborator calls, in order."""
        return [c for c in self.parent.mock_calls if c[0].startswith(prefixes)]

    def test_standalone(self, mock_export, mock_platform):
        """Test a lone primary is staged, installed once and restarted."""
        self.identities["primary"] = identity("primary", "puppet/server", "A")
        upgrader = self.make_upgrader()

        message = upgrader.run()

        self.assertEqual(message, "Upgrade of Puppet Enterprise standalone succeeded.")
        self.parent.stager.ensure_artifact.assert_called_once_with(
            [Node("primary")], "2021.7.1", "el-8-x86_64"
        )
        self.parent.installer.install.assert_called_once_with(
            Node("primary"),
            ARTIFACT,
            clustered=False,
            puppet_service_ensure=AgentServiceState.STOPPED,
            peconf=None,
        )
        self.executor.broadcast.assert_any_call([Node("primary")], AGENT_START)
        self.parent.waiter.wait_ready.assert_not_called()

        statuses = {r.phase: r.status for r in upgrader.results}
        self.assertEqual(statuses[Phase.UPGRADE_REPLICA_SIDE], "skipped")
        self.assertEqual(len(upgrader.results), 5)
        self.assertTrue(all(r.duration_seconds is not None for r in upgrader.results))
        self.executor.close.assert_called_once()
        mock_export.assert_called_once()

    def test_large_with_dr_orders_primary_side_first(self, mock_export, mock_platform):
        """Test every primary-group step completes before the replica is touched."""
        self.identities.update(
            {
                "primary": identity("primary", "puppet/server", "A"),
                "replica": identity("replica", "puppet/server", "B"),
                "ca1": identity("ca1", "puppet/compiler", "A"),
                "cb1": identity("cb1", "puppet/compiler", "B"),
                "ca2": identity("ca2", "puppet/compiler", "A"),
                "cb2": identity("cb2", "puppet/compiler", "B"),
            }
        )
        upgrader = self.make_upgrader(
            replica_host="replica",
            compiler_hosts=["ca1", "cb1", "ca2", "cb2"],
            token_file="/root/.puppetlabs/token",
        )

        message = upgrader.run()

        self.assertEqual(message, "Upgrade of Puppet Enterprise large-with-dr succeeded.")
        self.parent.stager.ensure_artifact.assert_called_once_with(
            [Node("primary")], "2021.7.1", "el-8-x86_64"
        )

        steps = []
        recorded = self.named_calls("executor.broadcast", "executor.check", "installer.install")
        for name, args, kwargs in recorded:
            if name == "installer.install":
                steps.append(("install", args[0].name))
            elif name == "executor.broadcast":
                steps.append(("broadcast", args[1], tuple(n.name for n in args[0])))
            else:
                steps.append(("check", args[1]))

        self.assertEqual(
            steps[0], ("broadcast", AGENT_STOP, ("primary", "replica", "ca1", "cb1", "ca2", "cb2"))
        )
        self.assertEqual(steps[1], ("broadcast", PUPPETDB_STOP, ("ca1", "ca2")))
        self.assertEqual(steps[2], ("install", "primary"))
        self.assertEqual(steps[3], ("broadcast", RUN_ONCE, ("primary",)))
        self.assertEqual(
            steps[4],
            (
                "check",
                "/opt/puppetlabs/bin/puppet infrastructure upgrade compiler "
                "ca1.example.com,ca2.example.com --token-file /root/.puppetlabs/token",
            ),
        )
        self.assertEqual(steps[5], ("broadcast", PUPPETDB_STOP, ("cb1", "cb2")))
        self.assertTrue(
            steps[6][1].endswith(
                "upgrade replica replica.example.com --token-file /root/.puppetlabs/token"
            )
        )
        self.assertIn("upgrade compiler cb1.example.com,cb2.example.com", steps[7][1])
        self.assertEqual(steps[8][:2], ("broadcast", AGENT_START))

        self.executor.broadcast.assert_any_call([Node("primary")], RUN_ONCE, ok_codes=RUN_ONCE_OK)
        self.parent.certificates.add_extensions.assert_not_called()
        self.assertEqual(self.parent.classifier.ensure_group.call_count, 2)

    def test_extra_large_installs_primary_clustered(self, mock_export, mock_platform):
        """Test only the primary is installed clustered and database hosts are staged."""
        self.identities.update(
            {
                "primary": identity("primary", "puppet/server", "A"),
                "replica": identity("replica", "puppet/server", "B"),
                "pdb": identity("pdb", "puppet/puppetdb-database", "A"),
                "rdb": identity("rdb", "puppet/puppetdb-database", "B"),
                "ca1": identity("ca1", "puppet/compiler", "A"),
            }
        )
        upgrader = self.make_upgrader(
            replica_host="replica",
            compiler_hosts=["ca1"],
            primary_postgresql_host="pdb",
            replica_postgresql_host="rdb",
        )

        upgrader.run()

        self.parent.stager.ensure_artifact.assert_called_once_with(
            [Node("primary"), Node("pdb"), Node("rdb")], "2021.7.1", "el-8-x86_64"
        )
        installs = [
            (c.args[0].name, c.kwargs.get("clustered", False))
            for c in self.parent.installer.install.call_args_list
        ]
        self.assertEqual(installs, [("pdb", False), ("primary", True), ("rdb", False)])
        self.executor.broadcast.assert_any_call(
            [Node("primary"), Node("pdb")], RUN_ONCE, ok_codes=RUN_ONCE_OK
        )
        self.executor.broadcast.assert_any_call([Node("rdb")], RUN_ONCE, ok_codes=RUN_ONCE_OK)

    def test_pcp_nodes_wait_for_orchestrator(self, mock_export, mock_platform):
        """Test waits bracket the convergence run when pcp nodes exist."""
        self.identities.update(
            {
                "primary": identity("primary", "puppet/server", "A"),
                "ca1": identity("ca1", "puppet/compiler", "A"),
            }
        )
        upgrader = self.make_upgrader(compiler_hosts=["pcp://ca1"])

        upgrader.run()

        order = [
            args[1] if name == "executor.broadcast" else name
            for name, args, kwargs in self.named_calls("waiter", "executor.broadcast")
        ]
        converge = order.index(RUN_ONCE)
        waits = ["waiter.wait_ready", "waiter.wait_reachable"]
        self.assertEqual(order[converge - 2 : converge], waits)
        self.assertEqual(order[converge + 1 : converge + 3], waits)
        self.parent.waiter.wait_ready.assert_called_with("orchestrator-service", "primary", 300)
        self.parent.waiter.wait_reachable.assert_called_with(
            [Node("primary"), Node("ca1", Transport.PCP)], 120
        )

    def test_readiness_timeout_aborts_before_replica_side(self, mock_export, mock_platform):
        """Test a readiness timeout after the primary install ends the run."""
        self.identities.update(
            {
                "primary": identity("primary", "puppet/server", "A"),
                "replica": identity("replica", "puppet/server", "B"),
                "cb1": identity("cb1", "puppet/compiler", "B"),
            }
        )
        self.parent.waiter.wait_ready.side_effect = ReadinessTimeoutError("orchestrator not ready")
        upgrader = self.make_upgrader(replica_host="replica", compiler_hosts=["pcp://cb1"])

        with self.assertRaises(ReadinessTimeoutError):
            upgrader.run()

        phases = [(r.phase, r.status) for r in upgrader.results]
        self.assertEqual(
            phases,
            [
                (Phase.VALIDATE, "success"),
                (Phase.PREPARE, "success"),
                (Phase.UPGRADE_PRIMARY_SIDE, "failed"),
            ],
        )
        checks = [c.args[1] for c in self.executor.check.call_args_list]
        self.assertFalse(any("infrastructure upgrade" in c for c in checks))
        self.assertNotIn(
            call([Node("cb1", Transport.PCP)], PUPPETDB_STOP),
            self.executor.broadcast.call_args_list,
        )
        self.executor.close.assert_called_once()
        mock_export.assert_called_once()

    def test_rerun_after_failure_stops_already_stopped_agent(self, mock_export, mock_platform):
        """Test a re-run succeeds when the failed run left the agent stopped."""
        self.identities["primary"] = identity("primary", "puppet/server", "A")
        agent = {"primary": "running"}
        stops_seen = []

        def broadcast(nodes, command, **kwargs):
            if command == AGENT_STOP:
                stops_seen.extend(agent[n.name] for n in nodes)
            states = {AGENT_STOP: "stopped", AGENT_START: "running"}
            for n in nodes:
                agent[n.name] = states.get(command, agent[n.name])
            return [
                CommandResult(n.name, command, 0, f"service {{ 'puppet': ensure => '{agent[n.name]}' }}")
                for n in nodes
            ]

        self.executor.broadcast.side_effect = broadcast
        self.parent.installer.install.side_effect = [InstallerError("primary", 1), 0]

        with self.assertRaises(InstallerError):
            self.make_upgrader().run()
        self.assertEqual(agent["primary"], "stopped")

        self.make_upgrader().run()

        self.assertEqual(stops_seen, ["running", "stopped"])
        self.assertEqual(agent["primary"], "running")

    def test_compiler_without_auth_role_gets_certificate_update(self, mock_export, mock_platform):
        """Test legacy compilers receive pp_auth_role before classification."""
        self.identities.update(
            {
                "primary": identity("primary", "puppet/server", "A"),
                "ca1": NodeIdentity("ca1.example.com", "puppet/compiler", "A", {}),
            }
        )
        upgrader = self.make_upgrader(compiler_hosts=["ca1"])

        upgrader.run()

        self.parent.certificates.add_extensions.assert_called_once_with(
            Node("ca1"),
            "ca1.example.com",
            {},
            {"pp_auth_role": "pe_compiler"},
            primary=Node("primary"),
        )

    def test_dry_run_stops_after_validate(self, mock_export, mock_platform):
        """Test dry run validates without changing anything."""
        self.identities["primary"] = identity("primary", "puppet/server", "A")
        upgrader = self.make_upgrader(dry_run=True)

        message = upgrader.run()

        self.assertTrue(message.startswith("DRY RUN"))
        self.assertEqual([r.phase for r in upgrader.results], [Phase.VALIDATE])
        self.parent.stager.ensure_artifact.assert_not_called()
        self.parent.installer.install.assert_not_called()
        self.executor.broadcast.assert_not_called()

    def test_missing_trusted_facts_fail_validate(self, mock_export, mock_platform):
        """Test resolver errors stop the run in validate."""
        self.parent.resolver.resolve.side_effect = PreconditionError("no facts")
        upgrader = self.make_upgrader()

        with self.assertRaises(PreconditionError):
            upgrader.run()

        self.assertEqual(
            [(r.phase, r.status) for r in upgrader.results], [(Phase.VALIDATE, "failed")]
        )
        self.parent.stager.ensure_artifact.assert_not_called()

    def test_downgrade_rejected(self, mock_export, mock_platform):
        """Test the installed version is compared with the target."""
        self.identities["primary"] = identity("primary", "puppet/server", "A")
        self.executor.run.return_value = CommandResult("primary", "cat", 0, "2023.2.0\n")
        upgrader = self.make_upgrader()

        with self.assertRaises(UnsupportedVersionError):
            upgrader.run()
        self.parent.stager.ensure_artifact.assert_not_called()

    def test_missing_token(self, mock_export, mock_platform):
        """Test a real run needs an RBAC token when no classifier is given."""
        config = UpgraderConfig(
            primary_host="primary", version="2021.7.1", api_token_file="/nonexistent/token"
        )
        upgrader = InfrastructureUpgrader(
            config,
            executor=self.executor,
            resolver=self.parent.resolver,
            stager=self.parent.stager,
            waiter=self.parent.waiter,
            installer=self.parent.installer,
            certificates=self.parent.certificates,
        )

        with self.assertRaises(PreconditionError):
            upgrader.run()
        self.parent.resolver.resolve.assert_not_called()

    def test_remote_failure_propagates(self, mock_export, mock_platform):
        """Test a failed compiler upgrade fails the primary side."""
        self.identities.update(
            {
                "primary": identity("primary", "puppet/server", "A"),
                "ca1": identity("ca1", "puppet/compiler", "A"),
            }
        )
        self.executor.check.side_effect = RemoteCommandError(
            CommandResult("primary", "puppet infrastructure upgrade compiler", 1)
        )
        upgrader = self.make_upgrader(compiler_hosts=["ca1"])

        with self.assertRaises(RemoteCommandError):
            upgrader.run()
        self.assertEqual(upgrader.results[-1].phase, Phase.UPGRADE_PRIMARY_SIDE)
        self.assertEqual(upgrader.results[-1].status, "failed")

    def test_phase_cannot_be_reentered(self, mock_export, mock_platform):
        """Test phases run at most once and only forward."""
        self.identities["primary"] = identity("primary", "puppet/server", "A")
        upgrader = self.make_upgrader()
        upgrader.run()

        with self.assertRaises(RuntimeError):
            upgrader._run_phase(Phase.PREPARE, upgrader._prepare, upgrader.plan)


class TestFormatDuration(unittest.TestCase):
    """Test duration formatting."""

    def test_format_duration(self):
        """Test seconds, minutes and hours."""
        upgrader = InfrastructureUpgrader.__new__(InfrastructureUpgrader)
        self.assertEqual(upgrader._format_duration(5.0), "5.0s")
        self.assertEqual(upgrader._format_duration(125), "2m 5s")
        self.assertEqual(upgrader._format_duration(3725), "1h 2m 5s")


if __name__ == "__main__":
    unittest.main()
