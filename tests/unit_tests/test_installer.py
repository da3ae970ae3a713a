"""
Unit tests for the PE installer wrapper.
"""

import unittest
from unittest.mock import MagicMock

from config import AgentServiceState
from errors import InstallerError, RemoteCommandError
from installer import (
    HEALTH_CHECK_SERVICES,
    SHORTCIRCUIT_CONF,
    InstallerWrapper,
    reinterpret_exit_code,
)
from models import CommandResult, Node

TARBALL = "/tmp/puppet-enterprise-2021.7.1-el-8-x86_64.tar.gz"


class TestReinterpretExitCode(unittest.TestCase):
    """Test installer exit code reinterpretation."""

    ALL_ACTIVE = {svc: True for svc in HEALTH_CHECK_SERVICES}

    def test_success_is_unchanged(self):
        """Test a zero exit code stays zero."""
        self.assertEqual(reinterpret_exit_code(0, True, {}), 0)
        self.assertEqual(reinterpret_exit_code(0, False, {}), 0)

    def test_clustered_failure_with_healthy_services(self):
        """Test a clustered install is successful when core services run."""
        self.assertEqual(reinterpret_exit_code(1, True, self.ALL_ACTIVE), 0)

    def test_clustered_failure_with_inactive_service(self):
        """Test one inactive service keeps the failure."""
        health = dict(self.ALL_ACTIVE, **{"pe-console-services": False})
        self.assertEqual(reinterpret_exit_code(1, True, health), 1)

    def test_clustered_failure_with_missing_health(self):
        """Test unknown service state keeps the failure."""
        self.assertEqual(reinterpret_exit_code(1, True, {}), 1)

    def test_non_clustered_failure_is_unchanged(self):
        """Test non-clustered failures are never reinterpreted."""
        self.assertEqual(reinterpret_exit_code(1, False, self.ALL_ACTIVE), 1)


class TestInstallerWrapper(unittest.TestCase):
    """Test the install flow on a node."""

    def setUp(self):
        """Set up an executor scripted by command."""
        self.node = Node("pdb")
        self.commands = []
        self.installer_exit = 0
        self.inactive = set()
        self.executor = MagicMock()
        self.executor.run.side_effect = self._run
        self.executor.check.side_effect = self._check
        self.wrapper = InstallerWrapper(self.executor, timeout=1800)

    def _run(self, node, command, timeout=None):
        self.commands.append(command)
        if command.startswith("tar -tzf"):
            return CommandResult(node.name, command, 0, "puppet-enterprise-2021.7.1-el-8-x86_64/\n")
        if "puppet-enterprise-installer" in command:
            return CommandResult(node.name, command, self.installer_exit, "installer output")
        if command.startswith("systemctl is-active"):
            name = command.split()[-1].replace(".service", "")
            return CommandResult(node.name, command, 3 if name in self.inactive else 0)
        return CommandResult(node.name, command, 0)

    def _check(self, node, command, timeout=None, ok_codes=(0,)):
        result = self._run(node, command, timeout)
        if result.exit_code not in ok_codes:
            raise RemoteCommandError(result)
        return result

    def _index(self, fragment):
        return next(i for i, c in enumerate(self.commands) if fragment in c)

    def test_plain_install(self):
        """Test extraction and installer invocation."""
        code = self.wrapper.install(self.node, TARBALL)

        self.assertEqual(code, 0)
        installer_cmd = self.commands[self._index("puppet-enterprise-installer")]
        self.assertIn(
            "/tmp/puppet-enterprise-2021.7.1-el-8-x86_64/puppet-enterprise-installer -y",
            installer_cmd,
        )
        self.assertIn("LC_ALL=en_US.UTF-8", installer_cmd)
        self.assertTrue(any(c.startswith("tar -C /tmp -xzf") for c in self.commands))
        self.assertFalse(any(SHORTCIRCUIT_CONF in c for c in self.commands))
        self.assertFalse(any("systemctl stop puppet.service" in c for c in self.commands))
        self.executor.run.assert_any_call(self.node, installer_cmd, timeout=1800)

    def test_answer_file_and_stopped_agent(self):
        """Test pe.conf is passed and the agent left stopped."""
        self.wrapper.install(
            self.node,
            TARBALL,
            puppet_service_ensure=AgentServiceState.STOPPED,
            peconf="/etc/puppetlabs/enterprise/conf.d/pe.conf",
        )

        installer_cmd = self.commands[self._index("puppet-enterprise-installer")]
        self.assertTrue(installer_cmd.endswith("-c /etc/puppetlabs/enterprise/conf.d/pe.conf"))
        self.assertGreater(self._index("systemctl stop puppet.service"), self._index("puppet-enterprise-installer"))

    def test_clustered_install_wraps_installer_in_shortcircuit(self):
        """Test the drop-in is added before and removed after the installer."""
        self.wrapper.install(self.node, TARBALL, clustered=True)

        added = self._index(f"> {SHORTCIRCUIT_CONF}")
        ran = self._index("puppet-enterprise-installer")
        removed = self._index(f"rm -f {SHORTCIRCUIT_CONF}")
        self.assertLess(added, ran)
        self.assertLess(ran, removed)
        self.assertLess(self._index("systemctl stop pe-puppetdb.service"), removed)

    def test_clustered_exit_1_with_healthy_services(self):
        """Test a healthy clustered node is a successful install."""
        self.installer_exit = 1

        code = self.wrapper.install(self.node, TARBALL, clustered=True)

        self.assertEqual(code, 0)
        checks = [c for c in self.commands if c.startswith("systemctl is-active")]
        self.assertEqual(len(checks), len(HEALTH_CHECK_SERVICES))

    def test_clustered_exit_1_with_inactive_service(self):
        """Test a clustered install fails when a core service is down."""
        self.installer_exit = 1
        self.inactive.add("pe-orchestration-services")

        with self.assertRaises(InstallerError) as ctx:
            self.wrapper.install(self.node, TARBALL, clustered=True)
        self.assertEqual(ctx.exception.exit_code, 1)

    def test_non_clustered_failure(self):
        """Test installer failures surface without a health check."""
        self.installer_exit = 1

        with self.assertRaises(InstallerError) as ctx:
            self.wrapper.install(self.node, TARBALL)

        self.assertEqual(ctx.exception.exit_code, 1)
        self.assertIn("installer output", str(ctx.exception))
        self.assertFalse(any(c.startswith("systemctl is-active") for c in self.commands))

    def test_shortcircuit_removed_when_installer_crashes(self):
        """Test cleanup runs even if the installer cannot be started."""
        original = self.executor.run.side_effect

        def run(node, command, timeout=None):
            if "puppet-enterprise-installer" in command:
                raise RemoteCommandError(CommandResult(node.name, command, 255, stderr="lost"))
            return original(node, command, timeout)

        self.executor.run.side_effect = run

        with self.assertRaises(RemoteCommandError):
            self.wrapper.install(self.node, TARBALL, clustered=True)
        self.assertTrue(any(c.startswith(f"rm -f {SHORTCIRCUIT_CONF}") for c in self.commands))

    def _fail_shortcircuit_removal(self):
        def check(node, command, timeout=None, ok_codes=(0,)):
            if command.startswith(f"rm -f {SHORTCIRCUIT_CONF}"):
                self.commands.append(command)
                raise RemoteCommandError(CommandResult(node.name, command, 1, stderr="read-only"))
            return self._check(node, command, timeout, ok_codes)

        self.executor.check.side_effect = check

    def test_failed_cleanup_keeps_installer_error(self):
        """Test a cleanup failure after a crashed installer does not hide the crash."""
        original = self.executor.run.side_effect

        def run(node, command, timeout=None):
            if "puppet-enterprise-installer" in command:
                raise RemoteCommandError(CommandResult(node.name, command, 255, stderr="lost"))
            return original(node, command, timeout)

        self.executor.run.side_effect = run
        self._fail_shortcircuit_removal()

        with self.assertLogs("installer", level="ERROR") as logs:
            with self.assertRaises(RemoteCommandError) as ctx:
                self.wrapper.install(self.node, TARBALL, clustered=True)

        self.assertEqual(ctx.exception.result.exit_code, 255)
        self.assertIn("lost", str(ctx.exception))
        self.assertIn(SHORTCIRCUIT_CONF, "\n".join(logs.output))

    def test_failed_cleanup_after_install_is_raised(self):
        """Test a cleanup failure is fatal when the installer itself ran."""
        self._fail_shortcircuit_removal()

        with self.assertRaises(RemoteCommandError) as ctx:
            self.wrapper.install(self.node, TARBALL, clustered=True)

        self.assertIn("read-only", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
