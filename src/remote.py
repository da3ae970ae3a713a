"""
Remote command execution and file transfer for PE infrastructure nodes.

Nodes reached over SSH are driven with paramiko; nodes on the PCP transport
are driven through the orchestrator API on the primary.
"""

import logging
import shlex
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

import paramiko

from clients import OrchestratorClient
from errors import RemoteCommandError, TransferError, UnsupportedTransportError
from models import CommandResult, Node, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ssh(1) reports connection failures with this exit code
SSH_CONNECTION_FAILED = 255


class SSHRunner:
    """Runs commands and uploads files over cached SSH connections."""

    def __init__(
        self,
        user: str = "root",
        key_path: Optional[str] = None,
        port: int = 22,
        connect_timeout: int = 30,
    ):
        self.user = user
        self.key_path = key_path
        self.port = port
        self.connect_timeout = connect_timeout
        self._clients: Dict[str, paramiko.SSHClient] = {}
        self._lock = threading.Lock()

    def _client(self, host: str, connect_timeout: Optional[float] = None) -> paramiko.SSHClient:
        with self._lock:
            client = self._clients.get(host)
            if client is not None:
                transport = client.get_transport()
                if transport is not None and transport.is_active():
                    return client
                client.close()

            client = paramiko.SSHClient()
            client.load_system_host_keys()
            # Infrastructure hosts are frequently rebuilt with new host keys
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())  # nosec B507
            client.connect(
                hostname=host,
                port=self.port,
                username=self.user,
                key_filename=self.key_path,
                timeout=connect_timeout or self.connect_timeout,
            )
            self._clients[host] = client
            return client

    def _wrap(self, command: str) -> str:
        if self.user == "root":
            return command
        return f"sudo -n sh -c {shlex.quote(command)}"

    def run(
        self,
        host: str,
        command: str,
        timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Run a command on a host.

        Connection failures are reported as exit code 255, as ssh(1) does.
        """
        try:
            client = self._client(host, connect_timeout)
            stdin, stdout, stderr = client.exec_command(self._wrap(command), timeout=timeout)
            stdin.close()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            logger.debug(f"SSH to {host} failed: {e}")
            return CommandResult(
                host=host, command=command, exit_code=SSH_CONNECTION_FAILED, stderr=str(e)
            )
        return CommandResult(
            host=host, command=command, exit_code=exit_code, stdout=out, stderr=err
        )

    def upload(self, host: str, local_path: str, remote_path: str) -> None:
        """
        Copy a local file to a host over SFTP.

        Raises:
            TransferError: If the copy fails
        """
        try:
            sftp = self._client(host).open_sftp()
            try:
                sftp.put(local_path, remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise TransferError(f"Upload of {local_path} to {host}:{remote_path} failed: {e}")

    def close(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()


class RemoteExecutor:
    """Dispatches node operations to the transport each node uses."""

    def __init__(
        self,
        ssh: SSHRunner,
        orchestrator: Optional[OrchestratorClient] = None,
        max_parallel: int = 5,
        command_timeout: int = 3600,
        poll_interval: int = 5,
    ):
        self.ssh = ssh
        self.orchestrator = orchestrator
        self.max_parallel = max_parallel
        self.command_timeout = command_timeout
        self.poll_interval = poll_interval

    @classmethod
    def from_config(cls, config, orchestrator: Optional[OrchestratorClient] = None):
        ssh = SSHRunner(
            user=config.ssh_user, key_path=config.ssh_key_path, port=config.ssh_port
        )
        return cls(
            ssh,
            orchestrator=orchestrator,
            max_parallel=config.max_parallel,
            command_timeout=config.command_timeout,
            poll_interval=config.poll_interval,
        )

    def run(self, node: Node, command: str, timeout: Optional[int] = None) -> CommandResult:
        """Run a command on a node and return its result, whatever the exit code."""
        timeout = timeout or self.command_timeout
        logger.debug(f"[{node.name}] $ {command}")
        if node.transport == Transport.PCP:
            if self.orchestrator is None:
                raise UnsupportedTransportError(
                    f"{node.name} uses pcp but no orchestrator client is configured"
                )
            result = self.orchestrator.run_command(
                node.name, command, timeout=timeout, poll_interval=self.poll_interval
            )
        else:
            result = self.ssh.run(node.name, command, timeout=timeout)
        if not result.ok:
            logger.debug(f"[{node.name}] exit {result.exit_code}: {result.stderr.strip()}")
        return result

    def check(
        self,
        node: Node,
        command: str,
        timeout: Optional[int] = None,
        ok_codes: Sequence[int] = (0,),
    ) -> CommandResult:
        """
        Run a command on a node, requiring one of ok_codes.

        Raises:
            RemoteCommandError: If the command exits with any other code
        """
        result = self.run(node, command, timeout=timeout)
        if result.exit_code not in ok_codes:
            raise RemoteCommandError(result)
        return result

    def for_each(self, nodes: Iterable[Node], fn: Callable[[Node], T]) -> List[T]:
        """
        Apply fn to every node concurrently and wait for all of them.

        The first exception raised by any node is re-raised once every node
        has returned.
        """
        nodes = list(nodes)
        if not nodes:
            return []
        if len(nodes) == 1:
            return [fn(nodes[0])]

        with ThreadPoolExecutor(max_workers=min(self.max_parallel, len(nodes))) as pool:
            futures = [pool.submit(fn, node) for node in nodes]
            results, first_error = [], None
            for future in futures:
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.error(f"{e}")
                    first_error = first_error or e
        if first_error is not None:
            raise first_error
        return results

    def broadcast(
        self,
        nodes: Iterable[Node],
        command: str,
        timeout: Optional[int] = None,
        ok_codes: Sequence[int] = (0,),
    ) -> List[CommandResult]:
        """Run the same command on every node; see for_each."""
        return self.for_each(
            nodes, lambda n: self.check(n, command, timeout=timeout, ok_codes=ok_codes)
        )

    def upload(self, node: Node, local_path: str, remote_path: str) -> None:
        if node.transport == Transport.PCP:
            raise UnsupportedTransportError(
                f"File upload to {node.name} over pcp is not supported"
            )
        self.ssh.upload(node.name, local_path, remote_path)

    def ping(self, node: Node, timeout: float = 30) -> bool:
        """Check whether a node currently accepts commands, waiting at most timeout seconds."""
        if node.transport == Transport.PCP:
            return self.orchestrator is not None and self.orchestrator.is_connected(
                node.name, timeout=timeout
            )
        return self.ssh.run(node.name, "true", timeout=timeout, connect_timeout=timeout).ok

    def close(self) -> None:
        self.ssh.close()
