"""
Polling waits for PE services and node connectivity.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, List

from errors import ReadinessTimeoutError
from models import Node

logger = logging.getLogger(__name__)

# Upper bound on a single reachability ping
PING_TIMEOUT = 30


class ReadinessWaiter:
    """Blocks until a service is running or nodes are reachable."""

    def __init__(self, status_client, executor, poll_interval: int = 5):
        """
        Args:
            status_client: StatusClient reading the PE status API
            executor: RemoteExecutor used to ping nodes
            poll_interval: Seconds between polls
        """
        self.status_client = status_client
        self.executor = executor
        self.poll_interval = poll_interval

    def wait_ready(self, service_name: str, host: str, timeout: int) -> None:
        """
        Wait until a PE service reports the 'running' state.

        Raises:
            ReadinessTimeoutError: If the service is not running within timeout
        """
        logger.info(f"Waiting for {service_name} on {host} to be ready (max {timeout}s)...")
        start = time.time()
        while True:
            state = self.status_client.service_state(host, service_name)
            elapsed = time.time() - start
            if state == "running":
                logger.info(f"✓ {service_name} on {host} is running after {elapsed:.0f}s")
                return
            if elapsed > timeout:
                raise ReadinessTimeoutError(
                    f"{service_name} on {host} not ready after {elapsed:.0f}s "
                    f"(last state: {state or 'unreachable'})"
                )
            logger.debug(f"  {service_name} on {host}: state={state} ({elapsed:.0f}s elapsed)")
            time.sleep(self.poll_interval)

    def wait_reachable(self, nodes: Iterable[Node], timeout: int) -> None:
        """
        Wait until every node accepts commands.

        Pending nodes are pinged concurrently, and no ping outlives the deadline.

        Raises:
            ReadinessTimeoutError: If any node is still unreachable at the deadline
        """
        pending: List[Node] = list(nodes)
        logger.info(f"Waiting for {len(pending)} node(s) to be reachable (max {timeout}s)...")
        start = time.time()
        deadline = start + timeout
        while True:
            budget = min(PING_TIMEOUT, deadline - time.time())
            if pending and budget > 0:
                pending = self._unreachable(pending, budget)
            now = time.time()
            elapsed = now - start
            if not pending:
                logger.info(f"✓ All nodes reachable after {elapsed:.0f}s")
                return
            if now >= deadline:
                raise ReadinessTimeoutError(
                    f"Node(s) not reachable after {elapsed:.0f}s: "
                    f"{', '.join(n.name for n in pending)}"
                )
            logger.debug(f"  still waiting for: {', '.join(n.name for n in pending)}")
            time.sleep(min(self.poll_interval, deadline - now))

    def _unreachable(self, nodes: List[Node], budget: float) -> List[Node]:
        """Ping nodes in parallel; a node with no answer within budget is unreachable."""
        pool = ThreadPoolExecutor(max_workers=len(nodes))
        try:
            futures = [(n, pool.submit(self.executor.ping, n, timeout=budget)) for n in nodes]
            done, _ = wait([f for _, f in futures], timeout=budget)
            return [n for n, f in futures if f not in done or not f.result()]
        finally:
            # Stragglers finish on their own ping timeout
            pool.shutdown(wait=False)
