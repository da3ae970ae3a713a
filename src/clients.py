"""
REST API clients for the Puppet Enterprise services used during an upgrade.
"""

import logging
import time
from typing import Dict, List, Optional

import requests

from errors import ApiError
from models import CommandResult

logger = logging.getLogger(__name__)

ORCHESTRATOR_PORT = 8143
CONSOLE_SERVICES_PORT = 4433

# Status API port per PE service name
SERVICE_PORTS = {
    "orchestrator-service": 8143,
    "broker-service": 8143,
    "server": 8140,
    "puppetdb-status": 8081,
    "rbac-service": 4433,
    "classifier-service": 4433,
    "activity-service": 4433,
}

JOB_TERMINAL_STATES = {"finished", "failed", "stopped"}


class PEApiClient:
    """Base REST client for PE service APIs on a single host."""

    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        host: str,
        port: int,
        token: Optional[str] = None,
        ca_cert: Optional[str] = None,
        timeout_s: int = 60,
        max_retries: int = 3,
        base_delay: float = 2.0,
    ):
        """
        Initialize the PE API client.

        Args:
            host: Host running the service (usually the primary)
            port: Service port
            token: RBAC token sent as X-Authentication
            ca_cert: PE CA bundle used to verify TLS; unverified if None
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
        """
        self.host = host
        self.port = port
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        self.session = requests.Session()
        self.session.verify = ca_cert if ca_cert else False
        if not ca_cert:
            requests.packages.urllib3.disable_warnings(
                requests.packages.urllib3.exceptions.InsecureRequestWarning
            )
        if token:
            self.session.headers["X-Authentication"] = token

    def _url(self, path: str) -> str:
        """Construct full API URL from path."""
        return f"https://{self.host}:{self.port}/{path.lstrip('/')}"

    def _request_with_retry(
        self, method: str, url: str, retry: bool = True, **kwargs
    ) -> requests.Response:
        """
        Execute an HTTP request, retrying transient errors for GET requests.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            url: Request URL
            retry: Set False to make a single attempt
            **kwargs: Additional request parameters

        Returns:
            The final response

        Raises:
            ApiError: If the request cannot be completed
        """
        attempts = self.max_retries + 1 if retry and method.upper() == "GET" else 1
        last_error = None
        kwargs.setdefault("timeout", self.timeout_s)

        for attempt in range(attempts):
            try:
                resp = self.session.request(method.upper(), url, **kwargs)
            except requests.RequestException as e:
                last_error = str(e)
                if attempt + 1 >= attempts:
                    break
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{attempts}, "
                    f"waiting {delay:.1f}s..."
                )
                time.sleep(delay)
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES and attempt + 1 < attempts:
                delay = self._calculate_delay(attempt, resp)
                logger.warning(
                    f"Retryable error {resp.status_code} from {url}, attempt "
                    f"{attempt + 1}/{attempts}, waiting {delay:.1f}s..."
                )
                last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                time.sleep(delay)
                continue

            return resp

        raise ApiError(f"{method.upper()} {url} failed: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                pass
        return min(self.base_delay * (2**attempt), 60.0)

    @staticmethod
    def _expect(resp: requests.Response, what: str, *codes: int) -> requests.Response:
        if resp.status_code not in codes:
            raise ApiError(
                f"{what} failed ({resp.status_code}): {resp.text[:500]}",
                status_code=resp.status_code,
            )
        return resp


class StatusClient:
    """Reads service state from the unauthenticated PE status API."""

    def __init__(self, ca_cert: Optional[str] = None, timeout_s: int = 10):
        self.timeout_s = timeout_s
        self.session = requests.Session()
        self.session.verify = ca_cert if ca_cert else False

    def service_state(self, host: str, service_name: str) -> Optional[str]:
        """
        Get the current state of a service.

        Args:
            host: Host running the service
            service_name: PE service name, e.g. 'orchestrator-service'

        Returns:
            State string such as 'running' or 'starting', or None when the
            status endpoint cannot be reached
        """
        port = SERVICE_PORTS.get(service_name)
        if port is None:
            raise ValueError(f"Unknown PE service '{service_name}'")
        url = f"https://{host}:{port}/status/v1/services/{service_name}"
        try:
            resp = self.session.get(
                url, params={"level": "critical"}, timeout=self.timeout_s
            )
        except requests.RequestException as e:
            logger.debug(f"Status check for {service_name} on {host} failed: {e}")
            return None

        # 503 carries a body describing a service that is not yet running
        if resp.status_code not in (200, 503):
            logger.debug(
                f"Status check for {service_name} on {host} returned {resp.status_code}"
            )
            return None
        try:
            return str(resp.json().get("state", "unknown"))
        except ValueError:
            return None


class OrchestratorClient(PEApiClient):
    """Client for the PE orchestrator API, used to reach PCP nodes."""

    def __init__(self, host: str, token: Optional[str], environment: str = "production", **kwargs):
        super().__init__(host, ORCHESTRATOR_PORT, token=token, **kwargs)
        self.environment = environment

    def run_task(self, task: str, params: Dict, certnames: List[str]) -> str:
        """
        Start a task job.

        Returns:
            Job name (numeric id as a string)
        """
        body = {
            "environment": self.environment,
            "task": task,
            "params": params,
            "scope": {"nodes": certnames},
        }
        resp = self._request_with_retry(
            "POST", self._url("orchestrator/v1/command/task"), json=body
        )
        data = self._expect(resp, f"Task {task}", 200, 202).json()
        try:
            return str(data["job"]["name"])
        except (KeyError, TypeError):
            raise ApiError(f"Task {task} returned unexpected response: {data}")

    def get_job(self, job: str) -> Dict:
        resp = self._request_with_retry("GET", self._url(f"orchestrator/v1/jobs/{job}"))
        return self._expect(resp, f"Get job {job}", 200).json()

    def get_job_nodes(self, job: str) -> List[Dict]:
        resp = self._request_with_retry(
            "GET", self._url(f"orchestrator/v1/jobs/{job}/nodes")
        )
        return self._expect(resp, f"Get job {job} nodes", 200).json().get("items", [])

    def wait_for_job(self, job: str, timeout: int, poll_interval: int) -> List[Dict]:
        """
        Poll a job until it reaches a terminal state.

        Returns:
            Per-node result items

        Raises:
            ApiError: If the job does not finish before the timeout
        """
        start = time.time()
        while True:
            state = self.get_job(job).get("state")
            if state in JOB_TERMINAL_STATES:
                return self.get_job_nodes(job)
            if time.time() - start > timeout:
                raise ApiError(f"Job {job} still {state} after {timeout}s")
            time.sleep(poll_interval)

    def run_command(
        self, certname: str, command: str, timeout: int, poll_interval: int = 5
    ) -> CommandResult:
        """Run a shell command on a PCP node through the bolt_shim task."""
        job = self.run_task("bolt_shim::command", {"command": command}, [certname])
        logger.debug(f"Started job {job} on {certname}: {command}")
        items = self.wait_for_job(job, timeout=timeout, poll_interval=poll_interval)
        item = next((i for i in items if i.get("name") == certname), None)
        if item is None:
            raise ApiError(f"Job {job} returned no result for {certname}")

        result = item.get("result") or {}
        error = result.get("_error") or {}
        default_code = 0 if item.get("state") == "finished" else 1
        return CommandResult(
            host=certname,
            command=command,
            exit_code=int(result.get("exit_code", default_code)),
            stdout=result.get("stdout", ""),
            stderr=result.get("stderr", "") or error.get("msg", ""),
        )

    def is_connected(self, certname: str, timeout: Optional[float] = None) -> bool:
        """Check whether a node's PCP agent is connected to the broker."""
        try:
            resp = self._request_with_retry(
                "GET",
                self._url(f"orchestrator/v1/inventory/{certname}"),
                retry=False,
                timeout=timeout or self.timeout_s,
            )
        except ApiError as e:
            logger.debug(f"Inventory lookup for {certname} failed: {e}")
            return False
        if resp.status_code != 200:
            return False
        return bool(resp.json().get("connected", False))


class ClassifierClient(PEApiClient):
    """Client for the PE node classifier API."""

    def __init__(self, host: str, token: Optional[str], **kwargs):
        super().__init__(host, CONSOLE_SERVICES_PORT, token=token, **kwargs)

    def list_groups(self) -> List[Dict]:
        resp = self._request_with_retry("GET", self._url("classifier-api/v1/groups"))
        return self._expect(resp, "List node groups", 200).json()

    def ensure_group(self, definition: Dict, groups: Optional[List[Dict]] = None) -> None:
        """
        Create a node group or update it in place.

        Args:
            definition: Group with 'name', 'parent' (parent group name),
                'rule', 'classes' and optionally 'data'
            groups: Current groups, fetched if not given
        """
        groups = groups if groups is not None else self.list_groups()
        by_name = {g["name"]: g for g in groups}
        name = definition["name"]
        body = {k: v for k, v in definition.items() if k not in ("name", "parent")}

        existing = by_name.get(name)
        if existing:
            logger.info(f"Updating node group '{name}'")
            resp = self._request_with_retry(
                "POST", self._url(f"classifier-api/v1/groups/{existing['id']}"), json=body
            )
            self._expect(resp, f"Update node group {name}", 200)
            return

        parent = by_name.get(definition["parent"])
        if parent is None:
            raise ApiError(
                f"Cannot create node group '{name}': parent group "
                f"'{definition['parent']}' not found"
            )
        logger.info(f"Creating node group '{name}'")
        body.update(
            {"name": name, "parent": parent["id"], "environment": parent.get("environment", "production")}
        )
        resp = self._request_with_retry(
            "POST", self._url("classifier-api/v1/groups"), json=body, allow_redirects=False
        )
        self._expect(resp, f"Create node group {name}", 201, 303)
