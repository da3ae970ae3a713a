"""
Staging of the PE installer tarball onto install targets.
"""

import logging
import os
import posixpath
import shlex
from typing import Iterable, Optional

import requests

from config import DEFAULT_RELEASE_URL, DownloadMode
from errors import PreconditionError, TransferError, UpgradeError
from models import Node, Transport

logger = logging.getLogger(__name__)

PLATFORM_COMMAND = '. /etc/os-release && echo "$ID $VERSION_ID $(uname -m)"'

EL_FAMILY = {"rhel", "centos", "rocky", "almalinux", "ol", "scientific"}

CHUNK_SIZE = 1024 * 1024


def tarball_name(version: str, platform: str) -> str:
    return f"puppet-enterprise-{version}-{platform}.tar.gz"


def artifact_url(version: str, platform: str, base_url: str = DEFAULT_RELEASE_URL) -> str:
    """Build the release URL of the PE tarball for a version and platform."""
    return f"{base_url.rstrip('/')}/{version}/{tarball_name(version, platform)}"


def platform_tag(os_id: str, version_id: str, machine: str) -> str:
    """
    Translate os-release data into the platform tag PE tarballs are named by.

    Raises:
        PreconditionError: If PE is not shipped for the platform
    """
    os_id = os_id.lower().strip('"')
    version_id = version_id.strip('"')
    major = version_id.split(".")[0]

    if os_id in EL_FAMILY:
        return f"el-{major}-{machine}"
    if os_id == "ubuntu":
        arch = "amd64" if machine == "x86_64" else machine
        return f"ubuntu-{version_id}-{arch}"
    if os_id in ("sles", "sled"):
        return f"sles-{major}-{machine}"
    raise PreconditionError(
        f"Unsupported platform for PE: {os_id} {version_id} ({machine})"
    )


def discover_platform(executor, node: Node) -> str:
    """Interrogate a node for the PE platform tag of its operating system."""
    result = executor.check(node, PLATFORM_COMMAND, timeout=60)
    parts = result.stdout.split()
    if len(parts) != 3:
        raise PreconditionError(
            f"Cannot determine platform of {node.name} from '{result.stdout.strip()}'"
        )
    return platform_tag(*parts)


class ArtifactStager:
    """Guarantees the PE tarball is fully present on a set of nodes."""

    def __init__(
        self,
        executor,
        download_mode: DownloadMode = DownloadMode.BOLTHOST,
        stagingdir: str = "/tmp",
        upload_dir: str = "/tmp",
        release_url: str = DEFAULT_RELEASE_URL,
        timeout_s: int = 60,
    ):
        """
        Initialize the stager.

        Args:
            executor: RemoteExecutor used to reach the nodes
            download_mode: Where the tarball is downloaded from the release URL
            stagingdir: Local directory for the bolthost download
            upload_dir: Directory on the nodes that receives the tarball
            release_url: Base URL of PE releases
            timeout_s: HTTP connect/read timeout
        """
        self.executor = executor
        self.download_mode = download_mode
        self.stagingdir = stagingdir
        self.upload_dir = upload_dir
        self.release_url = release_url
        self.timeout_s = timeout_s
        self.session = requests.Session()

    def remote_path(self, version: str, platform: str) -> str:
        return posixpath.join(self.upload_dir, tarball_name(version, platform))

    def ensure_artifact(self, nodes: Iterable[Node], version: str, platform: str) -> str:
        """
        Stage the tarball on every node.

        Returns:
            Path of the tarball on the nodes

        Raises:
            TransferError: If any node does not end up with a complete copy;
                no node is considered staged in that case
        """
        nodes = list(nodes)
        url = artifact_url(version, platform, self.release_url)
        path = self.remote_path(version, platform)
        logger.info(
            f"Staging {url} to {path} on {', '.join(n.name for n in nodes)} "
            f"(mode={self.download_mode.value})"
        )

        try:
            expected = self._expected_size(url)
            local_path = None
            if self.download_mode == DownloadMode.BOLTHOST and any(
                n.transport == Transport.SSH for n in nodes
            ):
                local_path = self._retrieve(
                    url, os.path.join(self.stagingdir, tarball_name(version, platform)), expected
                )
                expected = os.path.getsize(local_path)

            def stage(node: Node) -> None:
                if expected is not None and self._remote_size(node, path) == expected:
                    logger.info(f"{node.name}: {path} already present, skipping transfer")
                    return
                if local_path and node.transport == Transport.SSH:
                    logger.info(f"Uploading {local_path} to {node.name}:{path}")
                    self.executor.upload(node, local_path, path)
                else:
                    logger.info(f"{node.name}: downloading {url}")
                    self.executor.check(
                        node, f"curl -fsSL -o {shlex.quote(path)} {shlex.quote(url)}"
                    )
                actual = self._remote_size(node, path)
                if actual is None or (expected is not None and actual != expected):
                    raise TransferError(
                        f"{node.name}:{path} is incomplete "
                        f"({actual} of {expected if expected is not None else '?'} bytes)"
                    )

            self.executor.for_each(nodes, stage)
        except TransferError:
            raise
        except (UpgradeError, requests.RequestException, OSError) as e:
            raise TransferError(f"Staging {tarball_name(version, platform)} failed: {e}") from e

        return path

    def _expected_size(self, url: str) -> Optional[int]:
        """Content-Length of the release tarball, if the release server says."""
        try:
            resp = self.session.head(url, allow_redirects=True, timeout=self.timeout_s)
        except requests.RequestException as e:
            logger.debug(f"HEAD {url} failed: {e}")
            return None
        if resp.status_code != 200:
            logger.debug(f"HEAD {url} returned {resp.status_code}")
            return None
        length = resp.headers.get("Content-Length")
        return int(length) if length and length.isdigit() else None

    def _retrieve(self, url: str, local_path: str, expected: Optional[int]) -> str:
        """Download the tarball into the local staging directory."""
        if os.path.exists(local_path) and expected is not None:
            if os.path.getsize(local_path) == expected:
                logger.info(f"Using previously downloaded {local_path}")
                return local_path

        os.makedirs(os.path.dirname(local_path) or ".", exist_ok=True)
        partial = local_path + ".part"
        logger.info(f"Downloading {url} to {local_path}")
        with self.session.get(url, stream=True, timeout=self.timeout_s) as resp:
            if resp.status_code != 200:
                raise TransferError(f"Download of {url} failed ({resp.status_code})")
            with open(partial, "wb") as f:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    f.write(chunk)

        size = os.path.getsize(partial)
        if expected is not None and size != expected:
            os.remove(partial)
            raise TransferError(f"Download of {url} truncated ({size} of {expected} bytes)")
        os.replace(partial, local_path)
        return local_path

    def _remote_size(self, node: Node, path: str) -> Optional[int]:
        result = self.executor.run(node, f"stat -c %s {shlex.quote(path)}", timeout=60)
        if not result.ok:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None
