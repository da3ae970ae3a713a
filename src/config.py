"""
Configuration management for the PE HA upgrade tool.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml

from models import Node

DEFAULT_RELEASE_URL = "https://s3.amazonaws.com/pe-builds/released"


class DownloadMode(Enum):
    """How the PE tarball reaches the install targets."""

    BOLTHOST = "bolthost"  # download locally, then upload to each target
    DIRECT = "direct"  # each target downloads the tarball itself


class AgentServiceState(Enum):
    """Desired state of the puppet agent service after an install."""

    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class UpgraderConfig:
    """Configuration for an upgrade run."""

    primary_host: str
    version: str
    replica_host: Optional[str] = None
    compiler_hosts: List[str] = field(default_factory=list)
    primary_postgresql_host: Optional[str] = None
    replica_postgresql_host: Optional[str] = None
    internal_compiler_a_pool_address: Optional[str] = None
    internal_compiler_b_pool_address: Optional[str] = None
    pe_installer_answer_file: Optional[str] = None
    stagingdir: str = "/tmp"
    upload_dir: str = "/tmp"
    download_mode: DownloadMode = DownloadMode.BOLTHOST
    release_url: str = DEFAULT_RELEASE_URL
    token_file: Optional[str] = None  # RBAC token path on the primary
    api_token_file: str = "~/.puppetlabs/token"
    ca_cert: Optional[str] = None
    environment: str = "production"
    ssh_user: str = "root"
    ssh_key_path: Optional[str] = None
    ssh_port: int = 22
    service_ready_timeout: int = 300
    reachable_timeout: int = 120
    poll_interval: int = 5
    command_timeout: int = 3600
    max_parallel: int = 5
    dry_run: bool = False
    verbose: bool = False

    def __post_init__(self):
        if isinstance(self.download_mode, str):
            self.download_mode = DownloadMode(self.download_mode)
        if isinstance(self.compiler_hosts, str):
            self.compiler_hosts = [
                h.strip() for h in self.compiler_hosts.split(",") if h.strip()
            ]
        self.validate()

    def validate(self) -> None:
        """
        Check values that would otherwise fail deep inside a run.

        Raises:
            ValueError: If a value is missing or out of range
        """
        if not self.primary_host:
            raise ValueError("primary_host is required")
        if not self.version:
            raise ValueError("version is required")
        if self.replica_postgresql_host and not self.replica_host:
            raise ValueError("replica_postgresql_host requires replica_host")
        targets = [
            self.primary_host,
            self.replica_host,
            self.primary_postgresql_host,
            self.replica_postgresql_host,
        ] + list(self.compiler_hosts)
        for target in targets:
            if target:
                Node.parse(target)
        for name in (
            "service_ready_timeout",
            "reachable_timeout",
            "poll_interval",
            "command_timeout",
            "max_parallel",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_file(cls, path: str) -> "UpgraderConfig":
        """
        Create configuration from a YAML file.

        Args:
            path: Path to a YAML mapping using the field names of this class

        Returns:
            UpgraderConfig instance
        """
        return cls(**cls._load_file(path))

    @classmethod
    def from_args(cls, args) -> "UpgraderConfig":
        """
        Create configuration from command-line arguments.

        Values from ``--config`` are loaded first; any flag given on the
        command line overrides them.

        Args:
            args: Parsed argparse arguments

        Returns:
            UpgraderConfig instance
        """
        values: Dict[str, Any] = {}
        config_file = getattr(args, "config", None)
        if config_file:
            values.update(cls._load_file(config_file))

        for f in fields(cls):
            value = getattr(args, f.name, None)
            if value is None or value is False or value == []:
                continue
            values[f.name] = value

        missing = [k for k in ("primary_host", "version") if not values.get(k)]
        if missing:
            raise ValueError(
                f"Missing required setting(s): {', '.join(missing)} "
                "(pass them as flags or in --config)"
            )
        return cls(**values)

    @classmethod
    def _load_file(cls, path: str) -> Dict[str, Any]:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(
                f"Unknown setting(s) in {path}: {', '.join(unknown)}"
            )
        return data
