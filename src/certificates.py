"""
Re-issuing a node's certificate with additional trusted extensions.
"""

import logging
import shlex
from typing import Dict

import yaml

from errors import PreconditionError
from models import Node

logger = logging.getLogger(__name__)

PUPPET = "/opt/puppetlabs/bin/puppet"
PUPPETSERVER = "/opt/puppetlabs/bin/puppetserver"
CSR_ATTRIBUTES = "/etc/puppetlabs/puppet/csr_attributes.yaml"


def merge_csr_attributes(current: str, extensions: Dict[str, str]) -> str:
    """
    Render csr_attributes.yaml with extra extension requests.

    Existing custom attributes and extension requests are kept; the given
    extensions win over existing ones with the same key.
    """
    data = yaml.safe_load(current) if current.strip() else {}
    if not isinstance(data, dict):
        raise PreconditionError(f"{CSR_ATTRIBUTES} does not contain a mapping")
    wanted = dict(data.get("extension_requests") or {})
    wanted.update(extensions)
    data["extension_requests"] = wanted
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)


class CertificateUpdater:
    """Adds extensions to a node certificate by re-requesting and re-signing it."""

    def __init__(self, executor):
        self.executor = executor

    def add_extensions(
        self,
        node: Node,
        certname: str,
        existing: Dict[str, str],
        extensions: Dict[str, str],
        primary: Node,
    ) -> None:
        """
        Re-issue node's certificate carrying existing plus new extensions.

        Args:
            node: Node whose certificate is re-issued
            certname: Its certname
            existing: Extensions on the current certificate
            extensions: Extensions to add
            primary: Node running the certificate authority
        """
        logger.info(f"Adding {', '.join(sorted(extensions))} to the certificate of {certname}")
        current = self.executor.run(node, f"cat {CSR_ATTRIBUTES}")
        attributes = merge_csr_attributes(
            current.stdout if current.ok else "", {**existing, **extensions}
        )
        self.executor.check(
            node, f"printf %s {shlex.quote(attributes)} > {CSR_ATTRIBUTES}"
        )

        name = shlex.quote(certname)
        self.executor.check(primary, f"{PUPPETSERVER} ca clean --certname {name}")
        self.executor.check(
            node,
            f'rm -f "$({PUPPET} config print hostcert)" && '
            f"{PUPPET} ssl submit_request --certname {name}",
        )
        self.executor.check(primary, f"{PUPPETSERVER} ca sign --certname {name}")
        self.executor.check(node, f"{PUPPET} ssl download_cert --certname {name}")
        logger.info(f"✓ Certificate of {certname} re-issued")
