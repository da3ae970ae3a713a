"""
Role and availability-group discovery from trusted certificate extensions.

Every infrastructure node's host certificate carries the role and
availability group it was provisioned with. These extensions are the only
source of truth for which node plays which part in the upgrade.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.x509.oid import NameOID

from errors import MissingTrustedFactsError, PreconditionError
from models import Node, NodeIdentity

logger = logging.getLogger(__name__)

PUPPET_OID_ARC = "1.3.6.1.4.1.34380."
PEADM_ROLE_OID = "1.3.6.1.4.1.34380.1.1.9812"
AVAILABILITY_GROUP_OID = "1.3.6.1.4.1.34380.1.1.9813"
PP_AUTH_ROLE = "pp_auth_role"

# Registered Puppet extensions are reported under their short names
SHORT_NAMES = {
    "1.3.6.1.4.1.34380.1.1.1": "pp_uuid",
    "1.3.6.1.4.1.34380.1.1.13": "pp_role",
    "1.3.6.1.4.1.34380.1.3.1": "pp_authorization",
    "1.3.6.1.4.1.34380.1.3.13": PP_AUTH_ROLE,
}

# Accepted role keys, highest priority first: the peadm infrastructure role,
# then the registered authorization role as a fallback
ROLE_KEYS: Tuple[str, ...] = (PEADM_ROLE_OID, PP_AUTH_ROLE)

SERVER = "server"
COMPILER = "compiler"
DATABASE = "database"

ROLE_VALUES = {
    "puppet/server": SERVER,
    "puppet/master": SERVER,
    "puppet/compiler": COMPILER,
    "pe_compiler": COMPILER,
    "puppet/puppetdb-database": DATABASE,
}

HOSTCERT_COMMAND = 'cat "$(/opt/puppetlabs/bin/puppet config print hostcert)"'

# DER tags of the string types Puppet encodes extension values with
_DER_STRING_TAGS = {0x0C, 0x13, 0x16, 0x1E}


def decode_der_string(raw: bytes) -> str:
    """Decode a DER-encoded string extension value to text."""
    if len(raw) >= 2 and raw[0] in _DER_STRING_TAGS:
        length, offset = raw[1], 2
        if length & 0x80:
            size = length & 0x7F
            length = int.from_bytes(raw[2 : 2 + size], "big")
            offset = 2 + size
        value = raw[offset : offset + length]
        if raw[0] == 0x1E:
            return value.decode("utf-16-be")
        return value.decode("utf-8", errors="replace")
    return raw.decode("utf-8", errors="replace")


def parse_certificate(pem: str, source: str = "certificate") -> NodeIdentity:
    """
    Extract a node's trusted identity from its PEM host certificate.

    Args:
        pem: PEM-encoded certificate
        source: Where the certificate came from, for error messages

    Returns:
        NodeIdentity with the Puppet extensions found

    Raises:
        PreconditionError: If the certificate cannot be parsed
    """
    try:
        cert = x509.load_pem_x509_certificate(pem.encode("utf-8"))
    except ValueError as e:
        raise PreconditionError(f"Cannot parse host certificate from {source}: {e}")

    common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    certname = str(common_names[0].value) if common_names else source

    extensions: Dict[str, str] = {}
    for ext in cert.extensions:
        oid = ext.oid.dotted_string
        if not oid.startswith(PUPPET_OID_ARC):
            continue
        if isinstance(ext.value, x509.UnrecognizedExtension):
            extensions[SHORT_NAMES.get(oid, oid)] = decode_der_string(ext.value.value)

    return NodeIdentity(
        certname=certname,
        role=lookup_role(extensions),
        availability_group=extensions.get(AVAILABILITY_GROUP_OID),
        extensions=extensions,
    )


def lookup_role(extensions: Dict[str, str], keys: Sequence[str] = ROLE_KEYS) -> Optional[str]:
    """Return the first role value present under the accepted keys."""
    for key in keys:
        value = extensions.get(key)
        if value:
            return value
    return None


def role_class(identity: NodeIdentity) -> Optional[str]:
    """Normalise a raw role value to 'server', 'compiler' or 'database'."""
    if identity.role is None:
        return None
    return ROLE_VALUES.get(identity.role)


def needs_auth_role(identity: NodeIdentity) -> bool:
    """Compilers provisioned by older tooling lack pp_auth_role."""
    return PP_AUTH_ROLE not in identity.extensions


def partition_compilers(
    compilers: Iterable[Node],
    identities: Dict[Node, NodeIdentity],
    primary: Node,
    replica: Optional[Node] = None,
) -> Tuple[List[Node], List[Node]]:
    """
    Split compilers into the primary's and the replica's availability groups.

    A compiler joins the group whose anchor carries the same availability
    group value. Compilers matching neither anchor are left out of both.

    Returns:
        Tuple of (group A compilers, group B compilers)
    """
    group_a = identities[primary].availability_group
    group_b = identities[replica].availability_group if replica else None

    compilers_a: List[Node] = []
    compilers_b: List[Node] = []
    for node in compilers:
        group = identities[node].availability_group
        if group == group_a:
            compilers_a.append(node)
        elif group_b is not None and group == group_b:
            compilers_b.append(node)
        else:
            logger.warning(
                f"Compiler {identities[node].certname} is in availability group "
                f"'{group}', which matches neither the primary nor the replica; "
                "it will not be upgraded"
            )
    return compilers_a, compilers_b


class RoleResolver:
    """Reads trusted identity data from every node."""

    def __init__(self, executor):
        self.executor = executor

    def read_identity(self, node: Node) -> NodeIdentity:
        result = self.executor.run(node, HOSTCERT_COMMAND, timeout=60)
        if not result.ok:
            raise PreconditionError(
                f"Cannot read host certificate on {node.name} "
                f"(exit {result.exit_code}): {result.stderr.strip()}"
            )
        return parse_certificate(result.stdout, source=node.name)

    def resolve(self, nodes: Iterable[Node]) -> Dict[Node, NodeIdentity]:
        """
        Resolve the trusted identity of every node.

        Raises:
            PreconditionError: If any certificate cannot be read
            MissingTrustedFactsError: If any node lacks a role or
                availability group extension
        """
        nodes = list(nodes)
        identities = dict(zip(nodes, self.executor.for_each(nodes, self.read_identity)))

        missing = [
            identity.certname
            for identity in identities.values()
            if identity.role is None or identity.availability_group is None
        ]
        if missing:
            raise MissingTrustedFactsError(missing)

        for node, identity in identities.items():
            logger.info(
                f"{node.name}: certname={identity.certname} role={identity.role} "
                f"group={identity.availability_group}"
            )
        return identities
