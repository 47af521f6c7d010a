"""Cluster nodes: registry and node-level command driver.

NodeRegistry is an explicit object holding the last discovered node list.
It is refreshed from a ResourceStore on demand and never updated behind
the caller's back.
"""

import logging
import shlex
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from common import run_ssh

logger = logging.getLogger(__name__)

NODE_TYPE_MASTER = 'master'
NODE_TYPE_WORKER = 'worker'

MASTER_LABELS = (
    'node-role.kubernetes.io/master',
    'node-role.kubernetes.io/control-plane',
)
ZONE_LABELS = ('failure-domain.beta.kubernetes.io/zone', 'topology.kubernetes.io/zone')
REGION_LABELS = ('failure-domain.beta.kubernetes.io/region', 'topology.kubernetes.io/region')


class NodeCommandError(Exception):
    """A command run on a node failed."""


@dataclass
class Node:
    """A cluster node as seen by the driver.

    Attributes:
        name: Node object name
        type: 'master' or 'worker'
        addresses: InternalIP/ExternalIP addresses, internal first
        hostname: Hostname address, or the name
        zone: Failure-domain zone label
        region: Failure-domain region label
        labels: All node labels
        schedulable: False when cordoned
    """
    name: str
    type: str = NODE_TYPE_WORKER
    addresses: list = field(default_factory=list)
    hostname: str = ''
    zone: str = ''
    region: str = ''
    labels: dict = field(default_factory=dict)
    schedulable: bool = True

    @property
    def is_master(self) -> bool:
        return self.type == NODE_TYPE_MASTER

    @property
    def address(self) -> str:
        """Preferred address for remote commands."""
        if self.addresses:
            return self.addresses[0]
        return self.hostname or self.name

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'type': self.type,
            'addresses': list(self.addresses),
            'zone': self.zone,
            'region': self.region,
            'schedulable': self.schedulable,
        }


def _first_label(labels: dict, keys: tuple) -> str:
    for key in keys:
        if labels.get(key):
            return labels[key]
    return ''


def parse_node(raw: dict) -> Node:
    """Convert a Node object (as a dict) into a Node."""
    metadata = raw.get('metadata') or {}
    labels = metadata.get('labels') or {}
    status = raw.get('status') or {}
    spec = raw.get('spec') or {}

    internal, external, hostname = [], [], ''
    for addr in status.get('addresses') or []:
        addr_type = addr.get('type')
        if addr_type == 'InternalIP':
            internal.append(addr['address'])
        elif addr_type == 'ExternalIP':
            external.append(addr['address'])
        elif addr_type == 'Hostname':
            hostname = addr['address']

    is_master = any(key in labels for key in MASTER_LABELS)
    return Node(
        name=metadata.get('name', ''),
        type=NODE_TYPE_MASTER if is_master else NODE_TYPE_WORKER,
        addresses=internal + external,
        hostname=hostname,
        zone=_first_label(labels, ZONE_LABELS),
        region=_first_label(labels, REGION_LABELS),
        labels=dict(labels),
        schedulable=not spec.get('unschedulable', False),
    )


def is_node_ready(raw: dict) -> tuple[bool, str]:
    """Check a Node object's Ready condition.

    Returns:
        (ready, reason) tuple
    """
    for cond in (raw.get('status') or {}).get('conditions') or []:
        if cond.get('type') == 'Ready':
            if cond.get('status') == 'True':
                return True, 'Ready'
            return False, cond.get('message') or cond.get('reason') or 'NotReady'
    return False, 'no Ready condition reported'


class NodeRegistry:
    """Known cluster nodes, keyed by name, in discovery order."""

    def __init__(self, nodes: Optional[list[Node]] = None) -> None:
        self._nodes: dict[str, Node] = {}
        for node in nodes or []:
            self._nodes[node.name] = node

    def refresh(self, store) -> list[Node]:
        """Replace the registry contents with the store's current node list."""
        nodes = [parse_node(raw) for raw in store.list_nodes()]
        self._nodes = {node.name: node for node in nodes}
        logger.info(f"Node registry refreshed: {len(self._nodes)} node(s)")
        return nodes

    def add(self, node: Node) -> None:
        self._nodes[node.name] = node

    def get_nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def get_worker_nodes(self) -> list[Node]:
        return [n for n in self._nodes.values() if not n.is_master]

    def get_master_nodes(self) -> list[Node]:
        return [n for n in self._nodes.values() if n.is_master]

    def get_node(self, name: str) -> Node:
        """Get a node by name.

        Raises:
            KeyError: If the node is unknown
        """
        return self._nodes[name]

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)


@runtime_checkable
class NodeDriver(Protocol):
    """Runs node-level commands."""

    def find_files(self, node: Node, path: str, timeout: float) -> list[str]:
        ...

    def systemctl(self, node: Node, service: str, action: str, timeout: float) -> None:
        ...


class SSHNodeDriver:
    """NodeDriver that runs commands over SSH."""

    def __init__(self, user: str = 'root', port: int = 22, identity_file: Optional[str] = None) -> None:
        self.user = user
        self.port = port
        self.identity_file = identity_file

    def _run(self, node: Node, command: str, timeout: float) -> str:
        sudo = '' if self.user == 'root' else 'sudo '
        rc, out, err = run_ssh(node.address, f'{sudo}{command}', user=self.user, timeout=timeout,
                               port=self.port, identity_file=self.identity_file)
        if rc != 0:
            raise NodeCommandError(f"[{node.name}] '{command}' failed (rc={rc}): {err.strip()}")
        return out

    def find_files(self, node: Node, path: str, timeout: float) -> list[str]:
        """List paths matching path on the node (empty when absent)."""
        # find exits non-zero when the path is missing, which is the answer we want
        cmd = f"find {shlex.quote(path)} -maxdepth 0 2>/dev/null || true"
        out = self._run(node, cmd, timeout)
        return [line for line in out.splitlines() if line.strip()]

    def systemctl(self, node: Node, service: str, action: str, timeout: float) -> None:
        logger.info(f"[{node.name}] systemctl {action} {service}")
        self._run(node, f"systemctl {action} {shlex.quote(service)}", timeout)
