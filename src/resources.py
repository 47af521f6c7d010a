"""Resource descriptors and the kind table.

A Resource pairs one ResourceKind with its manifest dict. The kind decides
the phase it is created in, how it is validated and how it is destroyed.
Modules that dispatch on kind register a table keyed by ResourceKind and
call check_dispatch_table() at import time, so a kind added here without a
matching branch fails loudly on first import.
"""

import copy
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional

from kubernetes.utils import parse_quantity

from errors import UnsupportedResourceKind

logger = logging.getLogger(__name__)

NAMESPACE_PLACEHOLDER = '{{NAMESPACE}}'

STORK_API = 'stork.libopenstorage.org/v1alpha1'
AUTOPILOT_API = 'autopilot.libopenstorage.org/v1alpha1'
SNAPSHOT_API = 'volumesnapshot.external-storage.k8s.io/v1'


class Phase(Enum):
    """Materialization phases, in creation order."""
    NAMESPACE = 1
    MIGRATION = 2
    VOLUME_SNAPSHOT_RESTORE = 3
    STORAGE = 4
    CORE = 5
    BACKUP = 6


PHASE_ORDER = sorted(Phase, key=lambda p: p.value)


class ResourceKind(Enum):
    NAMESPACE = 'Namespace'
    CLUSTER_PAIR = 'ClusterPair'
    MIGRATION = 'Migration'
    MIGRATION_SCHEDULE = 'MigrationSchedule'
    SCHEDULE_POLICY = 'SchedulePolicy'
    VOLUME_SNAPSHOT_RESTORE = 'VolumeSnapshotRestore'
    STORAGE_CLASS = 'StorageClass'
    PVC = 'PersistentVolumeClaim'
    VOLUME_SNAPSHOT = 'VolumeSnapshot'
    GROUP_VOLUME_SNAPSHOT = 'GroupVolumeSnapshot'
    DEPLOYMENT = 'Deployment'
    STATEFUL_SET = 'StatefulSet'
    DAEMON_SET = 'DaemonSet'
    SERVICE = 'Service'
    SECRET = 'Secret'
    RULE = 'Rule'
    POD = 'Pod'
    CONFIG_MAP = 'ConfigMap'
    AUTOPILOT_RULE = 'AutopilotRule'
    BACKUP_LOCATION = 'BackupLocation'
    APPLICATION_BACKUP = 'ApplicationBackup'
    APPLICATION_RESTORE = 'ApplicationRestore'
    APPLICATION_CLONE = 'ApplicationClone'

    @classmethod
    def from_name(cls, name: str) -> 'ResourceKind':
        """Look up a kind by its manifest 'kind' string.

        Raises:
            ValueError: If the kind is not supported
        """
        return cls(name)


@dataclass(frozen=True)
class KindInfo:
    """Static facts about a kind: default apiVersion, scope and phase."""
    api_version: str
    phase: Phase
    namespaced: bool = True


KIND_INFO: dict[ResourceKind, KindInfo] = {
    ResourceKind.NAMESPACE: KindInfo('v1', Phase.NAMESPACE, namespaced=False),
    ResourceKind.CLUSTER_PAIR: KindInfo(STORK_API, Phase.MIGRATION),
    ResourceKind.MIGRATION: KindInfo(STORK_API, Phase.MIGRATION),
    ResourceKind.MIGRATION_SCHEDULE: KindInfo(STORK_API, Phase.MIGRATION),
    ResourceKind.SCHEDULE_POLICY: KindInfo(STORK_API, Phase.MIGRATION, namespaced=False),
    ResourceKind.VOLUME_SNAPSHOT_RESTORE: KindInfo(STORK_API, Phase.VOLUME_SNAPSHOT_RESTORE),
    ResourceKind.STORAGE_CLASS: KindInfo('storage.k8s.io/v1', Phase.STORAGE, namespaced=False),
    ResourceKind.PVC: KindInfo('v1', Phase.STORAGE),
    ResourceKind.VOLUME_SNAPSHOT: KindInfo(SNAPSHOT_API, Phase.STORAGE),
    ResourceKind.GROUP_VOLUME_SNAPSHOT: KindInfo(STORK_API, Phase.STORAGE),
    ResourceKind.DEPLOYMENT: KindInfo('apps/v1', Phase.CORE),
    ResourceKind.STATEFUL_SET: KindInfo('apps/v1', Phase.CORE),
    ResourceKind.DAEMON_SET: KindInfo('apps/v1', Phase.CORE),
    ResourceKind.SERVICE: KindInfo('v1', Phase.CORE),
    ResourceKind.SECRET: KindInfo('v1', Phase.CORE),
    ResourceKind.RULE: KindInfo(STORK_API, Phase.CORE),
    ResourceKind.POD: KindInfo('v1', Phase.CORE),
    ResourceKind.CONFIG_MAP: KindInfo('v1', Phase.CORE),
    ResourceKind.AUTOPILOT_RULE: KindInfo(AUTOPILOT_API, Phase.CORE, namespaced=False),
    ResourceKind.BACKUP_LOCATION: KindInfo(STORK_API, Phase.BACKUP),
    ResourceKind.APPLICATION_BACKUP: KindInfo(STORK_API, Phase.BACKUP),
    ResourceKind.APPLICATION_RESTORE: KindInfo(STORK_API, Phase.BACKUP),
    ResourceKind.APPLICATION_CLONE: KindInfo(STORK_API, Phase.BACKUP),
}

WORKLOAD_KINDS = frozenset({
    ResourceKind.DEPLOYMENT,
    ResourceKind.STATEFUL_SET,
    ResourceKind.DAEMON_SET,
})


def check_dispatch_table(name: str, table: dict, kinds: Optional[Iterable[ResourceKind]] = None) -> None:
    """Fail if a per-kind dispatch table does not cover every kind.

    Args:
        name: Table name for the error message
        table: Mapping keyed by ResourceKind
        kinds: Kinds the table must cover (default: all)

    Raises:
        RuntimeError: Listing the kinds with no entry
    """
    required = set(ResourceKind if kinds is None else kinds)
    missing = sorted(k.value for k in required - set(table))
    if missing:
        raise RuntimeError(f"{name} has no entry for: {', '.join(missing)}")


check_dispatch_table('KIND_INFO', KIND_INFO)


@dataclass
class Resource:
    """One cluster object: its kind plus the manifest body.

    Live resources (returned by a store) carry metadata.uid and
    metadata.resourceVersion.
    """
    kind: ResourceKind
    manifest: dict

    @classmethod
    def from_manifest(cls, doc: dict, app: str = '') -> 'Resource':
        """Build a descriptor from a parsed manifest.

        Raises:
            UnsupportedResourceKind: On a missing or unknown kind
        """
        if not isinstance(doc, dict):
            raise UnsupportedResourceKind(app, f"manifest is not a mapping: {type(doc).__name__}")
        kind_name = doc.get('kind')
        try:
            kind = ResourceKind.from_name(kind_name)
        except ValueError:
            raise UnsupportedResourceKind(app, f"unsupported kind {kind_name!r}") from None
        manifest = copy.deepcopy(doc)
        manifest.setdefault('apiVersion', KIND_INFO[kind].api_version)
        manifest.setdefault('metadata', {})
        return cls(kind=kind, manifest=manifest)

    @classmethod
    def build(cls, kind: ResourceKind, name: str, namespace: str = '', **body: Any) -> 'Resource':
        """Build a descriptor from parts."""
        metadata: dict[str, Any] = {'name': name}
        if namespace and KIND_INFO[kind].namespaced:
            metadata['namespace'] = namespace
        manifest = {'apiVersion': KIND_INFO[kind].api_version, 'kind': kind.value, 'metadata': metadata}
        manifest.update(body)
        return cls(kind=kind, manifest=manifest)

    @property
    def info(self) -> KindInfo:
        return KIND_INFO[self.kind]

    @property
    def phase(self) -> Phase:
        return self.info.phase

    @property
    def api_version(self) -> str:
        return self.manifest.get('apiVersion') or self.info.api_version

    @property
    def metadata(self) -> dict:
        return self.manifest.setdefault('metadata', {})

    @property
    def name(self) -> str:
        return self.metadata.get('name', '')

    @property
    def namespace(self) -> str:
        return self.metadata.get('namespace', '')

    @namespace.setter
    def namespace(self, value: str) -> None:
        if self.info.namespaced:
            self.metadata['namespace'] = value

    @property
    def uid(self) -> str:
        return self.metadata.get('uid', '')

    @property
    def resource_version(self) -> str:
        return self.metadata.get('resourceVersion', '')

    @property
    def labels(self) -> dict:
        return self.metadata.get('labels') or {}

    @property
    def annotations(self) -> dict:
        return self.metadata.get('annotations') or {}

    @property
    def spec(self) -> dict:
        return self.manifest.get('spec') or {}

    @property
    def status(self) -> dict:
        return self.manifest.get('status') or {}

    @property
    def ref(self) -> str:
        """Human-readable 'Kind ns/name' reference for logs and errors."""
        if self.namespace:
            return f"{self.kind.value} {self.namespace}/{self.name}"
        return f"{self.kind.value} {self.name}"

    def copy(self) -> 'Resource':
        return Resource(kind=self.kind, manifest=copy.deepcopy(self.manifest))

    def to_dict(self) -> dict:
        return copy.deepcopy(self.manifest)


def substitute_namespace(value: str, namespace: str) -> str:
    """Replace the namespace placeholder in a name or annotation value."""
    return value.replace(NAMESPACE_PLACEHOLDER, namespace)


GI = 1024 ** 3
_BINARY_SUFFIXES = [('Ei', 1024 ** 6), ('Pi', 1024 ** 5), ('Ti', 1024 ** 4),
                    ('Gi', GI), ('Mi', 1024 ** 2), ('Ki', 1024)]


def quantity_to_bytes(quantity: str) -> int:
    """Parse a Kubernetes quantity string ("2Gi", "500M") into bytes."""
    value: Decimal = parse_quantity(quantity)
    return int(value)


def bytes_to_quantity(size: int) -> str:
    """Format bytes as the largest exact binary-suffixed quantity."""
    for suffix, factor in _BINARY_SUFFIXES:
        if size and size % factor == 0:
            return f"{size // factor}{suffix}"
    return str(size)
