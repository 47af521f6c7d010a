"""Shared pytest fixtures for kube-app-driver tests.

FakeStore is an in-memory ResourceStore: it assigns uids and resource
versions, raises AlreadyExistsError/NotFoundError like the API server, and
evaluates equality label selectors and dotted field selectors. Tests drive
"controllers" by registering a callback per kind that mutates an object
after every create or update.
"""

import copy
import itertools
import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import DriverConfig, Timeouts  # noqa: E402
from nodes import NodeRegistry, parse_node  # noqa: E402
from resources import KIND_INFO, Resource, ResourceKind  # noqa: E402
from store import AlreadyExistsError, NotFoundError  # noqa: E402


def _parse_selector(selector: str) -> dict:
    result = {}
    for term in filter(None, (t.strip() for t in selector.split(','))):
        key, value = term.split('=', 1)
        result[key] = value
    return result


def _dotted(manifest: dict, path: str):
    value = manifest
    for part in path.split('.'):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class FakeStore:
    """In-memory ResourceStore."""

    def __init__(self):
        self.objects: dict[tuple, dict] = {}
        self.nodes: dict[str, dict] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.controllers: dict = {}
        # (operation, kind) -> exception raised on every matching call
        self.failures: dict = {}
        # Kinds that stay visible after delete (stuck finalizers)
        self.sticky: set = set()
        self._uids = itertools.count(1)
        self._lock = threading.Lock()

    @staticmethod
    def _key(kind: ResourceKind, name: str, namespace: str) -> tuple:
        return (kind, namespace if KIND_INFO[kind].namespaced else '', name)

    def _check_failure(self, op: str, kind: ResourceKind) -> None:
        err = self.failures.get((op, kind))
        if err is not None:
            raise err

    def _run_controller(self, kind: ResourceKind, manifest: dict) -> None:
        controller = self.controllers.get(kind)
        if controller is not None:
            controller(self, manifest)

    def create(self, resource: Resource) -> Resource:
        self._check_failure('create', resource.kind)
        with self._lock:
            key = self._key(resource.kind, resource.name, resource.namespace)
            if key in self.objects:
                raise AlreadyExistsError(f"{resource.ref} already exists")
            manifest = copy.deepcopy(resource.manifest)
            manifest.setdefault('metadata', {})
            manifest['metadata']['uid'] = f"uid-{next(self._uids)}"
            manifest['metadata']['resourceVersion'] = '1'
            self.objects[key] = manifest
            self.created.append(resource.ref)
        self._run_controller(resource.kind, manifest)
        return Resource(kind=resource.kind, manifest=copy.deepcopy(manifest))

    def get(self, kind: ResourceKind, name: str, namespace: str = '') -> Resource:
        self._check_failure('get', kind)
        with self._lock:
            key = self._key(kind, name, namespace)
            if key not in self.objects:
                raise NotFoundError(f"{kind.value} {namespace}/{name} not found")
            return Resource(kind=kind, manifest=copy.deepcopy(self.objects[key]))

    def update(self, resource: Resource) -> Resource:
        self._check_failure('update', resource.kind)
        with self._lock:
            key = self._key(resource.kind, resource.name, resource.namespace)
            if key not in self.objects:
                raise NotFoundError(f"{resource.ref} not found")
            old = self.objects[key]
            manifest = copy.deepcopy(resource.manifest)
            manifest['metadata']['uid'] = old['metadata']['uid']
            manifest['metadata']['resourceVersion'] = str(int(old['metadata']['resourceVersion']) + 1)
            # Status is owned by the controller
            if 'status' in old:
                manifest['status'] = old['status']
            self.objects[key] = manifest
        self._run_controller(resource.kind, manifest)
        return Resource(kind=resource.kind, manifest=copy.deepcopy(manifest))

    def delete(self, kind: ResourceKind, name: str, namespace: str = '') -> None:
        self._check_failure('delete', kind)
        with self._lock:
            key = self._key(kind, name, namespace)
            if key not in self.objects:
                raise NotFoundError(f"{kind.value} {namespace}/{name} not found")
            self.deleted.append(f"{kind.value} {name}")
            if kind not in self.sticky:
                del self.objects[key]

    # -- nodes --

    def add_node(self, name: str, master: bool = False, ready: bool = True, address: str = '') -> dict:
        labels = {'kubernetes.io/hostname': name}
        if master:
            labels['node-role.kubernetes.io/control-plane'] = ''
        raw = {
            'metadata': {'name': name, 'labels': labels},
            'spec': {},
            'status': {
                'addresses': [{'type': 'InternalIP', 'address': address or f"10.0.0.{len(self.nodes) + 1}"},
                              {'type': 'Hostname', 'address': name}],
                'conditions': [{'type': 'Ready', 'status': 'True' if ready else 'False',
                                'reason': 'KubeletReady' if ready else 'KubeletNotReady'}],
            },
        }
        self.nodes[name] = raw
        return raw

    def list_nodes(self) -> list[dict]:
        return [copy.deepcopy(n) for n in self.nodes.values()]

    def get_node(self, name: str) -> dict:
        if name not in self.nodes:
            raise NotFoundError(f"Node {name} not found")
        return copy.deepcopy(self.nodes[name])

    def set_node_schedulable(self, name: str, schedulable: bool) -> None:
        if name not in self.nodes:
            raise NotFoundError(f"Node {name} not found")
        self.nodes[name]['spec']['unschedulable'] = not schedulable

    # -- helpers --

    def put(self, resource: Resource) -> Resource:
        """Insert an object without running controllers."""
        with self._lock:
            manifest = copy.deepcopy(resource.manifest)
            manifest['metadata'].setdefault('uid', f"uid-{next(self._uids)}")
            manifest['metadata'].setdefault('resourceVersion', '1')
            self.objects[self._key(resource.kind, resource.name, resource.namespace)] = manifest
        return Resource(kind=resource.kind, manifest=copy.deepcopy(manifest))

    def set_status(self, kind: ResourceKind, name: str, namespace: str, status: dict) -> None:
        with self._lock:
            self.objects[self._key(kind, name, namespace)]['status'] = status

    def add_pod(self, name: str, namespace: str, labels: dict, node: str = 'worker-1',
                phase: str = 'Running', ready: bool = True, claims: tuple = ()) -> Resource:
        pod = Resource.build(
            ResourceKind.POD, name, namespace,
            spec={
                'nodeName': node,
                'volumes': [{'name': c, 'persistentVolumeClaim': {'claimName': c}} for c in claims],
            },
            status={
                'phase': phase,
                'conditions': [{'type': 'Ready', 'status': 'True' if ready else 'False'}],
            },
        )
        pod.metadata['labels'] = dict(labels)
        return self.put(pod)

    def has(self, kind: ResourceKind, name: str, namespace: str = '') -> bool:
        return self._key(kind, name, namespace) in self.objects

    def list(self, kind: ResourceKind, namespace: str = '',
             label_selector: str = '', field_selector: str = '') -> list[Resource]:
        self._check_failure('list', kind)
        labels = _parse_selector(label_selector)
        field_terms = _parse_selector(field_selector)
        result = []
        with self._lock:
            for (k, ns, _), manifest in self.objects.items():
                if k != kind or (namespace and ns != namespace):
                    continue
                obj_labels = manifest.get('metadata', {}).get('labels') or {}
                if any(obj_labels.get(lk) != lv for lk, lv in labels.items()):
                    continue
                if any(str(_dotted(manifest, fk)) != fv for fk, fv in field_terms.items()):
                    continue
                result.append(Resource(kind=kind, manifest=copy.deepcopy(manifest)))
        return result


class FakeNodeDriver:
    """NodeDriver recording calls; files maps (node, path) -> entries."""

    def __init__(self):
        self.files: dict = {}
        self.calls: list = []
        self.error = None

    def find_files(self, node, path, timeout):
        self.calls.append(('find', node.name, path))
        if self.error is not None:
            raise self.error
        return list(self.files.get((node.name, path), []))

    def systemctl(self, node, service, action, timeout):
        self.calls.append(('systemctl', node.name, service, action))
        if self.error is not None:
            raise self.error


class FakeStorageDriver:
    def __init__(self, provisioner='kubernetes.io/portworx-volume'):
        self.provisioner = provisioner
        self.validated: list = []

    def get_storage_provisioner(self):
        return self.provisioner

    def validate_volume_snapshot_restore(self, volume_name, snapshot_data, time_start):
        self.validated.append(volume_name)


# -- controllers --

def bind_claims(store, manifest):
    """Bind a claim at its requested size."""
    size = manifest['spec']['resources']['requests']['storage']
    manifest['spec'].setdefault('volumeName', f"pv-{manifest['metadata']['uid']}")
    manifest['status'] = {'phase': 'Bound', 'capacity': {'storage': size}}


def run_deployment(store, manifest):
    """Report every replica ready and back the Deployment with running pods."""
    replicas = manifest['spec'].get('replicas', 1)
    manifest['status'] = {'readyReplicas': replicas, 'availableReplicas': replicas}
    labels = manifest['spec']['selector']['matchLabels']
    name, namespace = manifest['metadata']['name'], manifest['metadata']['namespace']
    existing = store.list(ResourceKind.POD, namespace, label_selector=','.join(f"{k}={v}" for k, v in labels.items()))
    claims = tuple(v['persistentVolumeClaim']['claimName']
                   for v in manifest['spec']['template']['spec'].get('volumes', [])
                   if 'persistentVolumeClaim' in v)
    for i in range(len(existing), replicas):
        store.add_pod(f"{name}-{i}", namespace, labels, node=f"worker-{i % 2 + 1}", claims=claims)


@pytest.fixture
def fast_config():
    """Config with sub-second timeouts for polling tests."""
    return DriverConfig(
        retry_interval=0.01,
        timeouts=Timeouts(
            object_create=0.2,
            destroy=0.2,
            vol_dir_cleanup=0.2,
            find_files=0.2,
            node_ready=0.2,
            statefulset_validate=0.2,
            delete_tasks=0.2,
            default=0.2,
        ),
    )


@pytest.fixture
def store():
    """FakeStore with one master and two workers."""
    s = FakeStore()
    s.add_node('master-1', master=True)
    s.add_node('worker-1')
    s.add_node('worker-2')
    return s


@pytest.fixture
def registry(store):
    reg = NodeRegistry()
    for raw in store.list_nodes():
        reg.add(parse_node(raw))
    return reg


@pytest.fixture
def node_driver():
    return FakeNodeDriver()


MYSQL_STORAGE = """\
kind: StorageClass
apiVersion: storage.k8s.io/v1
metadata:
  name: mysql-sc
provisioner: placeholder
parameters:
  repl: "2"
---
kind: PersistentVolumeClaim
apiVersion: v1
metadata:
  name: mysql-data
  labels:
    app: mysql
  annotations:
    kad.io/autopilot-enabled: "true"
spec:
  storageClassName: mysql-sc
  accessModes: [ReadWriteOnce]
  resources:
    requests:
      storage: 2Gi
"""

MYSQL_APP = """\
kind: Deployment
apiVersion: apps/v1
metadata:
  name: mysql
spec:
  replicas: 1
  selector:
    matchLabels:
      app: mysql
  template:
    metadata:
      labels:
        app: mysql
    spec:
      containers:
      - name: mysql
        image: mysql:8
      volumes:
      - name: data
        persistentVolumeClaim:
          claimName: mysql-data
---
kind: Service
apiVersion: v1
metadata:
  name: mysql
spec:
  selector:
    app: mysql
  ports:
  - port: 3306
"""


@pytest.fixture
def spec_dir(tmp_path):
    """Create a spec directory with a mysql app and a disabled nginx app."""
    specs = tmp_path / 'specs'
    (specs / 'mysql').mkdir(parents=True)
    (specs / 'mysql' / 'px-mysql-app.yaml').write_text(MYSQL_APP)
    (specs / 'mysql' / 'px-mysql-storage.yaml').write_text(MYSQL_STORAGE)

    (specs / 'nginx').mkdir()
    (specs / 'nginx' / 'nginx.yaml').write_text("""\
kind: ConfigMap
apiVersion: v1
metadata:
  name: nginx-conf
data:
  nginx.conf: "events {}"
""")
    (specs / 'nginx' / '.disabled').touch()
    return specs
