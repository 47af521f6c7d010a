"""ResourceStore backed by the Kubernetes dynamic client.

Every supported kind, built-in or custom resource, goes through
DynamicClient, which discovers the REST mapping from apiVersion + kind.
"""

import logging
from typing import Optional

from kubernetes import client, config, dynamic
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from resources import KIND_INFO, Resource, ResourceKind
from store.base import AlreadyExistsError, NotFoundError, StoreError

logger = logging.getLogger(__name__)

MERGE_PATCH = 'application/merge-patch+json'


def load_api_client(context: Optional[str] = None) -> client.ApiClient:
    """Load in-cluster config, falling back to kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config(context=context)
    return client.ApiClient()


def _translate(e: client.ApiException, what: str) -> StoreError:
    if e.status == 409:
        return AlreadyExistsError(f"{what} already exists")
    if e.status == 404:
        return NotFoundError(f"{what} not found")
    return StoreError(f"{what}: {e.status} {e.reason}", status=e.status)


def _ref(kind: ResourceKind, name: str, namespace: str) -> str:
    return f"{kind.value} {namespace}/{name}" if namespace else f"{kind.value} {name}"


class KubernetesStore:
    """Live cluster store.

    Attributes:
        api_client: Underlying kubernetes ApiClient
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None,
                 context: Optional[str] = None) -> None:
        self.api_client = api_client or load_api_client(context)
        self._dyn = dynamic.DynamicClient(self.api_client)

    def _api(self, kind: ResourceKind, api_version: str = ''):
        version = api_version or KIND_INFO[kind].api_version
        try:
            return self._dyn.resources.get(api_version=version, kind=kind.value)
        except ResourceNotFoundError as e:
            raise StoreError(f"{kind.value} ({version}) is not served by this cluster: {e}") from e

    @staticmethod
    def _ns(kind: ResourceKind, namespace: str) -> Optional[str]:
        return namespace if namespace and KIND_INFO[kind].namespaced else None

    def create(self, resource: Resource) -> Resource:
        api = self._api(resource.kind, resource.api_version)
        try:
            obj = api.create(body=resource.manifest, namespace=self._ns(resource.kind, resource.namespace))
        except client.ApiException as e:
            raise _translate(e, resource.ref) from e
        return Resource(kind=resource.kind, manifest=obj.to_dict())

    def get(self, kind: ResourceKind, name: str, namespace: str = '') -> Resource:
        api = self._api(kind)
        try:
            obj = api.get(name=name, namespace=self._ns(kind, namespace))
        except client.ApiException as e:
            raise _translate(e, _ref(kind, name, namespace)) from e
        return Resource(kind=kind, manifest=obj.to_dict())

    def update(self, resource: Resource) -> Resource:
        api = self._api(resource.kind, resource.api_version)
        try:
            obj = api.replace(body=resource.manifest, namespace=self._ns(resource.kind, resource.namespace))
        except client.ApiException as e:
            raise _translate(e, resource.ref) from e
        return Resource(kind=resource.kind, manifest=obj.to_dict())

    def delete(self, kind: ResourceKind, name: str, namespace: str = '') -> None:
        api = self._api(kind)
        try:
            api.delete(name=name, namespace=self._ns(kind, namespace))
        except client.ApiException as e:
            raise _translate(e, _ref(kind, name, namespace)) from e

    def list_nodes(self) -> list[dict]:
        api = self._dyn.resources.get(api_version='v1', kind='Node')
        try:
            return api.get().to_dict().get('items', [])
        except client.ApiException as e:
            raise _translate(e, 'Node list') from e

    def get_node(self, name: str) -> dict:
        api = self._dyn.resources.get(api_version='v1', kind='Node')
        try:
            return api.get(name=name).to_dict()
        except client.ApiException as e:
            raise _translate(e, f"Node {name}") from e

    def set_node_schedulable(self, name: str, schedulable: bool) -> None:
        api = self._dyn.resources.get(api_version='v1', kind='Node')
        body = {'spec': {'unschedulable': None if schedulable else True}}
        try:
            api.patch(name=name, body=body, content_type=MERGE_PATCH)
        except client.ApiException as e:
            raise _translate(e, f"Node {name}") from e
        logger.info(f"Node {name} {'uncordoned' if schedulable else 'cordoned'}")

    def list(self, kind: ResourceKind, namespace: str = '',
             label_selector: str = '', field_selector: str = '') -> list[Resource]:
        api = self._api(kind)
        kwargs = {}
        if label_selector:
            kwargs['label_selector'] = label_selector
        if field_selector:
            kwargs['field_selector'] = field_selector
        try:
            result = api.get(namespace=self._ns(kind, namespace), **kwargs).to_dict()
        except client.ApiException as e:
            raise _translate(e, f"{kind.value} list") from e

        resources = []
        for item in result.get('items', []):
            # List items come back without type meta
            item.setdefault('kind', kind.value)
            item.setdefault('apiVersion', result.get('apiVersion', ''))
            resources.append(Resource(kind=kind, manifest=item))
        return resources
