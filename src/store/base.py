"""ResourceStore protocol and its error types."""

from typing import Optional, Protocol, runtime_checkable

from resources import Resource, ResourceKind


class StoreError(Exception):
    """Control plane call failed.

    Attributes:
        status: HTTP status code when known
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AlreadyExistsError(StoreError):
    """Create conflicted with an existing object of the same name."""

    def __init__(self, message: str):
        super().__init__(message, status=409)


class NotFoundError(StoreError):
    """Object does not exist."""

    def __init__(self, message: str):
        super().__init__(message, status=404)


@runtime_checkable
class ResourceStore(Protocol):
    """CRUD access to cluster objects of every supported kind.

    Namespace is ignored for cluster-scoped kinds. Every call may raise
    StoreError; create raises AlreadyExistsError on a name conflict and
    get/update/delete raise NotFoundError when the object is absent.
    """

    def create(self, resource: Resource) -> Resource:
        ...

    def get(self, kind: ResourceKind, name: str, namespace: str = '') -> Resource:
        ...

    def update(self, resource: Resource) -> Resource:
        ...

    def delete(self, kind: ResourceKind, name: str, namespace: str = '') -> None:
        ...

    def list_nodes(self) -> list[dict]:
        ...

    def get_node(self, name: str) -> dict:
        ...

    def set_node_schedulable(self, name: str, schedulable: bool) -> None:
        ...

    def list(self, kind: ResourceKind, namespace: str = '',
             label_selector: str = '', field_selector: str = '') -> list[Resource]:
        ...
