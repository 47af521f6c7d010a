"""Teardown and volume-directory leak detection.

destroy() deletes a context's resources grouped by phase (core, volume
snapshot restores, migration, backup). Storage objects are left for
delete_volumes() and the namespace is kept. When a leak check is requested
the pods backing each workload are captured before deletion; after
deletion every worker node is polled until no volume directory remains
for any of those pods.
"""

import logging
from typing import Callable

from common import RetryTimeoutError, do_retry_with_timeout
from config import DriverConfig
from errors import DestroyFailure, DriverError
from lifecycle.context import Context, DestroyOptions, Stage
from lifecycle.validator import label_selector
from nodes import NodeCommandError, NodeRegistry
from resources import WORKLOAD_KINDS, Phase, Resource, ResourceKind, check_dispatch_table
from store import NotFoundError, StoreError

logger = logging.getLogger(__name__)

DESTROY_PHASES = (Phase.CORE, Phase.VOLUME_SNAPSHOT_RESTORE, Phase.MIGRATION, Phase.BACKUP)

# Kinds whose absence destroy waits for
WAIT_FOR_ABSENCE = frozenset({
    ResourceKind.DEPLOYMENT,
    ResourceKind.STATEFUL_SET,
    ResourceKind.DAEMON_SET,
    ResourceKind.SERVICE,
    ResourceKind.POD,
})

TERMINATED_POD_PHASES = ('Succeeded', 'Failed')

# What destroy() does with each kind
DELETE = 'delete'
DELETE_WITH_PODS = 'delete_with_pods'
DEFER_TO_VOLUMES = 'defer_to_volumes'
KEEP = 'keep'

DESTROY_ACTIONS: dict[ResourceKind, str] = {
    ResourceKind.NAMESPACE: KEEP,
    ResourceKind.CLUSTER_PAIR: DELETE,
    ResourceKind.MIGRATION: DELETE,
    ResourceKind.MIGRATION_SCHEDULE: DELETE,
    ResourceKind.SCHEDULE_POLICY: DELETE,
    ResourceKind.VOLUME_SNAPSHOT_RESTORE: DELETE,
    ResourceKind.STORAGE_CLASS: DEFER_TO_VOLUMES,
    ResourceKind.PVC: DEFER_TO_VOLUMES,
    ResourceKind.VOLUME_SNAPSHOT: DEFER_TO_VOLUMES,
    ResourceKind.GROUP_VOLUME_SNAPSHOT: DEFER_TO_VOLUMES,
    ResourceKind.DEPLOYMENT: DELETE_WITH_PODS,
    ResourceKind.STATEFUL_SET: DELETE_WITH_PODS,
    ResourceKind.DAEMON_SET: DELETE_WITH_PODS,
    ResourceKind.SERVICE: DELETE,
    ResourceKind.SECRET: DELETE,
    ResourceKind.RULE: DELETE,
    ResourceKind.POD: DELETE_WITH_PODS,
    ResourceKind.CONFIG_MAP: DELETE,
    ResourceKind.AUTOPILOT_RULE: DELETE,
    ResourceKind.BACKUP_LOCATION: DELETE,
    ResourceKind.APPLICATION_BACKUP: DELETE,
    ResourceKind.APPLICATION_RESTORE: DELETE,
    ResourceKind.APPLICATION_CLONE: DELETE,
}

check_dispatch_table('DESTROY_ACTIONS', DESTROY_ACTIONS)


def volume_dir(pods_root: str, pod_uid: str) -> str:
    return f"{pods_root.rstrip('/')}/{pod_uid}/volumes"


class Destroyer:
    """Deletes context resources and checks for leaked volume state.

    Attributes:
        store: ResourceStore
        config: Driver configuration
        registry: Node registry consulted for worker nodes
        node_driver: Runs find on nodes for the leak check
    """

    def __init__(self, store, config: DriverConfig, registry: NodeRegistry, node_driver=None) -> None:
        self.store = store
        self.config = config
        self.registry = registry
        self.node_driver = node_driver

    def _retry(self, ctx: Context, op: Callable, timeout: float, what: str):
        try:
            return do_retry_with_timeout(op, timeout, self.config.retry_interval)
        except RetryTimeoutError as e:
            cause = e.last_error.cause if isinstance(e.last_error, DriverError) else 'still present'
            raise DestroyFailure(ctx.id, f"{what}: {cause} (after {timeout}s)") from e

    def pods_for(self, resource: Resource) -> list[Resource]:
        """Pods currently backing a workload, or the pod itself."""
        if resource.kind == ResourceKind.POD:
            try:
                return [self.store.get(ResourceKind.POD, resource.name, resource.namespace)]
            except NotFoundError:
                return []
        match_labels = (resource.spec.get('selector') or {}).get('matchLabels') or {}
        if not match_labels:
            return []
        return self.store.list(ResourceKind.POD, resource.namespace,
                               label_selector=label_selector(match_labels))

    def pods_for_app(self, ctx: Context) -> list[Resource]:
        pods: list[Resource] = []
        for resource in ctx.resources:
            if resource.kind in WORKLOAD_KINDS or resource.kind == ResourceKind.POD:
                pods.extend(self.pods_for(resource))
        return pods

    def delete_resource(self, ctx: Context, resource: Resource) -> None:
        """Delete one resource, retrying store errors; absence is success.

        Raises:
            DestroyFailure: If deletion keeps failing past the destroy timeout
        """
        def op():
            try:
                self.store.delete(resource.kind, resource.name, resource.namespace)
            except NotFoundError:
                return None, False, None
            except StoreError as e:
                return None, True, DestroyFailure(ctx.id, f"Failed to destroy {resource.ref}: {e}")
            return None, False, None

        self._retry(ctx, op, self.config.timeouts.destroy, f"Failed to destroy {resource.ref}")
        logger.info(f"[{ctx.app.key}] Destroyed {resource.ref}")

    def destroy(self, ctx: Context, opts: DestroyOptions) -> None:
        """Delete ctx's resources, then optionally wait for absence and leak-check.

        Raises:
            DestroyFailure: On a deletion failure (unless leak cleanup is
                requested), a resource that outlives the destroy timeout, or
                a leaked volume directory
        """
        leak_check = opts.wait_for_resource_leak_cleanup
        with ctx.transition(Stage.DESTROYING):
            captured: list[Resource] = []
            for phase in DESTROY_PHASES:
                for resource in ctx.resources:
                    if resource.phase != phase or DESTROY_ACTIONS[resource.kind] in (DEFER_TO_VOLUMES, KEEP):
                        continue
                    try:
                        if leak_check and DESTROY_ACTIONS[resource.kind] == DELETE_WITH_PODS:
                            captured.extend(self.pods_for(resource))
                        self.delete_resource(ctx, resource)
                    except (DestroyFailure, StoreError) as e:
                        if not leak_check:
                            if isinstance(e, DestroyFailure):
                                raise
                            raise DestroyFailure(ctx.id, f"Failed to destroy {resource.ref}: {e}") from e
                        logger.warning(f"[{ctx.id}] Continuing to leak check despite: {e}")

            if leak_check or opts.wait_for_destroy:
                self.wait_for_destroy(ctx, self.config.timeouts.destroy)

        if leak_check:
            with ctx.transition(Stage.LEAK_CHECKING, done=Stage.TERMINATED):
                self.wait_for_cleanup(ctx, captured)
        else:
            ctx.move_to(Stage.TERMINATED)
        logger.info(f"[{ctx.id}] Destroyed")

    def _wait_absent(self, ctx: Context, resource: Resource, timeout: float) -> None:
        def op():
            try:
                live = self.store.get(resource.kind, resource.name, resource.namespace)
            except NotFoundError:
                return None, False, None
            except StoreError as e:
                return None, True, DestroyFailure(ctx.id, f"{resource.ref}: {e}")
            if resource.kind == ResourceKind.POD and live.status.get('phase') in TERMINATED_POD_PHASES:
                return None, False, None
            return None, True, DestroyFailure(ctx.id, f"{resource.ref} still present")

        self._retry(ctx, op, timeout, f"{resource.ref} not terminated")

        if resource.kind in WORKLOAD_KINDS:
            def pods_gone():
                try:
                    remaining = self.pods_for(resource)
                except StoreError as e:
                    return None, True, DestroyFailure(ctx.id, f"{resource.ref}: {e}")
                if remaining:
                    return None, True, DestroyFailure(ctx.id, f"{resource.ref}: {len(remaining)} pod(s) remain")
                return None, False, None

            self._retry(ctx, pods_gone, timeout, f"{resource.ref} pods not terminated")

    def wait_for_destroy(self, ctx: Context, timeout: float) -> None:
        """Wait until ctx's workloads, services and pods are gone.

        Raises:
            DestroyFailure: Naming the first object still present at timeout
        """
        for resource in ctx.resources:
            if resource.kind in WAIT_FOR_ABSENCE:
                self._wait_absent(ctx, resource, timeout)
                logger.info(f"[{ctx.app.key}] Validated destroy of {resource.ref}")

    def wait_for_cleanup(self, ctx: Context, pods: list[Resource]) -> None:
        """Wait until no worker node holds a volume directory for any of pods.

        Raises:
            DestroyFailure: Naming the pod and node whose directory remains
        """
        if self.node_driver is None:
            raise DestroyFailure(ctx.id, "Leak check requested but no node driver is configured")

        timeout = self.config.timeouts.vol_dir_cleanup
        for pod in pods:
            path = volume_dir(self.config.pods_root_dir, pod.uid)
            for node in self.registry.get_worker_nodes():
                def op(node=node, path=path, pod=pod):
                    try:
                        found = self.node_driver.find_files(node, path, self.config.timeouts.find_files)
                    except NodeCommandError as e:
                        return None, True, DestroyFailure(ctx.id, f"Failed to check {path} on {node.name}: {e}")
                    if found:
                        return None, True, DestroyFailure(
                            ctx.id, f"Volume directory {path} of pod {pod.ref} still present on node {node.name}")
                    return None, False, None

                self._retry(ctx, op, timeout, f"Leaked volume state for pod {pod.ref} on node {node.name}")
            logger.info(f"[{ctx.app.key}] No volume directories left for pod {pod.ref}")

    def delete_tasks(self, ctx: Context) -> list[Resource]:
        """Delete the pods backing ctx's workloads and wait until they are gone.

        Pods recreated by their controller (same name, new uid) count as gone.

        Returns:
            The deleted pods
        """
        pods = self.pods_for_app(ctx)
        for pod in pods:
            try:
                self.store.delete(ResourceKind.POD, pod.name, pod.namespace)
            except NotFoundError:
                continue
            except StoreError as e:
                raise DestroyFailure(ctx.id, f"Failed to delete {pod.ref}: {e}") from e
            logger.info(f"[{ctx.app.key}] Deleted {pod.ref}")

        timeout = self.config.timeouts.delete_tasks
        for pod in pods:
            def op(pod=pod):
                try:
                    live = self.store.get(ResourceKind.POD, pod.name, pod.namespace)
                except NotFoundError:
                    return None, False, None
                except StoreError as e:
                    return None, True, DestroyFailure(ctx.id, f"{pod.ref}: {e}")
                if live.uid != pod.uid:
                    return None, False, None
                return None, True, DestroyFailure(ctx.id, f"{pod.ref} still terminating")

            self._retry(ctx, op, timeout, f"Pod {pod.ref} not deleted")
        return pods
