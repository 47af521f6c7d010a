"""Kubernetes application driver.

K8sDriver is the entry point for callers: it owns the template registry,
node registry and the lifecycle components, and exposes every operation
on application contexts and cluster nodes.
"""

import base64
import logging
from typing import Optional, Protocol, runtime_checkable

import yaml

from common import RetryTimeoutError, do_retry_with_timeout
from config import ConfigError, DriverConfig
from errors import (
    ConfigLookupFailure,
    DecommissionFailure,
    DriverError,
    NodeLookupFailure,
    NodeNotReady,
    NodeSchedulingFailure,
    ScaleFailure,
    ScheduleFailure,
)
from lifecycle.autopilot import RuleBinder
from lifecycle.context import Context, DestroyOptions, ScheduleOptions, Stage
from lifecycle.destroyer import Destroyer
from lifecycle.materializer import SECRET_CONFIG_MAP_NAMESPACE, SECRET_NAME_KEY, SECRET_NAMESPACE_KEY, Materializer
from lifecycle.sequencer import PhaseSequencer
from lifecycle.validator import Validator, pod_is_ready
from lifecycle.volumes import Snapshot, Volume, VolumeManager
from nodes import Node, NodeCommandError, NodeRegistry, is_node_ready
from resources import Resource, ResourceKind
from store import StoreError
from templates import TemplateRegistry

logger = logging.getLogger(__name__)

DEPLOYMENT_SUFFIX = '-dep'
STATEFULSET_SUFFIX = '-ss'
SCHEDULER_SERVICE = 'kubelet'
AUTH_TOKEN_KEY = 'auth-token'
PODS_PER_DECOMMISSION_STEP = 40
DIVIDER = '-' * 30

SCALE_SUFFIXES = {
    ResourceKind.DEPLOYMENT: DEPLOYMENT_SUFFIX,
    ResourceKind.STATEFUL_SET: STATEFULSET_SUFFIX,
}


@runtime_checkable
class StorageDriver(Protocol):
    """Storage system the apps run on."""

    def get_storage_provisioner(self) -> str:
        ...

    def validate_volume_snapshot_restore(self, volume_name: str, snapshot_data: Optional[dict],
                                         time_start: float) -> None:
        ...


class K8sDriver:
    """Schedules, validates and tears down apps on a Kubernetes cluster.

    Attributes:
        store: ResourceStore for every cluster call
        config: Driver configuration
        templates: App template registry
        registry: Cluster node registry
        node_driver: Runs node-level commands (leak check, kubelet control)
        storage_driver: Optional storage driver
    """

    def __init__(self, store, config: Optional[DriverConfig] = None,
                 templates: Optional[TemplateRegistry] = None,
                 registry: Optional[NodeRegistry] = None,
                 node_driver=None, storage_driver=None) -> None:
        self.store = store
        self.config = config or DriverConfig()
        self.templates = templates or TemplateRegistry(app_list=self.config.app_list)
        self.registry = registry or NodeRegistry()
        self.node_driver = node_driver
        self.storage_driver = storage_driver

        self.materializer = Materializer(store, self.config, RuleBinder(store), storage_driver)
        self.sequencer = PhaseSequencer(self.materializer, self.config)
        self.validator = Validator(store, self.config)
        self.destroyer = Destroyer(store, self.config, self.registry, node_driver)
        self.volumes = VolumeManager(store, self.config, storage_driver)

    # -- setup ----------------------------------------------------------------

    def init(self, spec_dir=None) -> None:
        """Load templates and discover nodes."""
        spec_dir = spec_dir or self.config.spec_dir
        if spec_dir:
            self.rescan_specs(spec_dir)
        self.refresh_node_registry()

    def rescan_specs(self, spec_dir=None) -> None:
        self.templates.rescan(spec_dir)

    def refresh_node_registry(self) -> list[Node]:
        try:
            return self.registry.refresh(self.store)
        except StoreError as e:
            raise NodeLookupFailure('-', f"Failed to list nodes: {e}") from e

    def is_node_ready(self, node_name: str) -> None:
        """Wait for a node's Ready condition.

        Raises:
            NodeNotReady: If the node is not Ready within the node-ready timeout
        """
        def op():
            try:
                raw = self.store.get_node(node_name)
            except StoreError as e:
                return None, True, NodeNotReady(node_name, str(e))
            ready, reason = is_node_ready(raw)
            if ready:
                return None, False, None
            return None, True, NodeNotReady(node_name, reason)

        timeout = self.config.timeouts.node_ready
        try:
            do_retry_with_timeout(op, timeout, self.config.retry_interval)
        except RetryTimeoutError as e:
            cause = e.last_error.cause if isinstance(e.last_error, DriverError) else 'not ready'
            raise NodeNotReady(node_name, f"{cause} (after {timeout}s)") from e
        logger.info(f"Node {node_name} is ready")

    # -- app lifecycle --------------------------------------------------------

    def schedule(self, instance_id: str, options: Optional[ScheduleOptions] = None) -> list[Context]:
        """Schedule one context per selected template.

        Raises:
            ScheduleFailure: On the first app that fails; earlier contexts
                stay scheduled
        """
        options = options or ScheduleOptions()
        if options.app_keys:
            try:
                apps = [self.templates.get(key) for key in options.app_keys]
            except ConfigError as e:
                raise ScheduleFailure(instance_id, str(e)) from e
        else:
            apps = self.templates.get_all()

        contexts = []
        for app in apps:
            ctx = self.sequencer.schedule(app, instance_id, options)
            logger.info(f"[{app.key}] Scheduled as {ctx.id}")
            contexts.append(ctx)
        return contexts

    def add_tasks(self, ctx: Optional[Context], options: ScheduleOptions) -> Context:
        """Schedule more templates into an existing context.

        Raises:
            ScheduleFailure: If ctx or options.app_keys is empty, or creation fails
        """
        if ctx is None:
            raise ScheduleFailure('-', "Context is required to add tasks")
        if not options.app_keys:
            raise ScheduleFailure(ctx.id, "No app keys given to add tasks")
        try:
            templates = [self.templates.get(key) for key in options.app_keys]
        except ConfigError as e:
            raise ScheduleFailure(ctx.id, str(e)) from e
        return self.sequencer.add_tasks(ctx, templates, options)

    def update_tasks_id(self, ctx: Context, task_id: str) -> None:
        """Rename the context instance and re-point its resources to the new namespace."""
        ctx.uid = task_id
        for resource in ctx.resources:
            resource.namespace = ctx.namespace
        logger.info(f"[{ctx.app.key}] Context renamed to {ctx.id}")

    def wait_for_running(self, ctx: Context, timeout: Optional[float] = None,
                         interval: Optional[float] = None) -> None:
        self.validator.wait_for_running(
            ctx,
            timeout if timeout is not None else self.config.timeouts.default,
            interval if interval is not None else self.config.retry_interval,
        )

    def destroy(self, ctx: Context, opts: Optional[DestroyOptions] = None) -> None:
        self.destroyer.destroy(ctx, opts or DestroyOptions())

    def wait_for_destroy(self, ctx: Context, timeout: Optional[float] = None) -> None:
        self.destroyer.wait_for_destroy(ctx, timeout if timeout is not None else self.config.timeouts.destroy)

    def delete_tasks(self, ctx: Context) -> list[Resource]:
        return self.destroyer.delete_tasks(ctx)

    # -- storage --------------------------------------------------------------

    def get_volume_parameters(self, ctx: Context) -> dict[str, dict]:
        return self.volumes.get_volume_parameters(ctx)

    def inspect_volumes(self, ctx: Context, timeout: Optional[float] = None,
                        interval: Optional[float] = None) -> None:
        self.validator.inspect_volumes(
            ctx,
            timeout if timeout is not None else self.config.timeouts.default,
            interval if interval is not None else self.config.retry_interval,
        )

    def delete_volumes(self, ctx: Context) -> list[Volume]:
        return self.volumes.delete_volumes(ctx)

    def get_volumes(self, ctx: Context) -> list[Volume]:
        return self.volumes.get_volumes(ctx)

    def resize_volume(self, ctx: Context) -> list[Volume]:
        return self.volumes.resize_volume(ctx)

    def validate_resize(self, ctx: Context, volumes: list[Volume], timeout: Optional[float] = None,
                        interval: Optional[float] = None) -> None:
        self.volumes.validate_resize(
            ctx, volumes,
            timeout if timeout is not None else self.config.timeouts.default,
            interval if interval is not None else self.config.retry_interval,
        )

    def get_snapshots(self, ctx: Context) -> list[Snapshot]:
        return self.volumes.get_snapshots(ctx)

    def validate_volume_snapshot_restore(self, ctx: Context, snapshot_data: Optional[dict],
                                         time_start: float) -> None:
        self.volumes.validate_volume_snapshot_restore(
            ctx, snapshot_data, time_start, self.config.timeouts.default, self.config.retry_interval)

    # -- inspection and scaling -----------------------------------------------

    def get_nodes_for_app(self, ctx: Context) -> list[Node]:
        """Nodes running the app's workload pods.

        Raises:
            NodeLookupFailure: If pods stay unscheduled or land on unknown nodes
        """
        def op():
            try:
                pods = self.destroyer.pods_for_app(ctx)
            except StoreError as e:
                return None, False, NodeLookupFailure(ctx.id, f"Failed to get pods: {e}")

            result: list[Node] = []
            for pod in pods:
                node_name = (pod.spec.get('nodeName') or '').strip()
                if not node_name:
                    return None, True, NodeLookupFailure(ctx.id, f"Pod {pod.name} is not scheduled to any node yet")
                if node_name not in self.registry:
                    return None, True, NodeLookupFailure(ctx.id, f"Node {node_name} not present in node registry")
                node = self.registry.get_node(node_name)
                if node not in result and pod_is_ready(pod):
                    result.append(node)
            return result, False, None

        timeout = self.config.timeouts.default
        try:
            return do_retry_with_timeout(op, timeout, self.config.retry_interval)
        except RetryTimeoutError as e:
            cause = e.last_error.cause if isinstance(e.last_error, DriverError) else 'timed out'
            raise NodeLookupFailure(ctx.id, f"{cause} (after {timeout}s)") from e

    def describe(self, ctx: Context) -> str:
        """Human-readable dump of every live resource of ctx."""
        lines = [
            DIVIDER,
            f"Context {ctx.id}  stage={ctx.stage.value}",
        ]
        if ctx.last_error:
            lines.append(f"Last error: {ctx.last_error}")
        lines.append(DIVIDER)

        for resource in ctx.resources:
            lines.append(resource.ref)
            try:
                live = self.store.get(resource.kind, resource.name, resource.namespace)
            except StoreError as e:
                lines.extend([f"  unavailable: {e}", DIVIDER])
                continue
            if live.status:
                lines.append(yaml.safe_dump({'status': live.status}, default_flow_style=False).rstrip())
            if resource.kind in SCALE_SUFFIXES or resource.kind == ResourceKind.DAEMON_SET:
                for pod in self.destroyer.pods_for(live):
                    lines.append(f"  pod {pod.name}: {pod.status.get('phase', 'Unknown')} "
                                 f"on {pod.spec.get('nodeName') or '-'}")
            lines.append(DIVIDER)
        return '\n'.join(lines)

    @staticmethod
    def is_scalable(resource: Resource) -> bool:
        return resource.kind in SCALE_SUFFIXES

    def get_scale_factor_map(self, ctx: Context) -> dict[str, int]:
        """Current replicas keyed by name + '-dep' or '-ss'."""
        result = {}
        for resource in ctx.resources:
            if not self.is_scalable(resource):
                continue
            try:
                live = self.store.get(resource.kind, resource.name, resource.namespace)
            except StoreError as e:
                raise ScaleFailure(ctx.id, f"Failed to get {resource.ref}: {e}") from e
            result[resource.name + SCALE_SUFFIXES[resource.kind]] = live.spec.get('replicas', 1)
        return result

    def scale_application(self, ctx: Context, scale_factor_map: dict[str, int]) -> None:
        """Set replicas of Deployments and StatefulSets named in the map.

        Raises:
            ScaleFailure: If a workload cannot be read or updated
        """
        with ctx.transition(Stage.SCALING):
            for i, resource in enumerate(ctx.resources):
                if not self.is_scalable(resource):
                    continue
                key = resource.name + SCALE_SUFFIXES[resource.kind]
                if key not in scale_factor_map:
                    continue
                try:
                    live = self.store.get(resource.kind, resource.name, resource.namespace)
                    live.manifest.setdefault('spec', {})['replicas'] = int(scale_factor_map[key])
                    ctx.resources[i] = self.store.update(live)
                except StoreError as e:
                    raise ScaleFailure(ctx.id, f"Failed to scale {resource.ref}: {e}") from e
                logger.info(f"[{ctx.app.key}] Scaled {resource.ref} to {scale_factor_map[key]} replica(s)")

    # -- nodes ----------------------------------------------------------------

    def _node_command(self, node_name: str, action: str) -> None:
        if self.node_driver is None:
            raise NodeSchedulingFailure(node_name, "No node driver configured")
        try:
            node = self.registry.get_node(node_name)
        except KeyError:
            raise NodeSchedulingFailure(node_name, "Node not present in node registry") from None
        try:
            self.node_driver.systemctl(node, SCHEDULER_SERVICE, action, self.config.timeouts.find_files)
        except NodeCommandError as e:
            raise NodeSchedulingFailure(node_name, f"Failed to {action} {SCHEDULER_SERVICE}: {e}") from e

    def stop_sched_on_node(self, node_name: str) -> None:
        self._node_command(node_name, 'stop')

    def start_sched_on_node(self, node_name: str) -> None:
        self._node_command(node_name, 'start')

    def _set_schedulable(self, node_name: str, schedulable: bool) -> None:
        try:
            self.store.set_node_schedulable(node_name, schedulable)
        except StoreError as e:
            verb = 'uncordon' if schedulable else 'cordon'
            raise NodeSchedulingFailure(node_name, f"Failed to {verb}: {e}") from e
        if node_name in self.registry:
            self.registry.get_node(node_name).schedulable = schedulable

    def enable_scheduling_on_node(self, node_name: str) -> None:
        self._set_schedulable(node_name, True)

    def disable_scheduling_on_node(self, node_name: str) -> None:
        self._set_schedulable(node_name, False)

    def get_token_from_config_map(self, config_map_name: str) -> str:
        """Auth token from the secret named by a config map in 'default'.

        Raises:
            ConfigLookupFailure: If the map, secret or token is missing
        """
        try:
            cm = self.store.get(ResourceKind.CONFIG_MAP, config_map_name, SECRET_CONFIG_MAP_NAMESPACE)
            data = cm.manifest.get('data') or {}
            secret = self.store.get(ResourceKind.SECRET, data.get(SECRET_NAME_KEY, ''),
                                    data.get(SECRET_NAMESPACE_KEY, ''))
        except StoreError as e:
            raise ConfigLookupFailure(config_map_name, f"Failed to get token: {e}") from e

        encoded = (secret.manifest.get('data') or {}).get(AUTH_TOKEN_KEY)
        if not encoded:
            raise ConfigLookupFailure(config_map_name, f"Secret {secret.name} has no {AUTH_TOKEN_KEY}")
        return base64.b64decode(encoded).decode('utf-8')

    def _uses_storage(self, pod: Resource, provisioner: str) -> bool:
        for vol in pod.spec.get('volumes') or []:
            claim_ref = vol.get('persistentVolumeClaim')
            if not claim_ref:
                continue
            if not provisioner:
                return True
            try:
                claim = self.store.get(ResourceKind.PVC, claim_ref.get('claimName', ''), pod.namespace)
                sc_name = claim.spec.get('storageClassName')
                if sc_name and self.store.get(ResourceKind.STORAGE_CLASS, sc_name).manifest.get(
                        'provisioner') == provisioner:
                    return True
            except StoreError as e:
                logger.warning(f"Failed to resolve claim {claim_ref.get('claimName')} of pod {pod.ref}: {e}")
        return False

    def prepare_node_to_decommission(self, node_name: str, provisioner: str = '') -> None:
        """Cordon a node and drain the pods on it that use storage.

        Raises:
            DecommissionFailure: If pods cannot be listed, deleted or drained in time
        """
        provisioner = provisioner or self.materializer.storage_provisioner(ScheduleOptions())
        try:
            pods = self.store.list(ResourceKind.POD, field_selector=f"spec.nodeName={node_name}")
        except StoreError as e:
            raise DecommissionFailure(node_name, f"Failed to get pods on the node: {e}") from e
        using_storage = [p for p in pods if self._uses_storage(p, provisioner)]

        # Drain timeout grows with the number of pods to move
        timeout = self.config.timeouts.default * (len(using_storage) // PODS_PER_DECOMMISSION_STEP + 1)
        try:
            self.store.set_node_schedulable(node_name, False)
            for pod in using_storage:
                self.store.delete(ResourceKind.POD, pod.name, pod.namespace)
        except StoreError as e:
            raise DecommissionFailure(node_name, f"Failed to drain pods from node: {e}") from e

        def op():
            try:
                remaining = self.store.list(ResourceKind.POD, field_selector=f"spec.nodeName={node_name}")
            except StoreError as e:
                return None, True, DecommissionFailure(node_name, str(e))
            drained = {p.uid for p in using_storage}
            left = [p for p in remaining if p.uid in drained]
            if left:
                return None, True, DecommissionFailure(node_name, f"{len(left)} pod(s) still on node")
            return None, False, None

        try:
            do_retry_with_timeout(op, timeout, self.config.retry_interval)
        except RetryTimeoutError as e:
            cause = e.last_error.cause if isinstance(e.last_error, DriverError) else 'timed out'
            raise DecommissionFailure(node_name, f"Failed to drain pods from node: {cause}") from e
        logger.info(f"Node {node_name} drained of {len(using_storage)} pod(s)")
