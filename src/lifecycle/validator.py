"""Readiness validation for live resources.

Each kind has a readiness check taking the Validator, the owning Context
and a freshly fetched object, returning (ready, reason). Checks only read
the cluster. A check raises ResourceFailed when the object reports a
terminal failure, which stops polling early.
"""

import logging
from typing import Callable, Optional

from common import RetryTimeoutError, do_retry_with_timeout
from config import DriverConfig
from errors import DriverError, ValidateFailure, VolumeValidateFailure
from lifecycle.autopilot import is_autopilot_claim
from lifecycle.context import Context, Stage
from resources import Resource, ResourceKind, bytes_to_quantity, check_dispatch_table, quantity_to_bytes
from store import StoreError

logger = logging.getLogger(__name__)

STATUS_SUCCESSFUL = 'Successful'
STATUS_FAILED = 'Failed'
STAGE_FINAL = 'Final'
CLUSTER_PAIR_READY = 'Ready'

STORAGE_KINDS = (
    ResourceKind.STORAGE_CLASS,
    ResourceKind.PVC,
    ResourceKind.VOLUME_SNAPSHOT,
    ResourceKind.GROUP_VOLUME_SNAPSHOT,
    ResourceKind.STATEFUL_SET,
)


class ResourceFailed(Exception):
    """Object reports a terminal failure; waiting longer will not help."""


def _replicas(obj: Resource) -> int:
    replicas = obj.spec.get('replicas')
    return 1 if replicas is None else int(replicas)


def pod_is_ready(pod: Resource) -> bool:
    if pod.status.get('phase') != 'Running':
        return False
    return any(c.get('type') == 'Ready' and c.get('status') == 'True'
               for c in pod.status.get('conditions') or [])


def label_selector(match_labels: dict) -> str:
    return ','.join(f"{k}={v}" for k, v in sorted(match_labels.items()))


def _exists(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    return True, 'exists'


def _stork_status(live: Resource, need_final_stage: bool) -> tuple[bool, str]:
    status = live.status.get('status', '')
    stage = live.status.get('stage', '')
    if status == STATUS_FAILED:
        raise ResourceFailed(f"{live.ref} failed at stage {stage or '?'}: {live.status.get('reason', '')}")
    if status == STATUS_SUCCESSFUL and (not need_final_stage or stage == STAGE_FINAL):
        return True, status
    return False, f"status={status or 'none'} stage={stage or 'none'}"


def _stork_final(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    return _stork_status(live, need_final_stage=True)


def _stork_successful(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    return _stork_status(live, need_final_stage=False)


def _cluster_pair_ready(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    sched = live.status.get('schedulerStatus', '')
    storage = live.status.get('storageStatus', '')
    if sched == CLUSTER_PAIR_READY and storage == CLUSTER_PAIR_READY:
        return True, 'paired'
    return False, f"schedulerStatus={sched or 'none'} storageStatus={storage or 'none'}"


def _snapshot_ready(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    for cond in live.status.get('conditions') or []:
        if cond.get('type') == 'Ready' and cond.get('status') == 'True':
            return True, 'Ready'
        if cond.get('type') == 'Error' and cond.get('status') == 'True':
            raise ResourceFailed(f"{live.ref}: {cond.get('message', 'snapshot error')}")
    return False, 'snapshot not ready'


def _claim_ready(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    phase = live.status.get('phase', '')
    if phase == 'Lost':
        raise ResourceFailed(f"{live.ref} lost its volume")
    if phase != 'Bound':
        return False, f"phase={phase or 'Pending'}"

    params = ctx.options.autopilot
    if is_autopilot_claim(live, params) and params.expected_pvc_size:
        capacity = (live.status.get('capacity') or {}).get('storage')
        if not capacity:
            return False, 'bound but no capacity reported'
        size = quantity_to_bytes(capacity)
        if size != params.expected_pvc_size:
            return False, (f"capacity {capacity}, expecting "
                           f"{bytes_to_quantity(params.expected_pvc_size)} from rule {params.name}")
    return True, 'Bound'


def _pods_ready(v: 'Validator', live: Resource, desired: int, every_pod: bool = False) -> tuple[bool, str]:
    """At least desired selected pods Ready; with every_pod, none left unready.

    Pods already marked for deletion are ignored.
    """
    match_labels = (live.spec.get('selector') or {}).get('matchLabels') or {}
    if not match_labels:
        return True, 'no selector'
    pods = [p for p in v.store.list(ResourceKind.POD, live.namespace, label_selector=label_selector(match_labels))
            if not p.metadata.get('deletionTimestamp')]
    ready = [p for p in pods if pod_is_ready(p)]
    if len(ready) < desired:
        return False, f"{len(ready)}/{desired} pods ready"
    if every_pod and len(ready) < len(pods):
        unready = sorted(p.name for p in pods if not pod_is_ready(p))
        return False, f"{len(ready)}/{len(pods)} pods ready, waiting on {', '.join(unready)}"
    return True, f"{len(ready)} pods ready"


def _deployment_ready(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    desired = _replicas(live)
    ready = live.status.get('readyReplicas') or 0
    available = live.status.get('availableReplicas') or 0
    if ready < desired or available < desired:
        return False, f"ready={ready} available={available} desired={desired}"
    return _pods_ready(v, live, desired, every_pod=True)


def _statefulset_ready(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    desired = _replicas(live)
    ready = live.status.get('readyReplicas') or 0
    if ready < desired:
        return False, f"ready={ready} desired={desired}"
    return _pods_ready(v, live, desired)


def _daemonset_ready(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    desired = live.status.get('desiredNumberScheduled') or 0
    ready = live.status.get('numberReady') or 0
    if ready < desired:
        return False, f"numberReady={ready} desired={desired}"
    return True, f"{ready} ready"


def _pod_ready(v: 'Validator', ctx: Context, live: Resource) -> tuple[bool, str]:
    phase = live.status.get('phase', '')
    if phase == 'Failed':
        raise ResourceFailed(f"{live.ref} failed: {live.status.get('reason', '')}")
    if pod_is_ready(live):
        return True, 'Ready'
    return False, f"phase={phase or 'Pending'}"


Check = Callable[['Validator', Context, Resource], tuple[bool, str]]

READINESS: dict[ResourceKind, Check] = {
    ResourceKind.NAMESPACE: _exists,
    ResourceKind.CLUSTER_PAIR: _cluster_pair_ready,
    ResourceKind.MIGRATION: _stork_final,
    ResourceKind.MIGRATION_SCHEDULE: _exists,
    ResourceKind.SCHEDULE_POLICY: _exists,
    ResourceKind.VOLUME_SNAPSHOT_RESTORE: _stork_successful,
    ResourceKind.STORAGE_CLASS: _exists,
    ResourceKind.PVC: _claim_ready,
    ResourceKind.VOLUME_SNAPSHOT: _snapshot_ready,
    ResourceKind.GROUP_VOLUME_SNAPSHOT: _stork_successful,
    ResourceKind.DEPLOYMENT: _deployment_ready,
    ResourceKind.STATEFUL_SET: _statefulset_ready,
    ResourceKind.DAEMON_SET: _daemonset_ready,
    ResourceKind.SERVICE: _exists,
    ResourceKind.SECRET: _exists,
    ResourceKind.RULE: _exists,
    ResourceKind.POD: _pod_ready,
    ResourceKind.CONFIG_MAP: _exists,
    ResourceKind.AUTOPILOT_RULE: _exists,
    ResourceKind.BACKUP_LOCATION: _exists,
    ResourceKind.APPLICATION_BACKUP: _stork_final,
    ResourceKind.APPLICATION_RESTORE: _stork_final,
    ResourceKind.APPLICATION_CLONE: _stork_final,
}

check_dispatch_table('READINESS', READINESS)


class Validator:
    """Polls live resources until their readiness check passes."""

    def __init__(self, store, config: DriverConfig) -> None:
        self.store = store
        self.config = config

    def check(self, ctx: Context, live: Resource) -> tuple[bool, str]:
        return READINESS[live.kind](self, ctx, live)

    def wait_for_resource(self, ctx: Context, resource: Resource, timeout: float, interval: float,
                          check: Optional[Check] = None,
                          error_cls: type = ValidateFailure) -> Resource:
        """Fetch resource until check passes.

        Returns:
            The live object that passed

        Raises:
            error_cls: On timeout or a terminal failure
        """
        check = check or READINESS[resource.kind]

        def op():
            try:
                live = self.store.get(resource.kind, resource.name, resource.namespace)
            except StoreError as e:
                return None, True, error_cls(ctx.id, f"{resource.ref}: {e}")
            try:
                ready, reason = check(self, ctx, live)
            except ResourceFailed as e:
                return None, False, error_cls(ctx.id, str(e))
            except StoreError as e:
                return None, True, error_cls(ctx.id, f"{resource.ref}: {e}")
            if ready:
                return live, False, None
            return None, True, error_cls(ctx.id, f"{resource.ref}: {reason}")

        try:
            live = do_retry_with_timeout(op, timeout, interval)
        except RetryTimeoutError as e:
            cause = e.last_error.cause if isinstance(e.last_error, DriverError) else 'not ready'
            raise error_cls(ctx.id, f"{cause} (after {timeout}s)") from e
        logger.info(f"[{ctx.app.key}] Validated {resource.ref}")
        return live

    def _timeout_for(self, resource: Resource, timeout: float) -> float:
        if resource.kind == ResourceKind.STATEFUL_SET:
            return timeout * max(_replicas(resource), 1)
        return timeout

    def wait_for_running(self, ctx: Context, timeout: float, interval: float) -> None:
        """Wait until every resource of ctx is ready.

        Raises:
            ValidateFailure: Naming the first resource that did not converge
        """
        with ctx.transition(Stage.VALIDATING, done=Stage.RUNNING):
            for resource in ctx.resources:
                self.wait_for_resource(ctx, resource, self._timeout_for(resource, timeout), interval)
        logger.info(f"[{ctx.id}] All {len(ctx.resources)} resource(s) running")

    def _statefulset_claims_bound(self, ctx: Context, live: Resource) -> tuple[bool, str]:
        """Check the claims generated from a StatefulSet's volumeClaimTemplates."""
        templates = live.spec.get('volumeClaimTemplates') or []
        for i in range(_replicas(live)):
            for tmpl in templates:
                claim_name = f"{(tmpl.get('metadata') or {}).get('name', '')}-{live.name}-{i}"
                claim = self.store.get(ResourceKind.PVC, claim_name, live.namespace)
                ready, reason = _claim_ready(self, ctx, claim)
                if not ready:
                    return False, f"{claim.ref}: {reason}"
        return True, 'claims bound'

    def inspect_volumes(self, ctx: Context, timeout: float, interval: float) -> None:
        """Validate the storage side of ctx: classes, claims, snapshots.

        Raises:
            VolumeValidateFailure: Naming the first storage object that failed
        """
        for resource in ctx.resources_of(*STORAGE_KINDS):
            if resource.kind == ResourceKind.STATEFUL_SET:
                self.wait_for_resource(
                    ctx, resource, self._timeout_for(resource, timeout), interval,
                    check=lambda v, c, live: v._statefulset_claims_bound(c, live),
                    error_cls=VolumeValidateFailure,
                )
            else:
                self.wait_for_resource(ctx, resource, timeout, interval, error_cls=VolumeValidateFailure)
        logger.info(f"[{ctx.id}] Storage validated")
