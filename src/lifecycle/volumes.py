"""Storage operations on a context: volumes, parameters, resize, snapshots."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common import RetryTimeoutError, do_retry_with_timeout
from config import DriverConfig
from errors import (
    DestroyFailure,
    ResizeFailure,
    StorageLookupFailure,
    VolumeParametersFailure,
    VolumeValidateFailure,
)
from lifecycle.autopilot import is_autopilot_claim, parse_bool
from lifecycle.context import Context, Stage
from lifecycle.validator import Validator
from resources import GI, Resource, ResourceKind, bytes_to_quantity, quantity_to_bytes
from store import NotFoundError, StoreError

logger = logging.getLogger(__name__)

RESIZE_SUPPORTED_ANNOTATION = 'kad.io/resize-supported'
RESIZE_INCREMENT = GI
STORAGE_CLASS_ANNOTATION = 'volume.beta.kubernetes.io/storage-class'
PVC_NAME_KEY = 'pvc_name'
PVC_NAMESPACE_KEY = 'pvc_namespace'


@dataclass
class Volume:
    """A claim as seen by storage-facing callers.

    Attributes:
        id: Bound PersistentVolume name
        name: Claim name
        namespace: Claim namespace
        size: Requested size in bytes
        shared: ReadWriteMany access
    """
    id: str
    name: str
    namespace: str
    size: int = 0
    shared: bool = False
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)


@dataclass
class Snapshot:
    id: str
    name: str
    namespace: str
    source_claim: str = ''
    data_name: str = ''


def requested_size(claim: Resource) -> int:
    storage = ((claim.spec.get('resources') or {}).get('requests') or {}).get('storage')
    return quantity_to_bytes(storage) if storage else 0


def volume_from_claim(claim: Resource) -> Volume:
    return Volume(
        id=claim.spec.get('volumeName', ''),
        name=claim.name,
        namespace=claim.namespace,
        size=requested_size(claim),
        shared='ReadWriteMany' in (claim.spec.get('accessModes') or []),
        labels=dict(claim.labels),
        annotations=dict(claim.annotations),
    )


def resize_supported(claim: Resource) -> bool:
    return parse_bool(claim.annotations.get(RESIZE_SUPPORTED_ANNOTATION, 'true'))


class VolumeManager:
    """Storage-side operations on a context's claims and snapshots."""

    def __init__(self, store, config: DriverConfig, storage_driver=None) -> None:
        self.store = store
        self.config = config
        self.storage_driver = storage_driver

    def statefulset_claims(self, statefulset: Resource) -> list[Resource]:
        """Claims generated from a StatefulSet's volumeClaimTemplates.

        Falls back to the cached object once the StatefulSet is deleted.
        """
        try:
            source = self.store.get(ResourceKind.STATEFUL_SET, statefulset.name, statefulset.namespace)
        except NotFoundError:
            source = statefulset
        replicas = source.spec.get('replicas', 1)
        claims = []
        for tmpl in source.spec.get('volumeClaimTemplates') or []:
            tmpl_name = (tmpl.get('metadata') or {}).get('name', '')
            for i in range(replicas):
                try:
                    claims.append(self.store.get(ResourceKind.PVC, f"{tmpl_name}-{source.name}-{i}", source.namespace))
                except NotFoundError:
                    logger.debug(f"Claim {tmpl_name}-{source.name}-{i} not found")
        return claims

    def claims_for_app(self, ctx: Context) -> list[Resource]:
        """Live claims of ctx, including StatefulSet-generated ones.

        Raises:
            StoreError: If a claim cannot be read
        """
        claims = []
        for resource in ctx.resources_of(ResourceKind.PVC, ResourceKind.STATEFUL_SET):
            if resource.kind == ResourceKind.PVC:
                claims.append(self.store.get(ResourceKind.PVC, resource.name, resource.namespace))
            else:
                claims.extend(self.statefulset_claims(resource))
        return claims

    def get_volumes(self, ctx: Context) -> list[Volume]:
        try:
            return [volume_from_claim(c) for c in self.claims_for_app(ctx)]
        except StoreError as e:
            raise StorageLookupFailure(ctx.id, f"Failed to get volumes: {e}") from e

    def get_volume_parameters(self, ctx: Context) -> dict[str, dict]:
        """Storage class parameters for each bound claim, keyed by volume id.

        Raises:
            VolumeParametersFailure: If a claim or its storage class cannot be read
        """
        result: dict[str, dict] = {}
        try:
            for claim in self.claims_for_app(ctx):
                sc_name = claim.spec.get('storageClassName') or claim.annotations.get(STORAGE_CLASS_ANNOTATION)
                params: dict[str, Any] = {}
                if sc_name:
                    sc = self.store.get(ResourceKind.STORAGE_CLASS, sc_name)
                    params.update(sc.manifest.get('parameters') or {})
                params[PVC_NAME_KEY] = claim.name
                params[PVC_NAMESPACE_KEY] = claim.namespace
                result[claim.spec.get('volumeName') or claim.name] = params
        except StoreError as e:
            raise VolumeParametersFailure(ctx.id, f"Failed to get volume parameters: {e}") from e
        return result

    def resize_volume(self, ctx: Context) -> list[Volume]:
        """Grow every claim of ctx by 1Gi, skipping claims that opt out.

        Returns:
            Volumes with their pre-resize sizes (opted-out claims included)

        Raises:
            ResizeFailure: If a claim cannot be read or updated
        """
        volumes = []
        with ctx.transition(Stage.RESIZING):
            try:
                claims = self.claims_for_app(ctx)
            except StoreError as e:
                raise ResizeFailure(ctx.id, f"Failed to get claims: {e}") from e

            for claim in claims:
                volumes.append(volume_from_claim(claim))
                if not resize_supported(claim):
                    logger.info(f"[{ctx.app.key}] Skipping resize of {claim.ref}: not supported")
                    continue
                new_size = requested_size(claim) + RESIZE_INCREMENT
                updated = claim.copy()
                requests = updated.manifest['spec'].setdefault('resources', {}).setdefault('requests', {})
                requests['storage'] = bytes_to_quantity(new_size)
                try:
                    self.store.update(updated)
                except StoreError as e:
                    raise ResizeFailure(ctx.id, f"Failed to resize {claim.ref}: {e}") from e
                logger.info(f"[{ctx.app.key}] Resized {claim.ref} to {requests['storage']}")
        return volumes

    def validate_resize(self, ctx: Context, volumes: list[Volume], timeout: float, interval: float) -> None:
        """Wait until each resized claim reports its new capacity.

        Raises:
            VolumeValidateFailure: If a claim has not grown by the expected amount
        """
        for vol in volumes:
            def op(vol=vol):
                try:
                    claim = self.store.get(ResourceKind.PVC, vol.name, vol.namespace)
                except StoreError as e:
                    return None, True, VolumeValidateFailure(ctx.id, f"{vol.name}: {e}")
                expected = vol.size + (RESIZE_INCREMENT if resize_supported(claim) else 0)
                capacity = (claim.status.get('capacity') or {}).get('storage')
                size = quantity_to_bytes(capacity) if capacity else 0
                if size == expected:
                    return size, False, None
                return None, True, VolumeValidateFailure(
                    ctx.id, f"{claim.ref} capacity {bytes_to_quantity(size)}, expecting {bytes_to_quantity(expected)}")

            try:
                do_retry_with_timeout(op, timeout, interval)
            except RetryTimeoutError as e:
                raise VolumeValidateFailure(ctx.id, f"{e.last_error.cause if e.last_error else vol.name} "
                                                    f"(after {timeout}s)") from e

    def delete_volumes(self, ctx: Context) -> list[Volume]:
        """Delete ctx's storage objects and any autopilot rule bound to its claims.

        Absent objects are skipped.

        Returns:
            Volumes of the deleted claims

        Raises:
            DestroyFailure: On any store error other than absence
        """
        volumes = []
        params = ctx.options.autopilot
        for resource in ctx.resources:
            targets: list[Resource] = []
            if resource.kind == ResourceKind.STATEFUL_SET:
                try:
                    targets = self.statefulset_claims(resource)
                except StoreError as e:
                    raise DestroyFailure(ctx.id, f"Failed to get claims of {resource.ref}: {e}") from e
            elif resource.kind in (ResourceKind.PVC, ResourceKind.STORAGE_CLASS,
                                   ResourceKind.VOLUME_SNAPSHOT, ResourceKind.GROUP_VOLUME_SNAPSHOT):
                targets = [resource]

            for target in targets:
                if target.kind == ResourceKind.PVC:
                    volumes.append(volume_from_claim(target))
                self._delete_quietly(ctx, target.kind, target.name, target.namespace)
                if target.kind == ResourceKind.PVC and is_autopilot_claim(target, params):
                    self._delete_quietly(ctx, ResourceKind.AUTOPILOT_RULE, params.name)
        return volumes

    def _delete_quietly(self, ctx: Context, kind: ResourceKind, name: str, namespace: str = '') -> None:
        try:
            self.store.delete(kind, name, namespace)
        except NotFoundError:
            return
        except StoreError as e:
            raise DestroyFailure(ctx.id, f"Failed to destroy {kind.value} {name}: {e}") from e
        logger.info(f"[{ctx.app.key}] Destroyed {kind.value} {name}")

    def get_snapshots(self, ctx: Context) -> list[Snapshot]:
        """Snapshots of ctx, including members of group snapshots.

        Raises:
            StorageLookupFailure: If a snapshot cannot be read
        """
        snapshots = []
        try:
            for resource in ctx.resources_of(ResourceKind.VOLUME_SNAPSHOT, ResourceKind.GROUP_VOLUME_SNAPSHOT):
                live = self.store.get(resource.kind, resource.name, resource.namespace)
                if live.kind == ResourceKind.VOLUME_SNAPSHOT:
                    snapshots.append(Snapshot(
                        id=live.uid,
                        name=live.name,
                        namespace=live.namespace,
                        source_claim=live.spec.get('persistentVolumeClaimName', ''),
                        data_name=live.spec.get('snapshotDataName', ''),
                    ))
                    continue
                for member in live.status.get('volumeSnapshots') or []:
                    snapshots.append(Snapshot(
                        id=member.get('dataName', ''),
                        name=member.get('volumeSnapshotName', ''),
                        namespace=live.namespace,
                        source_claim=member.get('parentVolumeID', ''),
                        data_name=member.get('dataName', ''),
                    ))
        except StoreError as e:
            raise StorageLookupFailure(ctx.id, f"Failed to get snapshots: {e}") from e
        return snapshots

    def validate_volume_snapshot_restore(self, ctx: Context, snapshot_data: Optional[dict],
                                         time_start: float, timeout: float, interval: float) -> None:
        """Wait for each VolumeSnapshotRestore to succeed, then check restored volumes.

        Raises:
            VolumeValidateFailure: If a restore fails or a restored volume is invalid
        """
        validator = Validator(self.store, self.config)
        for restore in ctx.resources_of(ResourceKind.VOLUME_SNAPSHOT_RESTORE):
            live = validator.wait_for_resource(ctx, restore, timeout, interval, error_cls=VolumeValidateFailure)
            if self.storage_driver is None:
                continue
            for vol in live.status.get('volumes') or []:
                volume_name = vol.get('volume', '')
                try:
                    self.storage_driver.validate_volume_snapshot_restore(volume_name, snapshot_data, time_start)
                except Exception as e:
                    raise VolumeValidateFailure(
                        ctx.id, f"Restored volume {volume_name} of {live.ref} failed validation: {e}") from e
                logger.info(f"[{ctx.app.key}] Validated restored volume {volume_name}")
