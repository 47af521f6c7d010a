"""Resource materializer: one descriptor in, one live object out.

Before submission a descriptor is copied and prepared for its namespace:
placeholder substitution, security annotations, storage provisioner,
claim references and replica scaling. A create that conflicts with an
existing object adopts the existing one.
"""

import logging
from typing import Any, Optional

from config import CREATOR, DriverConfig
from errors import ConfigLookupFailure, ScheduleFailure
from lifecycle.autopilot import RuleBinder, is_autopilot_claim
from lifecycle.context import ScheduleOptions
from resources import Resource, ResourceKind, substitute_namespace
from store import AlreadyExistsError, NotFoundError, StoreError

logger = logging.getLogger(__name__)

SECRET_NAME_KEY = 'secret_name'
SECRET_NAMESPACE_KEY = 'secret_namespace'
SECRET_CONFIG_MAP_NAMESPACE = 'default'
AUTH_SECRET_NAME_ANNOTATION = 'openstorage.io/auth-secret-name'
AUTH_SECRET_NAMESPACE_ANNOTATION = 'openstorage.io/auth-secret-namespace'

# Kinds whose requests reach the storage driver and so must carry credentials
SECURED_KINDS = frozenset({
    ResourceKind.PVC,
    ResourceKind.VOLUME_SNAPSHOT,
    ResourceKind.STATEFUL_SET,
    ResourceKind.APPLICATION_BACKUP,
    ResourceKind.APPLICATION_RESTORE,
    ResourceKind.APPLICATION_CLONE,
    ResourceKind.MIGRATION,
    ResourceKind.VOLUME_SNAPSHOT_RESTORE,
    ResourceKind.GROUP_VOLUME_SNAPSHOT,
})

PROTECTED_NAMESPACES = ('kube-system',)


def _is_subset(requested: Any, live: Any) -> bool:
    """True when every value in requested is present and equal in live."""
    if isinstance(requested, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and _is_subset(v, live[k]) for k, v in requested.items())
    if isinstance(requested, list):
        if not isinstance(live, list) or len(requested) != len(live):
            return False
        return all(_is_subset(r, l) for r, l in zip(requested, live))
    return requested == live or str(requested) == str(live)


def diverging_fields(requested: Resource, live: Resource) -> list[str]:
    """Top-level spec (or data) fields where an adopted object differs."""
    section = 'spec' if 'spec' in requested.manifest else 'data'
    wanted = requested.manifest.get(section) or {}
    actual = live.manifest.get(section) or {}
    return sorted(f"{section}.{k}" for k, v in wanted.items() if not _is_subset(v, actual.get(k)))


class Materializer:
    """Creates or adopts single resources for an app.

    Attributes:
        store: ResourceStore
        config: Driver configuration
        binder: Autopilot rule binder used for annotated claims
        storage_driver: Optional storage driver supplying the provisioner
    """

    def __init__(self, store, config: DriverConfig, binder: Optional[RuleBinder] = None,
                 storage_driver=None) -> None:
        self.store = store
        self.config = config
        self.binder = binder or RuleBinder(store)
        self.storage_driver = storage_driver

    def storage_provisioner(self, options: ScheduleOptions) -> str:
        if options.storage_provisioner:
            return options.storage_provisioner
        if self.config.storage_provisioner:
            return self.config.storage_provisioner
        if self.storage_driver is not None:
            return self.storage_driver.get_storage_provisioner()
        return ''

    def security_annotations(self, app_key: str) -> dict:
        """Auth secret annotations from the configured config map.

        Returns:
            Empty dict when no secret config map is configured

        Raises:
            ConfigLookupFailure: If the map or one of its keys is missing
        """
        name = self.config.secret_config_map
        if not name:
            return {}
        try:
            cm = self.store.get(ResourceKind.CONFIG_MAP, name, SECRET_CONFIG_MAP_NAMESPACE)
        except StoreError as e:
            raise ConfigLookupFailure(app_key, f"Failed to get config map {name}: {e}") from e

        data = cm.manifest.get('data') or {}
        missing = [k for k in (SECRET_NAME_KEY, SECRET_NAMESPACE_KEY) if not data.get(k)]
        if missing:
            raise ConfigLookupFailure(app_key, f"Config map {name} has no {', '.join(missing)}")
        return {
            AUTH_SECRET_NAME_ANNOTATION: data[SECRET_NAME_KEY],
            AUTH_SECRET_NAMESPACE_ANNOTATION: data[SECRET_NAMESPACE_KEY],
        }

    def prepare(self, resource: Resource, namespace: str, app_key: str,
                options: ScheduleOptions) -> Resource:
        """Copy of resource ready for submission into namespace."""
        obj = resource.copy()
        meta = obj.metadata
        meta['name'] = substitute_namespace(obj.name, namespace)
        if meta.get('annotations'):
            meta['annotations'] = {k: substitute_namespace(str(v), namespace)
                                   for k, v in meta['annotations'].items()}

        # Rules targeting system pods stay where the template put them
        if not (obj.kind == ResourceKind.RULE and obj.namespace in PROTECTED_NAMESPACES):
            obj.namespace = namespace

        if obj.kind == ResourceKind.STORAGE_CLASS:
            provisioner = self.storage_provisioner(options)
            if provisioner:
                logger.info(f"[{app_key}] Setting provisioner of {obj.name} to {provisioner}")
                obj.manifest['provisioner'] = provisioner

        if obj.kind in (ResourceKind.DEPLOYMENT, ResourceKind.STATEFUL_SET, ResourceKind.DAEMON_SET):
            self._substitute_claim_names(obj, namespace)
            if obj.kind != ResourceKind.DAEMON_SET and options.scale_factor > 1:
                spec = obj.manifest.setdefault('spec', {})
                spec['replicas'] = int(spec.get('replicas', 1)) * options.scale_factor

        if obj.kind in SECURED_KINDS:
            annotations = self.security_annotations(app_key)
            if annotations:
                self._inject_annotations(obj, annotations)
        return obj

    @staticmethod
    def _substitute_claim_names(obj: Resource, namespace: str) -> None:
        pod_spec = ((obj.manifest.get('spec') or {}).get('template') or {}).get('spec') or {}
        for vol in pod_spec.get('volumes') or []:
            claim = vol.get('persistentVolumeClaim')
            if claim and claim.get('claimName'):
                claim['claimName'] = substitute_namespace(claim['claimName'], namespace)

    @staticmethod
    def _inject_annotations(obj: Resource, annotations: dict) -> None:
        if obj.kind == ResourceKind.STATEFUL_SET:
            for tmpl in (obj.manifest.get('spec') or {}).get('volumeClaimTemplates') or []:
                tmpl_meta = tmpl.setdefault('metadata', {})
                tmpl_meta.setdefault('annotations', {}).update(annotations)
            return
        if obj.metadata.get('annotations') is None:
            obj.metadata['annotations'] = {}
        obj.metadata['annotations'].update(annotations)

    def create_or_adopt(self, obj: Resource, app_key: str) -> Resource:
        """Submit obj; on a name conflict fetch and return the existing object.

        Raises:
            ScheduleFailure: On any store error other than the conflict
        """
        try:
            live = self.store.create(obj)
            logger.info(f"[{app_key}] Created {live.ref}")
            return live
        except AlreadyExistsError:
            pass
        except StoreError as e:
            raise ScheduleFailure(app_key, f"Failed to create {obj.ref}: {e}") from e

        try:
            live = self.store.get(obj.kind, obj.name, obj.namespace)
        except StoreError as e:
            raise ScheduleFailure(app_key, f"Failed to get existing {obj.ref}: {e}") from e
        logger.info(f"[{app_key}] Found existing {live.ref}")

        diverged = diverging_fields(obj, live)
        if diverged:
            logger.warning(f"[{app_key}] Adopted {live.ref} differs from template in: {', '.join(diverged)}")
        return live

    def materialize(self, resource: Resource, namespace: str, app_key: str,
                    options: ScheduleOptions) -> Resource:
        """Create or adopt resource in namespace.

        Raises:
            ScheduleFailure: On a store error or autopilot bind failure
            ConfigLookupFailure: If security annotations cannot be resolved
        """
        obj = self.prepare(resource, namespace, app_key, options)
        live = self.create_or_adopt(obj, app_key)

        if live.kind == ResourceKind.PVC and is_autopilot_claim(live, options.autopilot):
            params = options.autopilot.for_claim(live)
            try:
                rule = self.binder.bind(params)
            except StoreError as e:
                raise ScheduleFailure(app_key, f"Failed to create Autopilot rule {params.name}: {e}") from e
            logger.info(f"[{app_key}] Bound AutopilotRule {rule.name} to {live.ref}")
        return live

    def ensure_namespace(self, namespace: str, app_key: str) -> Resource:
        """Create the app namespace, or adopt it if it already exists."""
        ns = Resource.build(ResourceKind.NAMESPACE, namespace)
        ns.metadata['labels'] = {'creator': CREATOR, 'app': app_key}
        return self.create_or_adopt(ns, app_key)

    def delete(self, resource: Resource) -> None:
        """Delete resource, treating absence as success.

        Raises:
            StoreError: On any other store failure
        """
        try:
            self.store.delete(resource.kind, resource.name, resource.namespace)
        except NotFoundError:
            logger.debug(f"{resource.ref} already gone")
