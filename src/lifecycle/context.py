"""Application context: the unit of orchestration.

A Context binds one app template instance to its namespace, the live
resources materialized for it, and the options it was scheduled with.
Its stage follows:

    created -> materializing -> validating -> running
        running -> resizing|scaling -> validating -> running
        any -> destroying -> leak_checking -> terminated
        destroying|leak_checking -> destroying (retry after a failed teardown)

A failing stage reverts to the stage the context was in before it started
and records the error, so describe() shows where things stood.

Contexts are persisted to .states/{context_id}/context.json so later CLI
invocations can validate or destroy without re-scheduling.
"""

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from config import get_base_dir
from errors import DriverError
from lifecycle.autopilot import AutopilotParameters
from resources import Resource, ResourceKind
from templates import AppTemplate

logger = logging.getLogger(__name__)


class Stage(Enum):
    CREATED = 'created'
    MATERIALIZING = 'materializing'
    VALIDATING = 'validating'
    RUNNING = 'running'
    RESIZING = 'resizing'
    SCALING = 'scaling'
    DESTROYING = 'destroying'
    LEAK_CHECKING = 'leak_checking'
    TERMINATED = 'terminated'


_ALIVE = {Stage.CREATED, Stage.MATERIALIZING, Stage.VALIDATING, Stage.RUNNING,
          Stage.RESIZING, Stage.SCALING}

TRANSITIONS: dict[Stage, set] = {
    Stage.CREATED: {Stage.MATERIALIZING, Stage.DESTROYING},
    Stage.MATERIALIZING: {Stage.MATERIALIZING, Stage.VALIDATING, Stage.RESIZING,
                          Stage.SCALING, Stage.DESTROYING},
    Stage.VALIDATING: {Stage.RUNNING},
    Stage.RUNNING: {Stage.MATERIALIZING, Stage.VALIDATING, Stage.RESIZING,
                    Stage.SCALING, Stage.DESTROYING},
    Stage.RESIZING: {Stage.VALIDATING, Stage.RUNNING, Stage.DESTROYING},
    Stage.SCALING: {Stage.VALIDATING, Stage.RUNNING, Stage.DESTROYING},
    Stage.DESTROYING: {Stage.DESTROYING, Stage.LEAK_CHECKING, Stage.TERMINATED},
    Stage.LEAK_CHECKING: {Stage.DESTROYING, Stage.TERMINATED},
    Stage.TERMINATED: set(),
}


class StageError(DriverError):
    """Operation not allowed in the context's current stage."""

    kind = 'StageError'
    retryable = False


@dataclass
class ScheduleOptions:
    """Options for schedule() and add_tasks().

    Attributes:
        app_keys: Templates to schedule (empty = all enabled)
        storage_provisioner: Provisioner for StorageClass objects
        scale_factor: Multiplier applied to Deployment/StatefulSet replicas
        autopilot: Autopilot rule parameters, or None
    """
    app_keys: list = field(default_factory=list)
    storage_provisioner: str = ''
    scale_factor: int = 1
    autopilot: Optional[AutopilotParameters] = None

    def to_dict(self) -> dict:
        return {
            'app_keys': list(self.app_keys),
            'storage_provisioner': self.storage_provisioner,
            'scale_factor': self.scale_factor,
            'autopilot': self.autopilot.to_dict() if self.autopilot else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ScheduleOptions':
        return cls(
            app_keys=list(data.get('app_keys', [])),
            storage_provisioner=data.get('storage_provisioner', ''),
            scale_factor=data.get('scale_factor', 1),
            autopilot=AutopilotParameters.from_dict(data.get('autopilot')),
        )


@dataclass
class DestroyOptions:
    wait_for_destroy: bool = False
    wait_for_resource_leak_cleanup: bool = False


@dataclass
class Context:
    """One scheduled application instance.

    Attributes:
        uid: Instance id
        app: Owning template
        options: Options the context was scheduled with
        resources: Live resources, in materialization order
        stage: Current lifecycle stage
        last_error: Message of the most recent failed stage
    """
    uid: str
    app: AppTemplate
    options: ScheduleOptions = field(default_factory=ScheduleOptions)
    resources: list = field(default_factory=list)
    stage: Stage = Stage.CREATED
    last_error: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def id(self) -> str:
        """Context id; also the namespace every namespaced resource lives in."""
        return self.app.get_id(self.uid)

    @property
    def namespace(self) -> str:
        return self.id

    def resources_of(self, *kinds: ResourceKind) -> list[Resource]:
        return [r for r in self.resources if r.kind in kinds]

    def extend(self, resources: list[Resource]) -> None:
        self.resources.extend(resources)
        self.updated_at = time.time()

    def move_to(self, stage: Stage) -> None:
        """Advance to stage.

        Raises:
            StageError: If the transition is not allowed
        """
        if stage not in TRANSITIONS[self.stage]:
            raise StageError(self.id, f"cannot move from {self.stage.value} to {stage.value}")
        logger.debug(f"[{self.id}] stage {self.stage.value} -> {stage.value}")
        self.stage = stage
        self.updated_at = time.time()

    @contextmanager
    def transition(self, stage: Stage, done: Optional[Stage] = None) -> Iterator['Context']:
        """Run a block in stage, moving to done on success.

        On failure the stage reverts and the error is recorded before
        re-raising.
        """
        previous = self.stage
        self.move_to(stage)
        try:
            yield self
        except Exception as e:
            self.stage = previous
            self.last_error = str(e)
            raise
        self.last_error = None
        if done is not None:
            self.move_to(done)

    @property
    def is_alive(self) -> bool:
        return self.stage in _ALIVE

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'uid': self.uid,
            'app': self.app.key,
            'namespace': self.namespace,
            'stage': self.stage.value,
            'last_error': self.last_error,
            'updated_at': self.updated_at,
            'options': self.options.to_dict(),
            'resources': [{'kind': r.kind.value, 'manifest': r.manifest} for r in self.resources],
        }

    @classmethod
    def from_dict(cls, data: dict, app: Optional[AppTemplate] = None) -> 'Context':
        return cls(
            uid=data['uid'],
            app=app or AppTemplate(key=data['app']),
            options=ScheduleOptions.from_dict(data.get('options', {})),
            resources=[Resource(kind=ResourceKind(r['kind']), manifest=r['manifest'])
                       for r in data.get('resources', [])],
            stage=Stage(data.get('stage', Stage.CREATED.value)),
            last_error=data.get('last_error'),
            updated_at=data.get('updated_at', time.time()),
        )


def state_path(context_id: str) -> Path:
    return get_base_dir() / '.states' / context_id / 'context.json'


def save_context(ctx: Context, path: Optional[Path] = None) -> Path:
    """Save a context to JSON.

    Returns:
        Path where state was saved
    """
    if path is None:
        path = state_path(ctx.id)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(ctx.to_dict(), f, indent=2, default=_json_default)
    logger.debug(f"Saved context state to {path}")
    return path


def load_context(context_id: str, path: Optional[Path] = None,
                 app: Optional[AppTemplate] = None) -> Context:
    """Load a saved context.

    Raises:
        FileNotFoundError: If no state exists for context_id
    """
    if path is None:
        path = state_path(context_id)
    with open(path, encoding='utf-8') as f:
        data = json.load(f)
    logger.debug(f"Loaded context state from {path}")
    return Context.from_dict(data, app=app)


def _json_default(value: Any) -> Any:
    # Dynamic client payloads may carry datetimes
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
