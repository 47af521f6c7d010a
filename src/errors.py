"""Driver error taxonomy.

Every error names the application (context id or template key) it concerns
and carries a human-readable cause. The class itself is the kind tag.
"""

from typing import Optional


class DriverError(Exception):
    """Base class for orchestration failures."""

    kind = 'DriverError'
    retryable = True

    def __init__(self, app: str, cause: str, context: Optional[object] = None):
        self.app = app
        self.cause = cause
        # Partially built context, kept for inspection after a failed schedule
        self.context = context
        super().__init__(f"{self.kind}: app {app}: {cause}")


class ScheduleFailure(DriverError):
    kind = 'ScheduleFailure'


class ValidateFailure(DriverError):
    kind = 'ValidateFailure'


class DestroyFailure(DriverError):
    kind = 'DestroyFailure'


class ResizeFailure(DriverError):
    kind = 'ResizeFailure'


class ScaleFailure(DriverError):
    kind = 'ScaleFailure'


class DecommissionFailure(DriverError):
    kind = 'DecommissionFailure'


class ConfigLookupFailure(DriverError):
    """Secret config map or one of its keys is missing."""
    kind = 'ConfigLookupFailure'
    retryable = False


class UnsupportedResourceKind(DriverError):
    """Template contains a kind this driver cannot dispatch."""
    kind = 'UnsupportedResourceKind'
    retryable = False


class VolumeParametersFailure(DriverError):
    kind = 'VolumeParametersFailure'


class VolumeValidateFailure(DriverError):
    kind = 'VolumeValidateFailure'


class NodeSchedulingFailure(DriverError):
    """Cordon/uncordon or scheduler service start/stop failed on a node."""
    kind = 'NodeSchedulingFailure'


class NodeNotReady(DriverError):
    kind = 'NodeNotReady'


class StorageLookupFailure(DriverError):
    """Claims or snapshots of an app could not be read."""
    kind = 'StorageLookupFailure'


class NodeLookupFailure(DriverError):
    """Nodes hosting an app's pods could not be resolved."""
    kind = 'NodeLookupFailure'
