"""Driver configuration management.

Configuration is loaded from a config directory holding driver.yaml:

    spec_dir: /path/to/specs          # one subdirectory per app template
    storage_provisioner: kubernetes.io/portworx-volume
    secret_config_map: px-auth        # enables security annotations
    pods_root_dir: /var/lib/kubelet/pods
    ssh_user: root
    ssh_port: 22
    ssh_identity_file: ~/.ssh/id_ed25519
    phase_workers: 4
    kube_context: my-cluster
    api_endpoint: https://10.0.0.1:6443
    app_list: [mysql, nginx]
    retry_interval: 10
    timeouts:
      object_create: 120
      destroy: 120
      vol_dir_cleanup: 300
      ...

Resolution order for the config directory:
1. $KAD_CONFIG_DIR environment variable
2. ../kad-config/ sibling directory (dev workspace)
3. /usr/local/etc/kube-app-driver/ (FHS install)

When none exists, built-in defaults are used.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

PROJECT_NAME = 'kube-app-driver'
# Value of the creator label placed on namespaces and autopilot rules
CREATOR = 'kad'

DEFAULT_PODS_ROOT_DIR = '/var/lib/kubelet/pods'
FHS_CONFIG_DIR = Path('/usr/local/etc/kube-app-driver')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class Timeouts:
    """Timeouts and intervals, in seconds."""
    object_create: float = 120
    destroy: float = 120
    vol_dir_cleanup: float = 300
    find_files: float = 60
    node_ready: float = 300
    statefulset_validate: float = 1200
    delete_tasks: float = 180
    default: float = 120

    @classmethod
    def from_dict(cls, data: dict) -> 'Timeouts':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown timeout(s): {', '.join(sorted(unknown))}")
        values = {}
        for key, value in data.items():
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
                raise ConfigError(f"Timeout '{key}' must be a non-negative number, got {value!r}")
            values[key] = value
        return cls(**values)

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class DriverConfig:
    """Settings shared by every driver operation.

    Attributes:
        spec_dir: Directory of app templates (one subdirectory per app key)
        storage_provisioner: Provisioner written into StorageClass objects
        secret_config_map: ConfigMap (in 'default') naming the auth secret
        pods_root_dir: Kubelet pods directory on worker nodes
        ssh_user: User for node-level commands
        ssh_port: SSH port on the nodes
        ssh_identity_file: Private key for node SSH (None = ssh defaults)
        phase_workers: Max concurrent creations within one phase
        kube_context: kubeconfig context (None = current context)
        api_endpoint: Control plane URL for pre-flight checks
        app_list: Restrict the template registry to these keys
        retry_interval: Poll interval for every retried operation
        timeouts: Per-operation timeouts
    """
    spec_dir: Optional[Path] = None
    storage_provisioner: str = ''
    secret_config_map: str = ''
    pods_root_dir: str = DEFAULT_PODS_ROOT_DIR
    ssh_user: str = 'root'
    ssh_port: int = 22
    ssh_identity_file: Optional[str] = None
    phase_workers: int = 4
    kube_context: Optional[str] = None
    api_endpoint: str = ''
    app_list: list = field(default_factory=list)
    retry_interval: float = 10
    timeouts: Timeouts = field(default_factory=Timeouts)
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.spec_dir, str):
            self.spec_dir = Path(self.spec_dir)
        if isinstance(self.timeouts, dict):
            self.timeouts = Timeouts.from_dict(self.timeouts)
        if not isinstance(self.phase_workers, int) or self.phase_workers < 1:
            raise ConfigError(f"phase_workers must be a positive integer, got {self.phase_workers!r}")
        if not isinstance(self.retry_interval, (int, float)) or self.retry_interval <= 0:
            raise ConfigError(f"retry_interval must be positive, got {self.retry_interval!r}")

    @classmethod
    def from_dict(cls, data: dict, config_file: Optional[Path] = None) -> 'DriverConfig':
        """Build config from parsed YAML, rejecting unknown keys."""
        known = {f.name for f in fields(cls)} - {'config_file'}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(sorted(unknown))}")

        values = dict(data)
        spec_dir = values.get('spec_dir')
        # Relative spec_dir is resolved against the config file location
        if spec_dir and config_file and not Path(spec_dir).is_absolute():
            values['spec_dir'] = config_file.parent / spec_dir
        if 'app_list' in values and not isinstance(values['app_list'], list):
            raise ConfigError("app_list must be a list of app keys")
        return cls(config_file=config_file, **values)

    def to_dict(self) -> dict:
        return {
            'spec_dir': str(self.spec_dir) if self.spec_dir else None,
            'storage_provisioner': self.storage_provisioner,
            'secret_config_map': self.secret_config_map,
            'pods_root_dir': self.pods_root_dir,
            'ssh_user': self.ssh_user,
            'ssh_port': self.ssh_port,
            'ssh_identity_file': self.ssh_identity_file,
            'phase_workers': self.phase_workers,
            'kube_context': self.kube_context,
            'api_endpoint': self.api_endpoint,
            'app_list': list(self.app_list),
            'retry_interval': self.retry_interval,
            'timeouts': self.timeouts.to_dict(),
        }


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def get_base_dir() -> Path:
    """Get the kube-app-driver checkout directory."""
    return Path(__file__).parent.parent  # src/ -> kube-app-driver/


def get_config_dir() -> Optional[Path]:
    """Discover the config directory.

    Resolution order:
    1. $KAD_CONFIG_DIR environment variable
    2. ../kad-config/ sibling directory (dev workspace)
    3. /usr/local/etc/kube-app-driver/ (FHS install)

    Returns:
        The directory, or None when nothing is configured.

    Raises:
        ConfigError: If $KAD_CONFIG_DIR points at a missing directory
    """
    if env_path := os.environ.get('KAD_CONFIG_DIR'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"KAD_CONFIG_DIR={env_path} does not exist")

    sibling = get_base_dir().parent / 'kad-config'
    if sibling.exists():
        return sibling

    if FHS_CONFIG_DIR.exists():
        return FHS_CONFIG_DIR

    return None


def load_config(path: Optional[Path] = None) -> DriverConfig:
    """Load driver configuration.

    Args:
        path: Explicit driver.yaml path. Default: discovered config dir.

    Returns:
        DriverConfig (defaults when no config file is found)

    Raises:
        ConfigError: On a missing explicit path or invalid contents
    """
    if path is None:
        config_dir = get_config_dir()
        if config_dir is None or not (config_dir / 'driver.yaml').exists():
            logger.debug("No driver.yaml found, using defaults")
            return DriverConfig()
        path = config_dir / 'driver.yaml'
    elif not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = _parse_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: invalid YAML: {e}") from e

    logger.debug(f"Loaded driver config from {path}")
    return DriverConfig.from_dict(data, config_file=path)
