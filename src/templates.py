"""Application templates and the on-disk template registry.

Layout of a spec directory:

    specs/
      mysql/
        px-mysql-storage.yaml     # multi-document YAML, loaded in file-name order
        px-mysql-app.yaml
      nginx/
        nginx.yaml
        .disabled                 # marker: template loaded but not scheduled

Every document must carry a supported 'kind'. An unsupported kind fails the
whole load before anything touches the cluster.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from config import ConfigError
from errors import UnsupportedResourceKind
from resources import Resource

logger = logging.getLogger(__name__)

DISABLED_MARKER = '.disabled'


@dataclass(frozen=True)
class AppTemplate:
    """Ordered resource descriptors for one application.

    Attributes:
        key: App key (the spec subdirectory name)
        resources: Descriptors in template order
        enabled: Whether schedule() picks this template
    """
    key: str
    resources: tuple = field(default_factory=tuple)
    enabled: bool = True

    def get_id(self, instance_id: str) -> str:
        """Context id (and namespace) for one instance of this app."""
        return f"{self.key}-{instance_id}"

    def copy_resources(self) -> list[Resource]:
        return [r.copy() for r in self.resources]


def parse_documents(text: str, app: str, source: str = '<string>') -> list[Resource]:
    """Parse multi-document YAML into descriptors.

    Raises:
        ConfigError: On invalid YAML
        UnsupportedResourceKind: On an unknown or missing kind
    """
    try:
        docs = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {source}: {e}") from e

    resources = []
    for doc in docs:
        if doc is None:
            continue
        try:
            resources.append(Resource.from_manifest(doc, app=app))
        except UnsupportedResourceKind as e:
            raise UnsupportedResourceKind(app, f"{source}: {e.cause}") from None
    return resources


class TemplateRegistry:
    """Loads app templates from a spec directory."""

    def __init__(self, spec_dir: Optional[Path] = None, app_list: Optional[list] = None) -> None:
        self.spec_dir = Path(spec_dir) if spec_dir else None
        self.app_list = list(app_list or [])
        self._templates: dict[str, AppTemplate] = {}
        if self.spec_dir is not None:
            self.rescan()

    def rescan(self, spec_dir: Optional[Path] = None) -> list[AppTemplate]:
        """(Re)load every template under the spec directory.

        Raises:
            ConfigError: If the spec directory is missing or a file is invalid
            UnsupportedResourceKind: If any template has an unknown kind
        """
        if spec_dir is not None:
            self.spec_dir = Path(spec_dir)
        if self.spec_dir is None or not self.spec_dir.is_dir():
            raise ConfigError(f"Spec directory not found: {self.spec_dir}")

        templates: dict[str, AppTemplate] = {}
        for app_dir in sorted(p for p in self.spec_dir.iterdir() if p.is_dir()):
            if self.app_list and app_dir.name not in self.app_list:
                continue
            templates[app_dir.name] = self._load_dir(app_dir)

        self._templates = templates
        logger.info(f"Loaded {len(templates)} app template(s) from {self.spec_dir}")
        return list(templates.values())

    def _load_dir(self, app_dir: Path) -> AppTemplate:
        key = app_dir.name
        files = sorted(f for f in app_dir.iterdir() if f.suffix in ('.yaml', '.yml') and f.is_file())
        resources: list[Resource] = []
        for path in files:
            resources.extend(parse_documents(path.read_text(encoding='utf-8'), key, source=str(path)))
        enabled = not (app_dir / DISABLED_MARKER).exists()
        logger.debug(f"Template {key}: {len(resources)} resource(s) from {len(files)} file(s)"
                     f"{'' if enabled else ' (disabled)'}")
        return AppTemplate(key=key, resources=tuple(resources), enabled=enabled)

    def register(self, template: AppTemplate) -> None:
        self._templates[template.key] = template

    def list_keys(self) -> list[str]:
        return sorted(self._templates)

    def get(self, key: str) -> AppTemplate:
        """Get a template by key.

        Raises:
            ConfigError: If the key is unknown
        """
        if key not in self._templates:
            available = ', '.join(self.list_keys()) or 'none'
            raise ConfigError(f"App template '{key}' not found. Available: {available}")
        return self._templates[key]

    def get_all(self) -> list[AppTemplate]:
        """Enabled templates in key order."""
        return [self._templates[k] for k in self.list_keys() if self._templates[k].enabled]
