"""Resource declaration loading and validation.

Declarations describe the desired infrastructure as a list of resources:

    schema_version: 1
    name: cloud-run-app
    resources:
      - type: google_artifact_registry_repository
        name: images
        attributes:
          location: us-central1
          format: DOCKER
      - type: google_cloud_run_service
        name: api
        depends_on: [google_secret_manager_secret.db_password]
        attributes:
          image: ${google_artifact_registry_repository.images.url}

A whole-string ``${<type>.<name>.<attribute>}`` value is a reference to an
output attribute of another resource. References may appear anywhere inside
nested lists and mappings. They are parsed into Reference objects at load
time so the graph builder never inspects raw strings.
"""

import datetime
import json
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

TYPE_PATTERN = r'[a-z][a-z0-9_]*'
NAME_PATTERN = r'[A-Za-z0-9_-]+'
ATTRIBUTE_PATTERN = r'[A-Za-z0-9_]+'

_TYPE_RE = re.compile(rf'^{TYPE_PATTERN}$')
_NAME_RE = re.compile(rf'^{NAME_PATTERN}$')
_RESOURCE_ID_RE = re.compile(rf'^({TYPE_PATTERN})\.({NAME_PATTERN})$')
_REFERENCE_RE = re.compile(rf'^\$\{{({TYPE_PATTERN}\.{NAME_PATTERN})\.({ATTRIBUTE_PATTERN})\}}$')


@dataclass(frozen=True)
class Reference:
    """Reference to an output attribute of another resource.

    Attributes:
        resource_id: Target resource id ("<type>.<name>")
        attribute: Output attribute name on the target
    """
    resource_id: str
    attribute: str

    def __str__(self) -> str:
        return f'${{{self.resource_id}.{self.attribute}}}'

    @property
    def target(self) -> str:
        return f'{self.resource_id}.{self.attribute}'


def parse_value(value: Any, where: str = '') -> Any:
    """Convert raw declaration values, replacing reference strings with Reference.

    Raises:
        ConfigError: If a string embeds a reference without being one, or a
            value (e.g. a YAML !!set or !!binary) cannot be stored as JSON
    """
    if isinstance(value, str):
        match = _REFERENCE_RE.match(value)
        if match:
            return Reference(resource_id=match.group(1), attribute=match.group(2))
        if '${' in value:
            raise ConfigError(
                f"{where}: invalid reference '{value}'. "
                "References must be the whole value, e.g. ${type.name.attribute}"
            )
        return value
    if isinstance(value, datetime.date):
        # YAML timestamps; state is stored as JSON
        return value.isoformat()
    if isinstance(value, list):
        return [parse_value(v, where) for v in value]
    if isinstance(value, dict):
        return {str(k): parse_value(v, f'{where}.{k}' if where else str(k)) for k, v in value.items()}
    if value is None or isinstance(value, (bool, int, float)):
        return value
    raise ConfigError(
        f"{where}: unsupported value of type {type(value).__name__}. "
        "Attributes must be strings, numbers, booleans, null, lists or mappings"
    )


def render_value(value: Any) -> Any:
    """Inverse of parse_value: Reference objects back to ${...} strings."""
    if isinstance(value, Reference):
        return str(value)
    if isinstance(value, list):
        return [render_value(v) for v in value]
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference found in a (possibly nested) value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, list):
        for v in value:
            yield from iter_references(v)
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)


def substitute(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Return a copy of value with each Reference replaced by resolve(ref)."""
    if isinstance(value, Reference):
        return resolve(value)
    if isinstance(value, list):
        return [substitute(v, resolve) for v in value]
    if isinstance(value, dict):
        return {k: substitute(v, resolve) for k, v in value.items()}
    return value


def split_resource_id(resource_id: str) -> tuple[str, str]:
    """Split "<type>.<name>" into (type, name).

    Raises:
        ConfigError: If the id is malformed
    """
    match = _RESOURCE_ID_RE.match(resource_id)
    if not match:
        raise ConfigError(f"Invalid resource id '{resource_id}' (expected <type>.<name>)")
    return match.group(1), match.group(2)


@dataclass(frozen=True)
class ResourceSpec:
    """Declared desired configuration for one infrastructure object.

    Immutable for the duration of a plan cycle. Attribute values are plain
    data or Reference objects.

    Attributes:
        type: Resource type (e.g. google_cloud_run_service)
        name: Name unique within the type
        attributes: Attribute name -> declared value
        depends_on: Explicit dependencies (resource ids)
    """
    type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return f'{self.type}.{self.name}'

    @property
    def references(self) -> list[Reference]:
        """All references in attribute values, in declaration order."""
        return list(iter_references(self.attributes))

    @property
    def dependencies(self) -> set[str]:
        """Explicit and implicit (reference-derived) dependencies."""
        deps = set(self.depends_on)
        deps.update(ref.resource_id for ref in self.references)
        return deps

    def with_attributes(self, attributes: dict[str, Any]) -> 'ResourceSpec':
        """Copy of this spec with resolved attribute values."""
        return replace(self, attributes=attributes)

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> 'ResourceSpec':
        """Build a ResourceSpec from a raw declaration mapping.

        Raises:
            ConfigError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Resource {index} must be a mapping")
        rtype = data.get('type')
        name = data.get('name')
        if not rtype:
            raise ConfigError(f"Resource {index} missing required field: type")
        if not name:
            raise ConfigError(f"Resource {index} ({rtype}) missing required field: name")
        if not _TYPE_RE.match(str(rtype)):
            raise ConfigError(f"Resource {index} has invalid type '{rtype}'")
        if not _NAME_RE.match(str(name)):
            raise ConfigError(f"Resource {index} has invalid name '{name}'")

        rid = f'{rtype}.{name}'
        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ConfigError(f"Resource '{rid}' attributes must be a mapping")

        depends_on = data.get('depends_on') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        for dep in depends_on:
            if not isinstance(dep, str) or not _RESOURCE_ID_RE.match(dep):
                raise ConfigError(
                    f"Resource '{rid}' has invalid depends_on entry '{dep}' "
                    "(expected <type>.<name>)"
                )

        return cls(
            type=str(rtype),
            name=str(name),
            attributes=parse_value(attributes, rid),
            depends_on=tuple(depends_on),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'type': self.type, 'name': self.name}
        if self.attributes:
            d['attributes'] = render_value(self.attributes)
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        return d


@dataclass
class Declarations:
    """A named collection of resource declarations.

    Attributes:
        name: Declaration set identifier
        resources: ResourceSpecs in declaration order
        schema_version: Declaration schema version
        description: Free-form description
        source_path: File or directory the declarations were loaded from
    """
    name: str
    resources: list[ResourceSpec] = field(default_factory=list)
    schema_version: int = 1
    description: str = ''
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Declarations':
        """Build Declarations from a parsed mapping.

        Raises:
            ConfigError: If schema version unsupported or fields invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported declaration schema_version: {schema_version}. "
                f"Supported: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )
        name = data.get('name')
        if not name:
            if source_path is None:
                raise ConfigError("Declarations missing required field: name")
            name = source_path.stem

        resources_data = data.get('resources')
        if resources_data is None:
            resources_data = []
        if not isinstance(resources_data, list):
            raise ConfigError("Declarations field 'resources' must be a list")

        resources = [ResourceSpec.from_dict(r, i) for i, r in enumerate(resources_data)]
        _check_duplicates(resources)

        return cls(
            name=str(name),
            resources=resources,
            schema_version=schema_version,
            description=data.get('description', ''),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Declarations':
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid declarations JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Declarations JSON must be an object")
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        return {
            'schema_version': self.schema_version,
            'name': self.name,
            'description': self.description,
            'resources': [r.to_dict() for r in self.resources],
        }

    def get(self, resource_id: str) -> ResourceSpec:
        """Get a resource by id.

        Raises:
            KeyError: If not declared
        """
        for spec in self.resources:
            if spec.id == resource_id:
                return spec
        raise KeyError(resource_id)


def _check_duplicates(resources: list[ResourceSpec]) -> None:
    seen: set[str] = set()
    for spec in resources:
        if spec.id in seen:
            raise ConfigError(f"Duplicate resource: '{spec.id}'")
        seen.add(spec.id)


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in declarations {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Declarations {path} must be a YAML object (dict)")
    return data


def load_file(path: Path) -> Declarations:
    """Load declarations from a single YAML file.

    Raises:
        ConfigError: If file not found or invalid
    """
    if not path.exists():
        raise ConfigError(f"Declarations file not found: {path}")
    return Declarations.from_dict(_read_yaml(path), source_path=path)


def load_directory(path: Path) -> Declarations:
    """Load and merge every *.yaml / *.yml file in a directory.

    Files are read in name order; resources keep that order. The
    declaration set is named after the directory unless exactly one file
    provides a name.

    Raises:
        ConfigError: If the directory holds no declaration files or resources collide
    """
    files = sorted(p for p in path.iterdir()
                   if p.is_file() and p.suffix in ('.yaml', '.yml'))
    if not files:
        raise ConfigError(f"No declaration files (*.yaml) in {path}")

    resources: list[ResourceSpec] = []
    names: list[str] = []
    descriptions: list[str] = []
    for file_path in files:
        data = _read_yaml(file_path)
        part = Declarations.from_dict({**data, 'name': data.get('name') or path.name},
                                      source_path=file_path)
        logger.debug(f"Loaded {len(part.resources)} resource(s) from {file_path}")
        resources.extend(part.resources)
        if data.get('name'):
            names.append(str(data['name']))
        if part.description:
            descriptions.append(part.description)

    _check_duplicates(resources)
    return Declarations(
        name=names[0] if len(names) == 1 else path.name,
        resources=resources,
        description='\n'.join(descriptions),
        source_path=path,
    )


def load_declarations(
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Declarations:
    """Load declarations from various sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - YAML file or directory of YAML files

    Raises:
        ConfigError: If no source given, or the source is missing or invalid
    """
    if json_str:
        return Declarations.from_json(json_str)
    if file_path:
        path = Path(file_path)
        if path.is_dir():
            return load_directory(path)
        return load_file(path)
    raise ConfigError("No declarations given: specify a file, directory, or inline JSON")
