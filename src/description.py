"""Description loading and validation for the reconciliation engine.

A description declares the resources that should exist. Each declaration
has a kind, a name, an attribute map (literals and ${...} references), an
optional repetition count and an optional lifecycle block.

    name: webapp
    resources:
      - kind: network
        name: main
        attributes: {cidr_block: 10.0.0.0/16}
      - kind: subnet
        name: app
        count: 2
        attributes:
          network_id: ${network.main.id}
          cidr_block: 10.0.${count.index}.0/24
          zone: {$index: [a, b]}
        lifecycle: {create_before_destroy: true}
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from reconcile.errors import DescriptionError
from reconcile.lifecycle import LifecyclePolicy, validate_policy
from reconcile.model import InstanceAddress, ResourceAddress, ResourceInstance
from reconcile.references import parse_references, substitute_index

logger = logging.getLogger(__name__)

_DECLARATION_KEYS = {'kind', 'name', 'count', 'attributes', 'depends_on', 'lifecycle'}


@dataclass
class ResourceDeclaration:
    """A single declared resource.

    Attributes:
        kind: Resource kind (selects the backend binding)
        name: Name unique within the kind
        attributes: Attribute map (key order preserved)
        count: Number of instances (None = single un-indexed instance)
        depends_on: Explicit ordering hints ('kind.name' or 'kind.name[i]')
        lifecycle: Lifecycle policy
    """
    kind: str
    name: str
    attributes: dict = field(default_factory=dict)
    count: Optional[int] = None
    depends_on: list[str] = field(default_factory=list)
    lifecycle: LifecyclePolicy = field(default_factory=LifecyclePolicy)

    @property
    def address(self) -> ResourceAddress:
        return ResourceAddress(self.kind, self.name)

    def instance_addresses(self) -> list[InstanceAddress]:
        if self.count is None:
            return [InstanceAddress(self.kind, self.name)]
        return [InstanceAddress(self.kind, self.name, i) for i in range(self.count)]

    def expand(self) -> list[ResourceInstance]:
        """Materialize instances with index-derived attribute values."""
        instances = []
        for addr in self.instance_addresses():
            attrs = substitute_index(copy.deepcopy(self.attributes), addr.index, str(addr))
            instances.append(ResourceInstance(
                address=addr,
                attributes=attrs,
                policy=self.lifecycle,
                references=parse_references(addr, attrs),
                depends_on=list(self.depends_on),
            ))
        return instances

    @classmethod
    def from_dict(cls, data: dict, position: int = 0) -> 'ResourceDeclaration':
        """Create ResourceDeclaration from dictionary.

        Raises:
            DescriptionError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise DescriptionError(f"Resource {position} must be a mapping")
        for key in ('kind', 'name'):
            if not data.get(key) or not isinstance(data[key], str):
                raise DescriptionError(f"Resource {position} missing required field: {key}")

        address = f"{data['kind']}.{data['name']}"
        unknown = set(data) - _DECLARATION_KEYS
        if unknown:
            raise DescriptionError(
                f"{address}: unknown field(s): {', '.join(sorted(unknown))}", address=address,
            )

        count = data.get('count')
        if count is not None and (isinstance(count, bool) or not isinstance(count, int) or count < 0):
            raise DescriptionError(f"{address}: count must be a non-negative integer",
                                   address=address)

        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise DescriptionError(f"{address}: attributes must be a mapping", address=address)

        depends_on = data.get('depends_on') or []
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise DescriptionError(f"{address}: depends_on must be a list of 'kind.name' strings",
                                   address=address)
        for dep in depends_on:
            try:
                InstanceAddress.parse(dep)
            except ValueError:
                raise DescriptionError(f"{address}: invalid depends_on entry '{dep}'",
                                       address=address)

        lifecycle = LifecyclePolicy.from_dict(data.get('lifecycle'), address)
        validate_policy(lifecycle, count, address)

        return cls(
            kind=data['kind'],
            name=data['name'],
            attributes=attributes,
            count=count,
            depends_on=list(depends_on),
            lifecycle=lifecycle,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {
            'kind': self.kind,
            'name': self.name,
        }
        if self.count is not None:
            d['count'] = self.count
        if self.attributes:
            d['attributes'] = copy.deepcopy(self.attributes)
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        lifecycle = self.lifecycle.to_dict()
        if lifecycle:
            d['lifecycle'] = lifecycle
        return d


@dataclass
class Description:
    """A complete set of declared resources."""
    name: str
    resources: list[ResourceDeclaration] = field(default_factory=list)
    source_path: Optional[Path] = None

    def get(self, address: ResourceAddress) -> ResourceDeclaration:
        """Get a declaration by address.

        Raises:
            KeyError: If not declared
        """
        for decl in self.resources:
            if decl.address == address:
                return decl
        raise KeyError(str(address))

    def expand(self) -> list[ResourceInstance]:
        """Expand every declaration into its instances (declaration order)."""
        instances: list[ResourceInstance] = []
        for decl in self.resources:
            instances.extend(decl.expand())
        logger.debug(f"Description '{self.name}' expanded to {len(instances)} instance(s)")
        return instances

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'resources': [r.to_dict() for r in self.resources],
        }

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Description':
        """Create Description from dictionary.

        Raises:
            DescriptionError: If the description is malformed
        """
        if not isinstance(data, dict):
            raise DescriptionError("Description must be a mapping")
        if not data.get('name'):
            raise DescriptionError("Description missing required field: name")
        resources_data = data.get('resources')
        if not isinstance(resources_data, list) or not resources_data:
            raise DescriptionError("Description must declare at least one resource")

        resources = [ResourceDeclaration.from_dict(r, i) for i, r in enumerate(resources_data)]

        seen: set[ResourceAddress] = set()
        for decl in resources:
            if decl.address in seen:
                raise DescriptionError(f"Duplicate resource address: '{decl.address}'",
                                       address=str(decl.address))
            seen.add(decl.address)

        return cls(name=str(data['name']), resources=resources, source_path=source_path)

    @classmethod
    def from_json(cls, json_str: str) -> 'Description':
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise DescriptionError(f"Invalid description JSON: {e}")
        return cls.from_dict(data)


def load_description_file(path: Path) -> Description:
    """Load a description from a YAML or JSON file.

    Raises:
        DescriptionError: If file not found or invalid
    """
    if not path.exists():
        raise DescriptionError(f"Description file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DescriptionError(f"Invalid YAML in description {path}: {e}")

    if not isinstance(data, dict):
        raise DescriptionError(f"Description {path} must be a YAML object (dict)")

    return Description.from_dict(data, source_path=path)


def load_description(
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Description:
    """Load a description from inline JSON or a file path.

    Raises:
        DescriptionError: If no source given, or the description is invalid
    """
    if json_str:
        return Description.from_json(json_str)
    if file_path:
        return load_description_file(Path(file_path))
    raise DescriptionError("No description source given (use a file path or inline JSON)")
