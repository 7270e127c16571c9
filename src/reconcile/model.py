"""Addresses, instances and references shared by every engine component."""

import re
from dataclasses import dataclass, field
from typing import Optional, Union

from reconcile.lifecycle import LifecyclePolicy

_ADDRESS_RE = re.compile(
    r'^(?P<kind>[A-Za-z_][\w-]*)\.(?P<name>[A-Za-z_][\w-]*)'
    r'(?:\[(?P<index>\d+)\])?(?P<deposed>~deposed(?:\.(?P<generation>\d+))?)?$'
)


@dataclass(frozen=True)
class ResourceAddress:
    """A declared resource: (kind, name), unique within a description."""
    kind: str
    name: str

    def __str__(self) -> str:
        return f'{self.kind}.{self.name}'


@dataclass(frozen=True)
class InstanceAddress:
    """One materialized instance of a declaration.

    index is None for declarations without a count. deposed marks the
    old object of a create_before_destroy replacement awaiting destroy;
    generation tells apart deposed objects left by successive
    replacements whose destroy failed.
    """
    kind: str
    name: str
    index: Optional[int] = None
    deposed: bool = False
    generation: int = 0

    @property
    def resource(self) -> ResourceAddress:
        return ResourceAddress(self.kind, self.name)

    @property
    def sort_key(self) -> tuple:
        return (self.kind, self.name, -1 if self.index is None else self.index,
                self.deposed, self.generation)

    def as_deposed(self, generation: int = 0) -> 'InstanceAddress':
        return InstanceAddress(self.kind, self.name, self.index, deposed=True, generation=generation)

    def as_current(self) -> 'InstanceAddress':
        return InstanceAddress(self.kind, self.name, self.index)

    def __str__(self) -> str:
        text = f'{self.kind}.{self.name}'
        if self.index is not None:
            text += f'[{self.index}]'
        if self.deposed:
            text += '~deposed'
            if self.generation:
                text += f'.{self.generation}'
        return text

    @classmethod
    def parse(cls, text: str) -> 'InstanceAddress':
        """Parse 'kind.name', 'kind.name[2]' or 'kind.name[2]~deposed[.N]'.

        Raises:
            ValueError: If text is not a valid instance address
        """
        match = _ADDRESS_RE.match(text.strip())
        if not match:
            raise ValueError(f"Invalid instance address: '{text}'")
        index = match.group('index')
        generation = match.group('generation')
        return cls(
            kind=match.group('kind'),
            name=match.group('name'),
            index=int(index) if index is not None else None,
            deposed=match.group('deposed') is not None,
            generation=int(generation) if generation is not None else 0,
        )


# Selector: None (un-indexed), an int index, or '*' (all instances)
Selector = Optional[Union[int, str]]


@dataclass(frozen=True)
class Reference:
    """A data dependency read by an attribute expression.

    Attributes:
        source: Instance whose attribute holds the expression
        attribute_path: Where in the source attributes the expression sits
        expression: Inner text of the ${...} expression
        target: Referenced declaration
        selector: Index selector on the target (None, int, or '*')
        output_path: Attribute path read from the target instance
    """
    source: InstanceAddress
    attribute_path: str
    expression: str
    target: ResourceAddress
    selector: Selector
    output_path: tuple[str, ...]

    @property
    def is_splat(self) -> bool:
        return self.selector == '*'


class _Unknown:
    """Sentinel for values only known after an upstream apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


@dataclass
class ResourceInstance:
    """A materialized instance with index-derived attributes.

    Attributes still contain ${...} reference expressions; values are
    resolved against state at plan and execution time.
    """
    address: InstanceAddress
    attributes: dict
    policy: LifecyclePolicy = field(default_factory=LifecyclePolicy)
    references: list[Reference] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return self.address.kind

    def __repr__(self) -> str:
        return f"ResourceInstance({self.address}, refs={len(self.references)})"
