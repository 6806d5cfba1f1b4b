"""
This module holds the composition model shared by every construct: derived
resource names, resource declarations, deferred references between them, the
construct tree, and the dependency graph handed to the provisioning engine.

A composition pass is synchronous and self-contained. Everything hangs off an
explicit CompositionContext, so independent passes never share state.
"""

import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import pulumi
import yaml

PATH_SEPARATOR = "/"
NAME_SEPARATOR = "-"

_ILLEGAL_NAME_CHARS = re.compile(r"[^a-z0-9-]+")


# region Errors
class CompositionError(Exception):
    """Base class for structural errors found while composing a graph."""


class ConfigurationError(CompositionError, ValueError):
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid configuration for '{field}': {message}")


class DuplicateIdentifierError(CompositionError):
    def __init__(self, scope_path: str, logical_id: str):
        self.scope_path = scope_path
        self.logical_id = logical_id
        super().__init__(f"'{logical_id}' is already declared in '{scope_path}'")


class CyclicDependencyError(CompositionError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        loop = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Cyclic dependency: {loop}")


class UnknownResourceError(CompositionError):
    def __init__(self, path: str, referenced_by: str):
        self.path = path
        self.referenced_by = referenced_by
        super().__init__(f"'{referenced_by}' depends on undeclared resource '{path}'")


class UnsupportedKindError(CompositionError):
    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"Cannot provision '{kind}': {message}")
#endregion


# region Identifier derivation
def derive_name(*parts: str, separator: str = NAME_SEPARATOR) -> str:
    """Join non-empty name parts, e.g. derive_name("acme", "dev") -> "acme-dev"."""
    return separator.join(part for part in parts if part)


def normalize_name(value: str) -> str:
    return _ILLEGAL_NAME_CHARS.sub(NAME_SEPARATOR, value.strip().lower()).strip(NAME_SEPARATOR)


def environment_suffix(name: str, explicit: Optional[str] = None, field: str = "environment") -> str:
    """
    Return the explicit environment, or derive it from the part of name after
    its last separator ("acme-dev" -> "dev").
    """
    if explicit:
        return explicit
    if NAME_SEPARATOR not in name:
        raise ConfigurationError(
            field,
            f"'{name}' must include a `{NAME_SEPARATOR}` to determine the environment, or {field} must be provided",
        )
    environment = name.rsplit(NAME_SEPARATOR, 1)[1]
    if not environment:
        raise ConfigurationError(
            field,
            f"'{name}' must not end with `{NAME_SEPARATOR}` to determine the environment, or {field} must be provided",
        )
    return environment
#endregion


def merge_config(defaults: Optional[Mapping[str, Any]], override: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Shallow merge where the override wins: any key present in override
    replaces the default value entirely, nested mappings are never combined.
    """
    return {**(defaults or {}), **(override or {})}


# region Deferred values
@dataclass(frozen=True)
class Reference:
    """The eventual value of an attribute of another declared resource."""

    producer: str
    attribute: str
    transforms: Tuple[Callable[[Any], Any], ...] = ()

    def apply(self, func: Callable[[Any], Any]) -> "Reference":
        return Reference(self.producer, self.attribute, self.transforms + (func,))

    def render(self) -> str:
        applied = "".join(f"|{getattr(func, '__name__', 'fn')}" for func in self.transforms)
        return "${" + f"{self.producer}.{self.attribute}{applied}" + "}"

    def __str__(self) -> str:
        # A plain string would lose the dependency edge.
        raise TypeError(f"Reference {self.render()} cannot be converted to a string, use concat()")

    def __format__(self, spec: str) -> str:
        return self.__str__()


@dataclass(frozen=True)
class Interpolation:
    parts: Tuple[Any, ...]

    def render(self) -> str:
        return "".join(part.render() if isinstance(part, Reference) else str(part) for part in self.parts)


def concat(*parts: Any) -> Interpolation:
    flattened: List[Any] = []
    for part in parts:
        if isinstance(part, Interpolation):
            flattened.extend(part.parts)
        else:
            flattened.append(part)
    return Interpolation(tuple(flattened))


def iter_references(value: Any) -> Iterator[Reference]:
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Interpolation):
        for part in value.parts:
            yield from iter_references(part)
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def render_value(value: Any) -> Any:
    if isinstance(value, (Reference, Interpolation)):
        return value.render()
    if isinstance(value, Mapping):
        return {key: render_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(item) for item in value]
    return value
#endregion


# region Declarations and constructs
Dependable = Union["ResourceDeclaration", "Construct", str]


class ResourceDeclaration:
    """
    A single unit of desired external state. Creating one registers it with its
    scope and with the dependency graph, adding an edge from every resource its
    config references and from every explicit dependency.
    """

    def __init__(
        self,
        scope: "Construct",
        kind: str,
        logical_id: str,
        config: Optional[Mapping[str, Any]] = None,
        *,
        defaults: Optional[Mapping[str, Any]] = None,
        depends_on: Optional[Sequence[Dependable]] = None,
        existing: bool = False,
        ignore_changes: Optional[Sequence[str]] = None,
    ):
        self.kind = kind
        self.logical_id = logical_id
        self.path = scope.child_path(logical_id)
        self.config = merge_config(defaults, config)
        self.existing = existing
        self.ignore_changes = tuple(ignore_changes or ())
        self.depends_on = tuple(path for dependency in depends_on or () for path in dependency_paths(dependency))

        scope.add_child(logical_id, self)
        graph = scope.context.graph
        graph.add_resource(self)
        for reference in iter_references(self.config):
            graph.add_edge(reference.producer, self.path)
        for path in self.depends_on:
            graph.add_edge(path, self.path)

    def ref(self, attribute: str) -> Reference:
        return Reference(self.path, attribute)

    def __repr__(self) -> str:
        return f"ResourceDeclaration({self.kind!r}, {self.path!r})"


def declare(
    scope: "Construct",
    kind: str,
    logical_id: str,
    config: Optional[Mapping[str, Any]] = None,
    **options: Any,
) -> ResourceDeclaration:
    return ResourceDeclaration(scope, kind, logical_id, config, **options)


def dependency_paths(dependency: Dependable) -> List[str]:
    if isinstance(dependency, ResourceDeclaration):
        return [dependency.path]
    if isinstance(dependency, Construct):
        return [declaration.path for declaration in dependency.declarations()]
    if isinstance(dependency, str):
        return [dependency]
    raise TypeError(f"Cannot depend on {dependency!r}")


class Construct:
    """
    A named node in the composition tree owning resource declarations and
    nested constructs. Subclasses list the attributes they publish to other
    constructs in OUTPUTS.
    """

    OUTPUTS: Tuple[str, ...] = ()

    def __init__(self, scope: "Construct", construct_id: str):
        self.scope = scope
        self.construct_id = construct_id
        self.context = scope.context
        self.path = scope.child_path(construct_id)
        self.children: Dict[str, Union["Construct", ResourceDeclaration]] = {}
        scope.add_child(construct_id, self)

    def child_path(self, child_id: str) -> str:
        return f"{self.path}{PATH_SEPARATOR}{child_id}"

    def add_child(self, child_id: str, child: Union["Construct", ResourceDeclaration]) -> None:
        if not child_id or PATH_SEPARATOR in child_id:
            raise ConfigurationError("logical_id", f"'{child_id}' must be non-empty and must not contain '{PATH_SEPARATOR}'")
        if child_id in self.children:
            raise DuplicateIdentifierError(self.path, child_id)
        self.children[child_id] = child

    def declarations(self) -> Iterator[ResourceDeclaration]:
        for child in self.children.values():
            if isinstance(child, ResourceDeclaration):
                yield child
            else:
                yield from child.declarations()

    def export(self, name: str, value: Any) -> None:
        self.context.graph.add_export(name, value, self.path)

    @property
    def outputs(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.OUTPUTS}


class Stack(Construct):
    """Root of a composition tree."""

    def __init__(self, context: "CompositionContext", name: str):
        self.scope = None
        self.construct_id = name
        self.context = context
        self.path = name
        self.children = {}
#endregion


# region Dependency graph
@dataclass(frozen=True)
class Graph:
    resources: Dict[str, ResourceDeclaration]
    edges: Tuple[Tuple[str, str], ...]
    order: Tuple[str, ...]
    exports: Dict[str, Any]

    def declaration(self, path: str) -> ResourceDeclaration:
        return self.resources[path]

    def predecessors(self, path: str) -> Tuple[str, ...]:
        return tuple(source for source, target in self.edges if target == path)

    def manifest(self) -> Dict[str, Any]:
        resources = []
        for path in self.order:
            declaration = self.resources[path]
            entry: Dict[str, Any] = {
                "path": path,
                "kind": declaration.kind,
                "config": render_value(declaration.config),
            }
            if declaration.existing:
                entry["existing"] = True
            if declaration.ignore_changes:
                entry["ignore_changes"] = list(declaration.ignore_changes)
            resources.append(entry)
        return {
            "resources": resources,
            "edges": [[source, target] for source, target in self.edges],
            "exports": render_value(self.exports),
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.manifest(), sort_keys=False)


class DependencyGraph:
    def __init__(self):
        self._resources: Dict[str, ResourceDeclaration] = {}
        # dict keeps insertion order and deduplicates
        self._edges: Dict[Tuple[str, str], None] = {}
        self._exports: Dict[str, Any] = {}
        self._export_owners: Dict[str, str] = {}

    def add_resource(self, declaration: ResourceDeclaration) -> None:
        if declaration.path in self._resources:
            scope_path, _, logical_id = declaration.path.rpartition(PATH_SEPARATOR)
            raise DuplicateIdentifierError(scope_path, logical_id)
        self._resources[declaration.path] = declaration
        pulumi.log.debug(f"Declared {declaration.kind} '{declaration.path}'")

    def add_edge(self, source: str, target: str) -> None:
        self._edges.setdefault((source, target), None)

    def add_export(self, name: str, value: Any, owner: str) -> None:
        if name in self._exports:
            raise DuplicateIdentifierError("exports", name)
        self._exports[name] = value
        self._export_owners[name] = owner

    def finalize(self) -> Graph:
        for source, target in self._edges:
            if source not in self._resources:
                raise UnknownResourceError(source, target)
        for name, value in self._exports.items():
            for reference in iter_references(value):
                if reference.producer not in self._resources:
                    raise UnknownResourceError(reference.producer, self._export_owners[name])

        successors: Dict[str, List[str]] = {path: [] for path in self._resources}
        for source, target in self._edges:
            successors[source].append(target)

        cycle = _find_cycle(successors)
        if cycle:
            raise CyclicDependencyError(cycle)

        order = _topological_order(successors)
        pulumi.log.info(f"Finalized dependency graph with {len(order)} resources and {len(self._edges)} edges")
        return Graph(
            resources=dict(self._resources),
            edges=tuple(self._edges),
            order=tuple(order),
            exports=dict(self._exports),
        )


def _find_cycle(successors: Mapping[str, Sequence[str]]) -> Optional[List[str]]:
    visited = set()
    stack: List[str] = []
    on_stack = set()

    def visit(node: str) -> Optional[List[str]]:
        visited.add(node)
        stack.append(node)
        on_stack.add(node)
        for successor in successors[node]:
            if successor in on_stack:
                return stack[stack.index(successor):]
            if successor not in visited:
                cycle = visit(successor)
                if cycle:
                    return cycle
        stack.pop()
        on_stack.discard(node)
        return None

    for node in successors:
        if node not in visited:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def _topological_order(successors: Mapping[str, Sequence[str]]) -> List[str]:
    in_degree = {node: 0 for node in successors}
    for targets in successors.values():
        for target in targets:
            in_degree[target] += 1

    # ties resolve by declaration order so the output is deterministic
    ready = deque(node for node, degree in in_degree.items() if degree == 0)
    order: List[str] = []
    while ready:
        node = ready.popleft()
        order.append(node)
        for target in successors[node]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                ready.append(target)
    return order
#endregion


class CompositionContext:
    """State for one composition pass, passed explicitly to the root Stack."""

    def __init__(self):
        self.graph = DependencyGraph()

    def stack(self, name: str) -> Stack:
        return Stack(self, name)

    def finalize(self) -> Graph:
        return self.graph.finalize()
