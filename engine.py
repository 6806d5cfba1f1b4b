import re
from typing import Any, Dict, Mapping, Optional

import pulumi
import pulumi_gcp as gcp
import pulumi_github as github
import pulumi_random

from composition import (
    Graph,
    Interpolation,
    Reference,
    ResourceDeclaration,
    UnknownResourceError,
    UnsupportedKindError,
)

PROVIDERS = {
    "gcp": gcp,
    "github": github,
    "random": pulumi_random,
}


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


class PulumiEngine:
    """
    Hands a finalized Graph to Pulumi: each declaration becomes a resource (or
    a lookup of an existing one) created in topological order, with deferred
    references turned into Outputs of the resources they point at.
    """

    def __init__(self, providers: Optional[Mapping[str, Any]] = None):
        self.providers = dict(providers or PROVIDERS)
        self.resources: Dict[str, Any] = {}

    def resolve_kind(self, kind: str):
        provider_name, _, rest = kind.partition(".")
        module_path, _, class_name = rest.rpartition(".")
        provider = self.providers.get(provider_name)
        if provider is None or not class_name:
            raise UnsupportedKindError(kind, f"unknown provider '{provider_name}'")

        module = provider
        for part in filter(None, module_path.split(".")):
            module = getattr(module, part, None)
            if module is None:
                raise UnsupportedKindError(kind, f"module '{module_path}' not found in provider '{provider_name}'")
        return module, class_name

    def resolve_value(self, value: Any, referenced_by: str) -> Any:
        if isinstance(value, Reference):
            if value.producer not in self.resources:
                raise UnknownResourceError(value.producer, referenced_by)
            output = getattr(self.resources[value.producer], value.attribute)
            for transform in value.transforms:
                output = pulumi.Output.from_input(output).apply(transform)
            return output
        if isinstance(value, Interpolation):
            return pulumi.Output.concat(*(self.resolve_value(part, referenced_by) for part in value.parts))
        if isinstance(value, Mapping):
            return {k: self.resolve_value(v, referenced_by) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.resolve_value(item, referenced_by) for item in value]
        return value

    def lookup(self, declaration: ResourceDeclaration, module, class_name: str, args: Dict[str, Any]):
        get_func_name = f"get_{to_snake_case(class_name)}_output"
        get_func = getattr(module, get_func_name, None)
        if get_func is None:
            raise UnsupportedKindError(declaration.kind, f"function '{get_func_name}' not found for existing resource")
        pulumi.log.info(f"Looking up existing resource '{declaration.path}' via '{get_func_name}'")
        return get_func(**args)

    def create(self, declaration: ResourceDeclaration, graph: Graph):
        module, class_name = self.resolve_kind(declaration.kind)
        args = self.resolve_value(declaration.config, declaration.path)

        if declaration.existing:
            return self.lookup(declaration, module, class_name, args)

        resource_class = getattr(module, class_name, None)
        if resource_class is None:
            raise UnsupportedKindError(declaration.kind, f"resource class '{class_name}' not found")

        # lookups are Outputs, not resources, so they cannot be depended on
        depends_on = [
            self.resources[path]
            for path in graph.predecessors(declaration.path)
            if isinstance(self.resources[path], pulumi.Resource)
        ]
        opts = pulumi.ResourceOptions(
            depends_on=depends_on or None,
            ignore_changes=list(declaration.ignore_changes) or None,
        )
        resource = resource_class(declaration.path, opts=opts, **args)
        pulumi.log.info(f"Created resource: {declaration.path} ({declaration.kind})")
        return resource

    def materialize(self, graph: Graph) -> Dict[str, Any]:
        for path in graph.order:
            self.resources[path] = self.create(graph.declaration(path), graph)

        for name, value in graph.exports.items():
            pulumi.export(name, self.resolve_value(value, name))

        return self.resources
