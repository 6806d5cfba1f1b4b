from typing import Any, Dict

from bootstrap import Bootstrap
from composition import CompositionContext, Graph
from config import (
    BootstrapConfig,
    CurioStackConfig,
    CurioStackHostingConfig,
    CurioStackServiceConfig,
    build_config,
)
from curiostack import CurioStack, CurioStackHosting, CurioStackService


def compose_stack(config_data: Dict[str, Any], stack_name: str) -> Graph:
    """Compose every construct described by a loaded config file into one graph."""
    context = CompositionContext()
    stack = context.stack(stack_name)

    if config_data.get("bootstrap"):
        Bootstrap(stack, build_config(BootstrapConfig, config_data["bootstrap"]))

    if config_data.get("curiostack"):
        curiostack_data = dict(config_data["curiostack"])
        services = curiostack_data.pop("services", None) or []
        hosting = curiostack_data.pop("hosting", None)

        curiostack = CurioStack(stack, build_config(CurioStackConfig, curiostack_data))
        for service in services:
            CurioStackService(stack, build_config(CurioStackServiceConfig, service, curiostack=curiostack))
        if hosting:
            CurioStackHosting(stack, build_config(CurioStackHostingConfig, hosting, curiostack=curiostack))

    return context.finalize()
