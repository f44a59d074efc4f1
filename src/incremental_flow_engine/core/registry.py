"""Component and flow registries."""

from __future__ import annotations

import importlib
import logging
from pathlib import Path
from typing import Any, Callable, Type, TYPE_CHECKING

if TYPE_CHECKING:
    from .builder import Flow, FlowBuilder
    from .component import Component
    from .scope import DataScope

logger = logging.getLogger(__name__)


class ComponentRegistry:
    """
    Registry mapping component type strings to component classes.

    This allows flows to reference components by type string (e.g.,
    "source/in_memory") and have the engine instantiate the correct class.
    """

    _instance: "ComponentRegistry | None" = None

    def __init__(self):
        self._components: dict[str, Type["Component"]] = {}

    @classmethod
    def get_instance(cls) -> "ComponentRegistry":
        """Get the singleton registry instance."""
        if cls._instance is None:
            cls._instance = ComponentRegistry()
        return cls._instance

    def register(self, component_type: str, component_class: Type["Component"]) -> None:
        """
        Register a component class under a type string.

        Args:
            component_type: Type identifier (e.g., "function/template")
            component_class: The component class to register
        """
        if component_type in self._components:
            raise ValueError(f"Component type already registered: {component_type}")
        self._components[component_type] = component_class

    def get(self, component_type: str) -> Type["Component"] | None:
        """Get a component class by type string."""
        return self._components.get(component_type)

    def create(
        self,
        component_type: str,
        instance_id: str,
        config: dict
    ) -> "Component":
        """
        Create a component instance.

        Raises:
            ValueError: If component type is not registered
        """
        component_class = self.get(component_type)
        if component_class is None:
            raise ValueError(f"Unknown component type: {component_type}")
        return component_class(instance_id, config)

    def list_types(self) -> list[str]:
        """List all registered component types."""
        return sorted(self._components.keys())

    def list_by_category(self, category: str) -> list[str]:
        """List component types in a category (source, function, target)."""
        return [t for t in self.list_types() if t.startswith(f"{category}/")]

    def get_manifest(self, component_type: str) -> dict | None:
        """Get the manifest for a component type."""
        component_class = self.get(component_type)
        if component_class is None:
            return None
        manifest = component_class.describe()
        return {
            "type": manifest.type,
            "description": manifest.description,
            "category": manifest.category,
            "config": {k: {"type": v.type, "required": v.required, "default": v.default, "description": v.description}
                      for k, v in manifest.config.items()},
            "inputs": [{"name": i.name, "type": i.type, "description": i.description}
                      for i in manifest.inputs],
        }


def register_component(component_type: str):
    """
    Decorator to register a component class.

    Usage:
        @register_component("source/in_memory")
        class InMemorySource(Source):
            ...
    """
    def decorator(cls: Type["Component"]) -> Type["Component"]:
        ComponentRegistry.get_instance().register(component_type, cls)
        return cls
    return decorator


def auto_discover_components(components_path: Path | str, base_package: str) -> list[str]:
    """
    Import every module in the category subpackages of a components package.

    Components with @register_component decorators register on import.

    Returns:
        List of newly discovered component type strings
    """
    components_path = Path(components_path)
    if not components_path.exists():
        return []

    before = set(ComponentRegistry.get_instance().list_types())

    for category_dir in sorted(components_path.iterdir()):
        if not category_dir.is_dir() or category_dir.name.startswith("_"):
            continue
        for py_file in sorted(category_dir.glob("*.py")):
            if py_file.name.startswith("_"):
                continue
            full_module = f"{base_package}.{category_dir.name}.{py_file.stem}"
            try:
                importlib.import_module(full_module)
            except ImportError as e:
                logger.warning("Failed to import %s: %s", full_module, e)

    after = set(ComponentRegistry.get_instance().list_types())
    return sorted(after - before)


BuildFn = Callable[["FlowBuilder", "DataScope"], Any]


class FlowRegistry:
    """
    Process-wide registry of built flows, keyed by stable flow name.

    Populated at program start by register_flow(), read by the CLI and the
    server. Flows are immutable once registered.
    """

    _instance: "FlowRegistry | None" = None

    def __init__(self):
        self._flows: dict[str, "Flow"] = {}

    @classmethod
    def get_instance(cls) -> "FlowRegistry":
        if cls._instance is None:
            cls._instance = FlowRegistry()
        return cls._instance

    def add(self, flow: "Flow") -> None:
        if flow.name in self._flows:
            raise ValueError(f"Flow already registered: {flow.name}")
        self._flows[flow.name] = flow

    def get(self, name: str) -> "Flow":
        if name not in self._flows:
            raise KeyError(f"Unknown flow: {name}")
        return self._flows[name]

    def list_names(self) -> list[str]:
        return sorted(self._flows)

    def all(self) -> list["Flow"]:
        return [self._flows[n] for n in self.list_names()]

    def clear(self) -> None:
        """Forget all flows. Only meant for tests."""
        self._flows.clear()


def register_flow(name: str, build_fn: BuildFn) -> "Flow":
    """
    Build a flow eagerly and register it under a stable name.

    Usage:
        def build(builder, scope):
            docs = builder.add_source(OpSpec("source/in_memory", {"dataset": "docs"}), "docs")
            ...

        register_flow("docs_index", build)
    """
    from .builder import FlowBuilder

    builder = FlowBuilder(name)
    build_fn(builder, builder.root_scope)
    flow = builder.build()
    FlowRegistry.get_instance().add(flow)
    return flow
