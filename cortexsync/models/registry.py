"""Module registry: module name -> ordered content type descriptors.

The registry is populated once at startup from built-in definitions. Order of
registration is the order content types are synced in.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from ..core.errors import UnknownContentType, UnknownModule
from .content_types import ContentTypeDescriptor


@dataclass(frozen=True)
class ModuleDefinition:
    """One remote platform surface and its content types."""

    name: str
    title: str
    base_api_path: str
    content_types: tuple[ContentTypeDescriptor, ...] = field(default_factory=tuple)

    def content_type(self, name: str) -> ContentTypeDescriptor | None:
        """Look up a content type by name or singular alias."""
        wanted = name.lower().replace("-", "_")
        for descriptor in self.content_types:
            if wanted in (descriptor.name, descriptor.singular):
                return descriptor
        return None

    def select(self, names: Iterable[str]) -> "ModuleDefinition":
        """Restrict the module to some content types, keeping sync order.

        An empty selection keeps every content type.

        Raises:
            UnknownContentType: If a name matches no content type
        """
        wanted: set[str] = set()
        for name in names:
            descriptor = self.content_type(name)
            if descriptor is None:
                raise UnknownContentType(self.name, name)
            wanted.add(descriptor.name)
        if not wanted:
            return self
        return replace(
            self, content_types=tuple(d for d in self.content_types if d.name in wanted)
        )


class ModuleRegistry:
    """Maps module names to their definitions."""

    def __init__(self) -> None:
        self._modules: dict[str, ModuleDefinition] = {}

    def register(
        self,
        name: str,
        descriptors: Iterable[ContentTypeDescriptor],
        base_api_path: str = "/public_api/v1",
        title: str | None = None,
    ) -> ModuleDefinition:
        """Register a module.

        Raises:
            ValueError: If the name is already registered or two content
                types share a name
        """
        if name in self._modules:
            raise ValueError(f"Module already registered: {name}")

        descriptors = tuple(descriptors)
        names = [d.name for d in descriptors]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate content types in module {name}: {', '.join(duplicates)}")

        definition = ModuleDefinition(
            name=name,
            title=title or name,
            base_api_path=base_api_path,
            content_types=descriptors,
        )
        self._modules[name] = definition
        return definition

    def get(self, name: str) -> ModuleDefinition:
        """Get a module definition.

        Raises:
            UnknownModule: If the module is not registered
        """
        try:
            return self._modules[name]
        except KeyError:
            raise UnknownModule(name) from None

    def resolve(self, name: str) -> list[ContentTypeDescriptor]:
        """Ordered content type descriptors of a module."""
        return list(self.get(name).content_types)

    def names(self) -> list[str]:
        """Registered module names in registration order."""
        return list(self._modules)

    def __contains__(self, name: object) -> bool:
        return name in self._modules


def default_registry() -> ModuleRegistry:
    """Registry holding the built-in modules."""
    from .modules import APPSEC, XSIAM

    registry = ModuleRegistry()
    for module in (XSIAM, APPSEC):
        registry.register(
            module.name,
            module.content_types,
            base_api_path=module.base_api_path,
            title=module.title,
        )
    return registry
