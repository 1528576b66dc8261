"""Data models for sync system."""

from .config import (
    InstanceConfig,
    ModuleConfig,
    SyncSettings,
    find_instances,
    init_instance,
    resolve_credentials,
)
from .content_types import (
    ContentTypeDescriptor,
    JsonCollection,
    OffsetPaginated,
    Paginated,
    ScriptCode,
    ZipArtifact,
)
from .registry import ModuleDefinition, ModuleRegistry, default_registry

__all__ = [
    "ContentTypeDescriptor",
    "InstanceConfig",
    "JsonCollection",
    "ModuleConfig",
    "ModuleDefinition",
    "ModuleRegistry",
    "OffsetPaginated",
    "Paginated",
    "ScriptCode",
    "SyncSettings",
    "ZipArtifact",
    "default_registry",
    "find_instances",
    "init_instance",
    "resolve_credentials",
]
