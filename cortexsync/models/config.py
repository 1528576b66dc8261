"""Instance configuration: config.toml, credential resolution and init."""

import logging
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from ..core.auth import normalize_fqdn
from ..core.errors import ConfigError, MissingCredential, ModuleDisabled
from ..core.git import GitRepository
from ..core.lock import LOCK_FILENAME

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.toml"

# Environment variables consulted when a credential field is empty
FALLBACK_VARS = {
    "fqdn": "DEMISTO_BASE_URL",
    "api_key": "DEMISTO_API_KEY",
    "api_key_id": "XSIAM_AUTH_ID",
}

GITIGNORE = f"*.toml\n.env\n{LOCK_FILENAME}*\n"

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def expand_env_vars(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Replace ${VAR} references; unset variables expand to an empty string."""
    env = os.environ if environ is None else environ
    return _ENV_REF.sub(lambda m: env.get(m.group(1), ""), value)


@dataclass
class ModuleConfig:
    """Unresolved settings of one module as written in config.toml."""

    enabled: bool = True
    fqdn: str = ""
    api_key: str = ""
    api_key_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModuleConfig":
        """Create from dictionary."""
        return cls(
            enabled=bool(data.get("enabled", True)),
            fqdn=str(data.get("fqdn", "")),
            api_key=str(data.get("api_key", "")),
            api_key_id=str(data.get("api_key_id", "")),
        )


@dataclass
class Credentials:
    """Fully resolved credentials for one module."""

    fqdn: str
    api_key: str
    api_key_id: str


def resolve_credentials(
    module: str,
    config: ModuleConfig,
    environ: Mapping[str, str] | None = None,
    fallbacks: Mapping[str, str] = FALLBACK_VARS,
) -> Credentials:
    """Expand and fill in a module's credentials.

    Each field is expanded first; if it ends up empty the field's fallback
    environment variable is used. Reads nothing but `environ`.

    Raises:
        ModuleDisabled: If the module is disabled
        MissingCredential: If a field and its fallback are both empty
    """
    if not config.enabled:
        raise ModuleDisabled(module)

    env = os.environ if environ is None else environ
    resolved: dict[str, str] = {}
    for field_name in ("fqdn", "api_key", "api_key_id"):
        value = expand_env_vars(getattr(config, field_name), env).strip()
        if not value:
            fallback_var = fallbacks[field_name]
            value = env.get(fallback_var, "").strip()
            if not value:
                raise MissingCredential(module, field_name, fallback_var)
            logger.info("Using %s as fallback for %s (module: %s)", fallback_var, field_name, module)
        if field_name == "fqdn":
            value = normalize_fqdn(value)
        resolved[field_name] = value

    return Credentials(**resolved)


@dataclass
class SyncSettings:
    """Sync operation settings."""

    timeout: float = 60.0
    max_attempts: int = 3
    stale_lock_hours: float = 6.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncSettings":
        """Create from dictionary."""
        return cls(
            timeout=float(data.get("timeout", 60.0)),
            max_attempts=int(data.get("max_attempts", 3)),
            stale_lock_hours=float(data.get("stale_lock_hours", 6.0)),
        )


@dataclass
class InstanceConfig:
    """Configuration of one instance directory.

    Supports both:
    - [modules.<name>] tables (current format)
    - a top-level [xsiam] table (legacy format, xsiam module only)
    """

    path: Path
    name: str
    modules: dict[str, ModuleConfig] = field(default_factory=dict)
    settings: SyncSettings = field(default_factory=SyncSettings)

    @classmethod
    def load(cls, instance_dir: Path) -> "InstanceConfig":
        """Load config.toml from an instance directory.

        A .env file in the instance directory or the working directory is
        loaded into the environment first, without overriding variables
        that are already set.

        Raises:
            ConfigError: If the instance is missing or the file is invalid
        """
        instance_dir = Path(instance_dir)
        config_path = instance_dir / CONFIG_FILENAME
        if not config_path.exists():
            raise ConfigError(
                f"Instance '{instance_dir.name}' not found. "
                f"Run 'cortexsync init --instance {instance_dir}' first"
            )

        load_dotenv(instance_dir / ".env")
        load_dotenv()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Failed to parse config file {config_path}: {e}") from e

        modules: dict[str, ModuleConfig] = {}
        for name, module_data in (data.get("modules") or {}).items():
            if not isinstance(module_data, dict):
                raise ConfigError(f"[modules.{name}] must be a table in {config_path}")
            modules[name] = ModuleConfig.from_dict(module_data)

        # Legacy format
        if "xsiam" not in modules and isinstance(data.get("xsiam"), dict):
            modules["xsiam"] = ModuleConfig.from_dict({**data["xsiam"], "enabled": True})

        return cls(
            path=instance_dir,
            name=str(data.get("instance_name", instance_dir.name)),
            modules=modules,
            settings=SyncSettings.from_dict(data.get("settings") or {}),
        )

    def module(self, name: str) -> ModuleConfig | None:
        return self.modules.get(name)

    def is_enabled(self, name: str) -> bool:
        config = self.modules.get(name)
        return config is not None and config.enabled

    def credentials(self, module: str, environ: Mapping[str, str] | None = None) -> Credentials:
        """Resolved credentials of a configured module.

        Raises:
            ConfigError: If the module is not configured, disabled or
                missing a credential
        """
        config = self.modules.get(module)
        if config is None:
            raise ConfigError(f"Module '{module}' not configured in instance '{self.name}'")
        return resolve_credentials(module, config, environ)


def render_config(instance_name: str, module_names: list[str]) -> str:
    """Config template with every module enabled and credentials from the environment."""
    lines = [f'instance_name = "{instance_name}"', ""]
    for name in module_names:
        lines += [
            f"[modules.{name}]",
            "enabled = true",
            'fqdn = "${XSIAM_FQDN}"',
            'api_key = "${XSIAM_API_KEY}"',
            'api_key_id = "${XSIAM_API_KEY_ID}"',
            "",
        ]
    lines += [
        "[settings]",
        "timeout = 60",
        "max_attempts = 3",
        "stale_lock_hours = 6",
        "",
    ]
    return "\n".join(lines)


def init_instance(instance_dir: Path, modules: Mapping[str, list[str]]) -> Path:
    """Create an instance: content directories, config template, .gitignore and git repo.

    Args:
        instance_dir: Directory to create
        modules: Module name -> content type names

    Returns:
        Path to the written config file

    Raises:
        ConfigError: If the instance already has a config file
    """
    instance_dir = Path(instance_dir)
    config_path = instance_dir / CONFIG_FILENAME
    if config_path.exists():
        raise ConfigError(f"Instance already initialized: {config_path}")

    for module, content_types in modules.items():
        for content_type in content_types:
            (instance_dir / module / content_type).mkdir(parents=True, exist_ok=True)

    config_path.write_text(render_config(instance_dir.name, list(modules)), encoding="utf-8")
    (instance_dir / ".gitignore").write_text(GITIGNORE, encoding="utf-8")
    GitRepository.init(instance_dir)
    logger.info("Initialized instance %s", instance_dir)
    return config_path


def find_instances(base_dir: Path) -> list[Path]:
    """Instance directories directly below base_dir, sorted by name."""
    base_dir = Path(base_dir)
    if not base_dir.is_dir():
        return []
    return sorted(
        path for path in base_dir.iterdir() if path.is_dir() and (path / CONFIG_FILENAME).is_file()
    )
