"""
CodeMesh Configuration Loader

Loads the provider configuration document (compatible with the
``.vscode/mcp.json`` server list layout) and turns it into a
ProviderRegistry.

Document shape:
    {
      "servers": [
        {"id": "github", "name": "GitHub", "type": "http",
         "url": "https://api.example.com/mcp",
         "headers": {"Authorization": "Bearer ${GITHUB_TOKEN}"},
         "timeout": 15000, "retries": 1},
        {"id": "files", "name": "Files", "type": "stdio",
         "command": ["npx", "-y", "@modelcontextprotocol/server-filesystem", "."]}
      ],
      "augmentationDir": ".codemesh/augmentations",
      "sandbox": {"default_timeout_ms": 30000}
    }

Every string value may reference the environment as ``${VAR}`` or
``${VAR:-default}``. References are expanded before validation; a
reference with no value and no default is a ConfigError.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from codemesh.core.models import ConnectionInfo, ProviderDescriptor, TransportKind
from codemesh.exceptions import ConfigError
from codemesh.providers.registry import ProviderRegistry
from codemesh.sandbox.executor import SandboxConfig

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".codemesh"
CONFIG_FILENAME = "config.json"

# ${VAR} or ${VAR:-default}
_ENV_REF_RE = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")

_TRANSPORT_ALIASES = {
    "request-response": TransportKind.HTTP.value,
    "subprocess": TransportKind.STDIO.value,
    "socket": TransportKind.WEBSOCKET.value,
}


class ServerConfig(BaseModel):
    """One entry of the ``servers`` list."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, description="Unique identifier for the server")
    name: str = Field(..., description="Human-readable name for the server")
    type: TransportKind = Field(..., description="Connection type")

    # stdio servers
    command: list[str] | None = Field(default=None, description="Command and arguments to start the server")
    cwd: str | None = Field(default=None, description="Working directory for the server process")
    env: dict[str, str] | None = Field(default=None, description="Environment variables for the server")

    # http / websocket servers
    url: str | None = Field(default=None, description="Server URL")
    headers: dict[str, str] | None = Field(default=None, description="Headers sent on every request")

    timeout: int | None = Field(default=None, gt=0, description="Connection timeout in milliseconds")
    retries: int | None = Field(default=None, ge=0, le=10, description="Number of call retries")

    @field_validator("type", mode="before")
    @classmethod
    def _accept_aliases(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _TRANSPORT_ALIASES.get(value, value)
        return value

    def to_descriptor(self) -> ProviderDescriptor:
        kwargs: dict[str, Any] = {}
        if self.timeout is not None:
            kwargs["timeout_ms"] = self.timeout
        if self.retries is not None:
            kwargs["retry_count"] = self.retries
        return ProviderDescriptor(
            id=self.id,
            display_name=self.name,
            transport=self.type,
            connection=ConnectionInfo(
                url=self.url,
                command=tuple(self.command or ()),
                cwd=self.cwd,
                env=self.env or {},
                headers=self.headers or {},
            ),
            **kwargs,
        )


class MeshConfig(BaseModel):
    """The whole configuration document."""
    model_config = ConfigDict(populate_by_name=True)

    servers: list[ServerConfig] = Field(..., description="List of tool providers to connect to")
    augmentation_dir: str | None = Field(default=None, alias="augmentationDir")
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)


# ─── Environment expansion ───────────────────────────────────

def expand_env_var(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` references in a string."""
    env = os.environ if environ is None else environ

    def _replace(match: re.Match[str]) -> str:
        var_name, default = match.group(1), match.group(2)
        env_value = env.get(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ConfigError(
            f"Environment variable {var_name} is not set and no default was provided",
            details={"variable": var_name},
        )

    return _ENV_REF_RE.sub(_replace, value)


def expand_env_vars(obj: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Recursively expand environment references in a parsed config value."""
    if isinstance(obj, str):
        return expand_env_var(obj, environ)
    if isinstance(obj, list):
        return [expand_env_vars(item, environ) for item in obj]
    if isinstance(obj, dict):
        return {key: expand_env_vars(value, environ) for key, value in obj.items()}
    return obj


# ─── Loading ─────────────────────────────────────────────────

def parse_config(data: Any, environ: Mapping[str, str] | None = None) -> MeshConfig:
    """Expand and validate a parsed configuration document."""
    expanded = expand_env_vars(data, environ)
    try:
        return MeshConfig.model_validate(expanded)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        for line in errors:
            logger.error("Invalid configuration: %s", line)
        raise ConfigError("Invalid provider configuration format", errors=errors) from e


def load_config(config_path: str | Path, environ: Mapping[str, str] | None = None) -> MeshConfig:
    """Load and validate configuration from a JSON file."""
    path = Path(config_path).resolve()
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in configuration {path}: {e}") from e

    config = parse_config(data, environ)
    logger.info("Loaded configuration from %s with %d provider(s)", path, len(config.servers))
    return config


def load_config_auto(cwd: str | Path | None = None) -> MeshConfig:
    """Find and load ``.codemesh/config.json`` in the project root.

    The root is ``cwd`` if given, else ``$PWD``, else the process cwd.
    """
    root = Path(cwd) if cwd is not None else Path(os.environ.get("PWD") or os.getcwd())
    config_path = root / CONFIG_DIRNAME / CONFIG_FILENAME
    if not config_path.exists():
        raise ConfigError(
            f"No {CONFIG_DIRNAME}/{CONFIG_FILENAME} found in project root: {root}. "
            f"Create {config_path} with your provider configuration."
        )
    return load_config(config_path)


def load_providers(
    config: MeshConfig | Mapping[str, Any] | str | Path,
    environ: Mapping[str, str] | None = None,
) -> ProviderRegistry:
    """Build a ProviderRegistry from a config object, a parsed mapping, or a path."""
    if isinstance(config, (str, Path)):
        config = load_config(config, environ)
    elif not isinstance(config, MeshConfig):
        config = parse_config(dict(config), environ)

    registry = ProviderRegistry()
    for server in config.servers:
        registry.register(server.to_descriptor())
    return registry
