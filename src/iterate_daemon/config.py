"""Load the project-level iterate configuration and derive commands from it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Optional, cast

import yaml

logger = logging.getLogger(__name__)

PackageManager = Literal["pnpm", "npm", "yarn", "bun"]

STATE_DIR_NAME = ".iterate"
CONFIG_FILE_NAMES = ("config.yaml", "config.yml", "config.json")

_VALID_PACKAGE_MANAGERS = {"pnpm", "npm", "yarn", "bun"}

_INSTALL_COMMANDS: dict[str, str] = {
    "pnpm": "pnpm install --prefer-offline",
    "yarn": "yarn install",
    "bun": "bun install",
    "npm": "npm install --prefer-offline",
}


class ConfigError(ValueError):
    """Raised when the configuration file exists but cannot be used."""


@dataclass(frozen=True)
class IterateConfig:
    """Settings read once at daemon startup.

    Attributes:
        dev_command: Command that starts a preview server inside a worktree.
        package_manager: Package manager used to install worktree dependencies.
        base_port: First port handed out to preview servers.
        daemon_port: Port the daemon itself listens on.
        max_iterations: Upper bound on concurrently existing iterations.
        idle_timeout: Seconds before idle servers would be stopped (0 disables).
        build_command: Optional command run after install, before the server starts.
    """

    dev_command: str = "npm run dev"
    package_manager: PackageManager = "npm"
    base_port: int = 3100
    daemon_port: int = 4000
    max_iterations: int = 3
    idle_timeout: int = 0
    build_command: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "devCommand": self.dev_command,
            "packageManager": self.package_manager,
            "basePort": self.base_port,
            "daemonPort": self.daemon_port,
            "maxIterations": self.max_iterations,
            "idleTimeout": self.idle_timeout,
        }
        if self.build_command:
            data["buildCommand"] = self.build_command
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IterateConfig":
        """Build a config from camelCase or snake_case keys, defaulting bad values."""
        defaults = cls()

        def pick(camel: str, snake: str) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake)

        def as_int(value: Any, fallback: int) -> int:
            try:
                return int(value) if value is not None else fallback
            except (TypeError, ValueError):
                return fallback

        package_manager = str(pick("packageManager", "package_manager") or defaults.package_manager)
        if package_manager not in _VALID_PACKAGE_MANAGERS:
            logger.warning("Unknown package manager %r, using npm", package_manager)
            package_manager = "npm"
        build_command = pick("buildCommand", "build_command")
        return cls(
            dev_command=str(pick("devCommand", "dev_command") or defaults.dev_command),
            package_manager=cast(PackageManager, package_manager),
            base_port=as_int(pick("basePort", "base_port"), defaults.base_port),
            daemon_port=as_int(pick("daemonPort", "daemon_port"), defaults.daemon_port),
            max_iterations=as_int(pick("maxIterations", "max_iterations"), defaults.max_iterations),
            idle_timeout=as_int(pick("idleTimeout", "idle_timeout"), defaults.idle_timeout),
            build_command=str(build_command) if build_command else None,
        )


def config_path(project_dir: Path) -> Optional[Path]:
    """Return the first configuration file present under ``.iterate/``."""
    state_dir = project_dir / STATE_DIR_NAME
    for file_name in CONFIG_FILE_NAMES:
        candidate = state_dir / file_name
        if candidate.is_file():
            return candidate
    return None


def load_config(project_dir: Path) -> IterateConfig:
    """Read ``.iterate/config.{yaml,yml,json}``; defaults when none exists."""
    path = config_path(project_dir)
    if path is None:
        return IterateConfig()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc
    if raw is None:
        return IterateConfig()
    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration in {path} must be a mapping")
    return IterateConfig.from_dict(raw)


def install_command(config: IterateConfig) -> str:
    """Dependency install command for the configured package manager."""
    return _INSTALL_COMMANDS.get(config.package_manager, _INSTALL_COMMANDS["npm"])


def build_dev_command(command: str, port: int) -> str:
    """Add a port flag for frameworks that ignore ``PORT``."""
    if "next" in command:
        return f"{command} -p {port}"
    if "vite" in command:
        return f"{command} --port {port}"
    return command
