"""YAML configuration for the CLI and the HTTP server."""

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Optional

import yaml

from .core.types import RegistryConfig, TrustPolicy
from .exceptions import ConfigError
from .models import AnalyzeOptions, UnpackOptions
from .utils.reference import DOCKER_HUB_ALIASES, DOCKER_HUB_REGISTRY, parse_reference

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "config.yaml"
DEFAULT_ADDRESS = "0.0.0.0:8080"
LOG_LEVELS = ("debug", "info", "warning", "error")
LOG_FORMATS = ("json", "text")


@dataclass
class LogSettings:
    dir: str = "logs"
    file: str = "image-analyzer.log"
    level: str = "info"
    format: str = "json"

    @property
    def path(self) -> str:
        return os.path.join(self.dir, self.file)


@dataclass
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8080
    read_timeout: int = 30
    write_timeout: int = 30
    max_request_size: int = 10 * 1024 * 1024
    max_concurrent_analyses: int = 4


@dataclass
class AnalyzeSettings:
    unpack_dir: Optional[str] = None
    check_os_info: bool = True
    check_python_packages: bool = True
    check_common_tools: bool = True
    specific_commands: list[str] = field(default_factory=list)
    pull_timeout: Optional[float] = 600
    allow_links: bool = False
    apply_whiteouts: bool = True

    def options(self) -> AnalyzeOptions:
        """Default inspections for requests that do not choose their own."""
        return AnalyzeOptions(
            check_os_info=self.check_os_info,
            check_python_packages=self.check_python_packages,
            check_common_tools=self.check_common_tools,
            specific_commands=list(self.specific_commands),
        )

    def unpack_options(self) -> UnpackOptions:
        return UnpackOptions(
            allow_links=self.allow_links, apply_whiteouts=self.apply_whiteouts
        )


@dataclass
class RegistrySettings:
    timeout: int = 30
    trust_policy: str = TrustPolicy.ACCEPT_ANYTHING.value
    insecure_registries: list[str] = field(default_factory=list)
    platform: str = "linux/amd64"
    username: Optional[str] = None
    password: Optional[str] = None
    docker_config: Optional[str] = None
    # host -> (username, password), filled from docker_config at load time
    credentials: dict[str, tuple[str, str]] = field(
        default_factory=dict, repr=False, metadata={"internal": True}
    )

    def registry_config(self, image_ref: Optional[str] = None) -> RegistryConfig:
        """Build the immutable client config for one pull.

        Explicit credentials win; otherwise the Docker config entry for the
        image's registry host is used.
        """
        username, password = self.username, self.password
        if username is None and image_ref:
            try:
                host = parse_reference(image_ref).registry
            except ValueError:
                host = None
            if host in self.credentials:
                username, password = self.credentials[host]

        return RegistryConfig(
            timeout=self.timeout,
            trust_policy=TrustPolicy(self.trust_policy),
            insecure_registries=tuple(self.insecure_registries),
            platform=self.platform,
            username=username,
            password=password,
        )


@dataclass
class Settings:
    """Complete application configuration."""

    log: LogSettings = field(default_factory=LogSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    analyze: AnalyzeSettings = field(default_factory=AnalyzeSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)

    def address(self) -> str:
        """Return "host:port", or the default address if either is invalid."""
        if not self.server.host or self.server.port <= 0:
            return DEFAULT_ADDRESS
        return f"{self.server.host}:{self.server.port}"

    def ensure_dirs(self) -> None:
        """Create the log directory and the unpack directory (if configured)."""
        for directory in (self.log.dir, self.analyze.unpack_dir):
            if directory:
                os.makedirs(directory, exist_ok=True)


def _build_section(cls: type, name: str, data: Any) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")

    known = {f.name for f in fields(cls) if not f.metadata.get("internal")}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(
            f"Unknown keys in config section '{name}': {', '.join(sorted(unknown))}"
        )
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid config section '{name}': {e}") from e


def _validate(settings: Settings) -> None:
    if settings.log.level.lower() not in LOG_LEVELS:
        raise ConfigError(f"Invalid log level: {settings.log.level}")
    if settings.log.format not in LOG_FORMATS:
        raise ConfigError(f"Invalid log format: {settings.log.format}")
    if settings.server.max_concurrent_analyses < 1:
        raise ConfigError("server.max_concurrent_analyses must be at least 1")
    if not isinstance(settings.analyze.specific_commands, list):
        raise ConfigError("analyze.specific_commands must be a list")
    for name in ("check_os_info", "check_python_packages", "check_common_tools"):
        if not isinstance(getattr(settings.analyze, name), bool):
            raise ConfigError(f"analyze.{name} must be true or false")
    try:
        TrustPolicy(settings.registry.trust_policy)
    except ValueError as e:
        valid = ", ".join(p.value for p in TrustPolicy)
        raise ConfigError(
            f"Invalid registry.trust_policy {settings.registry.trust_policy!r} "
            f"(expected one of: {valid})"
        ) from e


def _normalize_auth_host(key: str) -> str:
    host = key.split("://", 1)[-1].split("/", 1)[0]
    return DOCKER_HUB_REGISTRY if host in DOCKER_HUB_ALIASES else host


def load_docker_credentials(path: str) -> dict[str, tuple[str, str]]:
    """Read registry credentials from a Docker client config.json.

    Only inline ``auths.<host>.auth`` entries are understood; credential
    helpers are ignored.

    Args:
        path: Path to config.json

    Returns:
        Mapping of registry host to (username, password)

    Raises:
        ConfigError: If the file exists but cannot be parsed
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to read Docker config {path}: {e}") from e

    credentials = {}
    for key, entry in (data.get("auths") or {}).items():
        auth = (entry or {}).get("auth")
        if not auth:
            continue
        try:
            decoded = base64.b64decode(auth).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning("Ignoring malformed Docker credentials for %s", key)
            continue
        username, sep, password = decoded.partition(":")
        if sep:
            credentials[_normalize_auth_host(key)] = (username, password)
    return credentials


def load_config(path: Optional[str] = None) -> Settings:
    """Load settings from a YAML file.

    A missing file yields the defaults.

    Args:
        path: Config file path (default: ./config.yaml)

    Returns:
        Loaded settings

    Raises:
        ConfigError: If the file is malformed or holds invalid values
    """
    path = path or DEFAULT_CONFIG_FILENAME
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug("Config file %s not found, using defaults", path)
        data = None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config file {path}: {e}") from e

    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    settings = Settings(
        log=_build_section(LogSettings, "log", data.get("log")),
        server=_build_section(ServerSettings, "server", data.get("server")),
        analyze=_build_section(AnalyzeSettings, "analyze", data.get("analyze")),
        registry=_build_section(RegistrySettings, "registry", data.get("registry")),
    )
    _validate(settings)

    if settings.registry.docker_config:
        settings.registry.credentials = load_docker_credentials(
            os.path.expanduser(settings.registry.docker_config)
        )
    return settings
