"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Extensions treated as images when the client does not declare a destination.
DEFAULT_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico")

STORAGE_BACKENDS = ("sqlite", "memory")


@dataclass(frozen=True)
class CacheConfig:
    """Cache generation and the assets that make up the application shell.

    The store name is derived from app_name and version; bumping the version
    is the only way to invalidate previously stored entries.
    """

    app_name: str
    version: str
    origin: str
    precache: list[str] = field(default_factory=list)
    root_document: str = "/index.html"
    fallback_image: str | None = "/apple-touch-icon-180.png"
    image_extensions: tuple[str, ...] = DEFAULT_IMAGE_EXTENSIONS

    def __post_init__(self) -> None:
        if not self.app_name:
            raise ConfigError("Cache app_name cannot be empty")
        if not self.version:
            raise ConfigError("Cache version cannot be empty")
        if not self.origin.startswith(("http://", "https://")):
            raise ConfigError(f"Cache origin must start with http:// or https://, got '{self.origin}'")
        if not isinstance(self.precache, list):
            raise ConfigError("Cache precache must be a list")
        if not self.root_document.startswith("/"):
            raise ConfigError(f"Root document must be an absolute path, got '{self.root_document}'")
        for ext in self.image_extensions:
            if not ext.startswith("."):
                raise ConfigError(f"Image extension must start with '.', got '{ext}'")

    @property
    def cache_name(self) -> str:
        """Name of the current Named Cache Store."""
        return f"{self.app_name}-{self.version}"


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for outgoing network fetches."""

    timeout: int = 10  # seconds per request
    user_agent: str = "shellcache/0.1"
    max_body_bytes: int = 10 * 1024 * 1024

    def __post_init__(self) -> None:
        if self.timeout < 1:
            raise ConfigError(f"Network timeout must be at least 1 second (got {self.timeout})")
        if not self.user_agent:
            raise ConfigError("Network User-Agent cannot be empty")
        if self.max_body_bytes < 1:
            raise ConfigError(f"Network max_body_bytes must be positive (got {self.max_body_bytes})")


def _get_default_storage_path() -> str:
    """Get the default store path using XDG-compliant directory."""
    return str(Path.home() / ".local" / "share" / "shellcache" / "caches.db")


DEFAULT_STORAGE_PATH = _get_default_storage_path()


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the cache storage substrate."""

    backend: str = "sqlite"
    path: str = DEFAULT_STORAGE_PATH

    def __post_init__(self) -> None:
        if self.backend not in STORAGE_BACKENDS:
            raise ConfigError(f"Invalid storage backend '{self.backend}'. Must be one of: {STORAGE_BACKENDS}")
        if self.backend == "sqlite" and not self.path:
            raise ConfigError("Storage path is required for the sqlite backend")


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the HTTP front server."""

    enabled: bool = True
    host: str = ""
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Server port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    cache: CacheConfig
    network: NetworkConfig = field(default_factory=NetworkConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _parse_cache_config(data: dict | None) -> CacheConfig:
    """Parse cache configuration section."""
    if data is None:
        raise ConfigError("Configuration must contain a 'cache' section")
    if not isinstance(data, dict):
        raise ConfigError("'cache' section must be a dictionary")

    for required in ("app_name", "version", "origin"):
        if data.get(required) is None:
            raise ConfigError(f"'cache' section is missing '{required}' field")

    precache = data.get("precache", [])
    if not isinstance(precache, list):
        raise ConfigError("'cache.precache' must be a list")

    extensions = data.get("image_extensions", list(DEFAULT_IMAGE_EXTENSIONS))
    if not isinstance(extensions, list):
        raise ConfigError("'cache.image_extensions' must be a list")

    fallback_image = data.get("fallback_image", "/apple-touch-icon-180.png")

    return CacheConfig(
        app_name=str(data["app_name"]),
        version=str(data["version"]),
        origin=str(data["origin"]),
        precache=[str(path) for path in precache],
        root_document=str(data.get("root_document", "/index.html")),
        fallback_image=str(fallback_image) if fallback_image is not None else None,
        image_extensions=tuple(str(ext).lower() for ext in extensions),
    )


def _parse_network_config(data: dict | None) -> NetworkConfig:
    """Parse network configuration section."""
    if data is None:
        return NetworkConfig()
    if not isinstance(data, dict):
        raise ConfigError("'network' section must be a dictionary")

    return NetworkConfig(
        timeout=int(data.get("timeout", 10)),
        user_agent=str(data.get("user_agent", "shellcache/0.1")),
        max_body_bytes=int(data.get("max_body_bytes", 10 * 1024 * 1024)),
    )


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()
    if not isinstance(data, dict):
        raise ConfigError("'storage' section must be a dictionary")

    return StorageConfig(
        backend=str(data.get("backend", "sqlite")),
        path=os.path.expanduser(str(data.get("path", DEFAULT_STORAGE_PATH))),
    )


def _parse_server_config(data: dict | None) -> ServerConfig:
    """Parse server configuration section."""
    if data is None:
        return ServerConfig()
    if not isinstance(data, dict):
        raise ConfigError("'server' section must be a dictionary")

    return ServerConfig(
        enabled=bool(data.get("enabled", True)),
        host=str(data.get("host", "")),
        port=int(data.get("port", 8080)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - SHELLCACHE_VERSION: Override cache.version
    - SHELLCACHE_ORIGIN: Override cache.origin
    - SHELLCACHE_STORAGE_BACKEND: Override storage.backend
    - SHELLCACHE_STORAGE_PATH: Override storage.path
    - SHELLCACHE_SERVER_PORT: Override server.port
    - SHELLCACHE_SERVER_ENABLED: Override server.enabled (true/false)
    """
    for section in ("cache", "storage", "server"):
        if not isinstance(config_data.get(section), dict):
            config_data.setdefault(section, {})

    version = os.environ.get("SHELLCACHE_VERSION")
    if version is not None and isinstance(config_data["cache"], dict):
        config_data["cache"]["version"] = version

    origin = os.environ.get("SHELLCACHE_ORIGIN")
    if origin is not None and isinstance(config_data["cache"], dict):
        config_data["cache"]["origin"] = origin

    backend = os.environ.get("SHELLCACHE_STORAGE_BACKEND")
    if backend is not None and isinstance(config_data["storage"], dict):
        config_data["storage"]["backend"] = backend

    storage_path = os.environ.get("SHELLCACHE_STORAGE_PATH")
    if storage_path is not None and isinstance(config_data["storage"], dict):
        config_data["storage"]["path"] = storage_path

    server_port = os.environ.get("SHELLCACHE_SERVER_PORT")
    if server_port is not None and isinstance(config_data["server"], dict):
        config_data["server"]["port"] = int(server_port)

    server_enabled = os.environ.get("SHELLCACHE_SERVER_ENABLED")
    if server_enabled is not None and isinstance(config_data["server"], dict):
        config_data["server"]["enabled"] = server_enabled.lower() in ("true", "1", "yes")

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    if "cache" not in data:
        raise ConfigError("Configuration must contain a 'cache' section")

    try:
        data = _apply_env_overrides(data)
        return Config(
            cache=_parse_cache_config(data.get("cache")),
            network=_parse_network_config(data.get("network")),
            storage=_parse_storage_config(data.get("storage")),
            server=_parse_server_config(data.get("server")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
