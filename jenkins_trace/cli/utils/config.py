"""Configuration management for jenkins-trace.

Reads configuration from environment variables and TOML config files with sensible defaults.

Config precedence (lowest to highest):
    Hardcoded defaults < Global config.toml < Project config.toml < Environment variables
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib
except ImportError:
    # Python < 3.11 fallback
    import tomli as tomllib

# Config file paths
CONFIG_FILENAME = "config.toml"
PROJECT_CONFIG_DIR = ".jenkins-trace"  # ./.jenkins-trace/config.toml


class ConfigError(Exception):
    """Configuration error - missing or invalid settings."""

    pass


# Source tracking for config values
SOURCE_DEFAULT = "default"
SOURCE_GLOBAL = "global"
SOURCE_PROJECT = "project"
SOURCE_ENV = "env"


def _parse_bool(value: str) -> bool:
    """Parse string to boolean."""
    return value.lower() in ("1", "true", "yes", "on")


# TOML key -> Config field
TOML_KEY_MAP = {
    "jenkins.url": "url",
    "jenkins.user": "user",
    "jenkins.token": "token",
    "http.timeout": "timeout",
    "http.max_retries": "max_retries",
    "http.retry_delay": "retry_delay",
    "http.max_retry_delay": "max_retry_delay",
    "http.skip_ssl_verify": "skip_ssl_verify",
    "http.ca_bundle": "ca_bundle",
    "http.use_crumb": "use_crumb",
    "follow.poll_interval": "poll_interval",
    "paths.cursor_cache": "cursor_cache_path",
}

# Env var -> Config field, or (field, parser)
ENV_MAP = {
    "JENKINS_URL": "url",
    "JENKINS_USER": "user",
    "JENKINS_API_TOKEN": "token",
    "JENKINS_TRACE_TIMEOUT": ("timeout", float),
    "JENKINS_TRACE_MAX_RETRIES": ("max_retries", int),
    "JENKINS_TRACE_RETRY_DELAY": ("retry_delay", float),
    "JENKINS_TRACE_MAX_RETRY_DELAY": ("max_retry_delay", float),
    "JENKINS_TRACE_POLL_INTERVAL": ("poll_interval", float),
    "JENKINS_TRACE_SKIP_SSL_VERIFY": ("skip_ssl_verify", _parse_bool),
    "JENKINS_TRACE_CA_BUNDLE": "ca_bundle",
    "JENKINS_TRACE_USE_CRUMB": ("use_crumb", _parse_bool),
    "JENKINS_TRACE_CURSOR_CACHE": "cursor_cache_path",
}

# Expected types for values coming from TOML files
FIELD_TYPES = {
    "timeout": float,
    "max_retries": int,
    "retry_delay": float,
    "max_retry_delay": float,
    "poll_interval": float,
    "skip_ssl_verify": bool,
    "use_crumb": bool,
}


@dataclass
class Config:
    """jenkins-trace configuration.

    **Jenkins server:**
    - JENKINS_URL: Jenkins base URL (e.g., https://ci.example.com)
    - JENKINS_USER: Username for HTTP basic auth
    - JENKINS_API_TOKEN: API token (or password) for JENKINS_USER

    **HTTP tuning (optional):**
    - JENKINS_TRACE_TIMEOUT: Per-request timeout in seconds (default: 30)
    - JENKINS_TRACE_MAX_RETRIES: Consecutive retries for transient errors (default: 5)
    - JENKINS_TRACE_RETRY_DELAY: Initial backoff delay in seconds (default: 1.0)
    - JENKINS_TRACE_MAX_RETRY_DELAY: Backoff ceiling in seconds (default: 30)
    - JENKINS_TRACE_SKIP_SSL_VERIFY: Disable TLS certificate verification
    - JENKINS_TRACE_CA_BUNDLE: CA bundle path for self-signed Jenkins instances
    - JENKINS_TRACE_USE_CRUMB: Send a CSRF crumb with each poll

    **Following:**
    - JENKINS_TRACE_POLL_INTERVAL: Seconds between polls while a build runs (default: 2)
    - JENKINS_TRACE_CURSOR_CACHE: Where --resume stores offsets (default: ~/.jenkins-trace/cursors.json)
    """

    url: Optional[str] = None
    user: Optional[str] = None
    token: Optional[str] = None

    # HTTP settings
    timeout: float = 30.0
    max_retries: int = 5
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    skip_ssl_verify: bool = False
    ca_bundle: Optional[str] = None
    use_crumb: bool = False

    # Follow settings
    poll_interval: float = 2.0
    cursor_cache_path: str = "~/.jenkins-trace/cursors.json"

    # Class-level config paths
    GLOBAL_CONFIG_PATH = Path.home() / ".config" / "jenkins-trace" / CONFIG_FILENAME

    def validate(self) -> None:
        """Reject settings that would make polling misbehave."""
        if self.timeout <= 0:
            raise ConfigError("Invalid timeout. It must be a positive number of seconds.")
        if self.max_retries < 0:
            raise ConfigError("Invalid max_retries. It must be zero or a positive integer.")
        if self.retry_delay < 0 or self.max_retry_delay < 0:
            raise ConfigError("Invalid retry delay. It must not be negative.")
        if self.poll_interval < 0:
            raise ConfigError("Invalid poll_interval. It must not be negative.")

    def get_expanded_cursor_cache_path(self) -> str:
        """Get the cursor cache path with ~ expanded."""
        return os.path.expanduser(self.cursor_cache_path)

    @classmethod
    def _find_project_config(cls) -> Path | None:
        """Walk up from cwd to find .jenkins-trace/config.toml."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / PROJECT_CONFIG_DIR / CONFIG_FILENAME
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    @staticmethod
    def _load_toml(path: Path) -> dict[str, Any]:
        """Load and parse a TOML config file."""
        try:
            with open(path, "rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}")

    @staticmethod
    def _flatten_toml(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
        """Flatten nested TOML dict to dotted keys (e.g., jenkins.url)."""
        result = {}
        for key, value in data.items():
            full_key = f"{prefix}.{key}" if prefix else key
            if isinstance(value, dict):
                result.update(Config._flatten_toml(value, full_key))
            else:
                result[full_key] = value
        return result

    @staticmethod
    def _coerce(field_name: str, value: Any, origin: str) -> Any:
        expected = FIELD_TYPES.get(field_name)
        if expected is None:
            return str(value) if value is not None else None
        if expected is bool:
            if isinstance(value, bool):
                return value
            raise ConfigError(f"Invalid {field_name} in {origin}: expected true/false, got {value!r}")
        if isinstance(value, bool):
            raise ConfigError(f"Invalid {field_name} in {origin}: expected a number, got {value!r}")
        try:
            return expected(value)
        except (ValueError, TypeError):
            raise ConfigError(f"Invalid {field_name} in {origin}: {value!r}")

    @classmethod
    def _merge_file(
        cls,
        path: Path,
        source: str,
        config_dict: dict[str, Any],
        sources: dict[str, str],
    ) -> None:
        flat = cls._flatten_toml(cls._load_toml(path))
        for toml_key, value in flat.items():
            field_name = TOML_KEY_MAP.get(toml_key)
            if field_name:
                config_dict[field_name] = cls._coerce(field_name, value, str(path))
                sources[field_name] = source

    @classmethod
    def from_files_and_env(cls) -> tuple["Config", dict[str, str]]:
        """Load config from files + env vars with layered precedence.

        Precedence (lowest to highest):
            Hardcoded defaults < Global config.toml < Project config.toml < Environment variables

        Returns:
            Tuple of (Config instance, dict mapping field names to their sources)

        Raises:
            ConfigError: If a config file or env var holds an invalid value
        """
        defaults = cls()
        config_dict: dict[str, Any] = {
            "url": defaults.url,
            "user": defaults.user,
            "token": defaults.token,
            "timeout": defaults.timeout,
            "max_retries": defaults.max_retries,
            "retry_delay": defaults.retry_delay,
            "max_retry_delay": defaults.max_retry_delay,
            "skip_ssl_verify": defaults.skip_ssl_verify,
            "ca_bundle": defaults.ca_bundle,
            "use_crumb": defaults.use_crumb,
            "poll_interval": defaults.poll_interval,
            "cursor_cache_path": defaults.cursor_cache_path,
        }
        sources: dict[str, str] = {key: SOURCE_DEFAULT for key in config_dict}

        # 1. Global config.toml
        if cls.GLOBAL_CONFIG_PATH.exists():
            cls._merge_file(cls.GLOBAL_CONFIG_PATH, SOURCE_GLOBAL, config_dict, sources)

        # 2. Project config.toml (walk up from cwd)
        project_config_path = cls._find_project_config()
        if project_config_path:
            cls._merge_file(project_config_path, SOURCE_PROJECT, config_dict, sources)

        # 3. Env vars (highest priority)
        for env_var, mapping in ENV_MAP.items():
            value = os.getenv(env_var)
            if value is None:
                continue
            if isinstance(mapping, tuple):
                field_name, parser = mapping
                try:
                    config_dict[field_name] = parser(value)
                except (ValueError, TypeError):
                    raise ConfigError(f"Invalid {env_var} value: {value}")
            else:
                field_name = mapping
                config_dict[field_name] = value
            sources[field_name] = SOURCE_ENV

        config = cls(**config_dict)
        config.validate()
        return config, sources

    @classmethod
    def from_env(cls) -> "Config":
        """Load layered configuration, discarding the source map."""
        config, _ = cls.from_files_and_env()
        return config
