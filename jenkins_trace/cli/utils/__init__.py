"""CLI utility modules."""

from jenkins_trace.cli.utils.config import Config, ConfigError
from jenkins_trace.cli.utils.auth import resolve_auth
from jenkins_trace.cli.utils.cursor_cache import CursorCache
from jenkins_trace.cli.utils.follow import follow_log

__all__ = ["Config", "ConfigError", "resolve_auth", "CursorCache", "follow_log"]
