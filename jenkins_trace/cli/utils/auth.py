"""Credential resolution for jenkins-trace.

Credentials come from ``--user USER[:TOKEN]`` first, then from the layered
config (JENKINS_USER / JENKINS_API_TOKEN or the ``[jenkins]`` TOML section).
"""

from typing import Optional, Tuple

from jenkins_trace.cli.utils.config import Config, ConfigError

Auth = Tuple[str, Optional[str]]


def parse_user_option(value: Optional[str]) -> Optional[Auth]:
    """Split ``USER[:TOKEN]`` into a ``(user, token)`` pair.

    Only the first colon separates user from token, so tokens may contain colons.
    """
    if value is None:
        return None
    user, sep, token = value.partition(":")
    if not user:
        raise ConfigError("Invalid --user value. Expected USER or USER:TOKEN.")
    return user, (token if sep else None)


def resolve_auth(user_option: Optional[str], config: Config) -> Optional[Auth]:
    """Pick the credentials to send, or None for anonymous access.

    Args:
        user_option: Raw ``--user`` value
        config: Loaded configuration

    Returns:
        ``(user, token)`` pair or None
    """
    auth = parse_user_option(user_option)
    if auth is not None:
        user, token = auth
        # Same user as configured: reuse the configured token.
        if token is None and config.token and user == (config.user or user):
            token = config.token
        return user, token

    if config.user:
        return config.user, config.token
    if config.token:
        raise ConfigError(
            "JENKINS_API_TOKEN is set but no user is configured.\n"
            "Set it with: export JENKINS_USER='your_username'"
        )
    return None
