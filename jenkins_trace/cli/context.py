"""Shared CLI context and exit codes for jenkins-trace.

Kept separate from the entry point so helpers and tests can import the exit
codes without pulling in the click command itself.
"""

import click


# Exit codes
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_CONFIG_ERROR = 10
EXIT_AUTH_ERROR = 11
EXIT_VALIDATION_ERROR = 12
EXIT_API_ERROR = 13
EXIT_TIMEOUT = 14
EXIT_BUILD_NOT_FOUND = 16


class Context:
    """CLI context passed to the command.

    Stores global CLI options such as JSON output and debug mode.
    """

    def __init__(self) -> None:
        self.json_output: bool = False
        self.debug: bool = False


# Click decorator to pass the shared Context instance into commands
pass_context = click.make_pass_decorator(Context, ensure=True)
