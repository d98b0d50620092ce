"""Output formatters for the CLI."""

from jenkins_trace.cli.formatters.json_formatter import format_json, format_json_error
from jenkins_trace.cli.formatters.human_formatter import (
    format_error,
    format_retry,
    format_summary,
    format_warning,
)

__all__ = [
    "format_json",
    "format_json_error",
    "format_error",
    "format_retry",
    "format_summary",
    "format_warning",
]
