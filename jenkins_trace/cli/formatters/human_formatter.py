"""Human-readable output formatter for the CLI."""

from typing import Any, Dict, Optional


def format_error(message: str, hint: Optional[str] = None) -> str:
    """Format an error message.

    Args:
        message: Error message
        hint: Optional hint for fixing

    Returns:
        Formatted error string
    """
    lines = [f"\n❌ Error: {message}"]
    if hint:
        lines.append(f"\U0001f4a1 Hint: {hint}")
    return "\n".join(lines)


def format_warning(message: str) -> str:
    """Format a warning message."""
    return f"⚠️ {message}"


def format_retry(error: str, attempt: int, max_retries: int, delay: float) -> str:
    """Format a retry notice shown while waiting out a transient failure."""
    return format_warning(f"{error} (retry {attempt}/{max_retries} in {delay:.1f}s)")


def format_summary(summary: Dict[str, Any]) -> str:
    """Format the end-of-stream summary line.

    Args:
        summary: Dict with ``build``, ``offset`` and ``chunks`` keys
    """
    return (
        f"✅ {summary['build']}: log complete "
        f"({summary['offset']} bytes, {summary['chunks']} poll(s))"
    )
