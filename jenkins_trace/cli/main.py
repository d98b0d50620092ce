"""jenkins-trace - Main entry point.

Usage:
    jenkins-trace --host https://ci.example.com --job demo --build 42
    jenkins-trace -h https://ci.example.com -j folder/demo -b 42 --user alice:TOKEN
    jenkins-trace -h https://ci.example.com -j demo -b 42 --html
"""

import logging
import sys
from typing import List, Optional

import click

from jenkins_trace import __version__
from jenkins_trace.progressive_log import (
    LOG_ENCODING,
    BuildRef,
    FetchError,
    InvalidTargetError,
    LogChunk,
    LogDecoder,
    NotFoundError,
    OutputMode,
    ProgressiveLogReader,
    StreamCursor,
    TransientError,
    UnauthorizedError,
)
from jenkins_trace.cli.context import (
    Context,
    pass_context,
    EXIT_GENERAL_ERROR,
    EXIT_CONFIG_ERROR,
    EXIT_AUTH_ERROR,
    EXIT_VALIDATION_ERROR,
    EXIT_API_ERROR,
    EXIT_TIMEOUT,
    EXIT_BUILD_NOT_FOUND,
)
from jenkins_trace.cli.utils.auth import resolve_auth
from jenkins_trace.cli.utils.config import Config, ConfigError
from jenkins_trace.cli.utils.cursor_cache import CursorCache
from jenkins_trace.cli.utils.follow import follow_log
from jenkins_trace.cli.formatters import json_formatter, human_formatter


def _handle_error(
    ctx: Context, error_type: str, message: str, exit_code: int, hint: Optional[str] = None
) -> None:
    """Handle and format errors consistently."""
    if ctx.json_output:
        click.echo(json_formatter.format_json_error(error_type, message, exit_code, hint), err=True)
    else:
        click.echo(human_formatter.format_error(message, hint), err=True)
    sys.exit(exit_code)


def _load_config(
    timeout: Optional[float],
    max_retries: Optional[int],
    retry_delay: Optional[float],
    poll_interval: Optional[float],
    crumb: Optional[bool],
    insecure: bool,
) -> Config:
    """Load layered config and apply command-line overrides on top."""
    config = Config.from_env()
    if timeout is not None:
        config.timeout = timeout
    if max_retries is not None:
        config.max_retries = max_retries
    if retry_delay is not None:
        config.retry_delay = retry_delay
    if poll_interval is not None:
        config.poll_interval = poll_interval
    if crumb is not None:
        config.use_crumb = crumb
    if insecure:
        config.skip_ssl_verify = True
    config.validate()
    return config


class _LineEmitter:
    """Emit complete lines only, holding back a trailing partial line."""

    def __init__(self) -> None:
        self._decoder = LogDecoder()
        self._pending = ""

    def feed(self, chunk: LogChunk) -> None:
        lines = (self._pending + self._decoder.decode(chunk)).split("\n")
        self._pending = lines.pop()
        for line in lines:
            click.echo(line.rstrip("\r"))

    def flush(self) -> None:
        self._pending += self._decoder.flush()
        if self._pending:
            click.echo(self._pending)
            self._pending = ""


@click.command(context_settings={"help_option_names": ["--help"]})
@click.version_option(version=__version__, prog_name="jenkins-trace")
@click.option("--host", "-h", help="Jenkins base URL (env: JENKINS_URL)")
@click.option("--job", "-j", required=True, help="Jenkins job name ('folder/name' for nested jobs)")
@click.option("--build", "-b", type=int, required=True, help="Numeric ID of the build")
@click.option("--user", "-u", help="Jenkins login credentials as USER or USER:TOKEN")
@click.option("--html", "-H", is_flag=True, help="Use HTML output (progressiveHtml)")
@click.option("--poll-interval", type=float, help="Seconds between polls while the build runs")
@click.option("--timeout", type=float, help="Per-request timeout in seconds")
@click.option("--max-retries", type=int, help="Consecutive retries for transient failures")
@click.option("--retry-delay", type=float, help="Initial retry backoff in seconds")
@click.option("--crumb/--no-crumb", default=None, help="Send a CSRF crumb with each request")
@click.option("--insecure", is_flag=True, help="Skip TLS certificate verification")
@click.option("--resume", is_flag=True, help="Continue from the offset saved by a previous run")
@click.option("--refresh", is_flag=True, help="Discard the saved offset and start from the beginning")
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Output as JSON (machine-readable)",
)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug logging",
)
@pass_context
def main(
    ctx: Context,
    host: Optional[str],
    job: str,
    build: int,
    user: Optional[str],
    html: bool,
    poll_interval: Optional[float],
    timeout: Optional[float],
    max_retries: Optional[int],
    retry_delay: Optional[float],
    crumb: Optional[bool],
    insecure: bool,
    resume: bool,
    refresh: bool,
    json_output: bool,
    debug: bool,
) -> None:
    """Print the console log of a Jenkins build.

    Polls the build's progressive log endpoint until Jenkins reports the
    log complete, printing output as it arrives. Works for finished and
    still-running builds.

    \b
    Examples:
        jenkins-trace --host https://ci.example.com --job demo --build 42
        jenkins-trace -h https://ci.example.com -j team/demo -b 42 -u alice:TOKEN
        jenkins-trace -h https://ci.example.com -j demo -b 42 --resume
        jenkins-trace -h https://ci.example.com -j demo -b 42 --json
    """
    ctx.json_output = json_output
    ctx.debug = debug

    if debug:
        logging.basicConfig(level=logging.DEBUG)

    try:
        config = _load_config(timeout, max_retries, retry_delay, poll_interval, crumb, insecure)
        auth = resolve_auth(user, config)
    except ConfigError as e:
        _handle_error(ctx, "ConfigError", str(e), EXIT_CONFIG_ERROR)
        return

    host = host or config.url
    if not host:
        _handle_error(
            ctx,
            "InvalidTarget",
            "Missing Jenkins host.",
            EXIT_VALIDATION_ERROR,
            hint="Pass --host or set JENKINS_URL",
        )
        return

    mode = OutputMode.HTML if html else OutputMode.TEXT
    try:
        build_ref = BuildRef(host=host, job=job, build=build, mode=mode)
    except InvalidTargetError as e:
        _handle_error(ctx, "InvalidTarget", str(e), EXIT_VALIDATION_ERROR)
        return

    cache: Optional[CursorCache] = None
    cursor = StreamCursor.start()
    if resume or refresh:
        cache = CursorCache(config.get_expanded_cursor_cache_path())
        if refresh:
            cache.reset_cursor(build_ref)
        if resume:
            cursor = cache.get_cursor(build_ref)

    collected: List[bytes] = []
    lines = _LineEmitter()
    polls = 0

    def on_chunk(chunk: LogChunk) -> None:
        nonlocal polls
        polls += 1
        if json_output:
            collected.append(chunk.content)
        elif html:
            lines.feed(chunk)
        elif chunk.content:
            # Raw bytes, so a character split across polls stays intact.
            click.echo(chunk.content, nl=False)
        if cache is not None and resume:
            cache.set_cursor(build_ref, chunk.cursor)

    def on_retry(error: FetchError, attempt: int, delay: float) -> None:
        if not json_output:
            click.echo(
                human_formatter.format_retry(str(error), attempt, config.max_retries, delay),
                err=True,
            )

    with ProgressiveLogReader(
        build_ref,
        auth=auth,
        timeout=config.timeout,
        verify_ssl=not config.skip_ssl_verify,
        ca_bundle=config.ca_bundle,
        use_crumb=config.use_crumb,
    ) as reader:
        try:
            final_cursor = follow_log(
                reader,
                on_chunk,
                cursor=cursor,
                poll_interval=config.poll_interval,
                max_retries=config.max_retries,
                retry_delay=config.retry_delay,
                max_delay=config.max_retry_delay,
                on_retry=on_retry,
            )
        except UnauthorizedError as e:
            _handle_error(
                ctx, "Unauthorized", str(e), EXIT_AUTH_ERROR,
                hint="Check --user USER:TOKEN or JENKINS_USER / JENKINS_API_TOKEN",
            )
            return
        except NotFoundError as e:
            _handle_error(ctx, "NotFound", str(e), EXIT_BUILD_NOT_FOUND)
            return
        except TransientError as e:
            _handle_error(ctx, "Transient", str(e), EXIT_TIMEOUT)
            return
        except FetchError as e:
            _handle_error(ctx, type(e).__name__, str(e), EXIT_API_ERROR)
            return
        finally:
            # Print a held-back partial line even when the session failed.
            lines.flush()

    if json_output:
        click.echo(json_formatter.format_json({
            "host": build_ref.host,
            "job": build_ref.job,
            "build": build_ref.build,
            "mode": "html" if html else "text",
            "log": b"".join(collected).decode(LOG_ENCODING, errors="replace"),
            "offset": final_cursor.offset,
            "done": final_cursor.done,
            "polls": polls,
        }))
    elif debug:
        click.echo(
            human_formatter.format_summary(
                {"build": str(build_ref), "offset": final_cursor.offset, "chunks": polls}
            ),
            err=True,
        )


def cli() -> None:
    """Entry point for the CLI."""
    try:
        main()
    except Exception as e:  # pragma: no cover - top-level safety net
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_GENERAL_ERROR)


if __name__ == "__main__":  # pragma: no cover
    cli()
