"""
AgentGate CLI entry point.

Commands:
  agentgate version                 — show version
  agentgate policy check <tool>     — evaluate one tool call and show the decision
  agentgate policy validate <file>  — validate a policy bundle file (JSON or YAML)
  agentgate policy sync [--url]     — fetch the remote bundle once
  agentgate policy status [--json]  — show remote policy status
  agentgate policy configure        — set the policy URL (and auth token)
  agentgate policy clear-token      — remove the stored auth token
"""

from __future__ import annotations

import json
import logging
import sys

import click
from rich.console import Console

from agentgate import __version__
from agentgate.core.constants import ExitCode

console = Console()
err_console = Console(stderr=True)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure the root logger to stderr in ``text`` or ``json`` format."""
    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
        )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-V", message="agentgate %(version)s")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """AgentGate — runtime policy gate for autonomous agents."""
    from agentgate.core.config import load_config_or_default
    from agentgate.core.exceptions import ConfigError

    try:
        config = load_config_or_default()
    except ConfigError as exc:
        err_console.print(f"[red]Config error:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)

    configure_logging("DEBUG" if verbose else config.logging.level, config.logging.format)
    ctx.obj = config


@cli.command()
def version() -> None:
    """Show the AgentGate version."""
    console.print(f"agentgate {__version__}")


# ---------------------------------------------------------------------------
# policy
# ---------------------------------------------------------------------------

from agentgate.cli._policy_cmd import policy_group  # noqa: E402

cli.add_command(policy_group)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
