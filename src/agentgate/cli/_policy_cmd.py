"""
CLI commands: ``agentgate policy check | validate | sync | status | configure | clear-token``.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click
from rich.console import Console

from agentgate.core.config import AgentGateConfig
from agentgate.core.constants import ExitCode
from agentgate.core.exceptions import AgentGateError, BundleValidationError, PolicySyncError

console = Console()


@click.group("policy")
def policy_group() -> None:
    """Evaluate tool calls and manage the remote policy bundle."""


def _load_bundle_file(path: str):
    import yaml
    from pydantic import ValidationError

    from agentgate.core.policy.model import parse_bundle

    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
        if p.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise BundleValidationError(f"Cannot read bundle {path}: {exc}") from exc
    try:
        return parse_bundle(data)
    except (TypeError, ValidationError) as exc:
        raise BundleValidationError(f"Invalid policy bundle {path}: {exc}") from exc


def _manager(config: AgentGateConfig):
    from agentgate.core.policy.sync import PolicySyncManager
    from agentgate.core.vault import KeyringVault

    return PolicySyncManager.from_config(config, vault=KeyringVault())


@policy_group.command("check")
@click.argument("tool_name")
@click.option("--domain", default="", help="Target host of the action.")
@click.option("--mode", "user_mode", default="standard", show_default=True, help="User mode.")
@click.option("--observe-only", is_flag=True, default=False, help="Read-only session.")
@click.option("--args", "args_json", default="{}", help="Tool arguments as a JSON object.")
@click.option(
    "--bundle",
    "bundle_file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Evaluate against this bundle file instead of the remote policy.",
)
@click.option("--explain", is_flag=True, default=False, help="Show every pipeline stage.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.pass_obj
def policy_check(
    config: AgentGateConfig,
    tool_name: str,
    domain: str,
    user_mode: str,
    observe_only: bool,
    args_json: str,
    bundle_file: str | None,
    explain: bool,
    as_json: bool,
) -> None:
    """
    Evaluate one tool call and show the decision.

    Exits 0 on ALLOW, 6 on DENY or NEEDS_APPROVAL.

    Example::

        agentgate policy check browser_type --domain example.com --explain
    """
    from agentgate.core.policy.engine import PolicyEngine
    from agentgate.core.policy.explain import explain_request, explain_result
    from agentgate.core.policy.model import EvaluationRequest
    from agentgate.core.policy.sync import StaticPolicySource

    try:
        args = json.loads(args_json)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--args") from exc
    if not isinstance(args, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")

    source = None
    if bundle_file:
        try:
            source = StaticPolicySource(_load_bundle_file(bundle_file))
        except BundleValidationError as exc:
            click.echo(str(exc), err=True)
            sys.exit(ExitCode.ERROR)

    engine = PolicyEngine.from_config(config, policy_source=source)
    request = EvaluationRequest(
        tool_name=tool_name,
        args=args,
        domain=domain,
        observe_only=observe_only,
        user_mode=user_mode,
    )

    if explain and not as_json:
        click.echo(explain_request(engine, request))
        click.echo("")

    result = engine.evaluate(request)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(explain_result(result))
    if not result.allowed:
        sys.exit(ExitCode.POLICY_DENIED)


@policy_group.command("validate")
@click.argument("bundle_file", type=click.Path(exists=True, dir_okay=False))
def policy_validate(bundle_file: str) -> None:
    """
    Validate a policy bundle file (JSON or YAML) against the bundle schema.

    Exits 0 if valid, 1 if invalid.
    """
    try:
        bundle = _load_bundle_file(bundle_file)
    except BundleValidationError as exc:
        click.echo(str(exc), err=True)
        sys.exit(ExitCode.ERROR)

    click.echo(
        f"✓  Bundle v{bundle.version} is valid "
        f"({len(bundle.tool_restrictions or ())} tool restriction(s), "
        f"{len(bundle.time_based_rules or ())} time rule(s), "
        f"allowlist={len(bundle.domain_allowlist or ())}, "
        f"blocklist={len(bundle.domain_blocklist or ())})"
    )
    if bundle.is_expired():
        click.echo("!  Bundle has already expired; it would not be enforced.", err=True)


@policy_group.command("sync")
@click.option("--url", default=None, help="Fetch from this URL instead of the configured one.")
@click.pass_obj
def policy_sync(config: AgentGateConfig, url: str | None) -> None:
    """Fetch the remote policy bundle once and report the result."""
    manager = _manager(config)
    try:
        bundle = asyncio.run(manager.sync(url))
    except PolicySyncError as exc:
        console.print(f"[red]Sync failed:[/red] {exc}")
        sys.exit(ExitCode.NETWORK_ERROR)
    console.print(f"[green]Synced remote policy v{bundle.version}[/green]")
    if bundle.message:
        console.print(f"  Message: {bundle.message}")


@policy_group.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--sync/--no-sync", "do_sync", default=True, help="Fetch before reporting.")
@click.pass_obj
def policy_status(config: AgentGateConfig, as_json: bool, do_sync: bool) -> None:
    """Show remote policy status."""
    manager = _manager(config)
    if do_sync and manager.url:
        try:
            asyncio.run(manager.sync())
        except PolicySyncError:
            pass  # reported below via sync.last_error

    data = manager.status().to_dict()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    console.print("\n[bold]Remote Policy Status[/bold]\n")
    sync_state = data.pop("sync")
    for key, val in data.items():
        if isinstance(val, bool):
            label = "[green]yes[/green]" if val else "[dim]no[/dim]"
        else:
            label = "[dim]-[/dim]" if val is None else str(val)
        console.print(f"  {key:<28} {label}")
    console.print("\n[bold]Sync[/bold]\n")
    for key, val in sync_state.items():
        console.print(f"  {key:<28} {'-' if val is None else val}")
    console.print()


@policy_group.command("configure")
@click.option("--url", required=True, help="Remote policy endpoint (http/https).")
@click.option("--token", default=None, help="Bearer token; stored in the OS keyring.")
@click.pass_obj
def policy_configure(config: AgentGateConfig, url: str, token: str | None) -> None:
    """Set the remote policy URL (saved to config) and optional auth token."""
    from agentgate.core.config import read_config_file, save_config

    manager = _manager(config)
    try:
        manager.configure(url, auth_token=token)
    except (ValueError, AgentGateError) as exc:
        console.print(f"[red]Configure failed:[/red] {exc}")
        sys.exit(ExitCode.ERROR)

    config.policy_sync.url = manager.url
    try:
        # Env overrides stay out of the file; only the URL changes.
        data = read_config_file()
        data.setdefault("policy_sync", {})["url"] = manager.url
        path = save_config(data)
    except AgentGateError as exc:
        console.print(f"[red]Configure failed:[/red] {exc}")
        sys.exit(ExitCode.CONFIG_ERROR)
    console.print(f"[green]Remote policy URL saved:[/green] {path}")
    if token:
        console.print("  Auth token stored in the OS keyring.")


@policy_group.command("clear-token")
@click.pass_obj
def policy_clear_token(config: AgentGateConfig) -> None:
    """Remove the stored remote policy auth token."""
    manager = _manager(config)
    try:
        removed = manager.clear_auth_token()
    except AgentGateError as exc:
        console.print(f"[red]Cannot clear token:[/red] {exc}")
        sys.exit(ExitCode.ERROR)
    console.print("Auth token removed." if removed else "No auth token was stored.")
