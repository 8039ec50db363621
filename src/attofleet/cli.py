"""CLI entrypoint for attofleet."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Any

import click

from attofleet.config.loader import load_fleet_yaml
from attofleet.config.schema import FleetConfig
from attofleet.defaults import DEFAULT_CONFIG_FILE, DEFAULT_REGISTRY_FILE, PROJECT_DIR
from attofleet.errors import ConfigError
from attofleet.logger import setup_logging
from attofleet.pipeline.broadcast import BroadcastCoordinator
from attofleet.sessions.record import SessionRecord, SessionRegistry
from attofleet.sessions.state import SessionStateStore


def _default_path(name: str) -> Path:
    return Path(PROJECT_DIR) / name


@click.group()
@click.option(
    "--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
    help=f"Fleet config file (default: {PROJECT_DIR}/{DEFAULT_CONFIG_FILE})",
)
@click.option(
    "--registry", "registry_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
    help=f"Session registry file (default: {PROJECT_DIR}/{DEFAULT_REGISTRY_FILE})",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, registry_path: Path | None, debug: bool) -> None:
    """Attofleet autonomous session orchestrator."""
    config_path = config_path or _default_path(DEFAULT_CONFIG_FILE)
    try:
        cfg = load_fleet_yaml(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    setup_logging(debug=debug or cfg.logging.debug, json_output=cfg.logging.json_output)
    ctx.obj = {
        "config": cfg,
        "config_path": config_path,
        "registry_path": registry_path or _default_path(DEFAULT_REGISTRY_FILE),
    }


def _pipeline_flags(sess: SessionRecord) -> str:
    flags = []
    if sess.autonomous:
        flags.append("auto")
    if sess.is_supervisor:
        flags.append("supervisor")
    if sess.supervisor_id:
        flags.append(f"child-of={sess.supervisor_id}")
    if sess.merged_to_parent:
        flags.append("merged-to-parent")
    if sess.pr_merged:
        flags.append("merged")
    elif sess.pr_created:
        flags.append("pr")
    if sess.pr_comments_addressed_count:
        flags.append(f"comments={sess.pr_comments_addressed_count}")
    return ",".join(flags) or "-"


@main.command("sessions")
@click.option("--group", "group_id", default=None, help="Only show one broadcast group")
@click.pass_obj
def sessions_command(obj: dict[str, Any], group_id: str | None) -> None:
    """List registered sessions and their pipeline flags."""
    registry = SessionRegistry.load(obj["registry_path"])
    records = registry.by_broadcast_group(group_id) if group_id else registry.all()
    if not records:
        click.echo("No sessions")
        return
    for sess in sorted(records, key=lambda r: r.created_at):
        click.echo(f"{sess.id}  {sess.display_name}  repo={sess.repo_path or '-'}  [{_pipeline_flags(sess)}]")


@main.command("groups")
@click.pass_obj
def groups_command(obj: dict[str, Any]) -> None:
    """Summarise broadcast groups in the registry."""
    registry = SessionRegistry.load(obj["registry_path"])
    coordinator = BroadcastCoordinator(registry, SessionStateStore())
    groups = sorted({r.broadcast_group_id for r in registry.all() if r.broadcast_group_id})
    if not groups:
        click.echo("No broadcast groups")
        return
    for group_id in groups:
        members = coordinator.members(group_id)
        with_pr = sum(1 for m in members if m.pr_created)
        merged = sum(1 for m in members if m.pr_merged)
        click.echo(
            f"{group_id}  sessions={len(members)}  prs={with_pr}  merged={merged}  "
            f"needing_pr={len(coordinator.members_needing_pr(group_id))}"
        )


def _doctor_rows(cfg: FleetConfig, config_path: Path) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for binary in ("git", "gh"):
        found = shutil.which(binary) is not None
        details = "ok" if found else f"missing binary `{binary}`"
        if binary == "gh" and found:
            try:
                auth = subprocess.run(
                    ["gh", "auth", "status"], capture_output=True, text=True, timeout=10, check=False,
                )
                if auth.returncode != 0:
                    details = "gh is not authenticated (run `gh auth login`)"
                    found = False
            except (OSError, subprocess.TimeoutExpired) as exc:
                details = f"gh auth status failed: {exc}"
                found = False
        rows.append({"check": binary, "ok": found, "details": details})

    rows.append({
        "check": "config",
        "ok": True,
        "details": str(config_path) if config_path.exists() else f"{config_path} not found, using defaults",
    })
    for repo in cfg.repos:
        exists = Path(repo.path).expanduser().is_dir()
        rows.append({
            "check": f"repo {repo.path}",
            "ok": exists,
            "details": "ok" if exists else "directory not found",
        })
    return rows


def _print_doctor(rows: list[dict[str, Any]]) -> bool:
    click.echo("Preflight:")
    all_ok = True
    for row in rows:
        icon = "OK" if row["ok"] else "FAIL"
        click.echo(f"  [{icon}] {row['check']} - {row['details']}")
        all_ok = all_ok and bool(row["ok"])
    return all_ok


@main.command("doctor")
@click.pass_obj
def doctor_command(obj: dict[str, Any]) -> None:
    """Check git/gh availability and the fleet config."""
    ok = _print_doctor(_doctor_rows(obj["config"], obj["config_path"]))
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()
