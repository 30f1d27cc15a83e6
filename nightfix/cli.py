"""CLI entrypoint for nightfix."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click

from nightfix.core.exceptions import NightfixError

_STATUS_COLORS = {"DONE": "green", "FAILED": "red"}


def _setup_logging(verbose: bool = False, config_dir: Optional[Path] = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    from nightfix.core.config import load_config

    try:
        config = load_config(config_dir=config_dir)
        level_name = config.logging.level
        fmt = config.logging.format
    except NightfixError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _echo_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


def _open_state_store(config_dir: Optional[Path], env: Optional[str]):
    from nightfix.core.config import load_config
    from nightfix.core.factory import ComponentFactory

    config = load_config(config_dir=config_dir, env=env)
    store, _ = ComponentFactory.create_state_store(config)
    return store


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    required=False,
    default=None,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory holding default.yaml and prompts/.",
)
@click.option("--env", required=False, default=None, help="Optional config overlay environment.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Path | None, env: str | None) -> None:
    """nightfix command line interface."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_dir"] = config_dir
    ctx.obj["env"] = env
    _setup_logging(verbose=verbose, config_dir=config_dir)


@cli.command("run")
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--max-concurrency", type=int, default=None, help="Targets processed in parallel.")
@click.option("--max-fix-attempts", type=int, default=None, help="Patch attempts per target.")
@click.option("--global-timeout-minutes", type=float, default=None, help="Hard stop for the session.")
@click.option("--wait/--no-wait", default=True, show_default=True, help="Block until the session completes.")
@click.pass_context
def run(
    ctx: click.Context,
    manifest_path: Path,
    max_concurrency: int | None,
    max_fix_attempts: int | None,
    global_timeout_minutes: float | None,
    wait: bool,
) -> None:
    """Start an overnight session for the targets in MANIFEST_PATH."""
    from nightfix.service import OvernightProcessor

    overrides: dict[str, Any] = {}
    if max_concurrency is not None:
        overrides["max_concurrency"] = max_concurrency
    if max_fix_attempts is not None:
        overrides["max_fix_attempts"] = max_fix_attempts
    if global_timeout_minutes is not None:
        overrides["global_timeout_ms"] = int(global_timeout_minutes * 60_000)

    try:
        processor = OvernightProcessor.from_config(config_dir=ctx.obj["config_dir"], env=ctx.obj["env"])
    except NightfixError as exc:
        raise click.ClickException(str(exc)) from exc

    def _notify(event) -> None:
        payload = event.payload
        if event.event_type.value == "TargetStateChanged":
            to = payload.get("to", "")
            line = f"[{event.target_id[:8]}] {payload.get('from')} -> {to}"
            if payload.get("reason"):
                line += f" ({payload['reason']})"
            click.echo(click.style(line, fg=_STATUS_COLORS.get(to)), err=True)
        elif event.event_type.value == "PatchPromoted":
            click.echo(click.style(
                f"[{event.target_id[:8]}] patch promoted: "
                f"{payload.get('passed_before')} -> {payload.get('passed_after')}/{payload.get('total')}",
                fg="cyan",
            ), err=True)

    processor.subscribe(_notify)
    try:
        try:
            session_id = processor.start_overnight_processing(manifest_path, overrides or None)
        except NightfixError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Session {session_id} started")
        if not wait:
            return

        try:
            processor.wait_for_completion(session_id)
        except KeyboardInterrupt:
            click.echo(click.style("\nInterrupted; cancelling session...", fg="yellow", bold=True), err=True)
            processor.cancel_processing(session_id)
            processor.wait_for_completion(session_id)
            click.echo(f"Resume later with: nightfix resume {session_id}", err=True)

        _echo_json(processor.get_report(session_id).model_dump(mode="json"))
    finally:
        processor.close()


@cli.command("status")
@click.argument("session_id", required=False)
@click.pass_context
def status(ctx: click.Context, session_id: str | None) -> None:
    """Show a session's checkpointed state, or list sessions."""
    try:
        store = _open_state_store(ctx.obj["config_dir"], ctx.obj["env"])
        if session_id is None:
            sessions = store.list_sessions()
            _echo_json({"sessions": sessions, "count": len(sessions)})
            return
        session = store.load(session_id)
    except NightfixError as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_json({
        "session": {
            "id": session.id,
            "status": session.status.value,
            "cancel_reason": session.cancel_reason.value if session.cancel_reason else None,
            "created_at": session.created_at.isoformat(),
        },
        "targets": [
            {
                "id": t.id,
                "name": t.name,
                "status": t.status.value,
                "failure_reason": t.failure_reason.value if t.failure_reason else None,
                "attempts": t.attempts,
                "pass_rate": (t.baseline_result or t.latest_result).pass_rate
                if (t.baseline_result or t.latest_result) else None,
            }
            for t in session.ordered_targets()
        ],
    })


@cli.command("report")
@click.argument("session_id")
@click.option(
    "--out",
    "out_path",
    required=False,
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the report JSON here instead of stdout.",
)
@click.pass_context
def report(ctx: click.Context, session_id: str, out_path: Path | None) -> None:
    """Summarize a session (pass rates, grades, readiness)."""
    from nightfix.reporting.aggregator import summarize

    try:
        session = _open_state_store(ctx.obj["config_dir"], ctx.obj["env"]).load(session_id)
    except NightfixError as exc:
        raise click.ClickException(str(exc)) from exc

    summary = summarize(session)
    if out_path is None:
        _echo_json(summary.model_dump(mode="json"))
        return
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(summary.model_dump_json(indent=2), encoding="utf-8")
    click.echo(f"Wrote report to {out_path}")


@cli.command("resume")
@click.argument("session_id")
@click.pass_context
def resume(ctx: click.Context, session_id: str) -> None:
    """Continue an interrupted session from its last checkpoint."""
    from nightfix.service import OvernightProcessor

    try:
        processor = OvernightProcessor.from_config(config_dir=ctx.obj["config_dir"], env=ctx.obj["env"])
    except NightfixError as exc:
        raise click.ClickException(str(exc)) from exc
    try:
        try:
            processor.resume_processing(session_id)
        except NightfixError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Session {session_id} resumed")
        try:
            processor.wait_for_completion(session_id)
        except KeyboardInterrupt:
            processor.cancel_processing(session_id)
            processor.wait_for_completion(session_id)
        _echo_json(processor.get_report(session_id).model_dump(mode="json"))
    finally:
        processor.close()


@cli.command("validate")
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(manifest_path: Path) -> None:
    """Check a manifest without running anything."""
    from nightfix.core.config import load_manifest

    try:
        entries = load_manifest(manifest_path)
    except NightfixError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Manifest OK: {len(entries)} target(s)")
    for entry in entries:
        click.echo(f"  {entry.name}: {' '.join(entry.test_command)} ({entry.path})")


def main() -> None:
    """Entry point used by `nightfix` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)
    cli()


if __name__ == "__main__":
    main()
