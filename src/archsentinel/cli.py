from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Annotated

import click
import typer
from rich.console import Console

from archsentinel import __version__
from archsentinel.config import ConfigError
from archsentinel.engine.context import SessionContext
from archsentinel.logging_utils import configure_logging
from archsentinel.reporters.json_reporter import render_dashboard_json, render_feedback_json, render_session_json
from archsentinel.reporters.markdown import render_dashboard_markdown, render_feedback_markdown
from archsentinel.reporters.terminal import render_dashboard, render_feedback, render_session
from archsentinel.session import SessionController, SessionResult
from archsentinel.store import StoreUnavailableError, ViolationStore

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="ArchSentinel: hexagonal architecture guard for agent-written Java code.",
)
console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def _main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose logs (printed to stderr)."),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Reduce non-essential output."),
    ] = False,
) -> None:
    """ArchSentinel CLI."""

    if verbose and quiet:
        raise typer.BadParameter("Choose at most one: --verbose or --quiet.")
    configure_logging(verbose=verbose, quiet=quiet)
    ctx.obj = {"verbose": verbose, "quiet": quiet}


def _cli_settings() -> dict[str, bool]:
    ctx = click.get_current_context(silent=True)
    if ctx is None or not isinstance(ctx.obj, dict):
        return {"verbose": False, "quiet": False}
    return {"verbose": bool(ctx.obj.get("verbose", False)), "quiet": bool(ctx.obj.get("quiet", False))}


def _resolve_under_root(root: Path, spec: Path) -> Path | None:
    candidate = spec if spec.is_absolute() else (root / spec)
    try:
        candidate_resolved = candidate.resolve()
        root_resolved = root.resolve()
        candidate_resolved.relative_to(root_resolved)
    except (OSError, RuntimeError, ValueError):
        return None
    return candidate_resolved


def _open_store(project_root: Path, store_path: str, *, read_only: bool = False) -> ViolationStore:
    resolved = _resolve_under_root(project_root, Path(store_path))
    if resolved is None:
        err_console.print("Store path must be within the project root.")
        raise typer.Exit(code=2)
    try:
        return ViolationStore.open_readonly(resolved) if read_only else ViolationStore.open(resolved)
    except StoreUnavailableError as exc:
        err_console.print(f"Violation store unavailable: {exc}")
        raise typer.Exit(code=2) from exc


def _session_context(path: Path, *, agent: str | None) -> SessionContext:
    from archsentinel.scanner import prepare_target

    try:
        target = prepare_target(path)
    except ConfigError as exc:
        err_console.print(f"Invalid configuration: {exc}")
        raise typer.Exit(code=2) from exc

    store = _open_store(target.project_root, target.config.store.path)
    return SessionContext(
        project_root=target.project_root,
        scan_path=target.scan_path,
        config=target.config,
        store=store,
        agent_name=(agent or target.config.agent).strip(),
    )


def _emit_session(result: SessionResult, *, fmt: str, project_root: Path) -> None:
    normalized = fmt.strip().lower()
    if normalized == "json":
        typer.echo(render_session_json(result))
        return
    if normalized == "terminal":
        render_session(result, project_root=project_root, console=console, show_details=not _cli_settings()["quiet"])
        return
    raise typer.BadParameter("Unsupported format. Use: terminal, json.")


def _run_once(
    path: Path,
    *,
    fix: bool,
    agent: str | None,
    output_format: str,
    rule_filter: Iterable[str] | None = None,
) -> None:
    normalized = output_format.strip().lower()
    if normalized not in {"terminal", "json"}:
        raise typer.BadParameter("Unsupported format. Use: terminal, json.")

    ctx = _session_context(path, agent=agent)
    assert ctx.store is not None
    try:
        controller = SessionController(ctx)
        try:
            result = controller.run_pass(fix=fix, rule_filter=rule_filter)
        except StoreUnavailableError as exc:
            err_console.print(f"Violation store unavailable: {exc}")
            raise typer.Exit(code=2) from exc
    finally:
        ctx.store.close()

    if _cli_settings()["verbose"]:
        logger.debug("session %s: %s in %d ms", result.session_id, result.status, result.duration_ms)
    _emit_session(result, fmt=normalized, project_root=ctx.project_root)
    raise typer.Exit(code=result.exit_code())


@app.command()
def validate(
    path: Annotated[
        Path,
        typer.Argument(
            exists=True,
            file_okay=True,
            dir_okay=True,
            resolve_path=True,
            help="File or directory to validate (default: current directory).",
        ),
    ] = Path("."),
    fix: Annotated[
        bool,
        typer.Option("--fix/--no-fix", help="Apply automatic fixes and re-verify them.", show_default=True),
    ] = False,
    agent: Annotated[
        str | None,
        typer.Option("--agent", help="Agent the violations are attributed to (default: config `agent`)."),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", help="Output format: terminal, json.", show_default=True),
    ] = "terminal",
) -> None:
    """
    Run one validation pass over PATH and record it.

    Exit codes: 0 clean or all fixes verified, 1 violations remain, 2 internal failure.
    """

    _run_once(path, fix=fix, agent=agent, output_format=output_format)


@app.command("check-interfaces")
def check_interfaces(
    path: Annotated[
        Path,
        typer.Argument(
            exists=True,
            file_okay=True,
            dir_okay=True,
            resolve_path=True,
            help="File or directory to check (default: current directory).",
        ),
    ] = Path("."),
    fix: Annotated[
        bool,
        typer.Option("--fix/--no-fix", help="Generate missing port interfaces.", show_default=True),
    ] = True,
    agent: Annotated[
        str | None,
        typer.Option("--agent", help="Agent the violations are attributed to (default: config `agent`)."),
    ] = None,
    output_format: Annotated[
        str,
        typer.Option("--format", help="Output format: terminal, json.", show_default=True),
    ] = "terminal",
) -> None:
    """
    Check that infrastructure adapters implement a domain port (MISSING_INTERFACE only).
    """

    _run_once(path, fix=fix, agent=agent, output_format=output_format, rule_filter=("MISSING_INTERFACE",))


@app.command()
def continuous(
    path: Annotated[
        Path,
        typer.Argument(
            exists=True,
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
            help="Directory to watch for changes (default: current directory).",
        ),
    ] = Path("."),
    debounce: Annotated[
        float | None,
        typer.Option("--debounce", min=0.0, help="Quiet period in seconds before a pass (default: config)."),
    ] = None,
    fix: Annotated[
        bool,
        typer.Option("--fix/--no-fix", help="Apply automatic fixes on every pass.", show_default=True),
    ] = False,
    agent: Annotated[
        str | None,
        typer.Option("--agent", help="Agent the violations are attributed to (default: config `agent`)."),
    ] = None,
) -> None:
    """
    Watch PATH and validate every debounced batch of changed Java files.

    Press Ctrl-C to stop; a running pass is cancelled at its next safe point.
    """

    import queue
    from typing import Any, Protocol, cast

    from watchdog.observers import Observer

    from archsentinel.utils import safe_relpath
    from archsentinel.watch import JavaChangeHandler, watch_loop

    settings = _cli_settings()
    ctx = _session_context(path, agent=agent)
    assert ctx.store is not None
    effective_debounce = float(debounce if debounce is not None else ctx.config.watch.debounce)

    events: queue.Queue[Path] = queue.Queue()

    class _ObserverProto(Protocol):
        def schedule(self, event_handler: Any, path: str, *, recursive: bool) -> object: ...

        def start(self) -> None: ...

        def stop(self) -> None: ...

        def join(self) -> None: ...

    observer = cast(_ObserverProto, Observer())
    observer.schedule(JavaChangeHandler(ctx, events), str(ctx.scan_path), recursive=True)
    controller = SessionController(ctx)

    def _on_result(result: SessionResult, changed: tuple[Path, ...]) -> None:
        if changed and not settings["quiet"]:
            names = ", ".join(safe_relpath(p, ctx.project_root) for p in changed[:5])
            more = f" (+{len(changed) - 5} more)" if len(changed) > 5 else ""
            console.print(f"Changed: {names}{more}", style="dim")
        render_session(result, project_root=ctx.project_root, console=console, show_details=not settings["quiet"])

    if not settings["quiet"]:
        console.print(
            f"Watching {safe_relpath(ctx.scan_path, ctx.project_root)} (debounce {effective_debounce:g}s)",
            style="dim",
        )

    exit_code = 0
    try:
        observer.start()
        watch_loop(controller, events, debounce=effective_debounce, fix=fix, on_result=_on_result)
    except KeyboardInterrupt:
        pass
    except StoreUnavailableError as exc:
        err_console.print(f"Violation store unavailable: {exc}")
        exit_code = 2
    finally:
        observer.stop()
        observer.join()
        ctx.store.close()

    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command()
def report(
    agent: Annotated[
        str | None,
        typer.Argument(help="Agent to build feedback for. Omit for the overall dashboard."),
    ] = None,
    path: Annotated[
        Path,
        typer.Option(
            "--path",
            exists=True,
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
            help="Project directory holding the violation store (default: current directory).",
        ),
    ] = Path("."),
    output_format: Annotated[
        str,
        typer.Option("--format", help="Output format: terminal, json, markdown.", show_default=True),
    ] = "terminal",
    top: Annotated[
        int,
        typer.Option("--top", min=1, max=50, help="Number of top rules to include."),
    ] = 5,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the report to this file instead of stdout."),
    ] = None,
    export: Annotated[
        bool,
        typer.Option("--export", help="Dump recent violations, patterns and sessions as JSON."),
    ] = False,
) -> None:
    """
    Learning feedback for one agent, or the dashboard across all agents.
    """

    from archsentinel.analytics import build_feedback, dashboard
    from archsentinel.engine.context import utc_now
    from archsentinel.scanner import prepare_target

    normalized = output_format.strip().lower()
    if normalized not in {"terminal", "json", "markdown"}:
        raise typer.BadParameter("Unsupported format. Use: terminal, json, markdown.")
    if output is not None and normalized == "terminal" and not export:
        raise typer.BadParameter("--output requires --format json or markdown.")

    try:
        target = prepare_target(path)
    except ConfigError as exc:
        err_console.print(f"Invalid configuration: {exc}")
        raise typer.Exit(code=2) from exc

    now = utc_now()
    with _open_store(target.project_root, target.config.store.path, read_only=True) as store:
        try:
            if export:
                text = json.dumps(store.export(), indent=2, sort_keys=False)
            elif agent is not None:
                doc = build_feedback(store, agent, now, top_n=top)
                if normalized == "terminal":
                    render_feedback(doc, console=console)
                    return
                text = render_feedback_json(doc) if normalized == "json" else render_feedback_markdown(doc)
            else:
                dash = dashboard(store, now, top_n=max(top, 10))
                if normalized == "terminal":
                    render_dashboard(dash, console=console)
                    return
                text = render_dashboard_json(dash) if normalized == "json" else render_dashboard_markdown(dash)
        except StoreUnavailableError as exc:
            err_console.print(f"Violation store unavailable: {exc}")
            raise typer.Exit(code=2) from exc

    if output is None:
        typer.echo(text)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text if text.endswith("\n") else text + "\n", encoding="utf-8")
    if not _cli_settings()["quiet"]:
        err_console.print(f"Wrote {output}")


@app.command()
def rules(
    path: Annotated[
        Path,
        typer.Argument(
            exists=True,
            file_okay=False,
            dir_okay=True,
            resolve_path=True,
            help="Project directory (default: current directory).",
        ),
    ] = Path("."),
    output_format: Annotated[
        str,
        typer.Option("--format", help="Output format: terminal, json.", show_default=True),
    ] = "terminal",
) -> None:
    """
    List the layering rules and whether the current config enables them.
    """

    from rich.table import Table

    from archsentinel.config import compute_enabled_rule_ids
    from archsentinel.rules.registry import all_rules
    from archsentinel.scanner import prepare_target

    try:
        target = prepare_target(path)
    except ConfigError as exc:
        err_console.print(f"Invalid configuration: {exc}")
        raise typer.Exit(code=2) from exc

    available_rules = list(all_rules())
    enabled_ids = compute_enabled_rule_ids(target.config, available_rule_ids=(r.meta.rule_id for r in available_rules))
    overrides = target.config.rules.severity_overrides

    rows = []
    for rule in available_rules:
        meta = rule.meta
        rows.append(
            {
                "rule_id": meta.rule_id,
                "enabled": meta.rule_id in enabled_ids,
                "title": meta.title,
                "description": meta.description,
                "severity": overrides.get(meta.rule_id, meta.default_severity),
                "auto_fixable": meta.auto_fixable,
            }
        )

    normalized = output_format.strip().lower()
    if normalized == "json":
        typer.echo(json.dumps(rows, indent=2, sort_keys=True))
        return
    if normalized != "terminal":
        raise typer.BadParameter("Unsupported format. Use: terminal, json.")

    table = Table(title="ArchSentinel Rules")
    table.add_column("ID", style="bold")
    table.add_column("Enabled", justify="center")
    table.add_column("Severity")
    table.add_column("Auto-fix", justify="center")
    table.add_column("Title")
    for row in rows:
        table.add_row(
            str(row["rule_id"]),
            "yes" if row["enabled"] else "no",
            str(row["severity"]),
            "yes" if row["auto_fixable"] else "no",
            str(row["title"]),
        )
    console.print(table)
