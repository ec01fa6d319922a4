from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import click

from wavepool import __version__, checkpoint, coordinator, events, recovery, worker
from wavepool.graph import parse_pipeline_string, pipeline_descriptors
from wavepool.store import PersistenceError, StateNotFoundError, StateStore

log = logging.getLogger(__name__)


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _not_found(entity: str, identifier: str) -> click.ClickException:
    hints = {
        "session": "Run 'wavepool session list' to see sessions.",
        "checkpoint": "Run 'wavepool checkpoint list' to see checkpoints.",
    }
    hint = hints.get(entity, "")
    return click.ClickException(f"{entity.capitalize()} '{identifier}' not found. {hint}".strip())


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click exceptions and domain errors (missing sessions, invalid plans,
    persistence failures) become ``{"ok": false, "error": ...}`` on stdout.
    Unknown commands get fuzzy-matched suggestions via
    ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def invoke(self, ctx):  # type: ignore[override]
        try:
            return super().invoke(ctx)
        except (StateNotFoundError, PersistenceError, ValueError) as e:
            # ValueError covers GraphError, PlanValidationError and bad session ids.
            raise click.ClickException(str(e)) from e

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _store(ctx: click.Context) -> StateStore:
    return ctx.find_object(StateStore)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--project-dir",
    envvar="WAVEPOOL_PROJECT_DIR",
    default=".",
    type=click.Path(file_okay=False, path_type=Path),
    help="Project root holding the .wavepool workspace (default: current directory).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(ctx: click.Context, project_dir: Path, verbose: bool):
    """Coordinate worker processes over a wave-ordered task graph.

    \b
    Quick start:
      wavepool session init tasks.json --session-id demo
      wavepool worker spawn demo --count 3
      wavepool session status demo

    \b
    Key concepts:
      session     One run of a task graph, persisted under .wavepool/state
      wave        Dependency tier; wave N waits for all of waves 1..N-1
      worker      A process that claims, executes and reports tasks
      checkpoint  A git commit of the coordination state, for rollback
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )
    ctx.obj = StateStore(project_dir)


# -- session --


@main.group(cls=_JsonAwareGroup)
def session():
    """Create, inspect and control sessions."""


def _read_descriptors(tasks_file) -> list[dict]:
    try:
        data = json.load(tasks_file)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid JSON in {tasks_file.name}: {e}") from e
    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list):
        raise click.ClickException("Expected a JSON list of tasks (or {\"tasks\": [...]}).")
    return data


@session.command("init")
@click.argument("tasks_file", type=click.File("r"), required=False)
@click.option("--session-id", default=None, help="Session id (default: generated).")
@click.option("--max-workers", type=click.IntRange(min=1), default=None)
@click.option("--worker-timeout-ms", type=click.IntRange(min=1), default=None)
@click.option(
    "--pipeline",
    "pipeline_spec",
    default=None,
    help='Build the graph from a pipeline, e.g. "explore:haiku -> architect:opus".',
)
@click.option("--input", "initial_input", default=None, help="Initial input for a pipeline.")
@click.option("--force", is_flag=True, help="Replace an existing session with the same id.")
@click.pass_context
def session_init(
    ctx: click.Context,
    tasks_file,
    session_id: str | None,
    max_workers: int | None,
    worker_timeout_ms: int | None,
    pipeline_spec: str | None,
    initial_input: str | None,
    force: bool,
):
    """Load a task list (JSON file or '-') and start a new session."""
    store = _store(ctx)
    if pipeline_spec:
        if tasks_file is not None:
            raise click.ClickException("Use either TASKS_FILE or --pipeline, not both.")
        descriptors = pipeline_descriptors(
            session_id or "pipeline", parse_pipeline_string(pipeline_spec), initial_input
        )
        plan_path = None
    elif tasks_file is not None:
        descriptors = _read_descriptors(tasks_file)
        plan_path = None if tasks_file.name == "<stdin>" else str(Path(tasks_file.name).resolve())
    else:
        raise click.ClickException("Provide TASKS_FILE or --pipeline.")

    swarm = store.config.swarm
    if max_workers is not None:
        swarm = replace(swarm, max_workers=max_workers)
    if worker_timeout_ms is not None:
        swarm = replace(swarm, worker_timeout_ms=worker_timeout_ms)

    state = coordinator.initialize_session(
        store,
        descriptors,
        session_id=session_id,
        plan_path=plan_path,
        config=swarm,
        overwrite=force,
    )
    _emit({"session_id": state["session_id"], "status": state["status"], "stats": state["stats"]})


def _lifecycle(ctx: click.Context, session_id: str, action) -> None:
    store = _store(ctx)
    changed = action(store, session_id)
    status = store.load(session_id)["status"]
    _emit({"session_id": session_id, "changed": changed, "status": status})


@session.command("start")
@click.argument("session_id")
@click.pass_context
def session_start(ctx: click.Context, session_id: str):
    """Mark a session running."""
    _lifecycle(ctx, session_id, coordinator.start_session)


@session.command("pause")
@click.argument("session_id")
@click.pass_context
def session_pause(ctx: click.Context, session_id: str):
    """Stop handing out new claims."""
    _lifecycle(ctx, session_id, coordinator.pause_session)


@session.command("resume")
@click.argument("session_id")
@click.pass_context
def session_resume(ctx: click.Context, session_id: str):
    """Resume a paused session."""
    _lifecycle(ctx, session_id, coordinator.resume_session)


@session.command("end")
@click.argument("session_id")
@click.pass_context
def session_end(ctx: click.Context, session_id: str):
    """Mark a session completed."""
    _lifecycle(ctx, session_id, coordinator.end_session)


@session.command("status")
@click.argument("session_id")
@click.pass_context
def session_status(ctx: click.Context, session_id: str):
    """Show lifecycle status and task counts."""
    _emit(coordinator.get_status(_store(ctx), session_id))


@session.command("show")
@click.argument("session_id")
@click.pass_context
def session_show(ctx: click.Context, session_id: str):
    """Dump the full session document."""
    _emit(_store(ctx).load(session_id))


@session.command("clear")
@click.argument("session_id")
@click.option("--no-archive", is_flag=True, help="Delete instead of archiving.")
@click.pass_context
def session_clear(ctx: click.Context, session_id: str, no_archive: bool):
    """Remove a session from the live state tree."""
    store = _store(ctx)
    if not store.exists(session_id):
        raise _not_found("session", session_id)
    target = coordinator.clear_session(store, session_id, archive=not no_archive)
    _emit({"session_id": session_id, "cleared": True, "archived_to": target})


@session.command("list")
@click.pass_context
def session_list(ctx: click.Context):
    """List sessions in this project."""
    store = _store(ctx)
    _emit([coordinator.get_status(store, sid) for sid in store.list_sessions()])


# -- worker --


@main.group("worker", cls=_JsonAwareGroup)
def worker_group():
    """Register workers and drive the claim protocol by hand."""


@worker_group.command("register")
@click.argument("session_id")
@click.option("--worker-id", default=None)
@click.pass_context
def worker_register(ctx: click.Context, session_id: str, worker_id: str | None):
    """Register a worker (idempotent for a known id)."""
    _emit(coordinator.register_worker(_store(ctx), session_id, worker_id))


@worker_group.command("claim")
@click.argument("session_id")
@click.argument("worker_id")
@click.pass_context
def worker_claim(ctx: click.Context, session_id: str, worker_id: str):
    """Claim the next available task."""
    _emit(coordinator.claim_task(_store(ctx), session_id, worker_id).to_dict())


@worker_group.command("heartbeat")
@click.argument("session_id")
@click.argument("worker_id")
@click.pass_context
def worker_heartbeat(ctx: click.Context, session_id: str, worker_id: str):
    """Record a liveness signal."""
    _emit({"ok": coordinator.heartbeat(_store(ctx), session_id, worker_id)})


@worker_group.command("complete")
@click.argument("session_id")
@click.argument("worker_id")
@click.argument("task_id")
@click.option("--output", default=None)
@click.option("--execution-time-ms", type=int, default=None)
@click.option("--file", "files_modified", multiple=True, help="Modified file (repeatable).")
@click.pass_context
def worker_complete(
    ctx: click.Context,
    session_id: str,
    worker_id: str,
    task_id: str,
    output: str | None,
    execution_time_ms: int | None,
    files_modified: tuple[str, ...],
):
    """Report a claimed task as completed."""
    outcome = coordinator.complete_task(
        _store(ctx),
        session_id,
        worker_id,
        task_id,
        {
            "output": output,
            "execution_time_ms": execution_time_ms,
            "files_modified": list(files_modified),
        },
    )
    _emit(outcome.to_dict())


@worker_group.command("fail")
@click.argument("session_id")
@click.argument("worker_id")
@click.argument("task_id")
@click.option("--error", "error_message", required=True)
@click.option("--execution-time-ms", type=int, default=None)
@click.pass_context
def worker_fail(
    ctx: click.Context,
    session_id: str,
    worker_id: str,
    task_id: str,
    error_message: str,
    execution_time_ms: int | None,
):
    """Report a claimed task as failed."""
    outcome = coordinator.fail_task(
        _store(ctx),
        session_id,
        worker_id,
        task_id,
        error_message,
        {"execution_time_ms": execution_time_ms},
    )
    _emit(outcome.to_dict())


@worker_group.command("release")
@click.argument("session_id")
@click.argument("worker_id")
@click.argument("task_id")
@click.pass_context
def worker_release(ctx: click.Context, session_id: str, worker_id: str, task_id: str):
    """Give a claimed task back to the queue."""
    _emit(coordinator.release_task(_store(ctx), session_id, worker_id, task_id).to_dict())


@worker_group.command("run")
@click.argument("session_id")
@click.option("--worker-id", default=None)
@click.pass_context
def worker_run(ctx: click.Context, session_id: str, worker_id: str | None):
    """Run a worker loop in the foreground until no work is left."""
    _emit(worker.run_worker(_store(ctx), session_id, worker_id).to_dict())


@worker_group.command("spawn")
@click.argument("session_id")
@click.option("--count", "-n", type=click.IntRange(min=1), default=1)
@click.pass_context
def worker_spawn(ctx: click.Context, session_id: str, count: int):
    """Launch background workers through rq (requires Redis)."""
    _emit({"spawned": worker.spawn_workers(_store(ctx), session_id, count)})


@worker_group.command("cleanup")
@click.argument("session_id")
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None)
@click.pass_context
def worker_cleanup(ctx: click.Context, session_id: str, timeout_ms: int | None):
    """Terminate workers with stale heartbeats and release their tasks."""
    _emit({"terminated": coordinator.cleanup_stale(_store(ctx), session_id, timeout_ms)})


# -- task --


@main.group(cls=_JsonAwareGroup)
def task():
    """Resolve individual tasks."""


@task.command("retry")
@click.argument("session_id")
@click.argument("task_id")
@click.pass_context
def task_retry(ctx: click.Context, session_id: str, task_id: str):
    """Requeue a failed task."""
    _emit(coordinator.retry_task(_store(ctx), session_id, task_id).to_dict())


# -- checkpoint --


@main.group("checkpoint", cls=_JsonAwareGroup)
def checkpoint_group():
    """Snapshot and restore coordination state with git."""


def _rollback_options(source: bool, patterns: tuple[str, ...], no_state: bool, dry_run: bool):
    options = checkpoint.SelectiveRollbackOptions(
        rollback_state=not no_state, rollback_source=source, dry_run=dry_run
    )
    if patterns:
        options.source_patterns = list(patterns)
    return options


def _rollback_flags(func):
    func = click.option("--dry-run", is_flag=True, help="Report changes without applying.")(func)
    func = click.option("--no-state", is_flag=True, help="Leave the state tree alone.")(func)
    func = click.option("--pattern", "patterns", multiple=True, help="Source path (repeatable).")(
        func
    )
    func = click.option("--source", is_flag=True, help="Also roll back source paths.")(func)
    return func


@checkpoint_group.command("create")
@click.option("--phase", default="run")
@click.option("--plan", type=int, default=0)
@click.option("--wave", type=int, default=0)
@click.option("--description", "-m", default="manual checkpoint")
@click.pass_context
def checkpoint_create(ctx: click.Context, phase: str, plan: int, wave: int, description: str):
    """Commit the current state tree as a checkpoint."""
    _emit(checkpoint.create_checkpoint(_store(ctx), phase, plan, wave, description).to_dict())


@checkpoint_group.command("list")
@click.pass_context
def checkpoint_list(ctx: click.Context):
    """List checkpoints, newest first."""
    _emit(checkpoint.list_checkpoints(_store(ctx)))


@checkpoint_group.command("preview")
@click.argument("checkpoint_id")
@click.option("--pattern", "patterns", multiple=True, help="Source path (repeatable).")
@click.pass_context
def checkpoint_preview(ctx: click.Context, checkpoint_id: str, patterns: tuple[str, ...]):
    """Show files that differ from a checkpoint."""
    _emit(
        checkpoint.preview_rollback(_store(ctx), checkpoint_id, list(patterns) or None).to_dict()
    )


@checkpoint_group.command("rollback")
@click.argument("checkpoint_id")
@_rollback_flags
@click.pass_context
def checkpoint_rollback(
    ctx: click.Context,
    checkpoint_id: str,
    source: bool,
    patterns: tuple[str, ...],
    no_state: bool,
    dry_run: bool,
):
    """Restore state (and optionally source paths) from a checkpoint."""
    options = _rollback_options(source, patterns, no_state, dry_run)
    _emit(checkpoint.selective_rollback(_store(ctx), checkpoint_id, options).to_dict())


@checkpoint_group.command("rollback-phase")
@click.argument("phase", type=int)
@_rollback_flags
@click.pass_context
def checkpoint_rollback_phase(
    ctx: click.Context,
    phase: int,
    source: bool,
    patterns: tuple[str, ...],
    no_state: bool,
    dry_run: bool,
):
    """Roll back to the phase-N-complete tag."""
    options = _rollback_options(source, patterns, no_state, dry_run)
    _emit(checkpoint.rollback_to_phase(_store(ctx), phase, options).to_dict())


@checkpoint_group.command("tag")
@click.argument("phase", type=int)
@click.option("--ref", default="HEAD")
@click.pass_context
def checkpoint_tag(ctx: click.Context, phase: int, ref: str):
    """Tag a commit as phase-N-complete."""
    _emit(checkpoint.tag_phase_complete(_store(ctx), phase, ref))


@checkpoint_group.command("prune")
@click.option("--retain", type=click.IntRange(min=0), default=checkpoint.RETAIN_COUNT)
@click.pass_context
def checkpoint_prune(ctx: click.Context, retain: int):
    """Forget all but the newest checkpoints."""
    _emit({"pruned": checkpoint.prune_old_checkpoints(_store(ctx), retain)})


@checkpoint_group.command("targets")
@click.pass_context
def checkpoint_targets(ctx: click.Context):
    """List checkpoints and phase tags available for rollback."""
    _emit(checkpoint.available_rollback_targets(_store(ctx)))


# -- recovery --


@main.group("recovery", cls=_JsonAwareGroup)
def recovery_group():
    """Inspect and drive error recovery."""


@recovery_group.command("status")
@click.pass_context
def recovery_status(ctx: click.Context):
    """Show the persisted recovery state."""
    _emit(recovery.get_recovery_state(_store(ctx)))


@recovery_group.command("can-retry")
@click.pass_context
def recovery_can_retry(ctx: click.Context):
    """Whether a retry is allowed right now."""
    store = _store(ctx)
    _emit({"can_retry": recovery.can_retry(store), **recovery.get_recovery_state(store)})


@recovery_group.command("handle")
@click.argument("message")
@click.option("--session", "session_id", default=None)
@click.option("--worker", "worker_id", default=None)
@click.option("--task", "task_id", default=None)
@click.option("--phase", default="run")
@click.option("--plan", type=int, default=0)
@click.pass_context
def recovery_handle(
    ctx: click.Context,
    message: str,
    session_id: str | None,
    worker_id: str | None,
    task_id: str | None,
    phase: str,
    plan: int,
):
    """Record a system-level error and run recovery."""
    context = recovery.ErrorContext(
        session_id=session_id, phase=phase, plan=plan, worker_id=worker_id, task_id=task_id
    )
    _emit(recovery.handle_error(_store(ctx), message, context).to_dict())


@recovery_group.command("clear")
@click.pass_context
def recovery_clear(ctx: click.Context):
    """Reset the error count and cooldown."""
    _emit({"cleared": recovery.clear_recovery_state(_store(ctx))})


# -- events --


@main.command("events")
@click.option("--since", type=click.IntRange(min=0), default=0, help="Line offset to read from.")
@click.pass_context
def events_cmd(ctx: click.Context, since: int):
    """Print events recorded after line --since."""
    found, next_line = events.poll_events(_store(ctx), since)
    _emit({"events": found, "next": next_line})
