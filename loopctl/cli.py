"""
CLI interface for loopctl.

Provides commands to inspect loop definitions, drive executions through
their phases and gates, run the autonomous executor and manage resource
reservations.

Executions and reservations are stored under the configured ``store_dir``;
run ``loopctl init`` once to create the configuration.
"""

import json
import time

import click

from loopctl import __version__


def _load_toolbox(ctx):
    """Build the Toolbox from the loaded config, or exit when there is none."""
    from loopctl.tools import build_toolbox

    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'loopctl init' to create a configuration file.", err=True)
        raise SystemExit(1)

    if "toolbox" not in ctx.obj:
        ctx.obj["toolbox"] = build_toolbox(ctx.obj["config"])
    return ctx.obj["toolbox"]


def _call(ctx, name: str, /, **params) -> dict:
    """Run a tool; print its error and exit 1 when it fails."""
    toolbox = _load_toolbox(ctx)
    response = toolbox.call(name, {k: v for k, v in params.items() if v is not None})
    if not response["ok"]:
        error = response["error"]
        click.echo(f"✗ {error['message']} ({error['kind']})", err=True)
        raise SystemExit(1)
    return response


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


def _echo_execution(execution: dict) -> None:
    click.echo(f"Execution: {execution['execution_id']}")
    click.echo(f"Loop: {execution['loop_id']} v{execution['loop_version']}")
    click.echo(f"Project: {execution['project']} ({execution['mode']}, {execution['autonomy']})")
    click.echo(f"Status: {execution['status']}")
    if execution.get("status_reason"):
        click.echo(f"Reason: {execution['status_reason']}")
    click.echo(f"Current phase: {execution['current_phase']}")


@click.group()
@click.version_option(version=__version__, prog_name="loopctl")
@click.pass_context
def main(ctx):
    """
    loopctl - Phase/gate loop execution engine.

    Drive executions of loop definitions through phases, skills and gates.
    """
    from loopctl.config import load_config
    from loopctl.errors import ConfigError
    from loopctl.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except (FileNotFoundError, ConfigError) as e:
        # init runs without a config; other commands check ctx.obj["config"]
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(config)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize loopctl configuration."""
    from loopctl.config import LoopctlConfig, get_loopctl_home
    import yaml

    home = get_loopctl_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = LoopctlConfig(
        store_dir=str(home / "store"),
        env_file=str(home / ".env"),
    ).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# LOOPCTL_LOG_LEVEL=DEBUG\n")

    click.echo(f"Initialized loopctl config at {cfg_path}")


# =============================================================================
# Loop definitions
# =============================================================================

@main.group("loops")
def loops_group():
    """Inspect loop definitions."""
    pass


def _registry(ctx):
    from loopctl.registry import LoopRegistry

    config = ctx.obj.get("config")
    return LoopRegistry(config.definitions_path if config else None)


@loops_group.command("list")
@click.pass_context
def list_loops(ctx):
    """List available loop definitions."""
    summaries = _registry(ctx).list_loops()
    if not summaries:
        click.echo("No loop definitions found.")
        return

    for s in summaries:
        click.echo(f"{s.loop_id} v{s.version}  ({s.phase_count} phases, {s.skill_count} skills)")
        if s.description:
            click.echo(f"  {s.description}")


@loops_group.command("show")
@click.argument("loop_id")
@click.pass_context
def show_loop(ctx, loop_id: str):
    """Show a loop definition."""
    from loopctl.errors import LoopctlError

    registry = _registry(ctx)
    try:
        loop_def = registry.load(loop_id)
    except LoopctlError as e:
        click.echo(f"✗ {e}", err=True)
        available = registry.list_loop_ids()
        if available:
            click.echo("\nAvailable loops:", err=True)
            for lid in available:
                click.echo(f"  {lid}", err=True)
        raise SystemExit(1)

    click.echo(f"Loop: {loop_def.loop_id} v{loop_def.version}")
    click.echo(f"Name: {loop_def.name}")
    click.echo(f"Defaults: {loop_def.default_mode.value}, {loop_def.default_autonomy.value}")
    click.echo()
    for phase in loop_def.phases:
        suffix = "" if phase.required else " (optional)"
        click.echo(f"{phase.order:>2}. {phase.name}{suffix}")
        for skill in phase.skills:
            marker = "*" if skill.required else "-"
            click.echo(f"      {marker} {skill.skill_id}")
        for gate in loop_def.gates_after(phase.name):
            click.echo(f"      [gate] {gate.gate_id} ({gate.approval_type.value})")


# =============================================================================
# Executions
# =============================================================================

@main.group("exec")
def exec_group():
    """Drive loop executions."""
    pass


@exec_group.command("start")
@click.argument("loop_id")
@click.argument("project")
@click.option("--mode", help="greenfield, brownfield-polish or brownfield-enterprise")
@click.option("--autonomy", help="full, supervised or manual")
@click.pass_context
def exec_start(ctx, loop_id: str, project: str, mode: str, autonomy: str):
    """
    Start an execution of LOOP_ID for PROJECT.

    Examples:

        loopctl exec start engineering-loop api-service

        loopctl exec start bugfix-loop api-service --autonomy full
    """
    response = _call(ctx, "start_execution", loop_id=loop_id, project=project, mode=mode, autonomy=autonomy)
    execution = response["execution"]
    click.echo(f"✓ Started {execution['execution_id']} at phase {execution['current_phase']}")


@exec_group.command("status")
@click.argument("execution_id")
@click.option("--json", "as_json", is_flag=True, help="Print the full execution record")
@click.pass_context
def exec_status(ctx, execution_id: str, as_json: bool):
    """Show an execution's status, phases and gates."""
    from loopctl.utils import format_elapsed, parse_datetime

    response = _call(ctx, "get_execution", execution_id=execution_id)
    execution = response["execution"]
    if as_json:
        _echo_json(execution)
        return

    _echo_execution(execution)
    started = parse_datetime(execution.get("started_at"))
    if started:
        click.echo(f"Elapsed: {format_elapsed(started, parse_datetime(execution.get('completed_at')))}")

    click.echo()
    for phase in execution["phases"]:
        click.echo(f"{phase['name']}: {phase['status']}")
        for skill in phase["skills"]:
            click.echo(f"  {skill['skill_id']}: {skill['status']}")
    if execution["gates"]:
        click.echo()
        for gate in execution["gates"]:
            state = gate["status"] if gate["enabled"] else "disabled"
            click.echo(f"[gate] {gate['gate_id']} after {gate['after_phase']}: {state}")


@exec_group.command("list")
@click.option("--status", help="Filter by status")
@click.option("--loop", "loop_id", help="Filter by loop id")
@click.pass_context
def exec_list(ctx, status: str, loop_id: str):
    """List executions."""
    response = _call(ctx, "list_executions", status=status, loop_id=loop_id)
    if not response["executions"]:
        click.echo("No executions found.")
        return

    for s in response["executions"]:
        progress = s["progress"]
        click.echo(
            f"{s['execution_id']}  {s['loop_id']}  {s['project']}  {s['status']}  "
            f"{s['current_phase']}  ({progress['phases_completed']}/{progress['phases_total']} phases)"
        )


@exec_group.command("advance")
@click.argument("execution_id")
@click.pass_context
def exec_advance(ctx, execution_id: str):
    """Advance an execution to its next phase."""
    execution = _call(ctx, "advance_phase", execution_id=execution_id)["execution"]
    if execution["status"] == "completed":
        click.echo(f"✓ {execution_id} completed")
    else:
        click.echo(f"✓ {execution_id} now at phase {execution['current_phase']}")


@exec_group.command("complete-phase")
@click.argument("execution_id")
@click.pass_context
def exec_complete_phase(ctx, execution_id: str):
    """Mark the current phase's work complete."""
    execution = _call(ctx, "complete_phase", execution_id=execution_id)["execution"]
    click.echo(f"✓ Phase {execution['current_phase']} completed")


@exec_group.command("complete-skill")
@click.argument("execution_id")
@click.argument("skill_id")
@click.option("--deliverable", "deliverables", multiple=True, help="Deliverable produced (repeatable)")
@click.option("--score", type=float, help="Outcome score within [0, 1]")
@click.pass_context
def exec_complete_skill(ctx, execution_id: str, skill_id: str, deliverables: tuple, score: float):
    """Record a skill of the current phase as completed."""
    outcome = {"success": True, "score": score} if score is not None else None
    _call(
        ctx, "complete_skill",
        execution_id=execution_id, skill_id=skill_id,
        deliverables=list(deliverables), outcome=outcome,
    )
    click.echo(f"✓ Skill {skill_id} completed")


@exec_group.command("skip-skill")
@click.argument("execution_id")
@click.argument("skill_id")
@click.option("--reason", required=True, help="Why the skill is skipped")
@click.pass_context
def exec_skip_skill(ctx, execution_id: str, skill_id: str, reason: str):
    """Skip a skill of the current phase."""
    _call(ctx, "skip_skill", execution_id=execution_id, skill_id=skill_id, reason=reason)
    click.echo(f"✓ Skill {skill_id} skipped")


@exec_group.command("approve")
@click.argument("execution_id")
@click.argument("gate_id")
@click.option("--by", "approved_by", help="Approver name")
@click.pass_context
def exec_approve(ctx, execution_id: str, gate_id: str, approved_by: str):
    """Approve a gate."""
    _call(ctx, "approve_gate", execution_id=execution_id, gate_id=gate_id, approved_by=approved_by)
    click.echo(f"✓ Gate {gate_id} approved")


@exec_group.command("reject")
@click.argument("execution_id")
@click.argument("gate_id")
@click.option("--feedback", required=True, help="What must change before approval")
@click.pass_context
def exec_reject(ctx, execution_id: str, gate_id: str, feedback: str):
    """Reject a gate. Rejecting a required gate blocks the execution."""
    execution = _call(
        ctx, "reject_gate", execution_id=execution_id, gate_id=gate_id, feedback=feedback,
    )["execution"]
    click.echo(f"✓ Gate {gate_id} rejected (execution {execution['status']})")


@exec_group.command("pause")
@click.argument("execution_id")
@click.pass_context
def exec_pause(ctx, execution_id: str):
    """Pause an active execution."""
    _call(ctx, "pause_execution", execution_id=execution_id)
    click.echo(f"✓ {execution_id} paused")


@exec_group.command("resume")
@click.argument("execution_id")
@click.pass_context
def exec_resume(ctx, execution_id: str):
    """Resume a paused or blocked execution."""
    _call(ctx, "resume_execution", execution_id=execution_id)
    click.echo(f"✓ {execution_id} resumed")


@exec_group.command("abort")
@click.argument("execution_id")
@click.option("--reason", help="Why the execution is aborted")
@click.pass_context
def exec_abort(ctx, execution_id: str, reason: str):
    """Abort an execution."""
    _call(ctx, "abort_execution", execution_id=execution_id, reason=reason)
    click.echo(f"✓ {execution_id} aborted")


@exec_group.command("logs")
@click.argument("execution_id")
@click.option("--level", help="info, warning or error")
@click.option("--category", help="phase, skill, gate or system")
@click.option("--limit", type=int, help="Show only the most recent entries")
@click.pass_context
def exec_logs(ctx, execution_id: str, level: str, category: str, limit: int):
    """Show an execution's log."""
    response = _call(
        ctx, "get_execution_logs",
        execution_id=execution_id, level=level, category=category, limit=limit,
    )
    for entry in response["logs"]:
        click.echo(f"{entry['timestamp']} {entry['level'].upper():<7} [{entry['category']}] {entry['message']}")


# =============================================================================
# Autonomous executor
# =============================================================================

@main.group("auto")
def auto_group():
    """
    Run the autonomous executor.

    Skills are dispatched to no-op delegates from the command line, so
    these commands act as a dry run of the autonomy policy.
    """
    pass


def _echo_tick(results: list) -> None:
    for result in results:
        for action in result["actions"]:
            click.echo(f"{result['execution_id']}  {action['type']}  {action['target']}")
        for error in result["errors"]:
            click.echo(f"{result['execution_id']}  ✗ {error}", err=True)


@auto_group.command("tick")
@click.pass_context
def auto_tick(ctx):
    """Run a single autonomous tick."""
    results = _call(ctx, "run_autonomous_tick")["results"]
    if not results:
        click.echo("No eligible executions.")
        return
    _echo_tick(results)


@auto_group.command("run")
@click.option("--max-ticks", type=int, default=100, show_default=True, help="Stop after this many ticks")
@click.option("--interval-ms", type=int, help="Override the tick interval")
@click.pass_context
def auto_run(ctx, max_ticks: int, interval_ms: int):
    """Tick until no execution is eligible (or --max-ticks is reached)."""
    toolbox = _load_toolbox(ctx)
    if interval_ms is not None:
        _call(ctx, "configure_autonomous", tick_interval_ms=interval_ms)
    interval = toolbox.autonomous.config.tick_interval_ms / 1000

    for tick in range(1, max_ticks + 1):
        results = _call(ctx, "run_autonomous_tick")["results"]
        if not results or not any(r["actions"] for r in results):
            click.echo(f"✓ Idle after {tick} ticks")
            return
        _echo_tick(results)
        if tick < max_ticks:
            time.sleep(interval)
    click.echo(f"Stopped after {max_ticks} ticks")


# =============================================================================
# Collaborators
# =============================================================================

@main.group("collab")
def collab_group():
    """Manage collaborators."""
    pass


@collab_group.command("register")
@click.argument("name")
@click.option("--id", "collaborator_id", help="Collaborator id (generated when omitted)")
@click.option("--email", help="Contact email")
@click.pass_context
def collab_register(ctx, name: str, collaborator_id: str, email: str):
    """Register (or reconnect) a collaborator."""
    collaborator = _call(
        ctx, "register_collaborator", name=name, collaborator_id=collaborator_id, email=email,
    )["collaborator"]
    click.echo(f"✓ Registered {collaborator['name']} ({collaborator['collaborator_id']})")


@collab_group.command("list")
@click.pass_context
def collab_list(ctx):
    """List collaborators."""
    collaborators = _call(ctx, "list_collaborators")["collaborators"]
    if not collaborators:
        click.echo("No collaborators registered.")
        return

    for c in collaborators:
        click.echo(f"{c['collaborator_id']}  {c['name']}  {c['status']}")


# =============================================================================
# Reservations
# =============================================================================

@main.group("reserve")
def reserve_group():
    """Manage resource reservations."""
    pass


@reserve_group.command("create")
@click.argument("collaborator_id")
@click.argument("target")
@click.option(
    "--type", "target_type", default="module", show_default=True,
    type=click.Choice(["module", "file", "path-pattern"]),
)
@click.option("--shared", is_flag=True, help="Create a non-exclusive reservation")
@click.option("--duration-ms", type=int, help="Reservation lifetime")
@click.option("--reason", help="What the reservation is for")
@click.pass_context
def reserve_create(ctx, collaborator_id: str, target: str, target_type: str, shared: bool,
                   duration_ms: int, reason: str):
    """Reserve TARGET for COLLABORATOR_ID."""
    response = _call(
        ctx, "create_reservation",
        collaborator_id=collaborator_id, type=target_type, target=target,
        exclusive=not shared, duration_ms=duration_ms, reason=reason,
    )
    if not response["reserved"]:
        conflict = response["conflict"]
        click.echo(f"✗ {conflict['error']}", err=True)
        for r in conflict["conflicts_with"]:
            click.echo(f"  {r['reservation_id']}  {r['type']} {r['target']}  ({r['collaborator_id']})", err=True)
        raise SystemExit(1)

    reservation = response["reservation"]
    click.echo(f"✓ Reserved {target_type} {target} ({reservation['reservation_id']})")


@reserve_group.command("list")
@click.option("--collaborator", "collaborator_id", help="Filter by collaborator")
@click.option("--all", "include_expired", is_flag=True, help="Include expired reservations")
@click.pass_context
def reserve_list(ctx, collaborator_id: str, include_expired: bool):
    """List reservations."""
    response = _call(
        ctx, "list_reservations", collaborator_id=collaborator_id, include_expired=include_expired,
    )
    if not response["reservations"]:
        click.echo("No reservations found.")
        return

    for r in response["reservations"]:
        mode = "exclusive" if r["exclusive"] else "shared"
        click.echo(
            f"{r['reservation_id']}  {r['type']} {r['target']}  {mode}  "
            f"{r['collaborator_id']}  until {r['expires_at']}"
        )


@reserve_group.command("release")
@click.argument("reservation_id")
@click.pass_context
def reserve_release(ctx, reservation_id: str):
    """Release a reservation."""
    if not _call(ctx, "release_reservation", reservation_id=reservation_id)["released"]:
        click.echo(f"✗ Reservation not found: {reservation_id}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Released {reservation_id}")


@reserve_group.command("check")
@click.argument("target")
@click.option(
    "--type", "target_type", default="module", show_default=True,
    type=click.Choice(["module", "file", "path-pattern"]),
)
@click.pass_context
def reserve_check(ctx, target: str, target_type: str):
    """Show the reservations blocking TARGET."""
    response = _call(ctx, "check_resource_blocked", type=target_type, target=target)
    if not response["blocked"]:
        click.echo(f"✓ {target_type} {target} is free")
        return

    click.echo(f"{target_type} {target} is blocked by:")
    for r in response["reservations"]:
        click.echo(f"  {r['reservation_id']}  {r['type']} {r['target']}  ({r['collaborator_id']})")


if __name__ == "__main__":
    main()
