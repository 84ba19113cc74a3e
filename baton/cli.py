"""Command line interface for inspecting and operating baton workflows."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from .config import load_config
from .engine import WorkflowEngine, build_engine
from .persistence import get_repository

app = typer.Typer(help="CLI for baton workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting workflow instances")
approval_app = typer.Typer(help="Commands for reviewing approval requests")
sweeper_app = typer.Typer(help="Commands for the approval timeout sweeper")

app.add_typer(workflow_app, name="workflow")
app.add_typer(approval_app, name="approval")
app.add_typer(sweeper_app, name="sweeper")


@app.callback()
def main() -> None:
    """Baton CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    return build_engine(repository=get_repository())


@workflow_app.command("list")
def workflow_list(
    owner: Optional[str] = typer.Option(None, help="Only show this owner's workflows"),
    include_cancelled: bool = typer.Option(
        False, "--all", help="Include cancelled workflows"
    ),
) -> None:
    """
    List workflow instances with their current status.

    Example:
        baton workflow list --owner alice
        # Output: 3f2c...    onboarding    running    step 2
    """
    engine = _engine()
    instances = asyncio.run(
        engine.instances.list_instances(owner, include_cancelled=include_cancelled)
    )
    if not instances:
        typer.echo("No workflows found")
        return
    for wf in instances:
        typer.echo(
            f"{wf.id}\t{wf.definition_id}\t{wf.status.value}\tstep {wf.current_step_index}"
        )


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """
    Show status, step history and transitions of a workflow instance.

    Example:
        baton workflow show 3f2c...
        # Output: Workflow 3f2c... (onboarding): running, step 2
        #         - collect: completed (2024-01-01 10:00 -> 10:01)
        #         - review: running
    """
    wf, report, history, transitions = asyncio.run(
        _load_workflow_details(_engine(), instance_id)
    )
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)

    typer.echo(
        f"Workflow {wf.id} ({wf.definition_id}): {wf.status.value}, step {wf.current_step_index}"
    )
    if report is not None:
        typer.echo(f"Progress: {report.percent_complete}%")

    typer.echo("Steps:")
    for record in history:
        line = f"- {record.step_name}: {record.status.value}"
        if record.completed_at:
            line += f" ({record.started_at} -> {record.completed_at})"
        if record.error_message:
            line += f" [{record.error_message}]"
        typer.echo(line)

    typer.echo("Transitions:")
    for event in transitions:
        old = event.old_status.value if event.old_status else "-"
        new = event.new_status.value if event.new_status else "-"
        typer.echo(f"- {event.timestamp} {event.event_type}: {old} -> {new} by {event.actor}")


async def _load_workflow_details(engine: WorkflowEngine, instance_id: str):
    # One event loop per command; pooled connections are bound to it.
    wf = await engine.instances.get_instance(instance_id)
    if wf is None:
        return None, None, [], []
    return (
        wf,
        await engine.instances.get_workflow_status(instance_id),
        await engine.instances.get_step_history(instance_id),
        await engine.instances.get_transition_history(instance_id),
    )


@workflow_app.command("handoffs")
def workflow_handoffs(instance_id: str) -> None:
    """List agent handoffs of a workflow instance, oldest first."""
    engine = _engine()
    handoffs = asyncio.run(engine.handoffs.get_handoff_history(instance_id))
    if not handoffs:
        typer.echo("No handoffs recorded")
        return
    for handoff in handoffs:
        typer.echo(
            f"{handoff.timestamp}\t{handoff.from_agent_id} -> {handoff.to_agent_id}\t{handoff.step_id}"
        )


@workflow_app.command("pause")
def workflow_pause(instance_id: str, user: str = typer.Option("system")) -> None:
    """Pause a running workflow instance."""
    engine = _engine()
    result = asyncio.run(engine.instances.pause_workflow(instance_id, actor=user))
    _report_transition(result.success, result.message, "Workflow paused")


@workflow_app.command("resume")
def workflow_resume(instance_id: str, user: str = typer.Option("system")) -> None:
    """Resume a paused workflow instance."""
    engine = _engine()
    result = asyncio.run(engine.instances.resume_workflow(instance_id, actor=user))
    _report_transition(result.success, result.message, "Workflow resumed")


@workflow_app.command("cancel")
def workflow_cancel(instance_id: str, user: str = typer.Option("system")) -> None:
    """Cancel a workflow instance."""
    engine = _engine()
    result = asyncio.run(engine.instances.cancel_workflow(instance_id, actor=user))
    _report_transition(result.success, result.message, "Workflow cancelled")


def _report_transition(success: bool, message: Optional[str], default: str) -> None:
    if not success:
        typer.secho(message or "Request refused", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(message or default)


@approval_app.command("pending")
def approval_pending(instance_id: str) -> None:
    """Show the oldest pending approval request of a workflow instance."""
    engine = _engine()
    approval = asyncio.run(engine.approvals.get_pending_approval(instance_id))
    if approval is None:
        typer.echo("No pending approval")
        return
    typer.echo(f"Approval {approval.id} for step {approval.step_id}")
    typer.echo(f"Agent: {approval.agent_id}")
    typer.echo(f"Confidence: {approval.confidence_score:.2f}")
    if approval.reasoning:
        typer.echo(f"Reasoning: {approval.reasoning}")
    typer.echo(f"Proposed response: {approval.proposed_response}")


@approval_app.command("approve")
def approval_approve(
    approval_id: str, user: str = typer.Option(..., help="Workflow owner")
) -> None:
    """Approve the proposed response of an approval request."""
    engine = _engine()
    outcome = asyncio.run(engine.approvals.approve(approval_id, user))
    _report_transition(outcome.success, outcome.message, "Approved")


@approval_app.command("reject")
def approval_reject(
    approval_id: str,
    user: str = typer.Option(..., help="Workflow owner"),
    reason: str = typer.Option(..., help="Why the response was rejected"),
) -> None:
    """Reject the proposed response of an approval request."""
    engine = _engine()
    outcome = asyncio.run(engine.approvals.reject(approval_id, user, reason))
    _report_transition(outcome.success, outcome.message, "Rejected")


@sweeper_app.command("run")
def sweeper_run(
    once: bool = typer.Option(False, help="Run a single sweep and exit"),
) -> None:
    """
    Send reminders for aging approvals and time out expired ones.

    Without --once the sweeper keeps running on the configured interval
    until interrupted.
    """
    engine = _engine()
    if once:
        report = asyncio.run(engine.sweeper.run_once())
        typer.echo(f"Reminders sent: {len(report.reminders)}")
        typer.echo(f"Approvals timed out: {len(report.timeouts)}")
        return

    typer.echo("Starting approval timeout sweeper")
    try:
        asyncio.run(engine.sweeper.run())
    except KeyboardInterrupt:
        typer.echo("Sweeper stopped")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
