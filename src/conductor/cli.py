from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click
from loguru import logger

from conductor.config import ConductorConfig, load_config, save_config
from conductor.errors import ConductorError, WorkflowDefinitionError
from conductor.events import (
    AgentStatusChanged,
    AgentToken,
    ApprovalCreated,
    PhaseAdvanced,
    SessionStatusChanged,
)
from conductor.models import Approval, GitStrategy, Session
from conductor.services import Services, build_services
from conductor.state import FileStore
from conductor.workflows import load_workflow, register_workflow, register_workspace
from conductor.worktree import WorktreeManager

DEFAULT_CONFIG = "~/.conductor/config.toml"
SESSION_DONE = ("completed", "paused")


def _resolve_config_path(config_value: str) -> Path:
    return Path(config_value).expanduser().resolve()


def _load(config_value: str) -> ConductorConfig:
    return load_config(_resolve_config_path(config_value))


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format="{time:HH:mm:ss} | {level:<7} | {message}")


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG, show_default=True
)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Conductor: run multi-phase coding workflows with CLI agents."""
    _configure_logging(log_level)


@cli.command("init")
@click.option("--data-dir", default=None, help="Where state, blobs and worktrees live.")
@config_option
def init_command(data_dir: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    if data_dir:
        config.storage.data_dir = data_dir
    save_config(config_path, config)
    for directory in (
        config.storage.state_dir,
        config.storage.content_dir,
        config.storage.worktrees_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)

    click.echo(f"Config: {config_path}")
    click.echo(f"Data directory: {config.storage.root}")


def _describe(approval: Approval) -> str:
    agent = f" agent={approval.agent_id[:8]}" if approval.agent_id else ""
    return f"{approval.id[:8]} {approval.type:<11}{agent} {approval.summary}"


async def _ask(approval: Approval, auto_approve: bool) -> tuple[str, str | None]:
    if auto_approve:
        click.echo(f"Auto-approving: {_describe(approval)}")
        return "approved", None
    click.echo(f"\nApproval needed: {_describe(approval)}")
    choice = await asyncio.to_thread(
        click.prompt,
        "Decision",
        type=click.Choice(["approve", "reject"]),
        default="approve",
    )
    response = await asyncio.to_thread(
        click.prompt, "Response (optional)", default="", show_default=False
    )
    return ("approved" if choice == "approve" else "rejected"), (response or None)


async def _drive_session(
    services: Services,
    workflow_path: Path,
    repos: list[Path],
    *,
    context: str | None,
    git_strategy: GitStrategy | None,
    auto_approve: bool,
    stream: bool,
) -> Session:
    queue: asyncio.Queue[object] = asyncio.Queue()
    bus = services.bus
    bus.subscribe(ApprovalCreated, queue.put_nowait)
    bus.subscribe(SessionStatusChanged, queue.put_nowait)
    bus.subscribe(
        PhaseAdvanced,
        lambda event: click.echo(
            f"\n== Phase {event.phase_number}/{event.total_phases}: {event.phase_name}"
        ),
    )
    bus.subscribe(
        AgentStatusChanged,
        lambda event: click.echo(f"\n[agent {event.agent_id[:8]}] {event.status}"),
    )
    if stream:
        bus.subscribe(AgentToken, lambda event: click.echo(event.text, nl=False))

    definition = load_workflow(workflow_path)
    workflow = await register_workflow(services.store, definition)
    workspace = await register_workspace(services.store, definition.name, repos)
    await services.start()
    session_id = await services.engine.start_session(
        workflow.id,
        workspace.id,
        context=context,
        git_strategy=git_strategy,
    )
    click.echo(f"Session {session_id} started ({definition.name})")

    while True:
        session = await services.store.require(Session, session_id)
        if session.status in SESSION_DONE:
            return session
        item = await queue.get()
        if isinstance(item, ApprovalCreated):
            approval = item.approval
            if approval.session_id != session_id:
                continue
            current = await services.store.get(Approval, approval.id)
            if current is None or current.status != "pending":
                continue
            status, response = await _ask(current, auto_approve)
            try:
                await services.approvals.resolve_approval(
                    approval.id, status, response=response  # type: ignore[arg-type]
                )
            except ConductorError as exc:
                click.echo(f"Could not resolve {approval.id[:8]}: {exc}", err=True)


@cli.command("run")
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--repo",
    "repos",
    multiple=True,
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option("--context", default=None, help="Extra context prepended to every phase prompt.")
@click.option(
    "--git-mode", type=click.Choice(["worktree", "main", "branch"]), default="worktree"
)
@click.option("--branch", default=None, help="Branch name for --git-mode branch.")
@click.option("--in-place", is_flag=True, default=False, help="Check the branch out in place.")
@click.option("--create-branch", is_flag=True, default=False)
@click.option("--auto-approve", is_flag=True, default=False)
@click.option("--stream/--no-stream", default=True, show_default=True)
@config_option
def run_command(
    workflow_file: Path,
    repos: tuple[Path, ...],
    context: str | None,
    git_mode: str,
    branch: str | None,
    in_place: bool,
    create_branch: bool,
    auto_approve: bool,
    stream: bool,
    config_value: str,
) -> None:
    if git_mode == "branch" and not branch:
        raise click.BadParameter("--branch is required with --git-mode branch")
    git_strategy = GitStrategy.from_dict(
        {
            "mode": git_mode,
            "branch": branch,
            "isolation": "in_place" if in_place else "worktree",
            "create": create_branch,
        }
    )
    services = build_services(_load(config_value))

    async def _run() -> Session:
        try:
            return await _drive_session(
                services,
                workflow_file,
                list(repos),
                context=context,
                git_strategy=git_strategy,
                auto_approve=auto_approve,
                stream=stream,
            )
        finally:
            await services.stop()

    try:
        session = asyncio.run(_run())
    except (ConductorError, WorkflowDefinitionError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"\nSession {session.id} {session.status}")


@cli.command("approvals")
@click.option("--session", "session_id", default=None)
@config_option
def approvals_command(session_id: str | None, config_value: str) -> None:
    config = _load(config_value)
    store = FileStore(config.storage.state_dir)
    filters: dict[str, str] = {"status": "pending"}
    if session_id:
        filters["session_id"] = session_id
    pending = asyncio.run(store.select(Approval, descending=True, **filters))
    if not pending:
        click.echo("No pending approvals.")
        return
    for approval in pending:
        click.echo(_describe(approval))


@cli.command("branches")
@click.argument("repo", type=click.Path(exists=True, file_okay=False, path_type=Path))
@config_option
def branches_command(repo: Path, config_value: str) -> None:
    config = _load(config_value)
    manager = WorktreeManager(
        config.storage.worktrees_dir, branch_prefix=config.engine.branch_prefix
    )
    try:
        branches = asyncio.run(manager.list_branches(repo))
    except ConductorError as exc:
        raise click.ClickException(str(exc)) from exc
    for branch in branches:
        click.echo(branch)


@cli.command("recover")
@config_option
def recover_command(config_value: str) -> None:
    services = build_services(_load(config_value))
    touched = asyncio.run(services.engine.recover_sessions())
    if not touched:
        click.echo("Nothing to recover.")
        return
    for session_id in touched:
        click.echo(f"Recovered {session_id}")


@cli.command("tool-server")
@config_option
def tool_server_command(config_value: str) -> None:
    """Serve the agent tools over stdio; launched by the agent CLIs."""
    from conductor import toolserver

    toolserver.run(_load(config_value).tool_server.name)

