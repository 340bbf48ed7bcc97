import asyncio
import logging
from collections.abc import Callable
from typing import Any

import click

from parrot_autopilot import actions, registry
from parrot_autopilot.activity import get_activity_for_chat, load_activity
from parrot_autopilot.agents import (
    AGENT_TEMPLATES,
    create_agent_from_template,
    ensure_default_observer_agent,
    load_agents,
)
from parrot_autopilot.config import settings
from parrot_autopilot.engine import AutopilotEngine
from parrot_autopilot.errors import AutopilotError
from parrot_autopilot.knowledge import format_for_prompt, get_chat_knowledge
from parrot_autopilot.loader import HistoryLoader
from parrot_autopilot.models import ChatAutomationConfig
from parrot_autopilot.pipeline import ContextPipeline
from parrot_autopilot.plugins import load_plugins, resolve_chat_provider
from parrot_autopilot.providers import make_ai_provider
from parrot_autopilot.store import DbConnection, init_db

log = logging.getLogger(__name__)


def _get_db() -> DbConnection:
    return init_db(settings.db_path)


class _PluginGroup(click.Group):
    _plugins_loaded = False

    def _ensure_plugins(self) -> None:
        if self._plugins_loaded:
            return
        self._plugins_loaded = True
        for plugin in load_plugins():
            plugin.register_commands(self)

    def list_commands(self, ctx: click.Context) -> list[str]:
        self._ensure_plugins()
        return super().list_commands(ctx)

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        self._ensure_plugins()
        return super().get_command(ctx, cmd_name)


@click.group(cls=_PluginGroup, invoke_without_command=True)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """parrot-autopilot — AI autopilot for chat conversations"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not ctx.invoked_subcommand:
        click.echo(ctx.get_help())


async def _run(db: DbConnection) -> None:
    chat_provider = resolve_chat_provider(load_plugins())
    pipeline = ContextPipeline(db, make_ai_provider(settings), settings)
    engine = AutopilotEngine(db, pipeline, chat_provider, settings)
    loader = HistoryLoader(
        db,
        chat_provider,
        pipeline,
        batch_size=settings.history_batch_size,
        batch_delay=settings.history_batch_delay,
        error_backoff=settings.history_error_backoff,
    )
    loader.start()
    try:
        await engine.run_executor()
    finally:
        await loader.stop()


@main.command()
def run() -> None:
    """Run the action executor and the history loader."""
    db = _get_db()
    ensure_default_observer_agent(db)
    try:
        asyncio.run(_run(db))
    except AutopilotError as exc:
        raise click.ClickException(str(exc)) from exc
    except KeyboardInterrupt:
        log.info("Stopped")


@main.command()
def agents() -> None:
    """List agents."""
    db = _get_db()
    for agent in load_agents(db):
        click.echo(f"{agent.id:<18} {agent.name:<24} {agent.goal_completion_behavior:<14} {agent.goal}")


@main.command()
@click.argument("template_id", required=False)
@click.option("--name", help="Name of the new agent.")
def templates(template_id: str | None, name: str | None) -> None:
    """List agent templates, or create an agent from TEMPLATE_ID."""
    if template_id is None:
        for template in AGENT_TEMPLATES:
            click.echo(f"{template.id:<20} {template.category:<10} {template.description}")
        return
    try:
        agent = create_agent_from_template(_get_db(), template_id, name=name)
    except KeyError as exc:
        raise click.ClickException(f"Unknown template: {template_id}") from exc
    click.echo(f"Created agent {agent.id} ({agent.name})")


@main.command()
def configs() -> None:
    """List per-chat automation configs."""
    all_configs = registry.list_configs(_get_db())
    if not all_configs:
        click.echo("No automated chats.")
        return
    click.echo(f"{'Chat':<30} {'Agent':<18} {'Mode':<16} {'Status':<15} {'Handled'}")
    click.echo("-" * 90)
    for config in all_configs:
        click.echo(
            f"{config.chat_id:<30} {config.agent_id:<18} {config.mode:<16}"
            f" {config.status:<15} {config.messages_handled}"
        )


def _change(fn: Callable[..., ChatAutomationConfig], *args: Any) -> None:
    try:
        config = fn(_get_db(), *args)
    except AutopilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{config.chat_id}: {config.status} ({config.mode})")


@main.command()
@click.argument("chat_id")
@click.option("--agent", "agent_id", required=True, help="Agent that handles the chat.")
@click.option(
    "--mode",
    type=click.Choice(["manual-approval", "self-driving"]),
    default="manual-approval",
    show_default=True,
)
@click.option("--duration", type=int, help="Self-driving time limit in minutes.")
def enable(chat_id: str, agent_id: str, mode: str, duration: int | None) -> None:
    """Enable automation for CHAT_ID."""
    _change(registry.enable_automation, chat_id, agent_id, mode, duration)


@main.command()
@click.argument("chat_id")
def disable(chat_id: str) -> None:
    """Disable automation for CHAT_ID and cancel its pending actions."""
    _change(registry.disable_automation, chat_id)


@main.command()
@click.argument("chat_id")
def pause(chat_id: str) -> None:
    """Pause automation for CHAT_ID."""
    _change(registry.pause_automation, chat_id)


@main.command()
@click.argument("chat_id")
def resume(chat_id: str) -> None:
    """Resume paused automation for CHAT_ID."""
    _change(registry.resume_automation, chat_id)


@main.command("actions")
@click.option("--chat", "chat_id", help="Only show actions for this chat.")
def list_actions(chat_id: str | None) -> None:
    """List scheduled actions."""
    db = _get_db()
    items = actions.get_actions_for_chat(db, chat_id) if chat_id else actions.list_actions(db)
    if not items:
        click.echo("No scheduled actions.")
        return
    click.echo(f"{'ID':<14} {'Chat':<30} {'Type':<18} {'Status':<10} {'Scheduled for'}")
    click.echo("-" * 100)
    for action in items:
        click.echo(
            f"{action.id:<14} {action.chat_id:<30} {action.type:<18}"
            f" {action.status:<10} {action.scheduled_for}"
        )


@main.command()
@click.argument("action_id")
def approve(action_id: str) -> None:
    """Send a pending draft a few seconds from now."""
    action = actions.approve_action(_get_db(), action_id)
    if action is None:
        raise click.ClickException(f"No pending action {action_id}")
    click.echo(f"Action {action.id} will be sent at {action.scheduled_for}")


@main.command()
@click.argument("action_id")
def cancel(action_id: str) -> None:
    """Cancel a pending action."""
    actions.cancel_action(_get_db(), action_id)
    click.echo(f"Cancelled {action_id}")


@main.command()
@click.option("--chat", "chat_id", help="Only show activity for this chat.")
@click.option("-n", "limit", default=20, show_default=True, help="Number of entries.")
def activity(chat_id: str | None, limit: int) -> None:
    """Show the most recent autopilot activity."""
    db = _get_db()
    entries = get_activity_for_chat(db, chat_id) if chat_id else load_activity(db)
    for entry in entries[-limit:]:
        click.echo(f"{entry.timestamp} {entry.chat_id:<30} {entry.type:<18} {entry.message or ''}")


@main.command()
@click.argument("chat_id")
def knowledge(chat_id: str) -> None:
    """Show what has been learned about CHAT_ID."""
    text = format_for_prompt(get_chat_knowledge(_get_db(), chat_id))
    click.echo(text or "Nothing known yet.")


@main.command()
def cleanup() -> None:
    """Remove finished actions past their retention period."""
    removed = actions.cleanup_terminal(_get_db())
    click.echo(f"Removed {removed} action(s).")


if __name__ == "__main__":
    main()
