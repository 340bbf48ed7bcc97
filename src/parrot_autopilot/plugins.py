"""Plugin framework: Protocol-based plugin system with entry point discovery.

Plugins contribute CLI commands and, most importantly, the chat provider
that connects the autopilot to an actual messaging network.
"""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Protocol, runtime_checkable

import click
from pydantic_settings import BaseSettings

from parrot_autopilot.errors import ConfigurationError
from parrot_autopilot.providers import ChatProvider

log = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "parrot_autopilot.plugins"


@runtime_checkable
class ParrotAutopilotPlugin(Protocol):
    """Protocol that all parrot-autopilot plugins must satisfy."""

    def register_commands(self, group: click.Group) -> None:
        """Register CLI commands with the Click group."""
        ...

    def get_chat_provider(self) -> ChatProvider | None:
        """Return the chat provider this plugin offers, if any."""
        ...

    def get_config_class(self) -> type[BaseSettings] | None:
        """Return a Pydantic Settings class for plugin configuration."""
        ...


class ParrotAutopilotPluginBase:
    """Base class with default no-op implementations for all plugin methods."""

    def register_commands(self, group: click.Group) -> None:
        pass

    def get_chat_provider(self) -> ChatProvider | None:
        return None

    def get_config_class(self) -> type[BaseSettings] | None:
        return None


def load_plugins() -> list[ParrotAutopilotPlugin]:
    plugins: list[ParrotAutopilotPlugin] = []
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            plugin_cls = ep.load()
            plugin = plugin_cls()
            plugins.append(plugin)
            log.debug("Loaded plugin %r from %s", ep.name, ep.value)
        except Exception:
            log.exception("Failed to load plugin %r", ep.name)
    return plugins


def resolve_chat_provider(plugins: list[ParrotAutopilotPlugin]) -> ChatProvider:
    """First chat provider offered by *plugins*."""
    for plugin in plugins:
        provider = plugin.get_chat_provider()
        if provider is not None:
            log.debug("Using chat provider from %s", type(plugin).__name__)
            return provider
    raise ConfigurationError(
        "No chat provider installed; install a plugin registering "
        f"an entry point in the {ENTRY_POINT_GROUP!r} group"
    )
