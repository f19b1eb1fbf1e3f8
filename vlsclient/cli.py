#!/usr/bin/env python3
"""Command-line interface for the Volt Language Client."""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple

import click

from vlsclient.client import LanguageClient
from vlsclient.config import CONFIGURATION_SECTION, LANGUAGE_ID, ClientConfiguration, ServerOptions
from vlsclient.errors import LanguageClientError
from vlsclient.host import InMemoryDocuments, PollingFileSystemWatcher, Settings
from vlsclient.utils.workspace import Workspace


def load_settings(path: Optional[str]) -> Settings:
    """Load editor settings from a JSON file.

    Args:
        path: Path to a JSON object keyed by settings section, or None.

    Returns:
        The settings store.
    """
    if not path:
        return Settings()
    with open(path, encoding="utf-8") as f:
        values = json.load(f)
    if not isinstance(values, dict):
        raise click.BadParameter(f"Settings file must contain a JSON object: {path}")
    return Settings(values)


def build_configuration(
    server: str,
    args: Tuple[str, ...],
    workspace: str,
    language: str,
    settings: Settings,
) -> ClientConfiguration:
    """Build the client configuration from command-line options."""
    section: Dict[str, Any] = settings.get(CONFIGURATION_SECTION) or {}
    return ClientConfiguration(
        server=ServerOptions(command=server, args=list(args)),
        workspace_root=workspace,
        document_selector=[language],
        initialization_options=dict(section.get("initializationOptions", {})),
        trace=section.get("trace", "off"),
    )


def server_options(func):
    """Options shared by every command that launches a server."""
    func = click.option("--server", required=True, help="Path to the language server executable")(func)
    func = click.option("--arg", "args", multiple=True, help="Argument passed to the server (repeatable)")(func)
    func = click.option(
        "--workspace",
        "-w",
        required=True,
        type=click.Path(exists=True, file_okay=False),
        help="Path to the workspace directory",
    )(func)
    func = click.option("--settings", "settings_file", type=click.Path(exists=True, dir_okay=False),
                        help="JSON file with editor settings")(func)
    func = click.option("--language", default=LANGUAGE_ID, show_default=True,
                        help="Language id of synchronized documents")(func)
    return func


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def main(debug: bool) -> None:
    """Run the Volt language client against a language server."""
    log_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@main.command()
@server_options
def capabilities(server: str, args: Tuple[str, ...], workspace: str, settings_file: Optional[str],
                 language: str) -> None:
    """Start the server, print its capabilities as JSON and stop it."""
    settings = load_settings(settings_file)
    client = LanguageClient(build_configuration(server, args, workspace, language, settings), settings=settings)

    async def negotiate() -> Dict[str, Any]:
        await client.start()
        try:
            return client.server_capabilities
        finally:
            await client.stop()

    try:
        result = asyncio.run(negotiate())
    except LanguageClientError as e:
        raise click.ClickException(str(e)) from e

    click.echo(json.dumps(result, indent=2, sort_keys=True))


@main.command()
@server_options
@click.option("--open", "open_files", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Document to open once the client starts (repeatable)")
@click.option("--poll-interval", default=1.0, show_default=True, help="Seconds between file watcher scans")
def run(server: str, args: Tuple[str, ...], workspace: str, settings_file: Optional[str], language: str,
        open_files: List[str], poll_interval: float) -> None:
    """Keep a session open, forwarding file changes until Ctrl+C."""
    settings = load_settings(settings_file)
    configuration = build_configuration(server, args, workspace, language, settings)
    documents = InMemoryDocuments()
    root = Workspace(workspace)
    client = LanguageClient(
        configuration,
        documents=documents,
        watcher_factory=lambda glob: PollingFileSystemWatcher(root, glob, poll_interval).start(),
        settings=settings,
    )

    async def serve() -> None:
        await client.start()
        try:
            for path in open_files:
                documents.open_file(path, language)
            click.echo(f"{client.name} running for workspace: {workspace}")
            click.echo("Press Ctrl+C to stop the client")
            await client.session.wait_closed()
        finally:
            await client.stop()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        click.echo("Client stopped")
    except LanguageClientError as e:
        raise click.ClickException(str(e)) from e


if __name__ == "__main__":
    sys.exit(main())  # pylint: disable=no-value-for-parameter
