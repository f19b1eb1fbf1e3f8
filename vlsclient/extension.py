"""Host activation entry points for the Volt extension."""

import logging

from vlsclient.client import LanguageClient
from vlsclient.config import CONFIGURATION_SECTION, ClientConfiguration
from vlsclient.host import ExtensionContext

logger = logging.getLogger("vlsclient.extension")


async def activate(context: ExtensionContext) -> LanguageClient:
    """Start the Volt language client for the host.

    The server binary is resolved next to the extension. The started client
    is pushed onto ``context.subscriptions`` so the host stops it exactly once
    when it disposes the extension.

    Args:
        context: What the host provides to the extension.

    Returns:
        The started client, which doubles as its own disposer.
    """
    configuration = ClientConfiguration.for_extension(
        context.extension_path,
        workspace_root=context.workspace_root,
        settings=context.settings.get(CONFIGURATION_SECTION),
    )
    client = LanguageClient(
        configuration,
        documents=context.documents,
        watcher_factory=context.watcher_factory,
        settings=context.settings,
    )
    await client.start()
    context.subscriptions.append(client)
    return client


def deactivate() -> None:
    """Called by the host on deactivation.

    The client is stopped through ``context.subscriptions``; there is no
    module state to release here.
    """
    logger.debug("Volt extension deactivated")
