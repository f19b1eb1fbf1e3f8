"""Helpers shared by the test modules."""

import asyncio
import os

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
FAKE_SERVER = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_server.py")


async def wait_for_state(session, state, timeout: float = 5.0) -> None:
    """Poll until a session reaches ``state``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.state is not state:
        if loop.time() > deadline:
            raise AssertionError(f"session stuck in {session.state}, expected {state}")
        await asyncio.sleep(0.01)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def methods_of(received):
    """Method names of the messages the fake server recorded."""
    return [message["method"] for message in received if "method" in message]
