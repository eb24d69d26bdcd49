"""Shared fixtures for streaming module tests."""

import asyncio

import pytest

from src.streaming.interpreter import EventInterpreter


@pytest.fixture()
def interpreter():
    """Fresh interpreter for one stream."""
    return EventInterpreter()


async def async_iter(items):
    """Convert a list to an async iterator."""
    for item in items:
        yield item


async def collect(aiterable):
    """Drain an async iterable into a list."""
    return [item async for item in aiterable]


async def wait_until(predicate, attempts: int = 200):
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")
