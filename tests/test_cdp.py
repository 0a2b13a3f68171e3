import asyncio

import pytest

from conftest import FakeDevTools
from webperf.measurement.cdp import CdpError, CdpSession


def test_evaluate_returns_page_value():
    devtools = FakeDevTools()

    async def scenario():
        async with devtools.serve() as websocket_url:
            session = await CdpSession.connect(websocket_url)
            try:
                return await session.evaluate("localStorage.getItem('flag')")
            finally:
                await session.close()

    assert asyncio.run(scenario()) == "ran localStorage.getItem('flag')"
    params = devtools.commands[0]["params"]
    assert devtools.commands[0]["method"] == "Runtime.evaluate"
    assert params["returnByValue"] is True
    assert params["awaitPromise"] is True


def test_script_exception_raises_cdp_error():
    devtools = FakeDevTools()

    async def scenario():
        async with devtools.serve() as websocket_url:
            session = await CdpSession.connect(websocket_url)
            try:
                await session.evaluate("throw new Error('boom')")
            finally:
                await session.close()

    with pytest.raises(CdpError, match="Error: boom"):
        asyncio.run(scenario())


def test_protocol_error_reply_raises_cdp_error():
    devtools = FakeDevTools()

    async def scenario():
        async with devtools.serve() as websocket_url:
            session = await CdpSession.connect(websocket_url)
            try:
                await session.send("Bogus.method")
            finally:
                await session.close()

    with pytest.raises(CdpError, match="wasn't found"):
        asyncio.run(scenario())


def test_events_reach_subscribers_in_order():
    devtools = FakeDevTools()

    async def scenario():
        async with devtools.serve() as websocket_url:
            session = await CdpSession.connect(websocket_url)
            try:
                events = session.subscribe("Page.lifecycleEvent")
                await session.send("Page.navigate", {"url": "http://localhost:3000/"})
                received = [await asyncio.wait_for(events.get(), 1.0) for _ in range(4)]
                session.unsubscribe("Page.lifecycleEvent", events)
                return received
            finally:
                await session.close()

    received = asyncio.run(scenario())

    assert [(event["name"], event["loaderId"]) for event in received] == [
        ("networkIdle", "L0"),
        ("load", "L1"),
        ("networkAlmostIdle", "L1"),
        ("networkIdle", "L1"),
    ]


def test_send_after_close_is_rejected():
    devtools = FakeDevTools()

    async def scenario():
        async with devtools.serve() as websocket_url:
            session = await CdpSession.connect(websocket_url)
            await session.close()
            await session.close()
            await session.send("Page.enable")

    with pytest.raises(CdpError, match="closed"):
        asyncio.run(scenario())


def test_unreachable_endpoint_raises_cdp_error():
    with pytest.raises(CdpError, match="Unable to connect"):
        asyncio.run(CdpSession.connect("ws://127.0.0.1:1/devtools/page/none", timeout=2.0))
