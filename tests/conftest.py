"""Shared fixtures: an in-process fake Denon/Marantz receiver."""

import asyncio
import json

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from avrbridge.lib import config
from avrbridge.lib.config import ReceiverEndpoint
from avrbridge.lib.receiver.protocol import decode_volume

STATUS_TEMPLATE = """<?xml version="1.0" encoding="utf-8" ?>
<item>
<Power><value>{power}</value></Power>
<MasterVolume><value>{volume}</value></MasterVolume>
<Mute><value>{mute}</value></Mute>
</item>
"""


class FakeReceiver:
    """Just enough of the goform API to exercise the client."""

    def __init__(self):
        self.commands: list[str] = []
        self.status_requests = 0
        self.volume_db = "-30.0"     # display 50
        self.mute = "off"
        self.power = "ON"
        self.command_status = 200
        self.status_status = 200
        self.status_body: str | bytes | None = None
        self.delay = 0.0
        self.apply_commands = True
        self.endpoint: ReceiverEndpoint | None = None

    def status_xml(self) -> str:
        if self.status_body is not None:
            return self.status_body
        return STATUS_TEMPLATE.format(power=self.power, volume=self.volume_db, mute=self.mute)

    def _apply(self, command: str):
        if command == "MUON":
            self.mute = "on"
        elif command == "MUOFF":
            self.mute = "off"
        elif command in ("MVUP", "MVDN"):
            current = float(self.volume_db) + 80
            current += 0.5 if command == "MVUP" else -0.5
            self.volume_db = f"{current - 80:.1f}"
        elif command.startswith("MV"):
            self.volume_db = f"{decode_volume(command[2:]) - 80:.1f}"

    async def handle_command(self, request: web.Request) -> web.Response:
        command = request.query_string
        self.commands.append(command)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.command_status != 200:
            return web.Response(status=self.command_status)
        if self.apply_commands:
            self._apply(command)
        return web.Response(text="<?xml version=\"1.0\"?><item/>", content_type="text/xml")

    async def handle_status(self, request: web.Request) -> web.Response:
        self.status_requests += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status_status != 200:
            return web.Response(status=self.status_status)
        body = self.status_xml()
        if isinstance(body, bytes):
            return web.Response(body=body, content_type="text/xml")
        return web.Response(text=body, content_type="text/xml")

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/goform/formiPhoneAppDirect.xml", self.handle_command)
        app.router.add_get("/goform/formMainZone_MainZoneXmlStatusLite.xml", self.handle_status)
        return app


@pytest_asyncio.fixture
async def fake_receiver():
    receiver = FakeReceiver()
    server = TestServer(receiver.app())
    await server.start_server()
    receiver.endpoint = ReceiverEndpoint(address="127.0.0.1", port=server.port, label="Test AVR")
    yield receiver
    await server.close()


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as s:
        yield s


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Write a config.json and point the loader at it."""

    def _write(data) -> str:
        path = tmp_path / "config.json"
        path.write_text(data if isinstance(data, str) else json.dumps(data))
        monkeypatch.setenv("AVRBRIDGE_CONFIG", str(path))
        config.reload_config()
        return str(path)

    yield _write
    config._config = None
