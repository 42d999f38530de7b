"""Tests for the aiohttp host."""
import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from peervault.conf import VaultSettings
from peervault.server import UPDATE_MESSAGE, UpdateHub, create_app, orchestrator_key
from peervault.vault.engine import MemoryEngine
from peervault.vault.orchestrator import StoreKind

from .conftest import STORAGE_ROOT, make_key


@pytest.fixture
async def client():
    app = create_app(VaultSettings(storage_path=STORAGE_ROOT), engine=MemoryEngine())
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


async def rpc(client, command, payload=None):
    resp = await client.post(f"/rpc/{command}", json=payload)
    assert resp.status == 200
    return await resp.json()


async def open_active(client):
    assert await rpc(client, "active-init", {"id": "vault-1", "encryptionKey": make_key()}) == {
        "success": True
    }


class TestRpc:

    async def test_command_round_trip(self, client):
        await open_active(client)
        assert await rpc(client, "active-add", {"key": "k", "data": {"v": 1}}) == {"success": True}
        assert await rpc(client, "active-get", {"key": "k"}) == {"data": {"v": 1}}

    async def test_error_payload(self, client):
        reply = await rpc(client, "catalog-get", {"key": "k"})
        assert reply["error"]["kind"] == "not_initialized"

    async def test_empty_body(self, client):
        resp = await client.post("/rpc/active-get-status")
        assert await resp.json() == {"data": {"status": False}}

    async def test_invalid_json(self, client):
        resp = await client.post("/rpc/catalog-get", data=b"{nope")
        assert resp.status == 400
        assert (await resp.json())["error"]["kind"] == "invalid_input"


class TestFiles:

    async def test_upload_and_download(self, client):
        await open_active(client)
        content = bytes(range(256)) * 1024
        resp = await client.post("/rpc/active-add-file?key=att&name=blob.bin", data=content)
        assert await resp.json() == {"success": True, "metaData": {"key": "att", "name": "blob.bin"}}
        resp = await client.get("/rpc/active-get-file?key=att")
        assert resp.status == 200
        assert await resp.read() == content

    async def test_missing_file(self, client):
        await open_active(client)
        resp = await client.get("/rpc/active-get-file?key=nothing")
        assert resp.status == 404
        assert (await resp.json())["error"]["kind"] == "record_not_found"

    async def test_file_requires_active(self, client):
        resp = await client.post("/rpc/active-add-file?key=att", data=b"x")
        assert (await resp.json())["error"]["kind"] == "not_initialized"
        resp = await client.get("/rpc/active-get-file?key=att")
        assert resp.status == 409


class TestUpdates:

    def test_idle_subscriber_holds_one_update(self):
        """A subscriber that stops reading keeps at most one pending update."""
        hub = UpdateHub()
        queue = hub.subscribe()
        for _ in range(50):
            hub.notify()
        assert queue.qsize() == 1
        assert queue.get_nowait() == UPDATE_MESSAGE
        hub.notify()
        assert queue.qsize() == 1

    def test_unsubscribed_queue_is_ignored(self):
        hub = UpdateHub()
        queue = hub.subscribe()
        hub.unsubscribe(queue)
        hub.notify()
        assert queue.empty()
        assert len(hub) == 0

    async def test_updates_pushed_to_websocket(self, client):
        await open_active(client)
        assert await rpc(client, "init-listener", {"vaultId": "vault-1"}) == {"success": True}
        ws = await client.ws_connect("/updates")
        # let the handler subscribe before triggering a change
        await asyncio.sleep(0.05)
        await rpc(client, "active-add", {"key": "k", "data": 1})
        message = await asyncio.wait_for(ws.receive_json(), timeout=2)
        assert message == {"event": "update"}
        await ws.close()


async def test_cleanup_closes_stores():
    app = create_app(VaultSettings(storage_path=STORAGE_ROOT), engine=MemoryEngine())
    orchestrator = app[orchestrator_key]
    async with TestClient(TestServer(app)) as client:
        await open_active(client)
        assert orchestrator.is_open(StoreKind.ACTIVE)
    assert orchestrator.is_open(StoreKind.ACTIVE) is False
