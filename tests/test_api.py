# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the REST API.

Backups and restores run in the background, so their outcome is observed
by polling status or the webhook recorder, never from the initiating
response.
"""

import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import NOTIFY_URL
from lxmin.integrations.fastapi import create_app


@pytest_asyncio.fixture
async def client(test_config, test_state):
    app = create_app(test_config, test_state)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _wait_for(predicate, timeout: float = 10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


async def _start_backup(client, instance="u2", **params):
    params.setdefault("notifyEndpoint", NOTIFY_URL)
    response = await client.post(f"/1.0/instances/{instance}/backups", params=params)
    assert response.status_code == 200, response.text
    return response.json()


async def _wait_completed(client, instance, name):
    async def completed():
        response = await client.get(f"/1.0/instances/{instance}/backups/{name}")
        body = response.json()
        return body if body.get("metadata", {}).get("state") == "completed" else None

    return await _wait_for(completed)


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/1.0/health")

    assert response.status_code == 200
    assert response.content == b""


@pytest.mark.asyncio
async def test_backup_is_accepted_then_completes(client, events):
    body = await _start_backup(client, optimize="true", tags="category=prod")

    assert body["type"] == "async"
    assert body["status"] == "Operation created"
    assert body["status_code"] == 100
    assert body["metadata"]["optimized"] is True
    assert body["metadata"]["compressed"] is True
    name = body["metadata"]["name"]
    assert name.startswith("backup_")

    status = await _wait_completed(client, "u2", name)
    assert status["type"] == "sync"
    assert status["metadata"]["optimized"] is True
    assert status["metadata"]["tags"] == {"category": "prod"}

    await _wait_for(lambda: _has_state(events, "success"))
    assert events.urls[0] == NOTIFY_URL
    assert events.events[0]["rawURL"].startswith("http://test/1.0/instances/u2/backups")


async def _has_state(events, state):
    return state in events.states()


@pytest.mark.asyncio
async def test_list_backups(client):
    first = await _start_backup(client, "u2")
    await _wait_completed(client, "u2", first["metadata"]["name"])
    second = await _start_backup(client, "u3")
    await _wait_completed(client, "u3", second["metadata"]["name"])

    response = await client.get("/1.0/instances/u2/backups")
    body = response.json()
    assert response.status_code == 200
    assert body["status"] == "Success"
    assert [b["name"] for b in body["metadata"]] == [first["metadata"]["name"]]

    response = await client.get("/1.0/instances/*/backups")
    assert sorted(b["instance"] for b in response.json()["metadata"]) == ["u2", "u3"]


@pytest.mark.asyncio
async def test_backup_failure_is_reported_by_webhook(client, fake_lxc, events):
    from lxmin.exceptions import ExportError

    fake_lxc.failures["export_instance"] = ExportError("export failed", stderr="disk full")

    body = await _start_backup(client)
    assert body["status_code"] == 100

    await _wait_for(lambda: _has_state(events, "failed"))
    assert "disk full" in events.events[-1]["error"]

    response = await client.get(f"/1.0/instances/u2/backups/{body['metadata']['name']}")
    assert response.status_code == 404
    assert response.json()["type"] == "error"


@pytest.mark.asyncio
async def test_backup_without_notify_endpoint_is_rejected(client, fake_lxc):
    response = await client.post("/1.0/instances/u2/backups")

    assert response.status_code == 400
    body = response.json()
    assert body == {"code": 400, "error": body["error"], "type": "error"}
    assert "notification endpoint" in body["error"]
    assert fake_lxc.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("endpoint", ["http://hooks.test/x\n", "hooks.test/events", "ftp://hooks.test/x"])
async def test_unusable_notify_endpoint_is_rejected(client, test_state, fake_lxc, endpoint):
    response = await client.post("/1.0/instances/u2/backups", params={"notifyEndpoint": endpoint})

    assert response.status_code == 400
    assert "Invalid notifyEndpoint" in response.json()["error"]
    assert fake_lxc.calls == []
    assert len(test_state["tracker"]) == 0

    response = await client.post("/1.0/instances/u2/backups/backup_X", params={"notifyEndpoint": endpoint})
    assert response.status_code == 400
    assert fake_lxc.calls == []


@pytest.mark.asyncio
async def test_notify_endpoint_falls_back_to_config(test_config, test_state, events):
    app = create_app(test_config.with_updates(notify_endpoint=NOTIFY_URL), test_state)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        response = await c.post("/1.0/instances/u2/backups")
        assert response.status_code == 200

        await _wait_for(lambda: _has_state(events, "success"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params",
    [
        {"partSize": "1024"},
        {"partSize": "lots"},
        {"optimize": "maybe"},
        {"tags": "a=1&a=2"},
    ],
)
async def test_invalid_backup_parameters(client, fake_lxc, params):
    response = await client.post(
        "/1.0/instances/u2/backups",
        params={"notifyEndpoint": NOTIFY_URL, **params},
    )

    assert response.status_code == 400
    assert response.json()["type"] == "error"
    assert fake_lxc.calls == []


@pytest.mark.asyncio
async def test_delete_backup(client, s3_client, test_config):
    body = await _start_backup(client)
    name = body["metadata"]["name"]
    await _wait_completed(client, "u2", name)

    response = await client.delete(f"/1.0/instances/u2/backups/{name}")
    assert response.status_code == 200
    assert response.json() == {"status": "Success", "status_code": 200, "type": "sync"}

    listing = await s3_client.list_object_versions(Bucket=test_config.bucket, Prefix="u2/")
    assert listing.get("Versions", []) == []

    response = await client.get(f"/1.0/instances/u2/backups/{name}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_restore_is_accepted_then_completes(client, fake_lxc, events):
    body = await _start_backup(client)
    name = body["metadata"]["name"]
    await _wait_completed(client, "u2", name)

    response = await client.post(
        f"/1.0/instances/u2/backups/{name}",
        params={"notifyEndpoint": NOTIFY_URL},
    )
    assert response.status_code == 200
    assert response.json() == {"status": "Operation created", "status_code": 100, "type": "async"}

    await _wait_for(lambda: _restored(events))
    assert fake_lxc.started == ["u2"]
    assert fake_lxc.created_profiles == ["base", "net"]


async def _restored(events):
    return "success" in events.states("restore")


@pytest.mark.asyncio
async def test_restore_onto_existing_instance_fails_synchronously(client, fake_lxc):
    fake_lxc.instances.add("u2")

    response = await client.post(
        "/1.0/instances/u2/backups/backup_X",
        params={"notifyEndpoint": NOTIFY_URL},
    )

    assert response.status_code == 400
    assert "already running" in response.json()["error"]
    assert fake_lxc.called("list_existing_profiles") == []


@pytest.mark.asyncio
async def test_lifespan_initializes_and_releases_state(test_config):
    from lxmin.integrations.fastapi import get_lxmin_state

    app = create_app(test_config)

    async with app.router.lifespan_context(app):
        state = get_lxmin_state(app)
        assert len(state["tracker"]) == 0

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            response = await c.get("/1.0/health")
            assert response.status_code == 200


def test_listen_address_parsing():
    from lxmin.integrations.fastapi import _split_address

    assert _split_address("0.0.0.0:8000") == ("0.0.0.0", 8000)
    assert _split_address(":9443") == ("0.0.0.0", 9443)
