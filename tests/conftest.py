# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for lxmin tests.

Provides an S3 server (moto), an in-memory lxc double, a webhook
recorder and ready-to-use configuration/state fixtures.
"""

import json
import socket
import tempfile
import uuid
from pathlib import Path
from typing import Dict, Generator, Iterable, List

import httpx
import pytest
import pytest_asyncio

from lxmin.config import MIN_PART_SIZE, LxminConfig
from lxmin.core import initialize_state, open_s3_client, shutdown_state
from lxmin.notify import Notifier

NOTIFY_URL = "http://hooks.test/events"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class FakeLXC:
    """
    In-memory stand-in for LXCClient.

    Records every call; an entry in `failures` makes the named method
    raise the given exception.
    """

    def __init__(
        self,
        profiles: Dict[str, List[str]] | None = None,
        instances: Iterable[str] = (),
        existing_profiles: Iterable[str] = (),
        archive_size: int = 4096,
    ):
        self.profiles = profiles or {}
        self.instances = set(instances)
        self.existing_profiles = set(existing_profiles)
        self.archive_size = archive_size
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.created_profiles: List[str] = []
        self.edited_profiles: Dict[str, bytes] = {}
        self.imported: List[bytes] = []
        self.started: List[str] = []

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if method in self.failures:
            raise self.failures[method]

    def called(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    @staticmethod
    def profile_body(profile: str) -> bytes:
        return f"name: {profile}\nconfig:\n  limits.cpu: '2'\ndevices: {{}}\n".encode()

    async def instance_exists(self, instance: str) -> bool:
        self._record("instance_exists", instance)
        return instance in self.instances

    async def list_profiles(self, instance: str) -> List[str]:
        self._record("list_profiles", instance)
        return list(self.profiles.get(instance, []))

    async def export_profile(self, profile: str, dest: Path) -> int:
        self._record("export_profile", profile, dest)
        body = self.profile_body(profile)
        dest.write_bytes(body)
        return len(body)

    async def export_instance(self, instance: str, dest: Path, optimized: bool = False) -> int:
        self._record("export_instance", instance, dest, optimized)
        dest.write_bytes(b"\x1f\x8b" + b"x" * (self.archive_size - 2))
        return self.archive_size

    async def list_existing_profiles(self) -> set:
        self._record("list_existing_profiles")
        return set(self.existing_profiles)

    async def create_profile(self, name: str) -> None:
        self._record("create_profile", name)
        self.existing_profiles.add(name)
        self.created_profiles.append(name)

    async def edit_profile(self, name: str, content: bytes) -> None:
        self._record("edit_profile", name)
        self.edited_profiles[name] = content

    async def import_instance(self, archive: Path) -> None:
        self._record("import_instance", archive)
        self.imported.append(archive.read_bytes())

    async def start_instance(self, instance: str) -> None:
        self._record("start_instance", instance)
        self.instances.add(instance)
        self.started.append(instance)


class EventRecorder:
    """Webhook receiver backed by httpx.MockTransport."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.events: List[dict] = []
        self.urls: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.urls.append(str(request.url))
        self.events.append(json.loads(request.content))
        return httpx.Response(self.status_code)

    def states(self, op_type: str | None = None) -> List[str]:
        return [e["state"] for e in self.events if op_type is None or e["opType"] == op_type]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(scope="session")
def s3_endpoint() -> Generator[str, None, None]:
    """
    Run a moto S3 server for the whole session.

    aiobotocore talks to it over real HTTP, exactly like it talks to MinIO.
    """
    from moto.server import ThreadedMotoServer

    port = _free_port()
    server = ThreadedMotoServer(ip_address="127.0.0.1", port=port)
    server.start()
    yield f"http://127.0.0.1:{port}"
    server.stop()


@pytest.fixture
def test_config(s3_endpoint: str, temp_dir: Path) -> LxminConfig:
    """Configuration pointing at a fresh bucket on the moto server."""
    return LxminConfig(
        endpoint=s3_endpoint,
        bucket=f"lxmin-{uuid.uuid4().hex[:12]}",
        access_key="testing",
        secret_key="testing",
        staging_root=temp_dir / "staging",
        part_size=MIN_PART_SIZE,
    )


@pytest.fixture
def fake_lxc() -> FakeLXC:
    return FakeLXC(profiles={"u2": ["base", "net"]})


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest_asyncio.fixture
async def test_state(test_config: LxminConfig, fake_lxc: FakeLXC, events: EventRecorder):
    """Runtime state wired to the fake lxc, the webhook recorder and a versioned bucket."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(events.handler))
    state = await initialize_state(test_config, lxc=fake_lxc, notifier=Notifier(client=client))

    async with open_s3_client(test_config, state) as s3_client:
        await s3_client.create_bucket(Bucket=test_config.bucket)
        await s3_client.put_bucket_versioning(
            Bucket=test_config.bucket,
            VersioningConfiguration={"Status": "Enabled"},
        )

    yield state

    await shutdown_state(state)
    await client.aclose()


@pytest_asyncio.fixture
async def s3_client(test_config: LxminConfig, test_state):
    """S3 client for inspecting the test bucket."""
    async with open_s3_client(test_config, test_state) as client:
        yield client


async def all_keys(s3_client, bucket: str) -> List[str]:
    response = await s3_client.list_objects_v2(Bucket=bucket)
    return sorted(obj["Key"] for obj in response.get("Contents", []))
