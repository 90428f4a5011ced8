"""Shared test fixtures and configuration for backend tests."""
import time

import pytest
from fastapi.testclient import TestClient

from courier.config import AppSettings
from courier.hub import MessagingHub
from courier.main import create_app


class FakeTransport:
    """Stands in for a WebSocket; records every event sent to it."""

    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)

    def of_type(self, event_type):
        return [event for event in self.sent if event["type"] == event_type]


class BrokenTransport:
    """A connection that died without the registry noticing yet."""

    async def send_json(self, data):
        raise RuntimeError("connection closed")


def seed_directory(directory):
    """alice owns community c1 (members bob, carol); dave is no member."""
    for user_id, name in (
        ("alice", "Alice"),
        ("bob", "Bob"),
        ("carol", "Carol"),
        ("dave", "Dave"),
    ):
        directory.upsert_user(user_id, username=name)
    directory.create_community("c1", "Climbers", created_by="alice")
    directory.add_member("c1", "bob")
    directory.add_member("c1", "carol")
    directory.create_community("c2", "Cyclists", created_by="bob")


def wait_until(predicate, timeout=2.0):
    """Poll until *predicate* holds; cleanup after a disconnect is asynchronous."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def settings(tmp_path):
    """Settings with in-memory stores and a temp upload dir."""
    return AppSettings(
        storage={"data_dir": ":memory:"},
        uploads={
            "upload_dir": str(tmp_path / "uploads"),
            "public_base_url": "http://testserver",
            "max_file_size_bytes": 1024,
        },
    )


@pytest.fixture
def hub(settings):
    """A seeded messaging hub, closed after the test."""
    hub = MessagingHub(settings)
    seed_directory(hub.directory)
    yield hub
    hub.close()


@pytest.fixture
def api_client(settings):
    """TestClient running the full application lifespan against a seeded hub."""
    app = create_app(settings)
    with TestClient(app) as client:
        seed_directory(client.app.state.hub.directory)
        yield client
