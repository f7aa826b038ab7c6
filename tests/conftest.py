"""Pytest fixtures and configuration for RFQ reply tracker tests.

Provides common fixtures for configuration, storage, a manual clock and an
in-memory mail gateway.
"""

import os
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

import pytest

from rfq_tracker.config import CONFIG_PATH_ENV, reset_config
from rfq_tracker.config_schema import AppConfig
from rfq_tracker.core.errors import GraphAPIError
from rfq_tracker.db.store import MemoryKeyValueStore
from rfq_tracker.engine.repository import BatchRepository
from rfq_tracker.graph.models import Folder, Message, SentMessage


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

auth:
  client_id: "test-client-id"
  tenant_id: "test-tenant-id"

monitor:
  poll_interval_seconds: 5
  timeout_minutes: 10
  fan_out: 2

classifier:
  topic_marker: "rfq"
  min_body_length: 20
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "auth": {
            "client_id": "test-client-id",
            "tenant_id": "test-tenant-id",
        },
        "monitor": {
            "poll_interval_seconds": 5,
            "timeout_minutes": 10,
            "fan_out": 2,
        },
        "classifier": {
            "topic_marker": "rfq",
            "min_body_length": 20,
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the RFQ_TRACKER_CONFIG_PATH environment variable."""
    old_value = os.environ.get(CONFIG_PATH_ENV)
    os.environ[CONFIG_PATH_ENV] = str(config_file)
    yield
    if old_value is None:
        del os.environ[CONFIG_PATH_ENV]
    else:
        os.environ[CONFIG_PATH_ENV] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


# ---------------------------------------------------------------------------
# Storage and clocks
# ---------------------------------------------------------------------------


@pytest.fixture
def kv_store() -> MemoryKeyValueStore:
    """Return an empty in-memory key-value store."""
    return MemoryKeyValueStore()


@pytest.fixture
def repository(kv_store: MemoryKeyValueStore) -> BatchRepository:
    """Return a BatchRepository over the in-memory store."""
    return BatchRepository(kv_store)


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    """Return a manual monotonic clock."""
    return ManualClock()


# ---------------------------------------------------------------------------
# In-memory mail gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory MailGateway.

    Messages are registered per conversation and per folder. Any query can
    be made to fail by adding its key to the matching ``fail_*`` set.
    """

    def __init__(self) -> None:
        self.conversations: dict[str, list[Message]] = {}
        self.folder_messages: dict[str, list[Message]] = {}
        self.folders: list[Folder] = []
        self.drafts: list[Message] = []
        self.sent_at: datetime | None = datetime(2025, 6, 2, 9, 0, tzinfo=UTC)

        self.fail_conversations: set[str] = set()
        self.fail_folders: set[str] = set()
        self.fail_list_folders = False
        self.fail_sends: set[str] = set()
        # Per-draft exception raised by send_draft, for non-Graph failures
        self.send_errors: dict[str, Exception] = {}
        self.fail_moves = False
        self.locate_sent = True

        self.conversation_calls: list[str] = []
        self.folder_calls: list[tuple[str, str | None]] = []
        self.sent: list[str] = []
        self.moves: list[tuple[str, str]] = []
        self.labels: list[tuple[str, str]] = []
        self.ensured: list[str] = []

        # Awaited inside list_by_conversation; lets tests act mid-tick
        self.on_conversation_query: Callable[[str], Awaitable[None]] | None = None

    def add_message(self, message: Message, *, in_conversation: bool = True) -> None:
        """Make a message visible to conversation and folder queries."""
        if in_conversation and message.conversation_id:
            self.conversations.setdefault(message.conversation_id, []).append(message)
        if message.folder_id:
            self.folder_messages.setdefault(message.folder_id, []).append(message)

    async def list_by_conversation(self, conversation_id: str) -> list[Message]:
        self.conversation_calls.append(conversation_id)
        if self.on_conversation_query is not None:
            await self.on_conversation_query(conversation_id)
        if conversation_id in self.fail_conversations:
            raise GraphAPIError(f"conversation query failed: {conversation_id}", status_code=503)
        return list(self.conversations.get(conversation_id, []))

    async def list_by_folder(self, folder_id: str, subject_contains: str | None = None) -> list[Message]:
        self.folder_calls.append((folder_id, subject_contains))
        if folder_id in self.fail_folders:
            raise GraphAPIError(f"folder query failed: {folder_id}", status_code=503)
        messages = self.folder_messages.get(folder_id, [])
        if subject_contains:
            messages = [m for m in messages if subject_contains.lower() in m.subject.lower()]
        return list(messages)

    async def list_folders(self) -> list[Folder]:
        if self.fail_list_folders:
            raise GraphAPIError("folder listing failed", status_code=503)
        return list(self.folders)

    async def move_message(self, message_id: str, folder_id: str) -> str:
        if self.fail_moves:
            raise GraphAPIError("move failed", status_code=500)
        self.moves.append((message_id, folder_id))
        return f"moved-{message_id}"

    async def apply_label(self, message_id: str, label: str) -> None:
        self.labels.append((message_id, label))

    async def send_draft(self, draft_id: str) -> SentMessage:
        if draft_id in self.send_errors:
            raise self.send_errors[draft_id]
        if draft_id in self.fail_sends:
            raise GraphAPIError(f"send failed: {draft_id}", status_code=500)
        draft = next(d for d in self.drafts if d.id == draft_id)
        self.sent.append(draft_id)
        if not self.locate_sent:
            return SentMessage(
                id=draft_id,
                conversation_id=draft.conversation_id,
                sent_at=None,
                subject=draft.subject,
                recipient=draft.recipients[0] if draft.recipients else None,
                located=False,
            )
        return SentMessage(
            id=f"sent-{draft_id}",
            conversation_id=draft.conversation_id or f"conv-{draft_id}",
            sent_at=self.sent_at,
            subject=draft.subject,
            recipient=draft.recipients[0] if draft.recipients else None,
            internet_message_id=f"<{draft_id}@example.com>",
        )

    async def list_drafts(self, subject_prefix: str) -> list[Message]:
        return [d for d in self.drafts if d.subject.startswith(subject_prefix)]

    async def ensure_folder(self, path: str) -> str:
        self.ensured.append(path)
        return f"folder:{path}"


@pytest.fixture
def gateway() -> FakeGateway:
    """Return an empty in-memory mail gateway."""
    return FakeGateway()
