from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from branchline.adapters.sqlite_reader_store import SQLiteReaderStore
from branchline.core.retry import RetryPolicy
from branchline.core.story_graph import StoryGraphStore
from branchline.core.story_schema import StoryGraphDocument
from branchline.domain.models import StoryGraph

FAST_RETRY = RetryPolicy(attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0)


def lighthouse_payload() -> dict[str, Any]:
    """Six-page story: a paid ending off the start page, a cycle, and a paid side room."""
    return {
        "story_id": "lighthouse",
        "title": "The Lighthouse",
        "start_page_id": "start",
        "version": 1,
        "pages": [
            {"page_id": "start", "page_number": 1, "content": "Fog rolls in.", "kind": "choice"},
            {"page_id": "stairs", "page_number": 2, "content": "A spiral stair.", "kind": "story"},
            {"page_id": "lamp-room", "page_number": 3, "content": "The lamp.", "kind": "choice"},
            {"page_id": "calm", "page_number": 4, "content": "Ships pass safely.", "kind": "ending"},
            {"page_id": "vault", "page_number": 5, "content": "Gold glitters.", "kind": "ending"},
            {"page_id": "secret", "page_number": 6, "content": "A hidden log.", "kind": "story"},
        ],
        "choices": [
            {
                "choice_id": "take-stairs",
                "from_page_id": "start",
                "to_page_id": "stairs",
                "text": "Take the stairs",
            },
            {
                "choice_id": "open-vault",
                "from_page_id": "start",
                "to_page_id": "vault",
                "text": "Open the vault",
                "is_premium": True,
                "cost": 15,
            },
            {
                "choice_id": "climb",
                "from_page_id": "stairs",
                "to_page_id": "lamp-room",
                "text": "Keep climbing",
            },
            {
                "choice_id": "descend",
                "from_page_id": "stairs",
                "to_page_id": "start",
                "text": "Go back down",
            },
            {
                "choice_id": "light-lamp",
                "from_page_id": "lamp-room",
                "to_page_id": "calm",
                "text": "Light the lamp",
            },
            {
                "choice_id": "bribe-keeper",
                "from_page_id": "lamp-room",
                "to_page_id": "secret",
                "text": "Bribe the keeper",
                "is_premium": True,
                "cost": 5,
            },
            {
                "choice_id": "leave-log",
                "from_page_id": "secret",
                "to_page_id": "stairs",
                "text": "Leave the log behind",
            },
        ],
    }


class StepClock:
    """Deterministic clock advancing by ``step`` on every call."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=60)):
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def lighthouse_graph() -> StoryGraph:
    return StoryGraphDocument.model_validate(lighthouse_payload()).to_graph()


@pytest.fixture
def graph_store(lighthouse_graph: StoryGraph) -> StoryGraphStore:
    return StoryGraphStore([lighthouse_graph])


@pytest.fixture
def reader_store(tmp_path: Path) -> SQLiteReaderStore:
    return SQLiteReaderStore(db_path=tmp_path / "reader.db")


@pytest.fixture
def step_clock() -> Callable[[], datetime]:
    return StepClock()
