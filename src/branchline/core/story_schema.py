"""Portable story graph contract loaded from externally authored JSON."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from branchline.domain.models import Choice, Page, PageKind, StoryGraph

_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.:-]{0,119}$")


class SchemaModel(BaseModel):
    """Strict model configuration for story content."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


def _normalize_id(value: str, *, field_name: str) -> str:
    normalized = value.strip().lower()
    if not _ID_PATTERN.match(normalized):
        raise ValueError(f"{field_name} must match `{_ID_PATTERN.pattern}`.")
    return normalized


class PageBlock(SchemaModel):
    """One authored page."""

    page_id: str = Field(min_length=1, max_length=120)
    page_number: int = Field(ge=1)
    content: str = Field(min_length=1)
    kind: Literal["story", "choice", "ending"] = "story"

    @field_validator("page_id")
    @classmethod
    def _validate_page_id(cls, value: str) -> str:
        return _normalize_id(value, field_name="page_id")


class ChoiceBlock(SchemaModel):
    """One authored choice; list position is the authoring order."""

    choice_id: str = Field(min_length=1, max_length=120)
    from_page_id: str = Field(min_length=1, max_length=120)
    to_page_id: str = Field(min_length=1, max_length=120)
    text: str = Field(min_length=1, max_length=500)
    is_premium: bool = False
    cost: int = Field(default=0, ge=0, le=100_000)

    @field_validator("choice_id", "from_page_id", "to_page_id")
    @classmethod
    def _validate_ids(cls, value: str) -> str:
        return _normalize_id(value, field_name="Choice id reference")

    @model_validator(mode="after")
    def _validate_pricing(self) -> ChoiceBlock:
        if self.is_premium and self.cost <= 0:
            raise ValueError(f"Premium choice '{self.choice_id}' must have a positive cost.")
        if not self.is_premium and self.cost != 0:
            raise ValueError(f"Free choice '{self.choice_id}' must have zero cost.")
        return self


class StoryGraphDocument(SchemaModel):
    """Story graph as authored: flat page and choice lists keyed by id."""

    story_id: str = Field(min_length=1, max_length=120)
    title: str = Field(min_length=1, max_length=300)
    start_page_id: str = Field(min_length=1, max_length=120)
    version: int = Field(default=1, ge=1)
    pages: list[PageBlock] = Field(min_length=1)
    choices: list[ChoiceBlock] = Field(default_factory=list)

    @field_validator("story_id", "start_page_id")
    @classmethod
    def _validate_ids(cls, value: str) -> str:
        return _normalize_id(value, field_name="Story id reference")

    @model_validator(mode="after")
    def _validate_unique_ids(self) -> StoryGraphDocument:
        page_ids = [page.page_id for page in self.pages]
        if len(page_ids) != len(set(page_ids)):
            raise ValueError("Page ids must be unique within a story.")
        choice_ids = [choice.choice_id for choice in self.choices]
        if len(choice_ids) != len(set(choice_ids)):
            raise ValueError("Choice ids must be unique within a story.")
        return self

    def to_graph(self) -> StoryGraph:
        """Build the id-keyed arena; structural checks live in ``validate_story_graph``."""
        pages = {
            block.page_id: Page(
                page_id=block.page_id,
                page_number=block.page_number,
                content=block.content,
                kind=PageKind(block.kind),
            )
            for block in self.pages
        }
        choices: dict[str, Choice] = {}
        outgoing: dict[str, list[str]] = {page_id: [] for page_id in pages}
        for order, block in enumerate(self.choices):
            choices[block.choice_id] = Choice(
                choice_id=block.choice_id,
                from_page_id=block.from_page_id,
                to_page_id=block.to_page_id,
                text=block.text,
                is_premium=block.is_premium,
                cost=block.cost,
                order=order,
            )
            outgoing.setdefault(block.from_page_id, []).append(block.choice_id)
        return StoryGraph.build(
            story_id=self.story_id,
            title=self.title,
            start_page_id=self.start_page_id,
            pages=pages,
            choices=choices,
            outgoing={page_id: tuple(ids) for page_id, ids in outgoing.items()},
            version=self.version,
        )


def load_story_graph_json(path: Path) -> StoryGraphDocument:
    """Load and validate one story graph JSON file."""
    return StoryGraphDocument.model_validate_json(path.read_text(encoding="utf-8"))


def save_story_graph_json(path: Path, document: StoryGraphDocument) -> None:
    """Write a story graph in canonical JSON form."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(document.model_dump_json(indent=2) + "\n", encoding="utf-8")
