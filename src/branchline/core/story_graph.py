"""Read-only story graph store with structural validation."""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path

from branchline.core.story_schema import load_story_graph_json
from branchline.domain.errors import GraphValidationError, NotFound
from branchline.domain.models import Choice, Page, PageKind, StoryGraph

logger = logging.getLogger(__name__)


def validate_story_graph(graph: StoryGraph) -> list[str]:
    """Return every structural issue in ``graph``; an empty list means valid."""
    issues: list[str] = []
    if graph.start_page_id not in graph.pages:
        issues.append(f"Start page '{graph.start_page_id}' does not exist.")

    for choice in graph.choices.values():
        if choice.from_page_id not in graph.pages:
            issues.append(
                f"Choice '{choice.choice_id}' starts at unknown page '{choice.from_page_id}'."
            )
        if choice.to_page_id not in graph.pages:
            issues.append(
                f"Choice '{choice.choice_id}' points to unknown page '{choice.to_page_id}'."
            )
        if choice.is_premium and choice.cost <= 0:
            issues.append(f"Premium choice '{choice.choice_id}' must have a positive cost.")
        if not choice.is_premium and choice.cost != 0:
            issues.append(f"Free choice '{choice.choice_id}' must have zero cost.")

    for page in graph.pages.values():
        has_exits = bool(graph.outgoing.get(page.page_id))
        if page.kind is PageKind.ENDING and has_exits:
            issues.append(f"Ending page '{page.page_id}' has outgoing choices.")
        if page.kind is not PageKind.ENDING and not has_exits:
            issues.append(f"Page '{page.page_id}' has no choices but is not an ending.")

    if graph.start_page_id in graph.pages:
        reachable = reachable_pages(graph)
        for page_id in sorted(set(graph.pages) - reachable):
            issues.append(f"Page '{page_id}' is unreachable from the start page.")
    return issues


def reachable_pages(graph: StoryGraph) -> set[str]:
    """Breadth-first walk from the start page; cycles are visited once."""
    seen: set[str] = {graph.start_page_id}
    queue: deque[str] = deque([graph.start_page_id])
    while queue:
        page_id = queue.popleft()
        for choice in graph.outgoing_choices(page_id):
            if choice.to_page_id in graph.pages and choice.to_page_id not in seen:
                seen.add(choice.to_page_id)
                queue.append(choice.to_page_id)
    return seen


class StoryGraphStore:
    """In-memory registry of validated, immutable story graphs."""

    def __init__(self, graphs: list[StoryGraph] | None = None) -> None:
        self._graphs: dict[str, StoryGraph] = {}
        for graph in graphs or []:
            self.register(graph)

    def register(self, graph: StoryGraph) -> None:
        issues = validate_story_graph(graph)
        if issues:
            raise GraphValidationError(story_id=graph.story_id, issues=issues)
        self._graphs[graph.story_id] = graph
        logger.info(
            "story_graph.registered story_id=%s version=%s pages=%s choices=%s",
            graph.story_id,
            graph.version,
            len(graph.pages),
            len(graph.choices),
        )

    def load_directory(self, directory: Path) -> int:
        """Register every ``*.json`` story contract found in ``directory``."""
        if not directory.is_dir():
            logger.warning("story_graph.directory_missing path=%s", directory)
            return 0
        loaded = 0
        for path in sorted(directory.glob("*.json")):
            self.register(load_story_graph_json(path).to_graph())
            loaded += 1
        return loaded

    def story_ids(self) -> list[str]:
        return sorted(self._graphs)

    def get_graph(self, story_id: str) -> StoryGraph:
        graph = self._graphs.get(story_id)
        if graph is None:
            raise NotFound(f"Story '{story_id}' not found.")
        return graph

    def get_page(self, story_id: str, page_id: str) -> Page:
        page = self.get_graph(story_id).pages.get(page_id)
        if page is None:
            raise NotFound(f"Page '{page_id}' not found in story '{story_id}'.")
        return page

    def get_choice(self, story_id: str, choice_id: str) -> Choice:
        choice = self.get_graph(story_id).choices.get(choice_id)
        if choice is None:
            raise NotFound(f"Choice '{choice_id}' not found in story '{story_id}'.")
        return choice

    def get_outgoing_choices(self, story_id: str, page_id: str) -> tuple[Choice, ...]:
        graph = self.get_graph(story_id)
        if page_id not in graph.pages:
            raise NotFound(f"Page '{page_id}' not found in story '{story_id}'.")
        return graph.outgoing_choices(page_id)
