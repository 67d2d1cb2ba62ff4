"""CLI helpers for story graph JSON workflows."""

from __future__ import annotations

import argparse
from pathlib import Path

from branchline.core.story_graph import reachable_pages, validate_story_graph
from branchline.core.story_schema import load_story_graph_json, save_story_graph_json


def build_arg_parser() -> argparse.ArgumentParser:
    """Define CLI flags for story graph validation and formatting."""
    parser = argparse.ArgumentParser(description="Validate and normalize story graph JSON.")
    parser.add_argument("--input", required=True, help="Path to source story graph JSON.")
    parser.add_argument(
        "--output",
        default="",
        help="Optional path to write normalized JSON. Defaults to in-place.",
    )
    parser.add_argument(
        "--check-only",
        action="store_true",
        help="Report graph issues without rewriting the file.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Validate a story graph; returns 1 when structural issues are found."""
    parser = build_arg_parser()
    parsed = parser.parse_args(argv)

    input_path = Path(str(parsed.input))
    document = load_story_graph_json(input_path)
    graph = document.to_graph()
    issues = validate_story_graph(graph)
    if issues:
        print(f"Invalid story graph: {input_path}")
        for issue in issues:
            print(f"  - {issue}")
        return 1

    reachable = reachable_pages(graph)
    endings = sum(1 for page in graph.pages.values() if page.is_ending)
    premium = sum(1 for choice in graph.choices.values() if choice.is_premium)
    print(
        f"Validated story graph: {input_path} "
        f"(pages={len(graph.pages)} reachable={len(reachable)} "
        f"endings={endings} premium_choices={premium})"
    )
    if parsed.check_only:
        return 0
    output_path = Path(str(parsed.output)) if str(parsed.output).strip() else input_path
    save_story_graph_json(output_path, document)
    if output_path != input_path:
        print(f"Wrote normalized JSON: {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
