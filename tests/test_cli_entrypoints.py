from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
from conftest import lighthouse_payload

from branchline.cli import api as api_cli
from branchline.cli import story as story_cli
from branchline.core.story_schema import load_story_graph_json


def _write_story(path: Path, payload: dict[str, object]) -> None:
    path.write_text(json.dumps(payload), encoding="utf-8")


def test_api_cli_calls_uvicorn(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, object]] = []

    def fake_run(app: str, host: str, port: int, reload: bool) -> None:
        calls.append({"app": app, "host": host, "port": port, "reload": reload})

    monkeypatch.setattr("branchline.cli.api.configure_runtime_logging", lambda: Path("unused"))
    monkeypatch.setattr("branchline.cli.api.uvicorn.run", fake_run)
    api_cli.main(["--host", "0.0.0.0", "--port", "9000", "--reload"])

    assert calls == [
        {
            "app": "branchline.api.app:app",
            "host": "0.0.0.0",
            "port": 9000,
            "reload": True,
        }
    ]


def test_api_cli_sets_storage_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BRANCHLINE_DB_PATH", raising=False)
    monkeypatch.delenv("BRANCHLINE_STORY_DIR", raising=False)
    monkeypatch.setattr("branchline.cli.api.configure_runtime_logging", lambda: Path("unused"))
    monkeypatch.setattr("branchline.cli.api.uvicorn.run", lambda *args, **kwargs: None)
    api_cli.main(["--db-path", "work/local/custom.db", "--story-dir", "content/stories"])
    assert os.environ["BRANCHLINE_DB_PATH"] == "work/local/custom.db"
    assert os.environ["BRANCHLINE_STORY_DIR"] == "content/stories"


def test_story_cli_validates_and_writes_normalized_copy(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    source = tmp_path / "lighthouse.json"
    payload = lighthouse_payload()
    payload["pages"][0]["page_id"] = "START"  # type: ignore[index]
    payload["start_page_id"] = "Start"
    _write_story(source, payload)
    output = tmp_path / "out" / "lighthouse.json"

    assert story_cli.main(["--input", str(source), "--output", str(output)]) == 0
    captured = capsys.readouterr().out
    assert "pages=6 reachable=6 endings=2 premium_choices=2" in captured
    assert f"Wrote normalized JSON: {output}" in captured
    normalized = load_story_graph_json(output)
    assert normalized.start_page_id == "start"
    assert normalized.pages[0].page_id == "start"


def test_story_cli_check_only_leaves_file_untouched(tmp_path: Path) -> None:
    source = tmp_path / "lighthouse.json"
    _write_story(source, lighthouse_payload())
    before = source.read_text(encoding="utf-8")
    assert story_cli.main(["--input", str(source), "--check-only"]) == 0
    assert source.read_text(encoding="utf-8") == before


def test_story_cli_reports_structural_issues(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    payload = lighthouse_payload()
    payload["choices"] = [  # type: ignore[index]
        choice for choice in payload["choices"] if choice["choice_id"] != "leave-log"  # type: ignore[index]
    ]
    payload["choices"].append(  # type: ignore[union-attr]
        {
            "choice_id": "jump",
            "from_page_id": "calm",
            "to_page_id": "sea",
            "text": "Jump",
        }
    )
    source = tmp_path / "broken.json"
    _write_story(source, payload)

    assert story_cli.main(["--input", str(source)]) == 1
    out = capsys.readouterr().out
    assert "Invalid story graph" in out
    assert "Choice 'jump' points to unknown page 'sea'." in out
    assert "Ending page 'calm' has outgoing choices." in out
    assert "Page 'secret' has no choices but is not an ending." in out
