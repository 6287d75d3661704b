from __future__ import annotations

from pathlib import Path

from local_models.persistence import read_document, remove_document, write_document


def test_round_trip_and_remove(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "doc.json"
    assert write_document(path, {"a": 1})
    assert read_document(path) == {"a": 1}
    assert remove_document(path)
    assert read_document(path) is None
    assert not remove_document(path)


def test_failed_write_leaves_no_temp_files(tmp_path: Path) -> None:
    path = tmp_path / "doc.json"
    assert not write_document(path, {"bad": object()})
    assert list(tmp_path.iterdir()) == []


def test_write_into_a_file_path_fails_quietly(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    assert not write_document(blocker / "doc.json", {"a": 1})
