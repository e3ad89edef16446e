from __future__ import annotations

import json
from pathlib import Path
import threading

import pytest

from copilot_monitor.models import EntityKeyError
from copilot_monitor.pause_store import PauseState, PauseStore


def test_missing_file_means_nothing_is_paused(tmp_path: Path) -> None:
    store = PauseStore(tmp_path / "state" / "pause-state.json")

    assert store.status() == PauseState()
    assert store.is_globally_paused() is False
    assert store.is_entity_paused("o/r#1") is False
    assert not store.path.exists()


def test_global_pause_and_resume_round_trip_through_file(tmp_path: Path) -> None:
    path = tmp_path / "state" / "pause-state.json"
    writer = PauseStore(path)
    reader = PauseStore(path)

    paused = writer.pause_globally()
    assert paused.globally_paused is True
    assert paused.paused_at is not None and paused.paused_at.endswith("Z")
    assert reader.is_globally_paused() is True

    resumed = writer.resume_globally()
    assert resumed.globally_paused is False
    assert resumed.paused_at == paused.paused_at
    assert resumed.resumed_at is not None
    assert reader.is_globally_paused() is False

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["globally_paused"] is False
    assert on_disk["paused_pull_requests"] == []


def test_pull_request_pause_is_scoped_and_deduplicated(tmp_path: Path) -> None:
    store = PauseStore(tmp_path / "pause-state.json")

    store.pause_pull_request(" o/r#1 ")
    store.pause_pull_request("o/r#1")
    state = store.pause_pull_request("o/r#2")

    assert state.paused_pull_requests == ("o/r#1", "o/r#2")
    assert state.globally_paused is False
    assert store.is_entity_paused("o/r#1") is True
    assert store.is_entity_paused("o/r#3") is False

    state = store.resume_pull_request("o/r#1")
    assert state.paused_pull_requests == ("o/r#2",)
    assert store.is_entity_paused("o/r#1") is False


def test_pull_request_pause_rejects_malformed_keys(tmp_path: Path) -> None:
    store = PauseStore(tmp_path / "pause-state.json")

    with pytest.raises(EntityKeyError):
        store.pause_pull_request("not-a-key")
    with pytest.raises(EntityKeyError):
        store.resume_pull_request("o/r")
    assert not store.path.exists()


def test_clear_all_resets_every_flag(tmp_path: Path) -> None:
    store = PauseStore(tmp_path / "pause-state.json")
    store.pause_globally()
    store.pause_pull_request("o/r#1")

    state = store.clear_all()

    assert state.globally_paused is False
    assert state.paused_pull_requests == ()
    assert state.resumed_at is not None
    assert store.status() == state


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", '"paused"'])
def test_unreadable_file_is_treated_as_not_paused(tmp_path: Path, content: str) -> None:
    path = tmp_path / "pause-state.json"
    path.write_text(content, encoding="utf-8")

    assert PauseStore(path).status() == PauseState()


def test_load_ignores_malformed_fields(tmp_path: Path) -> None:
    path = tmp_path / "pause-state.json"
    path.write_text(
        json.dumps(
            {
                "globally_paused": "yes",
                "paused_pull_requests": ["o/r#1", 5, "o/r#1", "o/r#2"],
                "paused_at": "",
                "resumed_at": 12,
            }
        ),
        encoding="utf-8",
    )

    state = PauseStore(path).status()

    assert state == PauseState(
        globally_paused=False,
        paused_pull_requests=("o/r#1", "o/r#2"),
        paused_at=None,
        resumed_at=None,
    )


def test_to_json_dict() -> None:
    state = PauseState(
        globally_paused=True,
        paused_pull_requests=("o/r#1",),
        paused_at="2026-01-01T00:00:00Z",
    )

    assert state.to_json_dict() == {
        "globally_paused": True,
        "paused_pull_requests": ["o/r#1"],
        "paused_at": "2026-01-01T00:00:00Z",
        "resumed_at": None,
    }


def test_concurrent_pauses_are_not_lost(tmp_path: Path) -> None:
    store = PauseStore(tmp_path / "pause-state.json")

    threads = [
        threading.Thread(target=store.pause_pull_request, args=(f"o/r#{number}",))
        for number in range(1, 11)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(store.status().paused_pull_requests) == sorted(
        f"o/r#{number}" for number in range(1, 11)
    )
    assert list(tmp_path.glob("*.tmp")) == []
