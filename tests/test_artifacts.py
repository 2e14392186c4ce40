"""Tests for the artifact directory layout."""

import pytest

from visual_harness.artifacts import ArtifactManager
from visual_harness.snapshot import SnapshotStore


@pytest.mark.parametrize("name", ["", ".", "..", "../escape", "a/b", "_session"])
def test_scenario_dir_stays_inside_base(tmp_path, name):
    artifacts = ArtifactManager(tmp_path / "artifacts")

    with pytest.raises(ValueError):
        artifacts.scenario_dir(name)


def test_clear_scenario_never_touches_parent(tmp_path):
    keep = tmp_path / "snapshots" / "golden.png"
    keep.parent.mkdir()
    keep.write_bytes(b"png")
    artifacts = ArtifactManager(tmp_path / "artifacts")

    with pytest.raises(ValueError):
        artifacts.clear_scenario("..")

    assert keep.read_bytes() == b"png"


def test_scenario_dir_and_session_dir(tmp_path):
    artifacts = ArtifactManager(tmp_path)
    assert artifacts.scenario_dir("open-file") == tmp_path / "open-file"
    assert artifacts.session_dir == tmp_path / "_session"


@pytest.mark.parametrize("scenario, golden", [("..", "a.png"), ("ok", "../a.png"), ("ok", "..")])
def test_golden_path_stays_inside_golden_dir(tmp_path, scenario, golden):
    store = SnapshotStore(tmp_path / "snapshots", ArtifactManager(tmp_path / "artifacts"))

    with pytest.raises(ValueError):
        store.golden_path(scenario, golden)
