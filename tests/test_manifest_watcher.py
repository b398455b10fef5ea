from pathlib import Path

import pytest

from keelson.core.models import ResourceKind
from keelson.runtime.manifest_watcher import FileChange, ManifestWatcher


def test_watcher_tracks_manifests_with_include_exclude_patterns(tmp_path: Path):
    (tmp_path / "keelson.yaml").write_text("watch:\n  enabled: true\n")
    (tmp_path / "stack.yaml").write_text("kind: Secret\nname: a\n")
    (tmp_path / "extra.yml").write_text("kind: Secret\nname: b\n")
    (tmp_path / "notes.txt").write_text("ignore")
    (tmp_path / "drafts").mkdir()
    (tmp_path / "drafts" / "wip.yaml").write_text("kind: Secret\nname: c\n")

    watcher = ManifestWatcher(root_dir=tmp_path, exclude_patterns=["drafts/*"])
    watcher.start()

    assert watcher.tracked_paths() == ["extra.yml", "stack.yaml"]


def test_added_manifest_is_reported_after_debounce_with_its_kinds(tmp_path: Path):
    watcher = ManifestWatcher(root_dir=tmp_path, debounce_ms=200)
    watcher.start()

    (tmp_path / "web.yaml").write_text(
        "kind: Workload\nname: web\nspec: {image: web:1}\n"
        "---\n"
        "kind: Service\nname: web\nspec: {selector: web, port: 80}\n"
    )

    assert watcher.poll(now=0.10) is None
    assert watcher.pending is True
    assert watcher.poll(now=0.25) is None

    changes = watcher.poll(now=0.35)

    assert changes is not None
    assert [(change.path, change.change) for change in changes.changes] == [("web.yaml", FileChange.ADDED)]
    assert changes.kinds == {ResourceKind.WORKLOAD, ResourceKind.SERVICE}
    assert watcher.pending is False
    assert watcher.poll(now=5.0) is None


def test_removed_manifest_reports_the_kinds_it_declared(tmp_path: Path):
    watched_file = tmp_path / "gone.yaml"
    watched_file.write_text("kind: ConfigMap\nname: flags\ndata: {a: b}\n")

    watcher = ManifestWatcher(root_dir=tmp_path, debounce_ms=100)
    watcher.start()

    watched_file.unlink()

    assert watcher.poll(now=1.0) is None
    changes = watcher.poll(now=1.2)

    assert changes is not None
    assert changes.paths == ["gone.yaml"]
    assert changes.changes[0].change == FileChange.REMOVED
    assert changes.kinds == {ResourceKind.CONFIG_MAP}


def test_modified_manifest_reports_old_and_new_kinds(tmp_path: Path):
    watched_file = tmp_path / "edit.yaml"
    watched_file.write_text("kind: Secret\nname: creds\nstring_data: {a: b}\n")

    watcher = ManifestWatcher(root_dir=tmp_path, debounce_ms=100)
    watcher.start()

    watched_file.write_text("kind: ConfigMap\nname: creds-as-config\ndata: {a: b}\n")

    assert watcher.poll(now=1.0) is None
    changes = watcher.poll(now=1.2)

    assert changes is not None
    assert changes.changes[0].change == FileChange.MODIFIED
    assert changes.kinds == {ResourceKind.SECRET, ResourceKind.CONFIG_MAP}


def test_burst_changes_reset_debounce_window(tmp_path: Path):
    watcher = ManifestWatcher(root_dir=tmp_path, debounce_ms=200)
    watcher.start()

    (tmp_path / "first.yaml").write_text("kind: Secret\nname: a\n")
    assert watcher.poll(now=0.10) is None

    (tmp_path / "second.yaml").write_text("kind: Secret\nname: b\n")
    assert watcher.poll(now=0.20) is None

    # The second change moved the debounce window.
    assert watcher.poll(now=0.35) is None

    changes = watcher.poll(now=0.45)
    assert changes is not None
    assert changes.paths == ["first.yaml", "second.yaml"]


def test_file_created_and_deleted_within_one_window_yields_nothing(tmp_path: Path):
    watcher = ManifestWatcher(root_dir=tmp_path, debounce_ms=100)
    watcher.start()

    scratch = tmp_path / "scratch.yaml"
    scratch.write_text("kind: Secret\nname: tmp\n")
    assert watcher.poll(now=1.0) is None

    scratch.unlink()
    assert watcher.poll(now=1.05) is None

    assert watcher.poll(now=1.5) is None
    assert watcher.pending is False


def test_unparseable_manifest_is_reported_without_kinds(tmp_path: Path):
    watcher = ManifestWatcher(root_dir=tmp_path, debounce_ms=100)
    watcher.start()

    (tmp_path / "broken.yaml").write_text("kind: [unclosed\n")

    assert watcher.poll(now=1.0) is None
    changes = watcher.poll(now=1.2)

    assert changes is not None
    assert changes.paths == ["broken.yaml"]
    assert changes.kinds == frozenset()


def test_watcher_requires_start(tmp_path: Path):
    watcher = ManifestWatcher(root_dir=tmp_path)

    with pytest.raises(RuntimeError):
        watcher.poll(now=0.0)

    watcher.start()
    watcher.stop()
    with pytest.raises(RuntimeError):
        watcher.poll(now=0.0)
