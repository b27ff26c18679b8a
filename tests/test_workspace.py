import pytest

from transcoder import workspace as workspace_module
from transcoder.workspace import Workspace


def test_layout_and_removal(tmp_path):
    with Workspace(tmp_path, "abc", ".mov") as ws:
        assert ws.input_dir.is_dir()
        assert ws.output_dir.is_dir()
        assert ws.input_file.name == "source.mov"
        assert ws.path.name.startswith("job-abc-")
        (ws.output_dir / "720p").mkdir()
        (ws.output_dir / "720p" / "segment_000.ts").write_bytes(b"x")
        path = ws.path
    assert not path.exists()
    assert list(tmp_path.iterdir()) == []


def test_removed_when_body_raises(tmp_path):
    with pytest.raises(RuntimeError):
        with Workspace(tmp_path, "abc") as ws:
            path = ws.path
            raise RuntimeError("stage blew up")
    assert not path.exists()


def test_remove_is_idempotent(tmp_path):
    ws = Workspace(tmp_path, "abc").__enter__()
    ws.remove()
    ws.remove()
    ws.__exit__(None, None, None)
    assert not ws.path.exists()


def test_default_suffix(tmp_path):
    with Workspace(tmp_path, "abc", "") as ws:
        assert ws.input_file.name == "source.mp4"


def test_exit_hook_removes_live_workspaces(tmp_path):
    ws = Workspace(tmp_path, "crashy").__enter__()
    assert ws in workspace_module._live
    workspace_module._remove_live_workspaces()
    assert not ws.path.exists()
    assert ws not in workspace_module._live


def test_concurrent_jobs_get_separate_trees(tmp_path):
    with Workspace(tmp_path, "same") as a, Workspace(tmp_path, "same") as b:
        assert a.path != b.path
