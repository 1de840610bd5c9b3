# tests/test_workspace.py
# Unit tests for FileStore workspace scoping and directory listing.

import os
from unittest.mock import patch

import pytest

from anita_orchestrator.errors import AccessDenied
from anita_orchestrator.workspace import FileStore


def test_write_creates_parent_directories(workspace):
    files = FileStore(workspace)
    target = files.write_file("src/components/App.js", "export default 1;")
    assert target == os.path.join(workspace, "src", "components", "App.js")
    assert files.read_file("src/components/App.js") == "export default 1;"


def test_relative_paths_resolve_against_base(workspace):
    files = FileStore(workspace)
    os.makedirs(os.path.join(workspace, "app"))
    files.write_file("notes.txt", "hi", base=os.path.join(workspace, "app"))
    assert os.path.exists(os.path.join(workspace, "app", "notes.txt"))


def test_escape_is_denied_before_io(workspace):
    files = FileStore(workspace)
    with patch("builtins.open") as mock_open:
        with pytest.raises(AccessDenied):
            files.write_file("../outside.txt", "x")
        mock_open.assert_not_called()


def test_absolute_path_outside_root_is_denied(workspace, tmp_path):
    files = FileStore(workspace)
    with pytest.raises(AccessDenied):
        files.read_file(str(tmp_path / "elsewhere.txt"))


def test_sibling_with_common_prefix_is_denied(workspace):
    files = FileStore(workspace)
    with pytest.raises(AccessDenied):
        files.resolve(workspace + "-evil/file.txt")


def test_read_dir_lists_directories_first_sorted(workspace):
    files = FileStore(workspace)
    files.write_file("b.txt", "")
    files.write_file("A.txt", "")
    files.create_dir("zeta")
    files.create_dir("alpha")
    names = [e["name"] for e in files.read_dir()]
    assert names == ["alpha", "zeta", "A.txt", "b.txt"]
    assert files.read_dir()[0]["is_directory"] is True


def test_rename_and_delete(workspace):
    files = FileStore(workspace)
    files.write_file("old.txt", "x")
    files.rename("old.txt", "new.txt")
    assert not files.exists("old.txt")
    assert files.exists("new.txt")
    files.create_dir("build/out")
    files.delete("build")
    assert not files.exists("build")


def test_delete_root_is_denied(workspace):
    with pytest.raises(AccessDenied):
        FileStore(workspace).delete(".")
