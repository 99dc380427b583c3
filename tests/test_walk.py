"""Tests for the source tree walk and the source -> backup path mapping."""

import os
from pathlib import Path

import pytest

from backup_watch import WalkEntry, backup_path_for, walk_source


def _rel(entries, root):
    return [e.path.relative_to(root).as_posix() for e in entries]


# ---------------------------------------------------------------------------
# Walk order and coverage
# ---------------------------------------------------------------------------

class TestWalkSource:
    def test_root_comes_first(self, source_dir):
        (source_dir / "a.txt").write_text("a")
        entries = list(walk_source(source_dir))
        assert entries[0] == WalkEntry(source_dir, True)

    def test_empty_root_yields_only_root(self, source_dir):
        assert list(walk_source(source_dir)) == [WalkEntry(source_dir, True)]

    def test_visits_every_path(self, source_dir):
        (source_dir / "sub" / "deeper").mkdir(parents=True)
        (source_dir / "sub" / "deeper" / "leaf.bin").write_bytes(b"\x00")
        (source_dir / "sub" / "mid.txt").write_text("m")
        (source_dir / "top.txt").write_text("t")
        (source_dir / "empty").mkdir()

        rel = set(_rel(walk_source(source_dir), source_dir))
        assert rel == {".", "empty", "sub", "sub/deeper", "sub/deeper/leaf.bin", "sub/mid.txt", "top.txt"}

    def test_directories_before_their_contents(self, source_dir):
        (source_dir / "x" / "y" / "z").mkdir(parents=True)
        (source_dir / "x" / "y" / "z" / "f.txt").write_text("f")
        (source_dir / "x" / "g.txt").write_text("g")

        order = _rel(walk_source(source_dir), source_dir)
        for path in order:
            parent = Path(path).parent.as_posix()
            if path != ".":
                assert order.index(parent) < order.index(path)

    def test_depth_first_sorted(self, source_dir):
        (source_dir / "a").mkdir()
        (source_dir / "a" / "inner.txt").write_text("i")
        (source_dir / "b.txt").write_text("b")

        assert _rel(walk_source(source_dir), source_dir) == [".", "a", "a/inner.txt", "b.txt"]

    def test_is_dir_flags(self, source_dir):
        (source_dir / "d").mkdir()
        (source_dir / "f.txt").write_text("f")
        flags = {e.path.name: e.is_dir for e in walk_source(source_dir)}
        assert flags["d"] is True
        assert flags["f.txt"] is False

    def test_deep_nesting(self, source_dir):
        path = source_dir
        for i in range(60):
            path = path / f"level{i}"
        path.mkdir(parents=True)
        (path / "bottom.txt").write_text("deep")

        entries = list(walk_source(source_dir))
        assert entries[-1].path == path / "bottom.txt"
        assert len(entries) == 62

    def test_unusual_file_names(self, source_dir):
        names = ["with space.txt", "ümlaut.txt", "semi;colon", "#hash", "dash-and_underscore"]
        for name in names:
            (source_dir / name).write_text(name)
        walked = {e.path.name for e in walk_source(source_dir)}
        assert set(names) <= walked

    def test_each_call_is_a_fresh_walk(self, source_dir):
        (source_dir / "one.txt").write_text("1")
        first = list(walk_source(source_dir))
        (source_dir / "two.txt").write_text("2")
        second = list(walk_source(source_dir))
        assert len(second) == len(first) + 1

    def test_is_lazy(self, source_dir):
        (source_dir / "a.txt").write_text("a")
        gen = walk_source(source_dir)
        assert next(gen).path == source_dir
        (source_dir / "late.txt").write_text("added after the walk started")
        assert "late.txt" in {e.path.name for e in gen}


# ---------------------------------------------------------------------------
# Errors and pruning
# ---------------------------------------------------------------------------

class TestWalkErrors:
    def test_missing_root_yields_error_entry(self, tmp_path):
        entries = list(walk_source(tmp_path / "nope"))
        assert len(entries) == 1
        assert isinstance(entries[0].error, FileNotFoundError)

    def test_unlistable_directory_is_reported_and_walk_continues(self, source_dir, monkeypatch):
        (source_dir / "bad").mkdir()
        (source_dir / "bad" / "hidden.txt").write_text("h")
        (source_dir / "good").mkdir()
        (source_dir / "good" / "ok.txt").write_text("ok")

        real_scandir = os.scandir
        bad = str(source_dir / "bad")

        def flaky_scandir(path):
            if os.fspath(path) == bad:
                raise PermissionError(13, "Permission denied", bad)
            return real_scandir(path)

        monkeypatch.setattr(os, "scandir", flaky_scandir)
        entries = list(walk_source(source_dir))

        errors = [e for e in entries if e.error is not None]
        assert len(errors) == 1
        assert errors[0].path == source_dir / "bad"
        assert isinstance(errors[0].error, PermissionError)
        names = {e.path.name for e in entries}
        assert "ok.txt" in names
        assert "hidden.txt" not in names

    def test_skip_prunes_subtree(self, source_dir):
        (source_dir / "node_modules" / "pkg").mkdir(parents=True)
        (source_dir / "node_modules" / "pkg" / "index.js").write_text("x")
        (source_dir / "keep.txt").write_text("k")

        entries = list(walk_source(source_dir, skip=lambda p, is_dir: p.name == "node_modules"))
        assert _rel(entries, source_dir) == [".", "keep.txt"]

    def test_skip_never_applies_to_root(self, source_dir):
        entries = list(walk_source(source_dir, skip=lambda p, is_dir: True))
        assert entries == [WalkEntry(source_dir, True)]

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_symlinked_directory_not_descended(self, source_dir, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("s")
        try:
            (source_dir / "link").symlink_to(outside, target_is_directory=True)
        except OSError:
            pytest.skip("cannot create symlinks here")

        entries = {e.path.name: e for e in walk_source(source_dir)}
        assert entries["link"].is_dir is True
        assert "secret.txt" not in entries

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_symlink_loop_terminates(self, source_dir):
        try:
            (source_dir / "loop").symlink_to(source_dir, target_is_directory=True)
        except OSError:
            pytest.skip("cannot create symlinks here")
        assert len(list(walk_source(source_dir))) == 2


# ---------------------------------------------------------------------------
# Path mapping
# ---------------------------------------------------------------------------

class TestBackupPathFor:
    def test_nested_file(self):
        assert backup_path_for(Path("/a/b"), Path("/x/y"), Path("/a/b/c/d.txt")) == Path("/x/y/c/d.txt")

    def test_root_maps_to_backup_root(self):
        assert backup_path_for(Path("/a/b"), Path("/x/y"), Path("/a/b")) == Path("/x/y")

    def test_direct_child(self):
        assert backup_path_for(Path("/a/b"), Path("/x/y"), Path("/a/b/f1.txt")) == Path("/x/y/f1.txt")

    def test_suffix_preserved_exactly(self):
        src = Path("/src/My Docs/2024/Q1 report (final).pdf")
        assert backup_path_for(Path("/src"), Path("/mnt/bk"), src) == Path("/mnt/bk/My Docs/2024/Q1 report (final).pdf")

    def test_outside_source_root_raises(self):
        with pytest.raises(ValueError):
            backup_path_for(Path("/a/b"), Path("/x/y"), Path("/a/other/f.txt"))
