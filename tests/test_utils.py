import os

import pytest

from hacpatch.exceptions import InvalidFileException
from hacpatch.utils import (
    ScratchDirs,
    build_jobs,
    ext_matches,
    files_by_size,
    first_file,
    get_fmt_size,
    iter_files,
    move_file,
    remove_tree,
    truncate_program_id,
    validate_program_id,
)


def test_ext_matches():
    assert ext_matches("game.nsp", "nsp")
    assert ext_matches("GAME.NSP", "nsp")
    assert ext_matches("a/b/meta.cnmt.nca", "nca")
    assert not ext_matches("game.nsp.bak", "nsp")
    assert not ext_matches("nsp", "nsp")


def test_truncate_program_id():
    assert truncate_program_id("0100ABCD00010000") == "0100abcd00010000"
    assert truncate_program_id("0100ABCD000100000000") == "0100abcd00010000"
    assert truncate_program_id("0100") == "0100"


@pytest.mark.parametrize("program_id", ["0100abcd0001000", "0100abcd000100000", "0100abcd0001000g", ""])
def test_validate_program_id_invalid(program_id):
    with pytest.raises(InvalidFileException):
        validate_program_id(program_id)


def test_validate_program_id():
    validate_program_id("0100abcd00010000")
    validate_program_id("0100ABCD00010000")


def test_build_jobs(monkeypatch):
    monkeypatch.setattr(os, "cpu_count", lambda: 8)
    assert build_jobs() == 4
    monkeypatch.setattr(os, "cpu_count", lambda: 1)
    assert build_jobs() == 1
    monkeypatch.setattr(os, "cpu_count", lambda: None)
    assert build_jobs() == 1


def test_get_fmt_size(tmp_path):
    path = tmp_path / "file.bin"
    path.write_bytes(b"\x00" * 2048)
    assert get_fmt_size(path) == "2.0 KiB"
    path.write_bytes(b"\x00" * 10)
    assert get_fmt_size(path) == "10.0 B"


def test_iter_files(tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "b.nca").write_bytes(b"")
    (tmp_path / "a.nca").write_bytes(b"")
    (tmp_path / "sub" / "c.NCA").write_bytes(b"")
    (tmp_path / "sub" / "d.tik").write_bytes(b"")
    assert [p.name for p in iter_files(tmp_path, "nca")] == ["a.nca", "b.nca", "c.NCA"]
    assert len(list(iter_files(tmp_path))) == 4
    assert first_file(tmp_path, "tik") == tmp_path / "sub" / "d.tik"
    assert first_file(tmp_path, "nsp") is None


def test_files_by_size(tmp_path):
    (tmp_path / "nested").mkdir()
    (tmp_path / "small.nca").write_bytes(b"\x00" * 10)
    (tmp_path / "nested" / "large.nca").write_bytes(b"\x00" * 1000)
    (tmp_path / "medium.nca").write_bytes(b"\x00" * 100)
    (tmp_path / "huge.bin").write_bytes(b"\x00" * 5000)
    assert [p.name for p in files_by_size(tmp_path, "nca")] == ["large.nca", "medium.nca", "small.nca"]


def test_move_file(tmp_path):
    src = tmp_path / "src.bin"
    dst = tmp_path / "dst.bin"
    src.write_bytes(b"data")
    dst.write_bytes(b"old")
    move_file(src, dst)
    assert not src.exists()
    assert dst.read_bytes() == b"data"


def test_remove_tree(tmp_path):
    tree = tmp_path / "tree"
    (tree / "sub").mkdir(parents=True)
    (tree / "sub" / "file").write_bytes(b"")
    assert remove_tree(tree)
    assert not tree.exists()
    # Already gone is fine.
    assert remove_tree(tree)


def test_scratch_dirs(tmp_path):
    root = tmp_path / "scratch"
    with ScratchDirs(root) as scratch:
        first = scratch.create()
        second = scratch.create()
        assert first != second
        assert first.is_dir() and second.is_dir()
        assert first.parent == root
        (first / "file").write_bytes(b"data")
        scratch.close(first)
        assert not first.exists()
        assert second.is_dir()
    assert not second.exists()
    assert os.listdir(root) == []


def test_scratch_dirs_cleanup_on_error(tmp_path):
    created = []
    with pytest.raises(RuntimeError):
        with ScratchDirs(tmp_path) as scratch:
            created.append(scratch.create())
            raise RuntimeError("boom")
    assert not created[0].exists()
