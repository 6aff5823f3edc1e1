import os
import os.path as op
import shutil
import stat
import string
import tempfile
from logging import NullHandler, getLogger
from pathlib import Path
from typing import Iterator, Optional, Union

from hacpatch.constants import PROGRAM_ID_LEN
from hacpatch.exceptions import InvalidFileException

logger = getLogger(__name__)
logger.addHandler(NullHandler())


def ext_matches(path: Union[str, os.PathLike[str]], ext: str) -> bool:
    """Case-insensitive check of a path's extension. ``ext`` is given without the dot."""
    _, suffix = op.splitext(os.fspath(path))
    return suffix[1:].lower() == ext.lower()


def str_truncate(s: str, new_len: int) -> str:
    return s[:new_len]


def truncate_program_id(program_id: str) -> str:
    """Lower-case a program id and cut it down to the length the packer accepts."""
    return str_truncate(program_id.lower(), PROGRAM_ID_LEN)


def validate_program_id(program_id: str):
    if len(program_id) != PROGRAM_ID_LEN or not all(c in string.hexdigits for c in program_id):
        raise InvalidFileException(
            f"len: {len(program_id)} {program_id!r} is an invalid program id, it should be hexadecimal "
            f"with a size of 8 bytes, i.e. {PROGRAM_ID_LEN} hexadecimal characters"
        )


def move_file(src: Union[str, os.PathLike[str]], dst: Union[str, os.PathLike[str]]):
    """Move a file, replacing ``dst``. Falls back to copy and delete across filesystems."""
    try:
        os.replace(src, dst)
    except OSError as e:
        logger.warning(f"Renaming {src} to {dst} failed ({e}), falling back to copy")
        shutil.copyfile(src, dst)
        os.remove(src)


def set_executable_bit(path: Union[str, os.PathLike[str]]):
    mode = os.stat(path).st_mode
    os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    logger.info(f"Set executable permission on {path}")


def build_jobs() -> int:
    """Number of parallel build jobs: half the detected CPUs, at least one."""
    return max(1, (os.cpu_count() or 1) // 2)


def get_fmt_size(path: Union[str, os.PathLike[str]]) -> str:
    size = float(os.stat(path).st_size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"


def iter_files(root: Union[str, os.PathLike[str]], ext: Optional[str] = None) -> Iterator[Path]:
    """Recursively yield the files under root, optionally only those with the given extension."""
    for dirpath, _, files in os.walk(root):
        for fname in sorted(files):
            if ext is None or ext_matches(fname, ext):
                yield Path(dirpath, fname)


def files_by_size(root: Union[str, os.PathLike[str]], ext: Optional[str] = None) -> list[Path]:
    """Files under root ordered from largest to smallest.
    Files which can't be stat'ed sort last rather than aborting the walk."""

    def _size(path: Path) -> int:
        try:
            return path.stat().st_size
        except OSError as e:
            logger.warning(f"Unable to read size of {path}: {e}")
            return 0

    return sorted(iter_files(root, ext), key=_size, reverse=True)


def first_file(root: Union[str, os.PathLike[str]], ext: str) -> Optional[Path]:
    return next(iter_files(root, ext), None)


def remove_tree(path: Union[str, os.PathLike[str]]) -> bool:
    """Remove a directory tree, logging instead of raising. Returns whether the tree is gone."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to clean up {path}: {e}")
        return False
    return True


class ScratchDirs:
    """Owns a set of temporary directories created under ``root``.

    Every directory created through :meth:`create` is removed when the context exits, whether
    that is due to an error or not. :meth:`close` releases a directory ahead of time.
    """

    def __init__(self, root: Union[str, os.PathLike[str]], prefix: str = "hacpatch-"):
        self.root = Path(root)
        self.prefix = prefix
        self._dirs: list[Path] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close_all()

    def create(self) -> Path:
        os.makedirs(self.root, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=self.prefix, dir=self.root))
        self._dirs.append(path)
        return path

    def close(self, path: Path):
        logger.info(f"Cleaning up {path}")
        if path in self._dirs:
            self._dirs.remove(path)
        remove_tree(path)

    def close_all(self):
        for path in reversed(self._dirs[:]):
            self.close(path)
