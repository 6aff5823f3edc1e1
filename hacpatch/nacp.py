import os
import os.path as op
import struct
from dataclasses import dataclass
from io import SEEK_SET
from logging import NullHandler, getLogger
from pathlib import Path
from typing import Optional, Union

from hacpatch.constants import NACP_FILENAME
from hacpatch.exceptions import InvalidFileException
from hacpatch.utils import iter_files

logger = getLogger(__name__)
logger.addHandler(NullHandler())

# Only the first title entry is read.
TITLE_ENTRY_OFFSET = 0x0
TITLE_ENTRY_FMT = "512s256s"
APPLICATION_VERSION_OFFSET = 0x3060
APPLICATION_VERSION_FMT = "16s"

FORBIDDEN_CHARS = frozenset('<>:"/\\|?*') | frozenset(chr(i) for i in range(0x20))


def sanitise(raw: bytes) -> str:
    """Decode a fixed size NACP string, dropping anything that can't go in a filename."""
    text = raw.decode("utf-8", errors="replace")
    return "".join(c for c in text if c != "\ufffd" and c not in FORBIDDEN_CHARS)


@dataclass(frozen=True)
class ControlMetadata:
    """Application details read from a control.nacp file."""

    name: str
    publisher: str
    version: str

    @classmethod
    def read(cls, nacp_path: Union[str, os.PathLike[str]]) -> "ControlMetadata":
        if not op.isfile(nacp_path) or op.basename(nacp_path) != NACP_FILENAME:
            raise InvalidFileException(f"{nacp_path} is not a NACP file")
        logger.info(f"Reading NACP data from {nacp_path}")
        with open(nacp_path, "rb") as f:
            f.seek(TITLE_ENTRY_OFFSET, SEEK_SET)
            title_data = f.read(struct.calcsize(TITLE_ENTRY_FMT))
            f.seek(APPLICATION_VERSION_OFFSET, SEEK_SET)
            version_data = f.read(struct.calcsize(APPLICATION_VERSION_FMT))
        try:
            name, publisher = struct.unpack(TITLE_ENTRY_FMT, title_data)
            (version,) = struct.unpack(APPLICATION_VERSION_FMT, version_data)
        except struct.error:
            raise InvalidFileException(f"{nacp_path} is too short to be a NACP file") from None
        return cls(sanitise(name), sanitise(publisher), sanitise(version))

    def __str__(self):
        return f"{self.name} v{self.version} ({self.publisher})"


def find_nacp(root: Union[str, os.PathLike[str]]) -> Optional[Path]:
    """The first control.nacp found under root."""
    for path in iter_files(root):
        if path.name == NACP_FILENAME:
            return path
    return None
