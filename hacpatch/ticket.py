"""Title keys derived from tickets.

Only the 'common' title key type is supported: the rights id and the title key are read from fixed
offsets in the ticket.
"""

import os
from dataclasses import dataclass
from io import SEEK_SET, BufferedReader
from logging import NullHandler, getLogger
from typing import Iterable, Union

from hacpatch.constants import RIGHTS_ID_OFFSET, TICKET_FIELD_SIZE, TITLE_KEY_OFFSET
from hacpatch.exceptions import InvalidFileException

logger = getLogger(__name__)
logger.addHandler(NullHandler())


@dataclass(frozen=True)
class KeyRecord:
    rights_id: bytes
    title_key: bytes

    def __str__(self):
        return f"{self.rights_id.hex()}={self.title_key.hex()}"

    @classmethod
    def from_ticket(cls, ticket_path: Union[str, os.PathLike[str]]) -> "KeyRecord":
        logger.info(f"Reading ticket {ticket_path}")
        with open(ticket_path, "rb") as f:
            rights_id = _read_field(f, RIGHTS_ID_OFFSET)
            title_key = _read_field(f, TITLE_KEY_OFFSET)
        record = cls(rights_id, title_key)
        logger.debug(f"Title key: {record}")
        return record


def _read_field(fobj: BufferedReader, offset: int) -> bytes:
    fobj.seek(offset, SEEK_SET)
    data = fobj.read(TICKET_FIELD_SIZE)
    if len(data) != TICKET_FIELD_SIZE:
        raise InvalidFileException(
            f"{fobj.name} is too short to be a ticket (expected 0x{TICKET_FIELD_SIZE:X} bytes at 0x{offset:X})"
        )
    return data


def extract(ticket_path: Union[str, os.PathLike[str]]) -> KeyRecord:
    """Read the rights id and title key out of a ticket file.

    A ticket too short to hold either field raises ``InvalidFileException`` rather than an
    ``OSError``. Errors opening the file are not wrapped.
    """
    return KeyRecord.from_ticket(ticket_path)


def persist(records: Iterable[KeyRecord], dest: Union[str, os.PathLike[str]]):
    """Overwrite ``dest`` with one ``rights_id=title_key`` line per record."""
    logger.info(f"Storing title keys to {dest}")
    os.makedirs(os.path.dirname(os.path.abspath(dest)), exist_ok=True)
    with open(dest, "w", newline="\n") as f:
        for record in records:
            f.write(f"{record}\n")


def clear(dest: Union[str, os.PathLike[str]]):
    """Remove the keys file so that keys from an earlier run are never picked up."""
    try:
        os.remove(dest)
    except FileNotFoundError:
        pass
