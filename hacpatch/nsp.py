import os
from logging import NullHandler, getLogger
from pathlib import Path
from typing import Optional, Union

from hacpatch.backend import ToolHandle
from hacpatch.constants import NSP_EXT, TICKET_EXT
from hacpatch.exceptions import InvalidFileException, KeyDerivationError
from hacpatch.nacp import ControlMetadata
from hacpatch.ticket import KeyRecord
from hacpatch.utils import ext_matches, first_file

logger = getLogger(__name__)
logger.addHandler(NullHandler())


class PackageHandle:
    """A package (NSP) file on disk, and the title key derived from it, if any."""

    def __init__(self, path: Union[str, os.PathLike[str]]):
        self.path = Path(path)
        self.key_record: Optional[KeyRecord] = None
        # Filled in for packages produced by an update.
        self.metadata: Optional[ControlMetadata] = None

    @classmethod
    def open(cls, path: Union[str, os.PathLike[str]]) -> "PackageHandle":
        path = Path(path)
        if not path.is_file() or not ext_matches(path, NSP_EXT):
            raise InvalidFileException(f"{path} is not a NSP file")
        return cls(path)

    @property
    def name(self) -> str:
        return self.path.name

    def unpack(self, extractor: ToolHandle, dest: Union[str, os.PathLike[str]]):
        """Extract the contents of the package's PFS0 filesystem into ``dest``."""
        logger.info(f"Extracting {self.path} to {dest}")
        extractor.run_checked("unpack_pfs0", f"Failed to extract {self.path}", outdir=dest, path=self.path)
        logger.info(f"Extracted {self.path}")

    def derive_key(self, data_dir: Union[str, os.PathLike[str]]):
        """Read the title key from the first ticket in the unpacked package.
        Does nothing if a key has already been derived."""
        if self.key_record is not None:
            logger.info(f"Title key already derived for {self.path}")
            return
        logger.info(f"Deriving title key for {self.path}")
        ticket_path = first_file(data_dir, TICKET_EXT)
        if ticket_path is None:
            raise KeyDerivationError(f"Couldn't derive title key, {self.path} doesn't have a .tik file")
        self.key_record = KeyRecord.from_ticket(ticket_path)
        logger.info("Derived title key successfully")

    @classmethod
    def pack(
        cls,
        packer: ToolHandle,
        program_id: str,
        keyset: Union[str, os.PathLike[str]],
        nca_dir: Union[str, os.PathLike[str]],
        outdir: Union[str, os.PathLike[str]],
    ) -> "PackageHandle":
        """Assemble the NCAs in ``nca_dir`` into ``<outdir>/<program_id>.nsp``."""
        logger.info(f"Packing NCAs in {nca_dir} to NSP")
        packer.run_checked(
            "pack_nsp",
            "Encountered an error while packing NCAs to NSP",
            keyset=keyset,
            ncadir=nca_dir,
            program_id=program_id,
            outdir=outdir,
        )
        logger.info(f"Packed NCAs to NSP in {outdir}")
        return cls.open(Path(outdir, f"{program_id}.{NSP_EXT}"))

    def __str__(self):
        return str(self.path)

    def __repr__(self):
        return f"PackageHandle({str(self.path)!r})"
