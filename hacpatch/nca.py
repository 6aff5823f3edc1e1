import os
import os.path as op
from dataclasses import dataclass
from enum import Enum
from logging import NullHandler, getLogger
from pathlib import Path
from typing import Iterable, Optional, Union

from hacpatch.backend import ToolHandle, decode_output
from hacpatch.constants import NCA_EXT
from hacpatch.exceptions import ClassificationError, HacPatchError, InvalidFileException, ToolExecutionError
from hacpatch.utils import ext_matches, files_by_size, iter_files

logger = getLogger(__name__)
logger.addHandler(NullHandler())

# Readers print this for every unit they can't find a title key for. It's expected when only the
# program unit's key is known.
BENIGN_STDERR = "failed to match key"


class ContentCategory(str, Enum):
    PROGRAM = "Program"
    META = "Meta"
    CONTROL = "Control"
    MANUAL = "Manual"
    DATA = "Data"
    PUBLIC_DATA = "PublicData"

    def __str__(self):
        return self.value

    @classmethod
    def parse(cls, tag: str) -> "ContentCategory":
        try:
            return cls(tag)
        except ValueError:
            raise ClassificationError(f"Unknown content type: {tag!r}") from None


def _filter_stderr(stderr: str) -> str:
    return "\n".join(line for line in stderr.splitlines() if BENIGN_STDERR not in line.lower())


def _last_token(stdout: str, label: str) -> Optional[str]:
    """The last whitespace separated token of the first line containing ``label``."""
    for line in stdout.splitlines():
        if label in line:
            tokens = line.split()
            if tokens:
                return tokens[-1]
    return None


@dataclass(frozen=True)
class ContentUnit:
    """A single encrypted content archive (NCA) from a package."""

    path: Path
    program_id: Optional[str]
    category: ContentCategory

    @classmethod
    def inspect(cls, reader: ToolHandle, path: Union[str, os.PathLike[str]]) -> "ContentUnit":
        """Identify the program id and content type of an NCA using a reader tool.

        The reader tools don't reliably fail on files they can't read, so the extension is checked
        first and the report is parsed regardless of the exit status.
        """
        path = Path(path)
        if not path.is_file() or not ext_matches(path, NCA_EXT):
            raise InvalidFileException(f"{path} is not a NCA file")

        logger.info(f"Identifying program id and content type of {path}")
        ret = reader.run("info", path=path)
        stderr = _filter_stderr(decode_output(ret.stderr))
        if ret.returncode != 0:
            logger.warning(
                f"{reader.kind} exited with status {ret.returncode} while viewing info of {path}"
                + (f"\n{stderr}" if stderr.strip() else "")
            )
        elif stderr.strip():
            logger.warning(f"{reader.kind}: {stderr}")
        stdout = decode_output(ret.stdout)

        program_id = None
        if reader.id_label is not None:
            program_id = _last_token(stdout, reader.id_label)
        logger.debug(f"Program id: {program_id}")

        tag = _last_token(stdout, "Content Type:")
        if tag is None:
            raise ClassificationError(f"Failed to process content type of {path}")
        try:
            category = ContentCategory.parse(tag)
        except ClassificationError:
            logger.warning(f"Dumping stdout of {reader.kind} for {path}:\n{stdout}")
            raise
        logger.debug(f"Content type: {category}")

        return cls(path, program_id, category)

    def moved_to(self, path: Union[str, os.PathLike[str]]) -> "ContentUnit":
        return ContentUnit(Path(path), self.program_id, self.category)

    def unpack(
        self,
        extractor: ToolHandle,
        aux: "ContentUnit",
        romfs_dir: Union[str, os.PathLike[str]],
        exefs_dir: Union[str, os.PathLike[str]],
    ):
        """Extract the romfs and exefs of this unit, with ``aux`` applied over it as a patch.

        Parameters
        ----------
        extractor:
            The tool to extract with.
        aux:
            The unit to apply on top of this one. Passing this unit itself extracts it unpatched.
        romfs_dir:
            Destination for the romfs tree.
        exefs_dir:
            Destination for the exefs tree.
        """
        logger.info(f"Extracting {self.path} with {aux.path} applied")
        extractor.run_checked(
            "unpack_nca",
            "Encountered an error while unpacking NCAs",
            base=self.path,
            aux=aux.path,
            romfs=romfs_dir,
            exefs=exefs_dir,
        )
        logger.info(f"Extracted romfs to {romfs_dir} and exefs to {exefs_dir}")

    def extract_romfs(self, extractor: ToolHandle, romfs_dir: Union[str, os.PathLike[str]]):
        ret = extractor.run("extract_romfs", path=self.path, romfs=romfs_dir)
        if ret.returncode != 0:
            stderr = decode_output(ret.stderr)
            logger.warning(f"{extractor.kind} failed to extract the romfs of {self.path}\n{stderr}")
            raise ToolExecutionError(
                "Encountered an error while extracting romfs",
                kind=extractor.kind,
                returncode=ret.returncode,
                stderr=stderr,
            )
        logger.info(f"Extracted romfs of {self.path} to {romfs_dir}")

    @staticmethod
    def pack(
        packer: ToolHandle,
        program_id: str,
        keyset: Union[str, os.PathLike[str]],
        romfs_dir: Union[str, os.PathLike[str]],
        exefs_dir: Union[str, os.PathLike[str]],
        outdir: Union[str, os.PathLike[str]],
    ) -> Path:
        """Pack romfs and exefs trees into a program NCA, returning the path of the new file."""
        logger.info(f"Packing {romfs_dir} and {exefs_dir} to {outdir}")
        # The output directory may already hold other NCAs, so look for the one which wasn't there.
        existing = set(iter_files(outdir, NCA_EXT)) if op.isdir(outdir) else set()
        packer.run_checked(
            "pack_program",
            "Encountered an error while packing FS files to NCA",
            keyset=keyset,
            romfs=romfs_dir,
            exefs=exefs_dir,
            program_id=program_id,
            outdir=outdir,
        )
        for fpath in sorted(os.listdir(outdir)):
            path = Path(outdir, fpath)
            if path.is_file() and ext_matches(path, NCA_EXT) and path not in existing:
                logger.info(f"Packed {path}")
                return path
        raise ToolExecutionError("Failed to pack romfs/exefs to NCA", kind=packer.kind)

    @staticmethod
    def create_meta(
        packer: ToolHandle,
        program_id: str,
        keyset: Union[str, os.PathLike[str]],
        program: "ContentUnit",
        control: "ContentUnit",
        outdir: Union[str, os.PathLike[str]],
    ):
        logger.info(f"Generating Meta NCA from {program.path} and {control.path}")
        packer.run_checked(
            "create_meta",
            "Encountered an error while generating Meta NCA",
            keyset=keyset,
            program=program.path,
            control=control.path,
            program_id=program_id,
            outdir=outdir,
        )
        logger.info(f"Generated Meta NCA in {outdir}")


def scan(
    reader: ToolHandle,
    directory: Union[str, os.PathLike[str]],
    wanted: Iterable[ContentCategory],
) -> dict[ContentCategory, list[ContentUnit]]:
    """Find the NCAs of the wanted content types in a directory tree.

    Files are inspected from largest to smallest, so the first unit of each content type is the
    largest one. Files which can't be inspected are skipped. Content types with no matches are
    missing from the result.
    """
    wanted = set(wanted)
    found: dict[ContentCategory, list[ContentUnit]] = {}
    for path in files_by_size(directory, NCA_EXT):
        try:
            unit = ContentUnit.inspect(reader, path)
        except HacPatchError as e:
            logger.warning(str(e))
            continue
        if unit.category in wanted:
            found.setdefault(unit.category, []).append(unit)
    return found
