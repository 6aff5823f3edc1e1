import os
from logging import NullHandler, getLogger
from pathlib import Path
from typing import Union

from hacpatch.backend import ToolHandle, decode_output
from hacpatch.config import Config
from hacpatch.constants import NSP_EXT, XCI_EXT
from hacpatch.exceptions import InvalidFileException, PipelineError
from hacpatch.nsp import PackageHandle
from hacpatch.utils import ScratchDirs, ext_matches, get_fmt_size, iter_files, move_file

logger = getLogger(__name__)
logger.addHandler(NullHandler())


def convert(
    xci: Union[str, os.PathLike[str]],
    outdir: Union[str, os.PathLike[str]],
    converter: ToolHandle,
    config: Config,
) -> list[PackageHandle]:
    """Convert a cartridge image (XCI) into one or more NSPs placed in ``outdir``."""
    xci = Path(xci)
    if not xci.is_file() or not ext_matches(xci, XCI_EXT):
        raise InvalidFileException(f"{xci} is not a XCI file")

    logger.info(f"Converting {xci} ({get_fmt_size(xci)}) to NSP")
    os.makedirs(outdir, exist_ok=True)
    nsps = []
    with ScratchDirs(config.temp_dir) as scratch:
        work_dir = scratch.create()
        converted_dir = scratch.create()
        ret = converter.run(
            "convert",
            capture_stdout=False,
            keyset=config.prodkeys_path,
            tempdir=work_dir,
            outdir=converted_dir,
            path=xci,
        )
        if ret.returncode != 0:
            # The converter can still have written usable packages.
            logger.warning(
                f"Encountered an error while converting {xci} to NSP\n{decode_output(ret.stderr)}"
            )

        for path in iter_files(converted_dir, NSP_EXT):
            dest = Path(outdir, path.name)
            move_file(path, dest)
            nsps.append(PackageHandle.open(dest))

    if not nsps:
        raise PipelineError(f"Failed to convert {xci} to NSP")
    logger.info(f"Converted to {', '.join(str(nsp) for nsp in nsps)}")
    return nsps
