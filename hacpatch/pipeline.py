"""Unpacking, updating and repacking of packages.

:class:`Patcher` strings the tools together. Wherever more than one tool can do a job, they are
tried in priority order and a step only fails once every one of them has.
"""

import os
import shutil
from logging import NullHandler, getLogger
from pathlib import Path
from typing import Callable, NamedTuple, Optional, TypeVar, Union

from hacpatch import ticket
from hacpatch.backend import Host, ToolHandle, ToolKind, current_host, is_available, reader_kinds
from hacpatch.config import Config
from hacpatch.constants import NSP_EXT, PACKER_BACKUP_DIR, PATCHED_SUFFIX, REPACKED_SUFFIX
from hacpatch.exceptions import (
    HacPatchError,
    InvalidFileException,
    MultiError,
    PipelineError,
    ToolAcquisitionError,
    ToolExecutionError,
)
from hacpatch.nacp import ControlMetadata, find_nacp
from hacpatch.nca import ContentCategory, ContentUnit, scan
from hacpatch.nsp import PackageHandle
from hacpatch.utils import ScratchDirs, move_file, remove_tree, truncate_program_id, validate_program_id

logger = getLogger(__name__)
logger.addHandler(NullHandler())

T = TypeVar("T")

# Used when neither the configured extractor nor any reader on the host can do an operation.
EXTRACTOR_FALLBACKS = {
    "unpack_pfs0": (ToolKind.HACTOOL,),
    "unpack_nca": (ToolKind.HACTOOL,),
}


class UnpackResult(NamedTuple):
    program_id: Optional[str]
    romfs_dir: Path
    exefs_dir: Path


class Patcher:
    """Runs the unpack, update and repack pipelines.

    Tools can be passed in directly. Any which aren't are acquired from the configuration the first
    time they are needed.
    """

    def __init__(
        self,
        config: Config,
        readers: Optional[list[ToolHandle]] = None,
        nsp_extractors: Optional[list[ToolHandle]] = None,
        nca_extractors: Optional[list[ToolHandle]] = None,
        packer: Optional[ToolHandle] = None,
        host: Optional[Host] = None,
        workdir: Union[str, os.PathLike[str], None] = None,
    ):
        self.config = config
        self.host = host
        self.workdir = Path(workdir) if workdir is not None else None
        self._readers = readers
        self._nsp_extractors = nsp_extractors
        self._nca_extractors = nca_extractors
        self._packer = packer

    @property
    def readers(self) -> list[ToolHandle]:
        if self._readers is None:
            self._readers = [ToolHandle.acquire(kind, self.config, self.host) for kind in reader_kinds(self.host)]
        return self._readers

    def _acquire(self, kind: ToolKind) -> ToolHandle:
        reader = next((t for t in self.readers if t.kind == kind), None)
        return reader or ToolHandle.acquire(kind, self.config, self.host)

    def _extractors(self, kind: str, operation: str) -> list[ToolHandle]:
        """The configured extractor followed by the readers which support ``operation``.

        A configured extractor with no binary for this host is skipped.
        """
        host = self.host or current_host()
        preferred = ToolKind(kind)
        tools = []
        if is_available(preferred, host):
            tools.append(self._acquire(preferred))
        else:
            logger.warning(f"{preferred} is not available on {host[0]}/{host[1]}, trying other tools")
        tools.extend(t for t in self.readers if t.kind != preferred and t.supports(operation))
        if not tools:
            for fallback in EXTRACTOR_FALLBACKS.get(operation, ()):
                if is_available(fallback, host):
                    tools.append(self._acquire(fallback))
        if not tools:
            raise ToolAcquisitionError(preferred, "resolve", f"no tool on {host[0]}/{host[1]} supports {operation}")
        logger.debug(f"Extractors for {operation}: {', '.join(str(t.kind) for t in tools)}")
        return tools

    @property
    def nsp_extractors(self) -> list[ToolHandle]:
        if self._nsp_extractors is None:
            self._nsp_extractors = self._extractors(self.config.nsp_extractor, "unpack_pfs0")
        return self._nsp_extractors

    @property
    def nca_extractors(self) -> list[ToolHandle]:
        if self._nca_extractors is None:
            self._nca_extractors = self._extractors(self.config.nca_extractor, "unpack_nca")
        return self._nca_extractors

    @property
    def packer(self) -> ToolHandle:
        if self._packer is None:
            self._packer = ToolHandle.acquire(ToolKind.HACPACK, self.config, self.host)
        return self._packer

    @property
    def keys_path(self) -> Path:
        return self.config.titlekeys_path

    @property
    def keyset(self) -> Path:
        return self.config.prodkeys_path

    def _acquire_tools(self):
        """Resolve every tool up front so that a missing one fails before any work is done."""
        for role, tools in (
            ("readers", self.readers),
            ("NSP extractors", self.nsp_extractors),
            ("NCA extractors", self.nca_extractors),
            ("packer", [self.packer]),
        ):
            logger.debug(f"Using {', '.join(str(t.kind) for t in tools)} as {role}")

    # Fallback helpers

    def _try_each(self, tools: list[ToolHandle], action: Callable[[ToolHandle], T], description: str) -> T:
        errors = []
        for tool in tools:
            try:
                return action(tool)
            except ToolExecutionError as e:
                logger.warning(f"{description} with {tool.kind} failed")
                errors.append(e)
        raise MultiError(errors)

    def _find_units(
        self,
        directory: Union[str, os.PathLike[str]],
        wanted: set[ContentCategory],
    ) -> Optional[dict[ContentCategory, list[ContentUnit]]]:
        for reader in self.readers:
            logger.info(f"Using {reader.kind} as reader")
            found = scan(reader, directory, wanted)
            if all(found.get(category) for category in wanted):
                return found
        return None

    def _find_program(self, directory: Path, package: PackageHandle, role: str) -> ContentUnit:
        found = self._find_units(directory, {ContentCategory.PROGRAM})
        if found is None:
            raise PipelineError(f"Failed to find {role} NCA in '{package.path}'")
        unit = found[ContentCategory.PROGRAM][0]
        logger.debug(f"{role} NCA: {unit}")
        return unit

    def _inspect_any(
        self,
        path: Union[str, os.PathLike[str]],
        category: Optional[ContentCategory] = None,
    ) -> Optional[ContentUnit]:
        for reader in self.readers:
            try:
                unit = ContentUnit.inspect(reader, path)
            except HacPatchError as e:
                logger.warning(f"{reader.kind}: {e}")
                continue
            if category is None or unit.category == category:
                return unit
        return None

    # Pipeline steps

    def _require_keyset(self):
        if not self.keyset.is_file():
            raise InvalidFileException(f"Failed to find keyfile at {self.keyset}")

    def _unpack_package(self, package: PackageHandle, dest: Path):
        os.makedirs(dest, exist_ok=True)
        self._try_each(self.nsp_extractors, lambda tool: package.unpack(tool, dest), f"Extracting {package.path}")

    def _derive_key(self, package: PackageHandle, data_dir: Path):
        try:
            package.derive_key(data_dir)
        except (HacPatchError, OSError) as e:
            logger.warning(str(e))

    def _store_keys(self, *packages: Optional[PackageHandle]):
        records = [p.key_record for p in packages if p is not None and p.key_record is not None]
        ticket.persist(records, self.keys_path)

    def _extract_fs(self, base: ContentUnit, aux: ContentUnit, romfs_dir: Path, exefs_dir: Path):
        # A failed extraction is deliberately not fatal. Whatever was extracted is kept.
        try:
            self._try_each(
                self.nca_extractors,
                lambda tool: base.unpack(tool, aux, romfs_dir, exefs_dir),
                f"Extracting {base.path}",
            )
        except MultiError as e:
            logger.warning(f"Ignoring failed romfs/exefs extraction: {e}")

    def _read_metadata(self, control: ContentUnit, scratch: ScratchDirs) -> Optional[ControlMetadata]:
        romfs_dir = scratch.create()
        try:
            self._try_each(
                self.nca_extractors,
                lambda tool: control.extract_romfs(tool, romfs_dir),
                f"Extracting romfs of {control.path}",
            )
            nacp_path = find_nacp(romfs_dir)
            if nacp_path is None:
                raise PipelineError("Couldn't find NACP file, should be due to improper extraction")
            metadata = ControlMetadata.read(nacp_path)
            logger.info(f"Read metadata: {metadata}")
            return metadata
        except (HacPatchError, OSError) as e:
            logger.warning(f"Failed to read control metadata: {e}")
            return None
        finally:
            scratch.close(romfs_dir)

    def _pack(self, program_id: str, romfs_dir: Path, exefs_dir: Path, control: ContentUnit, nca_dir: Path):
        """Pack the romfs/exefs trees and generate the meta NCA next to it in ``nca_dir``."""
        patched_path = ContentUnit.pack(self.packer, program_id, self.keyset, romfs_dir, exefs_dir, nca_dir)
        patched = self._inspect_any(patched_path)
        if patched is None:
            raise PipelineError("Failed to find Patched NCA")
        ContentUnit.create_meta(self.packer, program_id, self.keyset, patched, control, nca_dir)

    def _finish(self, program_id: str, nca_dir: Path, outdir: Path, suffix: str) -> PackageHandle:
        packed = PackageHandle.pack(self.packer, program_id, self.keyset, nca_dir, outdir)
        dest = outdir / f"{program_id}{suffix}.{NSP_EXT}"
        logger.info(f"Moving {packed.path} to {dest}")
        move_file(packed.path, dest)
        return PackageHandle.open(dest)

    def _remove_packer_backup(self):
        workdir = self.workdir if self.workdir is not None else Path.cwd()
        remove_tree(workdir / PACKER_BACKUP_DIR)

    # Public operations

    def unpack(
        self,
        base: PackageHandle,
        update: Optional[PackageHandle],
        outdir: Union[str, os.PathLike[str]],
    ) -> UnpackResult:
        """Unpack a base package, and optionally an update on top of it, to romfs/exefs trees.

        Parameters
        ----------
        base:
            The base package.
        update:
            An optional update package whose program NCA is applied over the base one.
        outdir:
            The directory to unpack into. The packages are extracted to ``basedata`` and
            ``updatedata`` within it, and the filesystems to ``romfs`` and ``exefs``.

        Returns
        -------
        The lower-cased program id of the base program NCA (None if the reader didn't report one) and
        the romfs and exefs directories. The directories may be empty or missing if extraction failed.
        """
        outdir = Path(outdir)
        base_data_dir = outdir / "basedata"
        update_data_dir = outdir / "updatedata"

        # Must happen before anything is unpacked so that stale keys are never used.
        ticket.clear(self.keys_path)

        self._unpack_package(base, base_data_dir)
        self._derive_key(base, base_data_dir)
        if update is not None:
            self._unpack_package(update, update_data_dir)
            self._derive_key(update, update_data_dir)
        self._store_keys(base, update)

        base_unit = self._find_program(base_data_dir, base, "Base")
        aux_unit = base_unit
        if update is not None:
            aux_unit = self._find_program(update_data_dir, update, "Update")

        romfs_dir = outdir / "romfs"
        exefs_dir = outdir / "exefs"
        self._extract_fs(base_unit, aux_unit, romfs_dir, exefs_dir)

        program_id = base_unit.program_id.lower() if base_unit.program_id else None
        return UnpackResult(program_id, romfs_dir, exefs_dir)

    def update(
        self,
        base: PackageHandle,
        update: PackageHandle,
        outdir: Union[str, os.PathLike[str]],
    ) -> PackageHandle:
        """Apply an update package to a base package, producing a single patched package in outdir."""
        self._require_keyset()
        outdir = Path(outdir)
        self._acquire_tools()
        os.makedirs(outdir, exist_ok=True)

        try:
            with ScratchDirs(self.config.temp_dir) as scratch:
                base_data_dir = scratch.create()
                update_data_dir = scratch.create()

                ticket.clear(self.keys_path)
                self._unpack_package(base, base_data_dir)
                self._unpack_package(update, update_data_dir)
                self._derive_key(base, base_data_dir)
                self._derive_key(update, update_data_dir)
                self._store_keys(base, update)

                base_unit = self._find_program(base_data_dir, base, "Base")

                wanted = {ContentCategory.PROGRAM, ContentCategory.CONTROL}
                found = self._find_units(update_data_dir, wanted)
                if found is None:
                    raise PipelineError(
                        f"Failed to find {ContentCategory.PROGRAM} and/or {ContentCategory.CONTROL} NCA "
                        f"in '{update.path}'"
                    )
                update_unit = found[ContentCategory.PROGRAM][0]
                control_unit = found[ContentCategory.CONTROL][0]
                logger.debug(f"Update NCA: {update_unit}")
                logger.debug(f"Control NCA: {control_unit}")

                metadata = self._read_metadata(control_unit, scratch)

                patch_dir = scratch.create()
                romfs_dir = patch_dir / "romfs"
                exefs_dir = patch_dir / "exefs"
                self._extract_fs(base_unit, update_unit, romfs_dir, exefs_dir)

                # Moved rather than copied, it can be large.
                nca_dir = patch_dir / "nca"
                os.makedirs(nca_dir, exist_ok=True)
                control_dest = nca_dir / control_unit.path.name
                move_file(control_unit.path, control_dest)
                control_unit = control_unit.moved_to(control_dest)

                # Everything needed from the extracted packages has been taken.
                scratch.close(base_data_dir)
                scratch.close(update_data_dir)

                if not base_unit.program_id:
                    raise PipelineError(f"Failed to find program id in '{base_unit.path}'")
                program_id = truncate_program_id(base_unit.program_id)
                logger.debug(f"Selected program id {program_id} for packing")

                self._pack(program_id, romfs_dir, exefs_dir, control_unit, nca_dir)
                patched = self._finish(program_id, nca_dir, outdir, PATCHED_SUFFIX)
                patched.metadata = metadata
        finally:
            self._remove_packer_backup()

        return patched

    def repack(
        self,
        control_path: Union[str, os.PathLike[str]],
        program_id: str,
        romfs_dir: Union[str, os.PathLike[str]],
        exefs_dir: Union[str, os.PathLike[str]],
        outdir: Union[str, os.PathLike[str]],
    ) -> PackageHandle:
        """Pack romfs/exefs trees back into a package, using an existing Control NCA."""
        program_id = truncate_program_id(program_id)
        validate_program_id(program_id)
        for fs_dir in (romfs_dir, exefs_dir):
            if not os.path.isdir(fs_dir):
                raise InvalidFileException(f"{fs_dir} is not a directory")
        self._require_keyset()
        outdir = Path(outdir)
        os.makedirs(outdir, exist_ok=True)

        control_unit = self._inspect_any(control_path, ContentCategory.CONTROL)
        if control_unit is None:
            raise InvalidFileException(f"'{control_path}' is not a Control Type NCA")
        logger.debug(f"Selected program id {program_id} for packing")

        try:
            with ScratchDirs(self.config.temp_dir) as scratch:
                nca_dir = scratch.create()
                self._pack(program_id, Path(romfs_dir), Path(exefs_dir), control_unit, nca_dir)
                shutil.copyfile(control_unit.path, nca_dir / control_unit.path.name)
                repacked = self._finish(program_id, nca_dir, outdir, REPACKED_SUFFIX)
        finally:
            self._remove_packer_backup()

        return repacked
