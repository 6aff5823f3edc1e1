"""External tools driven by hacpatch.

Every tool is described by a row in ``TOOL_TABLE``: the label its info report uses for the program
id, where it can be obtained from on each host, how to build it, and the argument templates for the
operations it supports. A :class:`ToolHandle` pairs a tool kind with a resolved executable.
"""

import os
import platform
import subprocess
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from importlib import resources
from logging import NullHandler, getLogger
from pathlib import Path
from typing import Iterable, Mapping, Optional, Union

from hacpatch.cache import Cache
from hacpatch.compressors import Compressor, compression_suffixes
from hacpatch.config import Config
from hacpatch.constants import Platform, machine_map, platform_map
from hacpatch.exceptions import MultiError, ToolAcquisitionError, ToolExecutionError
from hacpatch.utils import build_jobs, set_executable_bit

logger = getLogger(__name__)
logger.addHandler(NullHandler())


Host = tuple[str, str]

WINDOWS_X64: Host = (Platform.WINDOWS.value, "x86_64")
LINUX_X64: Host = (Platform.LINUX.value, "x86_64")
LINUX_ARM64: Host = (Platform.LINUX.value, "aarch64")
MAC_X64: Host = (Platform.MAC.value, "x86_64")
MAC_ARM64: Host = (Platform.MAC.value, "aarch64")


def current_host() -> Host:
    return (platform_map[platform.system()], machine_map[platform.machine()])


class ToolKind(str, Enum):
    HACPACK = "hacpack"
    HACTOOL = "hactool"
    HACTOOLNET = "hactoolnet"
    HAC2L = "hac2l"
    FOURNXCI = "4nxci"

    def __str__(self):
        return self.value

    def filename(self, plat: Optional[str] = None) -> str:
        plat = plat or current_host()[0]
        if plat == Platform.WINDOWS:
            return f"{self.value}.exe"
        return self.value


@dataclass(frozen=True)
class BuildRecipe:
    repo: str
    revision: str  # key into Config.revisions
    # Some tools have to be built from within another project's tree.
    parent_repo: Optional[str] = None
    parent_revision: Optional[str] = None
    subdir: str = ""
    make_targets: tuple[str, ...] = ()
    config_template: bool = True
    # Whether the artifact is the first file found in an ``out/**/release`` directory rather than a
    # file named after the tool at the top of the tree.
    artifact_in_release: bool = False


@dataclass(frozen=True)
class ToolSpec:
    id_label: Optional[str]
    bundled: frozenset[Host]
    buildable: frozenset[Host]
    recipe: Optional[BuildRecipe]
    templates: Mapping[str, tuple[str, ...]] = field(default_factory=dict)


_READER_TEMPLATES = {
    "info": ("{path}",),
    "unpack_nca": ("--basenca", "{base}", "{aux}", "--romfsdir", "{romfs}", "--exefsdir", "{exefs}"),
    "extract_romfs": ("{path}", "--romfsdir", "{romfs}"),
}

_PFS0_TEMPLATES = {
    "unpack_pfs0": ("-t", "pfs0", "--outdir", "{outdir}", "{path}"),
}

_PACKER_TEMPLATES = {
    "pack_program": (
        "--keyset", "{keyset}",
        "--type", "nca",
        "--ncatype", "program",
        "--plaintext",
        "--exefsdir", "{exefs}",
        "--romfsdir", "{romfs}",
        "--titleid", "{program_id}",
        "--outdir", "{outdir}",
    ),
    "create_meta": (
        "--keyset", "{keyset}",
        "--type", "nca",
        "--ncatype", "meta",
        "--titletype", "application",
        "--programnca", "{program}",
        "--controlnca", "{control}",
        "--titleid", "{program_id}",
        "--outdir", "{outdir}",
    ),
    "pack_nsp": (
        "--keyset", "{keyset}",
        "--type", "nsp",
        "--ncadir", "{ncadir}",
        "--titleid", "{program_id}",
        "--outdir", "{outdir}",
    ),
}  # fmt: skip

_CONVERTER_TEMPLATES = {
    "convert": ("--keyset", "{keyset}", "--tempdir", "{tempdir}", "--outdir", "{outdir}", "--rename", "{path}"),
}


TOOL_TABLE: dict[ToolKind, ToolSpec] = {
    ToolKind.HACPACK: ToolSpec(
        id_label=None,
        bundled=frozenset({WINDOWS_X64, LINUX_ARM64}),
        buildable=frozenset({LINUX_X64}),
        recipe=BuildRecipe("https://github.com/The-4n/hacPack", "hacpack"),
        templates=_PACKER_TEMPLATES,
    ),
    ToolKind.HACTOOL: ToolSpec(
        id_label="Title ID:",
        bundled=frozenset({WINDOWS_X64, LINUX_ARM64}),
        buildable=frozenset({LINUX_X64}),
        recipe=BuildRecipe("https://github.com/SciresM/hactool", "hactool"),
        templates={**_READER_TEMPLATES, **_PFS0_TEMPLATES},
    ),
    ToolKind.HACTOOLNET: ToolSpec(
        id_label="TitleID:",
        bundled=frozenset({WINDOWS_X64, LINUX_X64}),
        buildable=frozenset(),
        recipe=None,
        templates={**_READER_TEMPLATES, **_PFS0_TEMPLATES},
    ),
    ToolKind.HAC2L: ToolSpec(
        id_label="Program Id:",
        bundled=frozenset({WINDOWS_X64, LINUX_ARM64}),
        buildable=frozenset({LINUX_X64}),
        recipe=BuildRecipe(
            "https://github.com/Atmosphere-NX/hac2l.git",
            "hac2l",
            parent_repo="https://github.com/Atmosphere-NX/Atmosphere.git",
            parent_revision="atmosphere",
            subdir="tools/hac2l",
            make_targets=("linux_x64_release",),
            config_template=False,
            artifact_in_release=True,
        ),
        templates=_READER_TEMPLATES,
    ),
    ToolKind.FOURNXCI: ToolSpec(
        id_label=None,
        bundled=frozenset({WINDOWS_X64, LINUX_X64, LINUX_ARM64}),
        buildable=frozenset({MAC_X64, MAC_ARM64}),
        recipe=BuildRecipe("https://github.com/The-4n/4NXCI.git", "4nxci"),
        templates=_CONVERTER_TEMPLATES,
    ),
}

# Readers are tried in this order wherever several can do the job.
READER_PRIORITY = (ToolKind.HACTOOLNET, ToolKind.HAC2L)


def is_available(kind: ToolKind, host: Optional[Host] = None) -> bool:
    host = host or current_host()
    spec = TOOL_TABLE[kind]
    return host in spec.bundled or host in spec.buildable


def reader_kinds(host: Optional[Host] = None) -> list[ToolKind]:
    """The reader tools usable on this host in priority order."""
    kinds = [kind for kind in READER_PRIORITY if is_available(kind, host)]
    if not kinds:
        # hactool can read too, it's just slower and less forgiving.
        kinds = [ToolKind.HACTOOL]
    return kinds


def decode_output(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class ToolHandle:
    kind: ToolKind
    path: Path

    @property
    def spec(self) -> ToolSpec:
        return TOOL_TABLE[self.kind]

    @property
    def id_label(self) -> Optional[str]:
        return self.spec.id_label

    def supports(self, operation: str) -> bool:
        return operation in self.spec.templates

    def command(self, operation: str, **kwargs: Union[str, os.PathLike[str]]) -> list[str]:
        """Build the argument vector for an operation from this tool's template."""
        try:
            template = self.spec.templates[operation]
        except KeyError:
            raise ToolExecutionError(f"{self.kind} does not support {operation!r}", kind=self.kind) from None
        values = {key: os.fspath(value) for key, value in kwargs.items()}
        return [token.format(**values) for token in template]

    def run(
        self,
        operation: str,
        capture_stdout: bool = True,
        **kwargs: Union[str, os.PathLike[str]],
    ) -> subprocess.CompletedProcess:
        """Run the tool and wait for it to exit.

        Parameters
        ----------
        operation:
            The name of the argument template to use.
        capture_stdout:
            Whether to capture stdout for parsing. If False it is passed through to our own stdout so
            that the user can follow long running operations. stderr is always captured.
        kwargs:
            Values for the placeholders in the argument template.
        """
        cmd = [os.fspath(self.path), *self.command(operation, **kwargs)]
        logger.debug(f"Running {cmd}")
        try:
            return subprocess.run(
                cmd,
                stdout=subprocess.PIPE if capture_stdout else None,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise ToolExecutionError(f"Failed to launch {self.kind} ({self.path}): {e}", kind=self.kind) from e

    def run_checked(self, operation: str, message: str, **kwargs: Union[str, os.PathLike[str]]):
        """Run an operation with streamed stdout, raising if the tool exits with a non-zero status."""
        ret = self.run(operation, capture_stdout=False, **kwargs)
        if ret.returncode != 0:
            stderr = decode_output(ret.stderr)
            logger.error(f"{message} (backend: {self.kind}, exit code: {ret.returncode})\n{stderr}")
            raise ToolExecutionError(message, kind=self.kind, returncode=ret.returncode, stderr=stderr)
        return ret

    @classmethod
    def acquire(cls, kind: Union[ToolKind, str], config: Config, host: Optional[Host] = None) -> "ToolHandle":
        """Resolve an executable for ``kind``.

        The cache directory is checked first. Failing that, a bundled binary is written into the cache
        or, on hosts where none is shipped, the tool is built from source.
        """
        kind = ToolKind(kind)
        host = host or current_host()
        cache = Cache(config.cache_dir)
        filename = kind.filename(host[0])

        cached = cache.get(filename)
        if cached is not None:
            return cls(kind, cached)

        spec = TOOL_TABLE[kind]
        data = load_bundled(kind, host) if host in spec.bundled else None
        if data is not None:
            try:
                path = cache.store_bytes(data, filename)
            except OSError as e:
                raise ToolAcquisitionError(kind, "store", str(e)) from e
        elif host in spec.buildable:
            path = build(kind, config, host)
        else:
            raise ToolAcquisitionError(kind, "resolve", f"no binary is available for {host[0]}/{host[1]}")

        if host[0] != Platform.WINDOWS:
            set_executable_bit(path)
        return cls(kind, path)


def load_bundled(kind: ToolKind, host: Host) -> Optional[bytes]:
    """Read the binary shipped with the package for this host, if there is one."""
    folder = resources.files("hacpatch").joinpath("assets", f"{host[0]}-{host[1]}")
    filename = kind.filename(host[0])
    for suffix in compression_suffixes:
        res = folder.joinpath(filename + suffix)
        if res.is_file():
            logger.info(f"Unpacking bundled {kind} ({res.name})")
            return Compressor.for_suffix(suffix).decompress(res.read_bytes())
    return None


def _run_stage(kind: ToolKind, stage: str, args: list[str], cwd: Union[str, os.PathLike[str], None] = None):
    logger.info(f"Running {' '.join(args)}")
    try:
        ret = subprocess.run(args, cwd=cwd)
    except OSError as e:
        raise ToolAcquisitionError(kind, stage, str(e)) from e
    if ret.returncode != 0:
        raise ToolAcquisitionError(kind, stage, f"`{' '.join(args[:2])}` exited with status {ret.returncode}")


def _clone(kind: ToolKind, repo: str, dest: Path, revision: str):
    _run_stage(kind, "clone", ["git", "clone", repo, os.fspath(dest)])
    _run_stage(kind, "checkout", ["git", "checkout", revision], cwd=dest)


def _find_artifact(kind: ToolKind, recipe: BuildRecipe, workdir: Path, filename: str) -> Path:
    if recipe.artifact_in_release:
        for dirpath, _, files in os.walk(workdir / "out"):
            if Path(dirpath).name == "release" and files:
                return Path(dirpath, sorted(files)[0])
    else:
        artifact = workdir / filename
        if artifact.is_file():
            return artifact
    raise ToolAcquisitionError(kind, "artifact", f"no build output found in {workdir}")


def build(kind: ToolKind, config: Config, host: Optional[Host] = None) -> Path:
    """Build ``kind`` from its pinned upstream revision and move the result into the cache."""
    host = host or current_host()
    recipe = TOOL_TABLE[kind].recipe
    if recipe is None:
        raise ToolAcquisitionError(kind, "build", "no build recipe")
    filename = kind.filename(host[0])
    logger.info(f"Building {kind}")

    with tempfile.TemporaryDirectory(prefix=f"hacpatch-build-{kind.value}-") as tmp:
        src_dir = Path(tmp)
        if recipe.parent_repo is not None:
            _clone(kind, recipe.parent_repo, src_dir, config.revision(recipe.parent_revision))
            workdir = src_dir / recipe.subdir
            _clone(kind, recipe.repo, workdir, config.revision(recipe.revision))
        else:
            workdir = src_dir
            _clone(kind, recipe.repo, workdir, config.revision(recipe.revision))

        template = workdir / "config.mk.template"
        if recipe.config_template and template.is_file():
            logger.info("Renaming config file")
            try:
                template.rename(workdir / "config.mk")
            except OSError as e:
                raise ToolAcquisitionError(kind, "configure", str(e)) from e

        _run_stage(kind, "build", ["make", "-j", str(build_jobs()), *recipe.make_targets], cwd=workdir)

        artifact = _find_artifact(kind, recipe, workdir, filename)
        try:
            return Cache(config.cache_dir).store_path(artifact, filename)
        except OSError as e:
            raise ToolAcquisitionError(kind, "store", str(e)) from e


def acquire_all(kinds: Iterable[Union[ToolKind, str]], config: Config, host: Optional[Host] = None) -> list[ToolHandle]:
    """Acquire every requested tool, reporting all failures together rather than just the first."""
    handles = []
    errors = []
    for kind in kinds:
        try:
            handles.append(ToolHandle.acquire(kind, config, host))
        except ToolAcquisitionError as e:
            logger.error(str(e))
            errors.append(e)
    if errors:
        raise MultiError(errors)
    return handles
