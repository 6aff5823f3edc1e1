"""Runtime configuration for hacpatch.

The configuration is a plain dataclass which is read from, and written to, a TOML file. It is
resolved once by the caller and handed to every component that needs it.
"""

import os
import os.path as op
import platform
import shutil
import tomllib
from dataclasses import asdict, dataclass, field
from logging import NullHandler, getLogger
from pathlib import Path
from typing import Optional, Union

import tomli_w

from hacpatch.constants import (
    APP_NAME,
    CONFIG_FILENAME,
    KEYS_EXT,
    PRODKEYS_FILENAME,
    TITLEKEYS_FILENAME,
    Platform,
    platform_map,
)
from hacpatch.exceptions import InvalidFileException
from hacpatch.utils import ext_matches

logger = getLogger(__name__)
logger.addHandler(NullHandler())


NSP_EXTRACTORS = ("hactoolnet", "hactool")
NCA_EXTRACTORS = ("hactoolnet", "hac2l")

DEFAULT_REVISIONS = {
    "hacpack": "7845e7be8d03a263c33430f9e8c2512f7c280c88",
    "hactool": "c2c907430e674614223959f0377f5e71f9e44a4a",
    "hac2l": "7fc1b3a32c6a870c47d7459b23fd7c7b63014186",
    "atmosphere": "1afb184c143f4319e5d6d4ea27260e61830c42a0",
    "4nxci": "master",
}


def _user_dir(windows_env: str, mac_subdir: str, xdg_env: str, xdg_default: str) -> Path:
    plat = platform_map[platform.system()]
    home = Path.home()
    if plat == Platform.WINDOWS:
        return Path(os.environ.get(windows_env, home / "AppData" / "Local"))
    elif plat == Platform.MAC:
        return home / "Library" / mac_subdir
    return Path(os.environ.get(xdg_env) or home / xdg_default)


def default_cache_dir() -> Path:
    return _user_dir("LOCALAPPDATA", "Caches", "XDG_CACHE_HOME", ".cache") / APP_NAME


def default_config_path() -> Path:
    return _user_dir("APPDATA", "Application Support", "XDG_CONFIG_HOME", ".config") / APP_NAME / CONFIG_FILENAME


def default_keys_dir() -> Path:
    # The tools themselves look for keys here.
    return Path.home() / ".switch"


@dataclass
class Config:
    temp_dir: Path = field(default_factory=lambda: Path("."))
    cache_dir: Path = field(default_factory=default_cache_dir)
    keys_dir: Path = field(default_factory=default_keys_dir)
    roms_dir: Optional[Path] = None
    nsp_extractor: str = "hactoolnet"
    nca_extractor: str = "hactoolnet"
    revisions: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_REVISIONS))

    def __post_init__(self):
        self.temp_dir = Path(self.temp_dir)
        self.cache_dir = Path(self.cache_dir)
        self.keys_dir = Path(self.keys_dir)
        if self.roms_dir is not None:
            self.roms_dir = Path(self.roms_dir)
        if self.nsp_extractor not in NSP_EXTRACTORS:
            raise ValueError(f"nsp_extractor must be one of {NSP_EXTRACTORS}, not {self.nsp_extractor!r}")
        if self.nca_extractor not in NCA_EXTRACTORS:
            raise ValueError(f"nca_extractor must be one of {NCA_EXTRACTORS}, not {self.nca_extractor!r}")
        # Keep defaults for any tool the file doesn't mention.
        self.revisions = {**DEFAULT_REVISIONS, **self.revisions}

    @property
    def prodkeys_path(self) -> Path:
        return self.keys_dir / PRODKEYS_FILENAME

    @property
    def titlekeys_path(self) -> Path:
        return self.keys_dir / TITLEKEYS_FILENAME

    def revision(self, name: str) -> str:
        return self.revisions[name]

    def as_dict(self) -> dict:
        data = {}
        for key, value in asdict(self).items():
            if value is None:
                # TOML has no null.
                continue
            data[key] = str(value) if isinstance(value, Path) else value
        return data

    @classmethod
    def load(cls, path: Union[str, os.PathLike[str], None] = None) -> "Config":
        """Load the configuration from a TOML file.

        A missing file gives the defaults. A file which can't be parsed or which holds invalid
        values is replaced with the defaults.
        """
        path = Path(path) if path is not None else default_config_path()
        try:
            with path.open("rb") as f:
                data = tomllib.load(f)
            return cls(**data)
        except FileNotFoundError:
            return cls()
        except (TypeError, ValueError) as e:
            # tomllib.TOMLDecodeError is a ValueError.
            logger.warning(f"Bad config at {path} ({e}). Rewriting config...")
        cfg = cls()
        cfg.store(path)
        return cfg

    def store(self, path: Union[str, os.PathLike[str], None] = None):
        path = Path(path) if path is not None else default_config_path()
        os.makedirs(path.parent, exist_ok=True)
        with path.open("wb") as f:
            tomli_w.dump(self.as_dict(), f)


def import_keyfile(src: Union[str, os.PathLike[str]], config: Config) -> Path:
    """Copy a ``prod.keys`` style keyfile to where the tools expect it."""
    if not op.isfile(src) or not ext_matches(src, KEYS_EXT):
        raise InvalidFileException(f"{src!r} is not a valid keyfile")
    dest = config.prodkeys_path
    os.makedirs(dest.parent, exist_ok=True)
    shutil.copyfile(src, dest)
    logger.info(f"Copied keys from {src} to {dest}")
    return dest
