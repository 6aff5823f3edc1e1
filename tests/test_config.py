import tomllib
from pathlib import Path

import pytest

from hacpatch.config import DEFAULT_REVISIONS, Config, import_keyfile
from hacpatch.exceptions import InvalidFileException


def test_defaults():
    config = Config()
    assert config.nsp_extractor == "hactoolnet"
    assert config.nca_extractor == "hactoolnet"
    assert config.roms_dir is None
    assert config.revisions == DEFAULT_REVISIONS
    assert config.prodkeys_path.name == "prod.keys"
    assert config.titlekeys_path.name == "title.keys"
    assert config.prodkeys_path.parent == config.keys_dir


@pytest.mark.parametrize("field", ["nsp_extractor", "nca_extractor"])
def test_invalid_extractor(field):
    with pytest.raises(ValueError):
        Config(**{field: "hacpack"})


def test_store_and_load(tmp_path):
    path = tmp_path / "conf" / "hacpatch.toml"
    config = Config(
        temp_dir=tmp_path / "tmp",
        keys_dir=tmp_path / "keys",
        nca_extractor="hac2l",
        revisions={"hacpack": "abc123"},
    )
    config.store(path)
    with open(path, "rb") as f:
        data = tomllib.load(f)
    assert "roms_dir" not in data
    assert data["nca_extractor"] == "hac2l"

    loaded = Config.load(path)
    assert loaded.temp_dir == tmp_path / "tmp"
    assert isinstance(loaded.keys_dir, Path)
    assert loaded.nca_extractor == "hac2l"
    assert loaded.revision("hacpack") == "abc123"
    # Tools missing from the file keep their default revision.
    assert loaded.revision("hactool") == DEFAULT_REVISIONS["hactool"]


def test_load_missing(tmp_path):
    path = tmp_path / "missing.toml"
    config = Config.load(path)
    assert config == Config()
    assert not path.exists()


@pytest.mark.parametrize(
    "contents",
    [
        "this is not toml",
        'nsp_extractor = "unknown"\n',
        'not_a_field = "x"\n',
    ],
)
def test_load_bad_config(tmp_path, contents):
    path = tmp_path / "hacpatch.toml"
    path.write_text(contents)
    config = Config.load(path)
    assert config.nsp_extractor == "hactoolnet"
    # The file is replaced with the defaults.
    with open(path, "rb") as f:
        assert tomllib.load(f)["nsp_extractor"] == "hactoolnet"


def test_import_keyfile(tmp_path):
    src = tmp_path / "prod.keys"
    src.write_text("header_key = 00\n")
    config = Config(keys_dir=tmp_path / "switch")
    dest = import_keyfile(src, config)
    assert dest == config.prodkeys_path
    assert dest.read_text() == "header_key = 00\n"


def test_import_keyfile_invalid(tmp_path):
    src = tmp_path / "prod.txt"
    src.write_text("")
    config = Config(keys_dir=tmp_path / "switch")
    with pytest.raises(InvalidFileException):
        import_keyfile(src, config)
    with pytest.raises(InvalidFileException):
        import_keyfile(tmp_path / "missing.keys", config)
