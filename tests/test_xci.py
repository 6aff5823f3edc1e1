import os
import sys

import pytest
from utils import make_config, make_tool

from hacpatch.backend import ToolKind
from hacpatch.exceptions import InvalidFileException, PipelineError
from hacpatch.xci import convert

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="Fake tools rely on shebang scripts")


def test_convert(tmp_path):
    config = make_config(tmp_path)
    converter = make_tool(tmp_path / "bin", ToolKind.FOURNXCI)
    xci = tmp_path / "Game.xci"
    xci.write_bytes(b"\x00" * 0x100)
    nsps = convert(xci, tmp_path / "out", converter, config)
    assert [nsp.path for nsp in nsps] == [tmp_path / "out" / "Game.nsp"]
    assert nsps[0].path.is_file()
    assert os.listdir(config.temp_dir) == []


def test_convert_failure(tmp_path):
    config = make_config(tmp_path)
    converter = make_tool(tmp_path / "bin", ToolKind.FOURNXCI, fail=["convert"])
    xci = tmp_path / "Game.xci"
    xci.write_bytes(b"\x00" * 0x100)
    with pytest.raises(PipelineError):
        convert(xci, tmp_path / "out", converter, config)
    assert os.listdir(config.temp_dir) == []


def test_convert_invalid(tmp_path):
    config = make_config(tmp_path)
    converter = make_tool(tmp_path / "bin", ToolKind.FOURNXCI)
    nsp = tmp_path / "Game.nsp"
    nsp.write_bytes(b"")
    with pytest.raises(InvalidFileException):
        convert(nsp, tmp_path / "out", converter, config)
