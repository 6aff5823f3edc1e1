import os

import lz4.frame
import pytest
import zstandard as zstd

from hacpatch.compressors import Compression, Compressor

DATA = os.urandom(0x1000) + b"\x00" * 0x4000


@pytest.mark.parametrize(
    "suffix,expected",
    [(".zst", Compression.ZSTD), (".lz4", Compression.LZ4), ("", Compression.NONE), (".ZST", Compression.ZSTD)],
)
def test_for_suffix(suffix, expected):
    assert Compressor.for_suffix(suffix).compression == expected


def test_for_unknown_suffix():
    with pytest.raises(ValueError):
        Compressor.for_suffix(".xz")


def test_decompress_zstd():
    assert Compressor("zstd").decompress(zstd.ZstdCompressor().compress(DATA)) == DATA
    # Streamed frames don't record their content size.
    cobj = zstd.ZstdCompressor().compressobj()
    streamed = cobj.compress(DATA) + cobj.flush()
    assert Compressor(Compression.ZSTD).decompress(streamed) == DATA


def test_decompress_lz4():
    assert Compressor(Compression.LZ4).decompress(lz4.frame.compress(DATA)) == DATA


def test_no_compression():
    assert Compressor("none").decompress(DATA) == DATA
