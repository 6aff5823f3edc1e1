from enum import Enum
from logging import NullHandler, getLogger
from typing import Literal, Union

import lz4.frame
import zstandard as zstd

logger = getLogger(__name__)
logger.addHandler(NullHandler())


class Compression(str, Enum):
    ZSTD = "zstd"
    LZ4 = "lz4"
    NONE = "none"


CompressionLiteral = Literal["zstd", "lz4", "none"]

# Bundled tool binaries are stored with one of these suffixes.
compression_suffixes = {
    ".zst": Compression.ZSTD,
    ".lz4": Compression.LZ4,
    "": Compression.NONE,
}


class Compressor:
    """Decompresses whole blobs, such as the tool binaries shipped with the package."""

    def __init__(self, compression: Union[Compression, CompressionLiteral] = Compression.ZSTD):
        self.compression = Compression(compression)

    @classmethod
    def for_suffix(cls, suffix: str) -> "Compressor":
        try:
            return cls(compression_suffixes[suffix.lower()])
        except KeyError:
            raise ValueError(f"Unknown compression suffix: {suffix!r}") from None

    def decompress(self, data: bytes) -> bytes:
        if self.compression == Compression.ZSTD:
            # A decompressobj copes with frames that don't record their content size.
            return zstd.ZstdDecompressor().decompressobj().decompress(data)
        elif self.compression == Compression.LZ4:
            return lz4.frame.decompress(data)
        return data
