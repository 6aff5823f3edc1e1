from collections import defaultdict
from enum import Enum
from typing import Literal


class Platform(str, Enum):
    WINDOWS = "windows"
    MAC = "mac"
    LINUX = "linux"


PlatformLiteral = Literal["windows", "mac", "linux"]


platform_map = defaultdict(
    lambda: Platform.LINUX.value,
    {
        "Windows": Platform.WINDOWS.value,
        "Linux": Platform.LINUX.value,
        "Darwin": Platform.MAC.value,
    },
)

# `platform.machine()` spells the same architecture differently per OS.
machine_map = defaultdict(
    lambda: "unknown",
    {
        "x86_64": "x86_64",
        "AMD64": "x86_64",
        "amd64": "x86_64",
        "aarch64": "aarch64",
        "arm64": "aarch64",
        "ARM64": "aarch64",
    },
)


APP_NAME = "hacpatch"

# File extensions (lower case, no dot).
NSP_EXT = "nsp"
NCA_EXT = "nca"
TICKET_EXT = "tik"
XCI_EXT = "xci"
KEYS_EXT = "keys"

PRODKEYS_FILENAME = "prod.keys"
TITLEKEYS_FILENAME = "title.keys"
CONFIG_FILENAME = "hacpatch.toml"
NACP_FILENAME = "control.nacp"

# Number of hexadecimal characters in a program id.
PROGRAM_ID_LEN = 16

PATCHED_SUFFIX = "[hacpatch-patched]"
REPACKED_SUFFIX = "[hacpatch-repacked]"

# Directory the packer leaves behind in the working directory.
PACKER_BACKUP_DIR = "hacpack_backup"

# Ticket layout (common title key type only).
RIGHTS_ID_OFFSET = 0x2A0
TITLE_KEY_OFFSET = 0x180
TICKET_FIELD_SIZE = 0x10
