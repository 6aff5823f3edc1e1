import json
import os
import stat
import sys
from pathlib import Path
from typing import Iterable, Optional

from hacpatch.backend import ToolHandle, ToolKind
from hacpatch.config import Config
from hacpatch.constants import RIGHTS_ID_OFFSET, TITLE_KEY_OFFSET

# Stand-in for every external tool. The operation is worked out from the arguments, in the same way
# the real tools would see them.
#  - NSPs are JSON objects mapping file names to hex encoded contents.
#  - NCAs start with a "<content type> <program id>" line.
FAKE_TOOL = '''#!{executable}
import json
import os
import sys

LABEL = {label!r}
FAIL = {fail!r}
BROKEN = {broken!r}


def arg(name):
    return sys.argv[sys.argv.index(name) + 1]


def operation():
    args = sys.argv[1:]
    if "--type" in args:
        if arg("--type") == "nsp":
            return "pack_nsp"
        return "pack_program" if arg("--ncatype") == "program" else "create_meta"
    if "-t" in args:
        return "unpack_pfs0"
    if "--basenca" in args:
        return "unpack_nca"
    if "--tempdir" in args:
        return "convert"
    if "--romfsdir" in args:
        return "extract_romfs"
    return "info"


def header(path):
    with open(path, "rb") as f:
        return f.readline().decode().strip()


def write(path, data):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def main():
    op = operation()
    if op in FAIL:
        sys.stderr.write(f"{{op}} failed\\n")
        return 1
    if op == "info":
        category, program_id = header(sys.argv[1]).split()
        print("NCA:")
        if LABEL:
            print(f"    {{LABEL}}                 {{program_id}}")
        print(f"    Content Type:            {{category}}")
        sys.stderr.write("[WARN] Failed to match key for section 0\\n")
    elif op == "unpack_pfs0":
        with open(sys.argv[-1]) as f:
            files = json.load(f)
        for name, data in files.items():
            write(os.path.join(arg("--outdir"), name), bytes.fromhex(data))
    elif op == "unpack_nca":
        base, aux = sys.argv[2], sys.argv[3]
        layers = f"{{header(base)}}\\n{{header(aux)}}\\n".encode()
        write(os.path.join(arg("--romfsdir"), "layers.txt"), layers)
        write(os.path.join(arg("--exefsdir"), "main"), b"exefs")
    elif op == "extract_romfs":
        nacp = bytearray(0x4000)
        nacp[0:9] = b"Fake Game"
        nacp[0x200:0x20D] = b"Fake Studio:?"
        nacp[0x3060:0x3065] = b"1.2.0"
        write(os.path.join(arg("--romfsdir"), "control.nacp"), bytes(nacp))
    elif op == "pack_program":
        program_id = arg("--titleid")
        data = f"Program {{program_id}}\\n".encode()
        layers = os.path.join(arg("--romfsdir"), "layers.txt")
        if os.path.isfile(layers):
            with open(layers, "rb") as f:
                data += f.read()
        write(os.path.join(arg("--outdir"), f"{{program_id}}_program.nca"), data)
        os.makedirs("hacpack_backup", exist_ok=True)
    elif op == "create_meta":
        program_id = arg("--titleid")
        write(os.path.join(arg("--outdir"), f"{{program_id}}_meta.nca"), f"Meta {{program_id}}\\n".encode())
    elif op == "pack_nsp":
        ncadir = arg("--ncadir")
        files = {{}}
        for name in sorted(os.listdir(ncadir)):
            with open(os.path.join(ncadir, name), "rb") as f:
                files[name] = f.read().hex()
        write(os.path.join(arg("--outdir"), arg("--titleid") + ".nsp"), json.dumps(files).encode())
    elif op == "convert":
        name = os.path.splitext(os.path.basename(sys.argv[-1]))[0]
        write(os.path.join(arg("--outdir"), name + ".nsp"), b"{{}}")
    if op in BROKEN:
        sys.stderr.write(f"{{op}} finished with errors\\n")
        return 1
    return 0


sys.exit(main())
'''

LABELS = {
    ToolKind.HACTOOL: "Title ID:",
    ToolKind.HACTOOLNET: "TitleID:",
    ToolKind.HAC2L: "Program Id:",
}

BASE_ID = "0100ABCD00010000"
UPDATE_ID = "0100ABCD00010800"

RIGHTS_ID = bytes.fromhex("0100abcd000100000000000000000001")
TITLE_KEY = bytes.fromhex("00112233445566778899aabbccddeeff")


def get_files(fpath: os.PathLike) -> list[str]:
    file_list = []
    for root, _, files in os.walk(fpath):
        for file in files:
            file_list.append(os.path.join(root, file))
    return file_list


def make_tool(
    bin_dir: Path, kind: ToolKind, fail: Iterable[str] = (), broken: Iterable[str] = ()
) -> ToolHandle:
    """Write a fake executable for ``kind``.

    Operations in ``fail`` exit non-zero without doing anything. Operations in ``broken`` do their
    work and print their usual output but still exit non-zero.
    """
    os.makedirs(bin_dir, exist_ok=True)
    path = bin_dir / kind.filename()
    with open(path, "w") as f:
        f.write(
            FAKE_TOOL.format(
                executable=sys.executable, label=LABELS.get(kind), fail=set(fail), broken=set(broken)
            )
        )
    os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR)
    return ToolHandle(kind, path)


def make_config(root: Path, with_keyset: bool = True) -> Config:
    config = Config(temp_dir=root / "tmp", cache_dir=root / "cache", keys_dir=root / "keys")
    if with_keyset:
        os.makedirs(config.keys_dir, exist_ok=True)
        with open(config.prodkeys_path, "w") as f:
            f.write("header_key = 00\n")
    return config


def nca_bytes(category: str, program_id: str, size: int = 0x100) -> bytes:
    data = f"{category} {program_id}\n".encode()
    return data + b"\x00" * max(0, size - len(data))


def ticket_bytes(rights_id: bytes = RIGHTS_ID, title_key: bytes = TITLE_KEY) -> bytes:
    data = bytearray(0x2C0)
    data[RIGHTS_ID_OFFSET : RIGHTS_ID_OFFSET + 0x10] = rights_id
    data[TITLE_KEY_OFFSET : TITLE_KEY_OFFSET + 0x10] = title_key
    return bytes(data)


def make_nsp(path: Path, files: dict[str, bytes]) -> Path:
    os.makedirs(path.parent, exist_ok=True)
    with open(path, "w") as f:
        json.dump({name: data.hex() for name, data in files.items()}, f)
    return path


def make_base_nsp(path: Path, program_id: str = BASE_ID, ticket: Optional[bytes] = None) -> Path:
    files = {
        "program.nca": nca_bytes("Program", program_id, 0x400),
        "control.nca": nca_bytes("Control", program_id, 0x200),
        "meta.cnmt.nca": nca_bytes("Meta", program_id),
    }
    if ticket is not None:
        files["base.tik"] = ticket
    return make_nsp(path, files)


def make_update_nsp(
    path: Path,
    program_id: str = UPDATE_ID,
    ticket: Optional[bytes] = None,
    with_control: bool = True,
) -> Path:
    files = {
        "update_program.nca": nca_bytes("Program", program_id, 0x800),
        "update_meta.cnmt.nca": nca_bytes("Meta", program_id),
    }
    if with_control:
        files["update_control.nca"] = nca_bytes("Control", program_id, 0x300)
    if ticket is not None:
        files["update.tik"] = ticket
    return make_nsp(path, files)


def read_nsp(path: Path) -> dict[str, bytes]:
    with open(path) as f:
        return {name: bytes.fromhex(data) for name, data in json.load(f).items()}
