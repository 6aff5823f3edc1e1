import argparse
import logging
import os
import signal
import sys
import time
from typing import Literal, Optional

import tomli_w

from hacpatch import __version__
from hacpatch.backend import ToolHandle, ToolKind, acquire_all, current_host, is_available
from hacpatch.config import NCA_EXTRACTORS, NSP_EXTRACTORS, Config, default_config_path, import_keyfile
from hacpatch.exceptions import HacPatchError
from hacpatch.nsp import PackageHandle
from hacpatch.pipeline import Patcher
from hacpatch.xci import convert

logger = logging.getLogger("hacpatch")
logger.addHandler(logging.StreamHandler())


class SmartFormatter(argparse.HelpFormatter):
    # "Smaerter" help formatter c/o https://stackoverflow.com/a/22157136
    def _split_lines(self, text, width):
        if text.startswith("R|"):
            return text[2:].splitlines()
        return argparse.HelpFormatter._split_lines(self, text, width)


class HacPatchNamespace(argparse.Namespace):
    command: Optional[Literal["update", "unpack", "repack", "convert", "config", "build-backend"]]
    config: Optional[str]
    import_keyfile: Optional[str]
    verbose: int
    base: str
    update: Optional[str]
    control: str
    program_id: str
    romfs: str
    exefs: str
    xci: str
    output: str
    reset: bool
    nsp_extractor: Optional[str]
    nca_extractor: Optional[str]
    tools: list[str]


def _sigint_handler(signum, frame):
    logger.error("Interrupted, exiting")
    sys.exit(130)


def _output_dir(args: HacPatchNamespace, config: Config) -> str:
    if args.output:
        return args.output
    if config.roms_dir is not None:
        return os.fspath(config.roms_dir)
    return os.getcwd()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=f"hacpatch ({__version__})",
        description="Apply updates to NSP packages and repack modified game files",
        formatter_class=SmartFormatter,
    )
    parser.add_argument(
        "-c",
        "--config",
        required=False,
        help=f"The config file to use. Default: {default_config_path()}",
    )
    parser.add_argument(
        "-k",
        "--import-keyfile",
        required=False,
        help="A prod.keys file to copy to where the tools will look for it.",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity")

    subparsers = parser.add_subparsers(dest="command")

    update = subparsers.add_parser("update", help="Apply an update NSP to a base NSP.")
    update.add_argument("base", help="The base game NSP.")
    update.add_argument("update", help="The update NSP.")
    update.add_argument(
        "-O",
        "--output",
        required=False,
        help="The directory to write the patched NSP to. Defaults to roms_dir if set, else the current directory.",
    )

    unpack = subparsers.add_parser(
        "unpack",
        help="Unpack the romfs and exefs of a base NSP, optionally with an update applied.",
        formatter_class=SmartFormatter,
    )
    unpack.add_argument("base", help="The base game NSP.")
    unpack.add_argument("update", nargs="?", default=None, help="An optional update NSP.")
    unpack.add_argument(
        "-O",
        "--output",
        required=True,
        help=(
            "R|The directory to unpack to. It will contain:\n"
            " - basedata/updatedata: the extracted packages\n"
            " - romfs/exefs: the game files"
        ),
    )

    repack = subparsers.add_parser("repack", help="Pack romfs and exefs directories back into an NSP.")
    repack.add_argument("control", help="The Control NCA of the game.")
    repack.add_argument("program_id", help="The 16 character program id to pack with.")
    repack.add_argument("romfs", help="The romfs directory.")
    repack.add_argument("exefs", help="The exefs directory.")
    repack.add_argument("-O", "--output", required=False, help="The directory to write the repacked NSP to.")

    xci = subparsers.add_parser("convert", help="Convert a XCI cartridge image to NSP.")
    xci.add_argument("xci", help="The XCI file.")
    xci.add_argument("-O", "--output", required=False, help="The directory to write the NSPs to.")

    config = subparsers.add_parser("config", help="Show or change the configuration.")
    config.add_argument("--reset", action="store_true", default=False, help="Restore the default configuration.")
    config.add_argument("--nsp-extractor", choices=NSP_EXTRACTORS, help="The preferred tool for extracting NSPs.")
    config.add_argument("--nca-extractor", choices=NCA_EXTRACTORS, help="The preferred tool for extracting NCAs.")

    backend = subparsers.add_parser(
        "build-backend",
        help="Fetch or build the external tools ahead of time.",
    )
    backend.add_argument(
        "tools",
        nargs="*",
        help=(
            f"The tools to set up, any of {', '.join(kind.value for kind in ToolKind)}. "
            "Defaults to every tool available on this platform."
        ),
    )
    return parser


def run(argv: Optional[list[str]] = None) -> int:
    signal.signal(signal.SIGINT, _sigint_handler)

    parser = build_parser()
    args = HacPatchNamespace()
    args = parser.parse_args(argv, namespace=args)

    verbosity = args.verbose
    if verbosity == 1:
        logger.setLevel(logging.INFO)
    elif verbosity >= 2:
        logger.setLevel(logging.DEBUG)

    if args.command is None and not args.import_keyfile:
        parser.print_help()
        return 1

    config = Config.load(args.config)
    t1 = time.perf_counter()
    try:
        if args.import_keyfile:
            dest = import_keyfile(args.import_keyfile, config)
            print(f"Imported keys to {dest}")

        if args.command == "update":
            patcher = Patcher(config)
            patched = patcher.update(
                PackageHandle.open(args.base),
                PackageHandle.open(args.update),
                _output_dir(args, config),
            )
            if patched.metadata is not None:
                print(f"Patched {patched.metadata}")
            print(patched.path)
            logger.info(f"Finished update in {time.perf_counter() - t1:.3f}s")
        elif args.command == "unpack":
            patcher = Patcher(config)
            update = PackageHandle.open(args.update) if args.update else None
            program_id, romfs_dir, exefs_dir = patcher.unpack(PackageHandle.open(args.base), update, args.output)
            print(f"Program id: {program_id}")
            print(f"romfs: {romfs_dir}")
            print(f"exefs: {exefs_dir}")
            logger.info(f"Finished unpacking in {time.perf_counter() - t1:.3f}s")
        elif args.command == "repack":
            patcher = Patcher(config)
            repacked = patcher.repack(
                args.control,
                args.program_id,
                args.romfs,
                args.exefs,
                _output_dir(args, config),
            )
            print(repacked.path)
            logger.info(f"Finished repacking in {time.perf_counter() - t1:.3f}s")
        elif args.command == "convert":
            converter = ToolHandle.acquire(ToolKind.FOURNXCI, config)
            for nsp in convert(args.xci, _output_dir(args, config), converter, config):
                print(nsp.path)
        elif args.command == "config":
            if args.reset:
                config = Config()
            if args.nsp_extractor:
                config.nsp_extractor = args.nsp_extractor
            if args.nca_extractor:
                config.nca_extractor = args.nca_extractor
            if args.reset or args.nsp_extractor or args.nca_extractor:
                config.store(args.config)
            print(tomli_w.dumps(config.as_dict()))
        elif args.command == "build-backend":
            host = current_host()
            try:
                kinds = [ToolKind(name) for name in args.tools]
            except ValueError as e:
                parser.error(str(e))
            kinds = kinds or [kind for kind in ToolKind if is_available(kind, host)]
            for handle in acquire_all(kinds, config, host):
                print(f"{handle.kind}: {handle.path}")
    except HacPatchError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(run())
