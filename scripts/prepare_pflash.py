#!/usr/bin/env python3

# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

"""
Prepare a NOR pflash image for QEMU "virt" that boots SPL1 in place.

The loader is placed at flash offset 0, the last erase block is reserved for
the loader's boot metadata and handed over erased.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import enum
import json
import logging
import os
from pathlib import Path
import subprocess
import sys
import tempfile
from typing import Any, Callable, Optional

import pykwalify.core
import yaml
from intelhex import IntelHex, IntelHexError

import pflash_bootmeta
from pflash_image import FlashImage, is_erased, write
from pflash_layout import (
    DEFAULT_BASE_ADDR,
    DEFAULT_BLOCK_SIZE,
    DEFAULT_FLASH_SIZE,
    ArtifactOverlapError,
    ConfigurationError,
    FlashGeometry,
    RegionLayout,
    plan,
)

try:
    from yaml import CSafeLoader as SafeLoader
except ImportError:
    from yaml import SafeLoader

DEFAULT_ARTIFACT = "spl1.bin"
DEFAULT_IMAGE = "pflash0.img"
DEFAULT_HEX_IMAGE = "pflash0.hex"
DEFAULT_OBJCOPY = "riscv64-unknown-elf-objcopy"

ROOT = Path(__file__).parents[1]
SCHEMA_PATH = Path(__file__).parent / "schemas" / "pflash-schema.yml"

_logger = logging.getLogger(__name__)

ArtifactProvider = Callable[[], bytes]


class ArtifactMissingError(FileNotFoundError):
    """The loader binary could not be built, found or read."""

    def __init__(self, path: Path, reason: str = "artifact not found") -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{reason}: {path}")


def file_artifact(path: Path) -> ArtifactProvider:
    """
    Provide the artifact from a flat binary, or from an Intel HEX file which
    is flattened starting at its lowest address (as objcopy -O binary does).
    """
    path = Path(path)

    def provide() -> bytes:
        if not path.is_file():
            raise ArtifactMissingError(path)
        try:
            if path.suffix == ".hex":
                return IntelHex(str(path)).tobinstr()
            with open(path, "rb") as f:
                return f.read()
        except (OSError, IntelHexError, UnicodeDecodeError) as e:
            raise ArtifactMissingError(path, f"cannot read artifact ({e})") from e

    return provide


def _run(cmd: list[str], cwd: Optional[Path], artifact: Path, what: str):
    _logger.info(f"{what}: {' '.join(cmd)}")
    try:
        proc = subprocess.run(cmd, cwd=cwd)
    except OSError as e:
        raise ArtifactMissingError(artifact, f"{what} could not run ({e})") from e
    if proc.returncode != 0:
        raise ArtifactMissingError(
            artifact, f"{what} exited with status {proc.returncode}"
        )


def build_artifact(
    command: list[str],
    elf: Path,
    binary: Path,
    objcopy: str = DEFAULT_OBJCOPY,
    workdir: Optional[Path] = None,
) -> ArtifactProvider:
    """
    Provide the artifact by running the external build, then converting the
    resulting ELF into a flat binary.
    """
    elf = Path(elf)
    binary = Path(binary)

    def provide() -> bytes:
        _run(list(command), workdir, elf, "build")
        if not elf.is_file():
            raise ArtifactMissingError(elf, "ELF not found after build")
        _run([objcopy, "-O", "binary", str(elf), str(binary)], workdir, binary, "objcopy")
        return file_artifact(binary)()

    return provide


def persist(data: bytes, output: Path):
    """
    Write ``data`` to ``output`` through a temporary file in the same
    directory, so ``output`` is either the previous file or the complete new
    one.
    """
    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{output.name}.", suffix=".tmp", dir=output.parent
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, output)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    # Make the rename itself durable
    dir_fd = os.open(output.parent, os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)
    _logger.debug(f"replaced {output} with {len(data)} bytes")


@dataclass(frozen=True)
class CompositionReport:
    total_size: int
    block_size: int
    artifact_size: int
    metadata_offset: int
    base_addr: int = DEFAULT_BASE_ADDR
    output: Optional[Path] = None

    @property
    def margin(self) -> int:
        return self.metadata_offset - self.artifact_size

    @staticmethod
    def from_layout(
        layout: RegionLayout, artifact_size: int, output: Optional[Path] = None
    ) -> CompositionReport:
        geometry = layout.geometry
        return CompositionReport(
            total_size=geometry.total_size,
            block_size=geometry.erase_block_size,
            artifact_size=artifact_size,
            metadata_offset=layout.metadata_offset,
            base_addr=geometry.base_addr,
            output=output,
        )

    def lines(self) -> list[str]:
        meta = self.metadata_offset
        return [
            f"  - size        : {self.total_size} bytes (0x{self.total_size:x})",
            f"  - block size  : {self.block_size} bytes (0x{self.block_size:x})",
            f"  - artifact    : {self.artifact_size} bytes at 0x{self.base_addr:08x}",
            f"  - meta offset : {meta} (0x{meta:x}), "
            f"mapped at 0x{self.base_addr + meta:08x}",
            f"  - margin      : {self.margin} bytes",
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_size": self.total_size,
            "block_size": self.block_size,
            "artifact_size": self.artifact_size,
            "metadata_offset": self.metadata_offset,
            "metadata_offset_hex": f"0x{self.metadata_offset:x}",
            "margin": self.margin,
            "base_addr": self.base_addr,
            "output": None if self.output is None else str(self.output),
        }

    def qemu_command(self) -> str:
        image = self.output if self.output is not None else DEFAULT_IMAGE
        return " \\\n".join(
            [
                "  qemu-system-riscv64",
                "    -M virt",
                "    -m 256M",
                "    -bios none",
                f"    -drive if=pflash,format=raw,unit=0,file={image},readonly=off",
                "    -display none -serial stdio -monitor none",
            ]
        )

    def __str__(self):
        return "\n".join(self.lines())


class ComposeState(enum.Enum):
    START = "start"
    ARTIFACT_OBTAINED = "artifact-obtained"
    LAYOUT_VALIDATED = "layout-validated"
    IMAGE_COMPOSED = "image-composed"
    PERSISTED = "persisted"
    FAILED = "failed"


class Composer:
    """
    Single-use driver: obtain the artifact, plan, write, persist.

    The first error moves the composer to FAILED and propagates; nothing is
    retried and no output file is touched unless every step succeeded.
    """

    def __init__(
        self,
        geometry: FlashGeometry,
        provider: ArtifactProvider,
        output: Optional[Path] = None,
        hex_output: bool = False,
    ) -> None:
        self.geometry = geometry
        self.provider = provider
        self.output = None if output is None else Path(output)
        self.hex_output = hex_output
        self.state = ComposeState.START
        self.image: Optional[FlashImage] = None

    def _advance(self, state: ComposeState):
        _logger.debug(f"compose: {self.state.value} -> {state.value}")
        self.state = state

    def compose(self) -> CompositionReport:
        if self.state != ComposeState.START:
            raise RuntimeError(f"composer already ran (state {self.state.value})")

        try:
            artifact = self.provider()
            _logger.info(f"SPL1 binary size: {len(artifact)} bytes")
            self._advance(ComposeState.ARTIFACT_OBTAINED)

            layout = plan(self.geometry, len(artifact))
            self._advance(ComposeState.LAYOUT_VALIDATED)

            image = write(layout, self.geometry, artifact)
            self._advance(ComposeState.IMAGE_COMPOSED)

            if self.output is not None:
                if self.hex_output:
                    persist(image.to_intel_hex(), self.output)
                else:
                    persist(image.to_binary(), self.output)
            self._advance(ComposeState.PERSISTED)
        except Exception:
            self._advance(ComposeState.FAILED)
            raise

        self.image = image
        return CompositionReport.from_layout(layout, image.artifact_size, self.output)


def compose(
    artifact_source: ArtifactProvider,
    geometry: FlashGeometry,
    output: Optional[Path] = None,
    hex_output: bool = False,
) -> CompositionReport:
    return Composer(geometry, artifact_source, output, hex_output).compose()


@dataclass
class BuildStep:
    command: list[str]
    elf: Path
    objcopy: str = DEFAULT_OBJCOPY
    workdir: Optional[Path] = None

    def provider(self, binary: Path) -> ArtifactProvider:
        return build_artifact(self.command, self.elf, binary, self.objcopy, self.workdir)


@dataclass
class PflashConfig:
    name: str
    geometry: FlashGeometry
    binary: Optional[Path] = None
    build: Optional[BuildStep] = None
    output: Optional[Path] = None

    @staticmethod
    def _resolve_environment_variables(value: str, env: dict) -> str:
        for k, v in env.items():
            value = value.replace(k, v)
        return value

    @staticmethod
    def load(path: Path, env: dict) -> PflashConfig:
        if not SCHEMA_PATH.is_file():
            # The schema lives beside the scripts and is not installed as data
            raise ConfigurationError(
                f"schema {SCHEMA_PATH} not found; run from the source tree or "
                "an editable install (pip install -e .)"
            )
        try:
            with open(SCHEMA_PATH, "r") as f:
                schema = yaml.load(f, Loader=SafeLoader)
            with open(path, "r") as f:
                data = yaml.load(f, Loader=SafeLoader)
            data = pykwalify.core.Core(source_data=data, schema_data=schema).validate()
        except Exception as e:
            raise ConfigurationError(
                f"failed to validate {path} against schema {SCHEMA_PATH}: {e}"
            ) from e

        def resolve(value: Optional[str]) -> Optional[Path]:
            if value is None:
                return None
            return Path(PflashConfig._resolve_environment_variables(value, env))

        artifact = data.get("artifact", {})
        build = None
        if "build" in artifact:
            step = artifact["build"]
            build = BuildStep(
                command=[
                    PflashConfig._resolve_environment_variables(arg, env)
                    for arg in step["command"]
                ],
                elf=resolve(step["elf"]),
                objcopy=step.get("objcopy", DEFAULT_OBJCOPY),
                workdir=resolve(step.get("workdir")),
            )

        return PflashConfig(
            name=data["name"],
            geometry=FlashGeometry.loads(data["flash"]),
            binary=resolve(artifact.get("binary")),
            build=build,
            output=resolve(data.get("image", {}).get("output")),
        )


def read_image(path: Path, geometry: FlashGeometry) -> FlashImage:
    if path.suffix == ".hex":
        ih = IntelHex(str(path))
        # Records outside the flash would be dropped by tobinstr
        if ih.minaddr() is not None and (
            ih.minaddr() < 0 or ih.maxaddr() >= geometry.total_size
        ):
            raise ValueError(
                f"{path} spans 0x{ih.minaddr():x}:0x{ih.maxaddr():x}, outside "
                f"flash offsets 0x0:0x{geometry.total_size - 1:x}"
            )
        data = ih.tobinstr(start=0, size=geometry.total_size)
    else:
        with open(path, "rb") as f:
            data = f.read()
    return FlashImage.from_binary(data, geometry)


def check(path: Path, geometry: FlashGeometry) -> bool:
    """
    Check that ``path`` is a usable pflash image for ``geometry``: the exact
    size, and a metadata block that is either erased or holds a well formed
    boot-trial log.
    """
    try:
        image = read_image(path, geometry)
        meta = image.metadata
        if not is_erased(meta):
            log = pflash_bootmeta.scan(meta)
            if not log.is_consistent(meta):
                raise ValueError(
                    f"metadata block at 0x{image.layout.metadata_offset:x} is "
                    f"neither erased nor a boot-trial log (stopped at word "
                    f"{log.next_index})"
                )
        _logger.info(
            f"{path}: {image.artifact_size} bytes programmed, metadata at "
            f"0x{image.layout.metadata_offset:x}"
        )
    except (ValueError, OSError, IntelHexError) as e:
        _logger.error(f"Exception: {e}")
        return False
    return True


def _exit_code(e: Exception) -> int:
    if isinstance(e, ArtifactMissingError):
        return os.EX_NOINPUT
    if isinstance(e, OSError):
        return os.EX_IOERR
    return os.EX_DATAERR


def _load_config(args) -> Optional[PflashConfig]:
    if getattr(args, "config", None) is None:
        return None
    if not args.config.exists():
        raise ConfigurationError(f"configuration file {args.config} doesn't exist")
    build_dir = getattr(args, "build_dir", None) or Path.cwd()
    env = {"$ROOT": str(ROOT), "$BUILD_DIR": str(build_dir)}
    return PflashConfig.load(args.config, env)


def _resolve_geometry(args, config: Optional[PflashConfig]) -> FlashGeometry:
    if config is not None:
        geometry = config.geometry
    else:
        geometry = FlashGeometry(DEFAULT_FLASH_SIZE, DEFAULT_BLOCK_SIZE)

    return FlashGeometry(
        total_size=(
            geometry.total_size if args.flash_size is None else args.flash_size
        ),
        erase_block_size=(
            geometry.erase_block_size if args.block_size is None else args.block_size
        ),
        base_addr=geometry.base_addr if args.base_address is None else args.base_address,
    )


def _resolve_provider(args, config: Optional[PflashConfig]) -> ArtifactProvider:
    if args.artifact is not None:
        return file_artifact(args.artifact)

    binary = Path(DEFAULT_ARTIFACT)
    if config is not None and config.binary is not None:
        binary = config.binary

    if args.build:
        if config is None or config.build is None:
            raise ConfigurationError("--build needs a configuration with a build step")
        return config.build.provider(binary)
    return file_artifact(binary)


def invoke_mkimg(args):
    try:
        config = _load_config(args)
        geometry = _resolve_geometry(args, config)
        provider = _resolve_provider(args, config)
        output = args.output_file
        if output is None and config is not None:
            output = config.output
        if output is None:
            output = Path(DEFAULT_HEX_IMAGE if args.hex else DEFAULT_IMAGE)
        report = compose(provider, geometry, output, hex_output=args.hex)
    except (ValueError, OSError) as e:
        _logger.error(f"Exception: {e}")
        return _exit_code(e)

    if args.json:
        print(json.dumps(report.to_dict()))
        return os.EX_OK

    print(f"Generated flash image: {report.output}")
    for line in report.lines():
        print(line)
    if not args.hex:
        print()
        print("Run QEMU like this to boot SPL1 directly from pflash0:")
        print(report.qemu_command())
    return os.EX_OK


def invoke_layout(args):
    try:
        config = _load_config(args)
        geometry = _resolve_geometry(args, config)
        layout = plan(geometry, args.artifact_size)
    except ValueError as e:
        _logger.error(f"Exception: {e}")
        return _exit_code(e)

    report = CompositionReport.from_layout(layout, args.artifact_size)
    if args.json:
        print(json.dumps(report.to_dict()))
    else:
        for line in report.lines():
            print(line)
    return os.EX_OK


def invoke_check(args):
    if not args.image.exists():
        print(f"File {args.image} doesn't exist")
        return os.EX_NOINPUT
    try:
        geometry = _resolve_geometry(args, _load_config(args))
    except ValueError as e:
        _logger.error(f"Exception: {e}")
        return _exit_code(e)

    valid = check(args.image, geometry)
    print(f"Flash image {args.image} is {'valid' if valid else 'invalid'}")
    return os.EX_OK if valid else os.EX_DATAERR


def invoke_bootmeta(args):
    if not args.image.exists():
        print(f"File {args.image} doesn't exist")
        return os.EX_NOINPUT
    try:
        geometry = _resolve_geometry(args, _load_config(args))
        image = read_image(args.image, geometry)
    except (ValueError, OSError, IntelHexError) as e:
        _logger.error(f"Exception: {e}")
        return os.EX_DATAERR

    log = pflash_bootmeta.scan(image.metadata)
    bank = pflash_bootmeta.choose_bank(log, args.max_trials)

    if args.json:
        print(json.dumps({**log.to_dict(), "next_bank": bank.value}))
        return os.EX_OK

    print(
        f"boot trials: bank A = {log.a_count}, bank B = {log.b_count}, "
        f"next_idx = {log.next_index} (capacity {log.capacity})"
    )
    if log.stray_word is not None:
        print(f"log ends at unexpected word 0x{log.stray_word:08x}")
    if log.full:
        print("log is full, the loader will compact it on the next boot")
    print(f"next bank: {bank.value}")
    return os.EX_OK


def _int(value: str) -> int:
    return int(value, 0)


def _add_geometry_args(parser: argparse.ArgumentParser):
    parser.add_argument(
        "-c", "--config", metavar="CFG", help="pflash YAML configuration", type=Path
    )
    parser.add_argument(
        "--flash-size",
        metavar="BYTES",
        help=f"flash device size (default {DEFAULT_FLASH_SIZE})",
        type=_int,
    )
    parser.add_argument(
        "--block-size",
        metavar="BYTES",
        help=f"flash erase block size (default {DEFAULT_BLOCK_SIZE})",
        type=_int,
    )
    parser.add_argument(
        "--base-address",
        metavar="ADDR",
        help=f"address flash is mapped at (default 0x{DEFAULT_BASE_ADDR:x})",
        type=_int,
    )


def parse_args(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(
        description="Utility to prepare SPL1 pflash images", allow_abbrev=False
    )
    parser.add_argument(
        "-v", "--verbose", help="increase verbosity", default=0, action="count"
    )
    subparsers = parser.add_subparsers()

    mkimg_parser = subparsers.add_parser("mkimg", help="Make a pflash image")
    _add_geometry_args(mkimg_parser)
    mkimg_parser.add_argument(
        "output_file",
        metavar="OUT",
        nargs="?",
        help=f"output image (default {DEFAULT_IMAGE}, {DEFAULT_HEX_IMAGE} with --hex)",
        type=Path,
    )
    mkimg_parser.add_argument(
        "-a",
        "--artifact",
        metavar="BIN",
        help="flat SPL1 binary or Intel HEX file",
        type=Path,
    )
    mkimg_parser.add_argument(
        "--build",
        action="store_true",
        help="run the configured build step to produce the artifact",
    )
    mkimg_parser.add_argument(
        "--build-dir",
        metavar="BUILD",
        help="directory substituted for $BUILD_DIR in the configuration",
        type=Path,
    )
    mkimg_parser.add_argument(
        "--hex", action="store_true", help="Generate intel hex file"
    )
    mkimg_parser.add_argument(
        "-j", "--json", help="output JSON report", default=False, action="store_true"
    )
    mkimg_parser.set_defaults(func=invoke_mkimg)

    layout_parser = subparsers.add_parser("layout", help="Show the planned layout")
    _add_geometry_args(layout_parser)
    layout_parser.add_argument(
        "-s",
        "--artifact-size",
        metavar="BYTES",
        default=0,
        help="size of the SPL1 binary to plan for",
        type=_int,
    )
    layout_parser.add_argument(
        "-j", "--json", help="output JSON", default=False, action="store_true"
    )
    layout_parser.set_defaults(func=invoke_layout)

    check_parser = subparsers.add_parser("check", help="Check a pflash image")
    check_parser.add_argument("image", metavar="IMG", help="image to check", type=Path)
    _add_geometry_args(check_parser)
    check_parser.set_defaults(func=invoke_check)

    bootmeta_parser = subparsers.add_parser(
        "bootmeta", help="Show the boot-trial log of a pflash image"
    )
    bootmeta_parser.add_argument(
        "image", metavar="IMG", help="image to inspect", type=Path
    )
    _add_geometry_args(bootmeta_parser)
    bootmeta_parser.add_argument(
        "-m",
        "--max-trials",
        metavar="N",
        default=pflash_bootmeta.DEFAULT_MAX_TRIALS,
        help="boot trials per bank before the loader switches",
        type=int,
    )
    bootmeta_parser.add_argument(
        "-j", "--json", help="output JSON", default=False, action="store_true"
    )
    bootmeta_parser.set_defaults(func=invoke_bootmeta)

    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        print("No command specified")
        parser.print_help()
        sys.exit(os.EX_USAGE)

    return args


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    if args.verbose >= 2:
        level = logging.DEBUG
    elif args.verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(format="%(message)s", level=level)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
