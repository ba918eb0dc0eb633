#!/usr/bin/env python3

# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass
import io
import logging

from intelhex import IntelHex

from pflash_layout import (
    ERASED_BYTE,
    ArtifactOverlapError,
    ConfigurationError,
    FlashGeometry,
    RegionLayout,
)

_logger = logging.getLogger(__name__)


def is_erased(data: bytes) -> bool:
    return data.count(ERASED_BYTE) == len(data)


def erase(buf: bytearray, start: int, end: int):
    """Reset ``buf[start:end]`` to the erased state, as a block erase would."""
    if not 0 <= start <= end <= len(buf):
        raise ValueError(f"erase range {start:x}:{end:x} outside image")
    buf[start:end] = bytes([ERASED_BYTE]) * (end - start)


@dataclass(frozen=True)
class FlashImage:
    layout: RegionLayout
    artifact_size: int
    data: bytes

    @property
    def code(self) -> bytes:
        return self.data[: self.artifact_size]

    @property
    def gap(self) -> bytes:
        return self.data[self.artifact_size : self.layout.metadata_offset]

    @property
    def metadata(self) -> bytes:
        region = self.layout.metadata_region
        return self.data[region.offset : region.end]

    def to_binary(self) -> bytes:
        return self.data

    def to_intel_hex(self) -> bytes:
        # Only programmed bytes are emitted; erased ranges are implied since the
        # flashing tool erases before it programs.
        ih = IntelHex()
        ih.frombytes(self.code, offset=self.layout.code_region.offset)
        output = io.StringIO()
        ih.write_hex_file(output)
        return output.getvalue().encode("ascii")

    @staticmethod
    def from_binary(data: bytes, geometry: FlashGeometry) -> FlashImage:
        if len(data) != geometry.total_size:
            raise ValueError(
                f"image is {len(data)} bytes, expected {geometry.total_size}"
            )

        layout = RegionLayout.for_geometry(geometry)
        code = data[: layout.metadata_offset]
        # trailing 0xFF bytes of the artifact are indistinguishable from the gap
        artifact_size = len(code.rstrip(bytes([ERASED_BYTE])))

        return FlashImage(layout=layout, artifact_size=artifact_size, data=data)


def write(layout: RegionLayout, geometry: FlashGeometry, artifact: bytes) -> FlashImage:
    # base_addr is informational, only the sizes shape the image
    planned = layout.geometry
    if (planned.total_size, planned.erase_block_size) != (
        geometry.total_size,
        geometry.erase_block_size,
    ):
        raise ConfigurationError(
            "layout was planned for a different flash geometry",
            layout_total_size=planned.total_size,
            layout_erase_block_size=planned.erase_block_size,
            total_size=geometry.total_size,
            erase_block_size=geometry.erase_block_size,
        )
    if len(artifact) > layout.code_capacity:
        raise ArtifactOverlapError(len(artifact), layout.metadata_offset)

    # Start from a bulk-erased device
    buf = bytearray([ERASED_BYTE]) * geometry.total_size

    code = layout.code_region
    buf[code.offset : code.offset + len(artifact)] = artifact
    _logger.debug(f"programmed {len(artifact)} bytes at 0x{code.offset:08x}")

    # The metadata block has to come out erased no matter how the buffer was
    # filled above.
    meta = layout.metadata_region
    erase(buf, meta.offset, meta.end)
    _logger.debug(
        f"erased metadata block {layout.metadata_block_index} at 0x{meta.offset:08x}"
    )

    return FlashImage(layout=layout, artifact_size=len(artifact), data=bytes(buf))
