#!/usr/bin/env python3

# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

"""
Layout planning for a NOR pflash image booted execute-in-place.

The flash is split into a code region starting at offset 0 and a metadata
region occupying the last erase block. Nothing in here touches a file.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

ERASED_BYTE = 0xFF

DEFAULT_FLASH_SIZE = 32 * 1024 * 1024
DEFAULT_BLOCK_SIZE = 128 * 1024
# QEMU virt pflash0
DEFAULT_BASE_ADDR = 0x2000_0000

_logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Flash geometry or configuration is unusable."""

    def __init__(self, message: str, **values: Any) -> None:
        self.values = values
        if values:
            detail = ", ".join(f"{k}={v}" for k, v in values.items())
            message = f"{message} ({detail})"
        super().__init__(message)


class ArtifactOverlapError(ValueError):
    """The artifact would spill into the metadata region."""

    def __init__(self, artifact_size: int, capacity: int) -> None:
        self.artifact_size = artifact_size
        self.capacity = capacity
        self.deficit = artifact_size - capacity
        super().__init__(
            f"artifact ({artifact_size} bytes) overlaps metadata block "
            f"(starts at {capacity} / 0x{capacity:x}): code region capacity is "
            f"{capacity} bytes, {self.deficit} bytes over"
        )


GeometryError = ConfigurationError
OverlapError = ArtifactOverlapError


@dataclass(frozen=True)
class FlashGeometry:
    total_size: int
    erase_block_size: int
    # Only used in messages
    base_addr: int = DEFAULT_BASE_ADDR

    def __post_init__(self):
        if self.erase_block_size <= 0:
            raise ConfigurationError(
                "erase block size must be positive",
                erase_block_size=self.erase_block_size,
            )
        if self.total_size <= 0:
            raise ConfigurationError(
                "flash size must be positive", total_size=self.total_size
            )
        if self.total_size % self.erase_block_size != 0:
            raise ConfigurationError(
                "flash size is not a multiple of the erase block size",
                total_size=self.total_size,
                erase_block_size=self.erase_block_size,
            )
        if self.total_size == self.erase_block_size:
            raise ConfigurationError(
                "flash holds a single erase block, leaving no code region",
                total_size=self.total_size,
                erase_block_size=self.erase_block_size,
            )

    @property
    def block_count(self) -> int:
        return self.total_size // self.erase_block_size

    @staticmethod
    def loads(data: dict[str, Any]) -> FlashGeometry:
        return FlashGeometry(
            total_size=data["device_size"],
            erase_block_size=data["block_size"],
            base_addr=data.get("base_address", DEFAULT_BASE_ADDR),
        )


@dataclass(frozen=True)
class Region:
    offset: int
    size: int

    @property
    def end(self) -> int:
        return self.offset + self.size

    def __contains__(self, offset: int) -> bool:
        return self.offset <= offset < self.end

    def __repr__(self):
        return f"Region(0x{self.offset:x}:0x{self.end:x})"


@dataclass(frozen=True)
class RegionLayout:
    geometry: FlashGeometry
    code_region: Region
    metadata_region: Region

    @staticmethod
    def for_geometry(geometry: FlashGeometry) -> RegionLayout:
        """
        Derive the layout of ``geometry`` without an artifact.

        Tools that only need to find the metadata block (checkers, inspectors)
        use this so they agree with the composer on where it lives.
        """
        meta_offset = metadata_offset(geometry)
        return RegionLayout(
            geometry=geometry,
            code_region=Region(0, meta_offset),
            metadata_region=Region(meta_offset, geometry.erase_block_size),
        )

    @property
    def metadata_offset(self) -> int:
        return self.metadata_region.offset

    @property
    def code_capacity(self) -> int:
        return self.code_region.size

    @property
    def metadata_block_index(self) -> int:
        return self.metadata_region.offset // self.geometry.erase_block_size

    def margin(self, artifact_size: int) -> int:
        return self.metadata_region.offset - artifact_size


def metadata_offset(geometry: FlashGeometry) -> int:
    return geometry.total_size - geometry.erase_block_size


def plan(geometry: FlashGeometry, artifact_size: int) -> RegionLayout:
    """
    Plan the flash layout for an artifact of ``artifact_size`` bytes.

    Raises ArtifactOverlapError if the artifact does not end before the
    metadata block.
    """
    if artifact_size < 0:
        raise ValueError(f"artifact size {artifact_size} is negative")

    layout = RegionLayout.for_geometry(geometry)
    if artifact_size > layout.metadata_offset:
        raise ArtifactOverlapError(artifact_size, layout.metadata_offset)

    _logger.debug(
        f"planned {layout.code_region} for {artifact_size} bytes, "
        f"metadata {layout.metadata_region}"
    )
    return layout
