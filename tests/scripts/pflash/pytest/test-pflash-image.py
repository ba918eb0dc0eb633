# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

import io
from pathlib import Path
import pytest
import sys

from intelhex import IntelHex

TEST_ROOT = Path(__file__).parent.resolve()
MODULE_ROOT = TEST_ROOT.parents[3]

sys.path.append(str(MODULE_ROOT / "scripts"))

import pflash_image  # noqa: E402
from pflash_image import FlashImage  # noqa: E402
from pflash_layout import (  # noqa: E402
    ArtifactOverlapError,
    ConfigurationError,
    FlashGeometry,
    plan,
)

ERASED = 0xFF


def test_write_qemu_virt(geometry, spl_binary):
    """
    32 MiB image with a 4 KiB SPL1: artifact at 0, everything else erased.
    """
    layout = plan(geometry, len(spl_binary))
    image = pflash_image.write(layout, geometry, spl_binary)
    data = image.to_binary()

    assert len(data) == 33554432
    assert data[0] == spl_binary[0]
    assert data[:4096] == spl_binary
    assert data.count(ERASED, 4096, 33423360) == 33423360 - 4096
    assert data.count(ERASED, 33423360, 33554432) == 131072

    assert image.artifact_size == 4096
    assert image.layout is layout
    assert image.code == spl_binary
    assert pflash_image.is_erased(image.gap)
    assert len(image.metadata) == 131072
    assert pflash_image.is_erased(image.metadata)


def test_write_gap_is_never_zero(small_geometry):
    """
    An all-zero artifact must not make the gap look programmed.
    """
    artifact = bytes(0x100)
    layout = plan(small_geometry, len(artifact))
    data = pflash_image.write(layout, small_geometry, artifact).to_binary()

    assert data[:0x100] == artifact
    assert pflash_image.is_erased(data[0x100:])


def test_write_exact_fit(small_geometry):
    artifact = b"\x13" * 0x3000
    layout = plan(small_geometry, len(artifact))
    image = pflash_image.write(layout, small_geometry, artifact)

    assert image.gap == b""
    assert image.to_binary()[:0x3000] == artifact
    assert pflash_image.is_erased(image.metadata)


def test_write_empty_artifact(small_geometry):
    layout = plan(small_geometry, 0)
    image = pflash_image.write(layout, small_geometry, b"")
    assert pflash_image.is_erased(image.to_binary())


def test_write_idempotent(geometry, spl_binary):
    """
    Composing twice from the same inputs yields identical bytes.
    """
    layout = plan(geometry, len(spl_binary))
    first = pflash_image.write(layout, geometry, spl_binary).to_binary()
    second = pflash_image.write(layout, geometry, spl_binary).to_binary()
    assert first == second


def test_write_rejects_oversized_artifact(small_geometry):
    layout = plan(small_geometry, 0x10)
    with pytest.raises(ArtifactOverlapError) as excinfo:
        pflash_image.write(layout, small_geometry, b"\x00" * 0x3001)
    assert excinfo.value.deficit == 1


def test_write_rejects_foreign_layout(small_geometry):
    layout = plan(FlashGeometry(0x8000, 0x1000), 0x10)
    with pytest.raises(ConfigurationError):
        pflash_image.write(layout, small_geometry, b"\x00" * 0x10)


def test_write_ignores_base_address(small_geometry):
    """
    The mapping address does not take part in the layout, so a layout planned
    with another base address still applies.
    """
    layout = plan(FlashGeometry(0x4000, 0x1000, 0x8000_0000), 0x10)
    image = pflash_image.write(layout, small_geometry, b"\x13" * 0x10)

    assert image.to_binary()[:0x10] == b"\x13" * 0x10
    assert len(image.to_binary()) == 0x4000


def test_write_foreign_layout_names_both_geometries(small_geometry):
    layout = plan(FlashGeometry(0x4000, 0x2000), 0x10)
    with pytest.raises(ConfigurationError) as excinfo:
        pflash_image.write(layout, small_geometry, b"\x00" * 0x10)

    assert excinfo.value.values == {
        "layout_total_size": 0x4000,
        "layout_erase_block_size": 0x2000,
        "total_size": 0x4000,
        "erase_block_size": 0x1000,
    }


def test_erase():
    buf = bytearray(8)
    pflash_image.erase(buf, 2, 6)
    assert buf == bytearray(b"\x00\x00\xff\xff\xff\xff\x00\x00")

    with pytest.raises(ValueError):
        pflash_image.erase(buf, 4, 9)
    with pytest.raises(ValueError):
        pflash_image.erase(buf, 5, 4)


def test_is_erased():
    assert pflash_image.is_erased(b"")
    assert pflash_image.is_erased(b"\xff" * 16)
    assert not pflash_image.is_erased(b"\xff" * 15 + b"\xfe")


def test_to_intel_hex(small_geometry):
    """
    The hex rendering carries only the programmed bytes, at flash offset 0.
    """
    artifact = bytes(range(64))
    layout = plan(small_geometry, len(artifact))
    image = pflash_image.write(layout, small_geometry, artifact)

    ih = IntelHex()
    ih.loadhex(io.StringIO(image.to_intel_hex().decode("ascii")))

    assert ih.minaddr() == 0
    assert ih.maxaddr() == len(artifact) - 1
    assert ih.tobinstr() == artifact


def test_from_binary(small_geometry):
    artifact = b"\x01\x02\x03\x04\xff\xff"
    layout = plan(small_geometry, len(artifact))
    data = pflash_image.write(layout, small_geometry, artifact).to_binary()

    image = FlashImage.from_binary(data, small_geometry)
    # trailing erased bytes can't be told apart from the gap
    assert image.artifact_size == 4
    assert image.layout == layout
    assert image.data == data


def test_from_binary_wrong_size(small_geometry):
    with pytest.raises(ValueError):
        FlashImage.from_binary(b"\xff" * 0x3000, small_geometry)
