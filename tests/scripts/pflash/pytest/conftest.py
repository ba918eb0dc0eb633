# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

from pathlib import Path
import pytest
import sys

TEST_ROOT = Path(__file__).parent.resolve()
MODULE_ROOT = TEST_ROOT.parents[3]

sys.path.append(str(MODULE_ROOT / "scripts"))

from pflash_layout import FlashGeometry  # noqa: E402

FLASH_SIZE = 32 * 1024 * 1024
BLOCK_SIZE = 128 * 1024
META_OFFSET = 0x1FE0000


@pytest.fixture(scope="session")
def geometry():
    """The QEMU virt pflash0 device: 32 MiB, 128 KiB erase blocks."""
    return FlashGeometry(FLASH_SIZE, BLOCK_SIZE)


@pytest.fixture
def small_geometry():
    return FlashGeometry(0x4000, 0x1000)


@pytest.fixture
def spl_binary():
    # Looks like code: no 0xff padding at the end
    return bytes((i * 7 + 3) & 0x7F for i in range(4096))


@pytest.fixture
def spl_file(tmp_path: Path, spl_binary):
    pth = tmp_path / "spl1.bin"
    pth.write_bytes(spl_binary)
    return pth
