#!/usr/bin/env python3

# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

"""
Read-only decoder for the boot-trial log SPL1 keeps in the metadata block.

The log is a run of little-endian 32-bit words appended by the loader, one per
boot attempt. Erased words terminate it. This tool never writes the log, the
composer only ever hands the block over erased.
"""

from __future__ import annotations

from dataclasses import dataclass
import enum
import struct
from typing import Optional

ERASED_WORD = 0xFFFF_FFFF
TOKEN_BANK_A = 0x1111_1111
TOKEN_BANK_B = 0x0000_0000
WORD_SIZE = 4

DEFAULT_MAX_TRIALS = 4


class BootBank(enum.Enum):
    A = "A"
    B = "B"


@dataclass(frozen=True)
class TrialLog:
    a_count: int
    b_count: int
    next_index: int
    capacity: int
    # first word that is neither a token nor erased, if the scan hit one
    stray_word: Optional[int] = None

    @property
    def full(self) -> bool:
        return self.next_index >= self.capacity

    @property
    def next_offset(self) -> int:
        return self.next_index * WORD_SIZE

    def is_consistent(self, region: bytes) -> bool:
        if self.stray_word is not None:
            return False
        tail = region[self.next_offset : self.capacity * WORD_SIZE]
        return all(word == ERASED_WORD for (word,) in struct.iter_unpack("<I", tail))

    def to_dict(self) -> dict:
        return {
            "a_count": self.a_count,
            "b_count": self.b_count,
            "next_index": self.next_index,
            "capacity": self.capacity,
            "stray_word": self.stray_word,
        }


def scan(region: bytes) -> TrialLog:
    capacity = len(region) // WORD_SIZE
    a_count = 0
    b_count = 0
    stray = None
    idx = 0

    words = region[: capacity * WORD_SIZE]
    for (word,) in struct.iter_unpack("<I", words):
        if word == ERASED_WORD:
            break
        elif word == TOKEN_BANK_A:
            a_count += 1
        elif word == TOKEN_BANK_B:
            b_count += 1
        else:
            stray = word
            break
        idx += 1

    return TrialLog(
        a_count=a_count,
        b_count=b_count,
        next_index=idx,
        capacity=capacity,
        stray_word=stray,
    )


def choose_bank(log: TrialLog, max_trials: int = DEFAULT_MAX_TRIALS) -> BootBank:
    """
    Pick the bank the loader would try next.

    Bank B is preferred until it has used up ``max_trials`` attempts, then A
    gets its attempts. Once both are exhausted the loader falls back to B.
    """
    if log.b_count < max_trials:
        return BootBank.B
    elif log.a_count < max_trials:
        return BootBank.A
    return BootBank.B
