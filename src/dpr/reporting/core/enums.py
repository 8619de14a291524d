# src/dpr/reporting/core/enums.py
from __future__ import annotations

from enum import Enum


class LowercaseEnum(str, Enum):
    """String enum whose lookup ignores case, so ``"PERMIT"`` finds ``permit``."""

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return None
