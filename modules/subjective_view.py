"""
Subjective View module for cl-fakechan-audit

Our node's own belief about each open channel's capacity. This is the side
of the comparison a fake-channel attack corrupts.
"""

from types import MappingProxyType
from typing import Iterable, Mapping, Tuple

from .channel_id import ShortChannelId

SubjectiveChannelView = Mapping[ShortChannelId, int]


def build_subjective_view(channels: Iterable[Tuple[ShortChannelId, int]]) -> SubjectiveChannelView:
    """
    Build a read-only scid -> capacity_msat view.

    If the same scid shows up twice the last entry wins; lightningd never
    reports duplicates so this is not treated as an error.

    Raises:
        ValueError: on a negative capacity
    """
    view = {}
    for scid, capacity_msat in channels:
        if capacity_msat < 0:
            raise ValueError(f"Negative capacity {capacity_msat} for channel {scid}")
        view[scid] = capacity_msat
    return MappingProxyType(view)
