"""
Short Channel ID module for cl-fakechan-audit

A short channel id (SCID) locates a channel's funding output on chain:

    block_height x tx_index x output_index

lnd hands these around as a packed 64-bit integer, CLN as the text form
"BxTxO". ShortChannelId carries the structured triple and converts between
both representations losslessly, so it can be used as a dict key without
being mistaken for a plain number.

Packing (BOLT #7):
    bits 63..40  block height   (24 bits)
    bits 39..16  tx index       (24 bits)
    bits 15..0   output index   (16 bits)
"""

from dataclasses import dataclass
from typing import Union

MAX_BLOCK_HEIGHT = (1 << 24) - 1
MAX_TX_INDEX = (1 << 24) - 1
MAX_OUTPUT_INDEX = (1 << 16) - 1
MAX_PACKED_SCID = (1 << 64) - 1


@dataclass(frozen=True, order=True)
class ShortChannelId:
    """
    Immutable, hashable channel identifier.

    Attributes:
        block_height: Height of the block containing the funding tx
        tx_index: Position of the funding tx within that block
        output_index: Funding output index within the tx
    """
    block_height: int
    tx_index: int
    output_index: int

    def __post_init__(self):
        for name, value, limit in (
            ("block_height", self.block_height, MAX_BLOCK_HEIGHT),
            ("tx_index", self.tx_index, MAX_TX_INDEX),
            ("output_index", self.output_index, MAX_OUTPUT_INDEX),
        ):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer, got {value!r}")
            if not (0 <= value <= limit):
                raise ValueError(f"{name} {value} out of range [0, {limit}]")

    @classmethod
    def from_int(cls, packed: int) -> 'ShortChannelId':
        """Unpack the 64-bit integer form."""
        if isinstance(packed, bool) or not isinstance(packed, int):
            raise ValueError(f"Packed SCID must be an integer, got {packed!r}")
        if not (0 <= packed <= MAX_PACKED_SCID):
            raise ValueError(f"Packed SCID {packed} out of 64-bit range")
        return cls(
            block_height=packed >> 40,
            tx_index=(packed >> 16) & MAX_TX_INDEX,
            output_index=packed & MAX_OUTPUT_INDEX,
        )

    @classmethod
    def parse(cls, text: str) -> 'ShortChannelId':
        """
        Parse CLN's "BxTxO" form.

        The older colon-separated "B:T:O" form is accepted as well.
        """
        if not isinstance(text, str):
            raise ValueError(f"SCID text must be a string, got {text!r}")
        parts = text.strip().replace(':', 'x').split('x')
        if len(parts) != 3 or not all(p.isascii() and p.isdigit() for p in parts):
            raise ValueError(f"Malformed short channel id: {text!r}")
        return cls(int(parts[0]), int(parts[1]), int(parts[2]))

    @classmethod
    def coerce(cls, value: Union['ShortChannelId', str, int]) -> 'ShortChannelId':
        """Accept any of the three representations."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls.parse(value)
        return cls.from_int(value)

    def to_int(self) -> int:
        return (self.block_height << 40) | (self.tx_index << 16) | self.output_index

    def __str__(self) -> str:
        return f"{self.block_height}x{self.tx_index}x{self.output_index}"
