"""
Loss Quantifier module for cl-fakechan-audit

Replays the forwarding ledger to put a number on what fake channels cost us.

Accounting per forward (amounts in msat):

- Inbound leg on a fake channel: we accepted counterfeit coins inbound and
  paid real coins outbound. We also believed we kept the fee on the inbound
  side, which we did not. Loss = in_msat - fee_msat.

      ledger[in_channel] -= in_msat - fee_msat

- Outbound leg on a fake channel: we handed counterfeit coins outbound in
  exchange for real coins inbound.

      ledger[out_channel] += out_msat

A forward touching no fake channel contributes nothing, not even a zero
entry. Every operation here is a pure fold over explicit inputs: ledgers are
never mutated in place, so partial ledgers from any partition of the events
can be merged by entry-wise addition in any order.
"""

from dataclasses import dataclass, field
from functools import reduce
from typing import AbstractSet, Dict, Iterable, List, Mapping, Sequence

from .channel_id import ShortChannelId

LossLedger = Dict[ShortChannelId, int]


@dataclass(frozen=True)
class ForwardingEvent:
    """
    One settled forward, read-only.

    Attributes:
        in_channel: Channel the HTLC arrived on
        out_channel: Channel the HTLC left on
        in_msat: Amount received inbound
        out_msat: Amount sent outbound
        fee_msat: Fee earned (in_msat - out_msat)
    """
    in_channel: ShortChannelId
    out_channel: ShortChannelId
    in_msat: int
    out_msat: int
    fee_msat: int

    def touches(self, channels: AbstractSet[ShortChannelId]) -> bool:
        return self.in_channel in channels or self.out_channel in channels


@dataclass(frozen=True)
class LossReport:
    """Output of the quantifier."""
    ledger: Mapping[ShortChannelId, int]
    total_loss_msat: int
    forwards_examined: int
    forwards_matched: int = 0
    # Per-channel forward counts, for reporting
    forward_counts: Mapping[ShortChannelId, int] = field(default_factory=dict)


def fold_event(ledger: Mapping[ShortChannelId, int], event: ForwardingEvent,
               invalid: AbstractSet[ShortChannelId]) -> LossLedger:
    """Return a new ledger with `event` applied."""
    updated = dict(ledger)
    if event.in_channel in invalid:
        updated[event.in_channel] = (
            updated.get(event.in_channel, 0) - (event.in_msat - event.fee_msat)
        )
    if event.out_channel in invalid:
        updated[event.out_channel] = updated.get(event.out_channel, 0) + event.out_msat
    return updated


def fold_events(events: Iterable[ForwardingEvent],
                invalid: AbstractSet[ShortChannelId]) -> LossLedger:
    """Fold a sequence of forwards into a ledger, starting from empty."""
    relevant = (e for e in events if e.touches(invalid))
    return reduce(lambda ledger, event: fold_event(ledger, event, invalid), relevant, {})


def merge_ledgers(a: Mapping[ShortChannelId, int],
                  b: Mapping[ShortChannelId, int]) -> LossLedger:
    """Entry-wise sum of two partial ledgers."""
    merged = dict(a)
    for scid, amount in b.items():
        merged[scid] = merged.get(scid, 0) + amount
    return merged


def total_loss(ledger: Mapping[ShortChannelId, int]) -> int:
    """Sum of all entries. May be zero, positive or negative."""
    return sum(ledger.values())


def partition(events: Sequence[ForwardingEvent], partitions: int) -> List[Sequence[ForwardingEvent]]:
    """Split `events` into at most `partitions` contiguous chunks."""
    if partitions < 1:
        raise ValueError(f"partitions must be >= 1, got {partitions}")
    if not events:
        return []
    size = -(-len(events) // partitions)
    return [events[i:i + size] for i in range(0, len(events), size)]


def quantify_losses(events: Sequence[ForwardingEvent],
                    invalid: AbstractSet[ShortChannelId],
                    partitions: int = 1) -> LossReport:
    """
    Compute the per-channel ledger and total loss.

    Args:
        events: Full forwarding history (any order)
        invalid: Non-empty set of invalid channels
        partitions: Number of chunks to fold independently before merging.
                    The result is identical for every value.

    Raises:
        ValueError: if `invalid` is empty
    """
    if not invalid:
        raise ValueError("Loss quantification needs at least one invalid channel")

    events = list(events)
    partials = [fold_events(chunk, invalid) for chunk in partition(events, partitions)]
    ledger = reduce(merge_ledgers, partials, {})

    invalid_set = set(invalid)
    counts: Dict[ShortChannelId, int] = {}
    matched = 0
    for event in events:
        if not event.touches(invalid):
            continue
        matched += 1
        for scid in {event.in_channel, event.out_channel} & invalid_set:
            counts[scid] = counts.get(scid, 0) + 1

    return LossReport(
        ledger=ledger,
        total_loss_msat=total_loss(ledger),
        forwards_examined=len(events),
        forwards_matched=matched,
        forward_counts=counts,
    )
