"""
Auditor module for cl-fakechan-audit

Runs the three audit stages strictly in order:

1. Subjective view:   our open channels and the capacity we believe in
2. Invalidity check:  compare each against the channel graph
3. Loss replay:       only if something was invalid, walk the forwarding
                      history and attribute gains/losses per fake channel

A failure to list channels or to load the forwarding history aborts the
whole audit with AuditPreconditionError; there is no partial result.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .channel_id import ShortChannelId
from .config import ConfigSnapshot
from .invalidity_detector import ChannelDiagnostic, InvalidityDetector
from .loss_quantifier import quantify_losses
from .subjective_view import build_subjective_view


def msat_to_sat(msat: int) -> int:
    """Whole sats, truncated toward zero."""
    sats = abs(msat) // 1000
    return -sats if msat < 0 else sats


@dataclass(frozen=True)
class AuditResult:
    """
    Outcome of one audit.

    loss_ledger and total_loss_msat are None when the node was not affected:
    in that case the forwarding history is never examined.
    """
    affected: bool
    channels_checked: int
    invalid_channels: FrozenSet[ShortChannelId]
    diagnostics: Tuple[ChannelDiagnostic, ...]
    loss_ledger: Optional[Mapping[ShortChannelId, int]] = None
    total_loss_msat: Optional[int] = None
    forwards_examined: int = 0
    forwards_matched: int = 0
    forward_counts: Optional[Mapping[ShortChannelId, int]] = None
    lookup_failures: int = 0
    started_at: float = 0.0
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "affected": self.affected,
            "status": "affected" if self.affected else "not affected",
            "channels_checked": self.channels_checked,
            "invalid_channels": [str(scid) for scid in sorted(self.invalid_channels)],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "lookup_failures": self.lookup_failures,
            "started_at": int(self.started_at),
            "duration_seconds": round(self.duration, 3),
        }
        if self.affected:
            result["loss_ledger_msat"] = {
                str(scid): amount for scid, amount in sorted(self.loss_ledger.items())
            }
            result["total_loss_msat"] = self.total_loss_msat
            result["total_loss_sat"] = msat_to_sat(self.total_loss_msat)
            result["forwards_examined"] = self.forwards_examined
            result["forwards_matched"] = self.forwards_matched
            result["forwards_per_channel"] = {
                str(scid): count for scid, count in sorted((self.forward_counts or {}).items())
            }
        return result


class FakeChannelAuditor:
    """
    Single point-in-time fake channel audit.

    Args:
        source: NodeSource-compatible collaborator
        plugin: Object with a `log(message, level=...)` method
        config: ConfigSnapshot for this run
    """

    def __init__(self, source, plugin, config: ConfigSnapshot):
        self.source = source
        self.plugin = plugin
        self.config = config

    def run(self) -> AuditResult:
        """
        Run the audit end to end.

        Raises:
            AuditPreconditionError: if channels or forwarding history
                                    cannot be obtained
        """
        started_at = time.time()

        self.plugin.log("Obtaining candidate set of invalid channels...")
        view = build_subjective_view(self.source.list_open_channels())

        self.plugin.log(f"Filtering out valid channels among {len(view)}...")
        detector = InvalidityDetector(
            self.source.get_channel_capacity,
            self.plugin,
            max_workers=self.config.max_concurrent_lookups,
        )
        detection = detector.detect(view)

        self.plugin.log(f"Num invalid channels found: {len(detection.invalid_channels)}")

        if not detection.affected:
            self.plugin.log("Your node was not affected by fake channels (CVE-2019-12999)!")
            return AuditResult(
                affected=False,
                channels_checked=len(view),
                invalid_channels=frozenset(),
                diagnostics=(),
                lookup_failures=detection.lookup_failures,
                started_at=started_at,
                duration=time.time() - started_at,
            )

        self.plugin.log("Quantifying amount lost due to forwards over invalid channels...")
        events = self.source.get_forwarding_history()
        report = quantify_losses(events, detection.invalid_channels)

        for scid, amount in sorted(report.ledger.items()):
            self.plugin.log(f"FakeChannel({scid}) net balance change: {amount}msat")
        self.plugin.log(f"Net balance change over all fake channels: {report.total_loss_msat}msat")

        return AuditResult(
            affected=True,
            channels_checked=len(view),
            invalid_channels=detection.invalid_channels,
            diagnostics=detection.diagnostics,
            loss_ledger=report.ledger,
            total_loss_msat=report.total_loss_msat,
            forwards_examined=report.forwards_examined,
            forwards_matched=report.forwards_matched,
            forward_counts=report.forward_counts,
            lookup_failures=detection.lookup_failures,
            started_at=started_at,
            duration=time.time() - started_at,
        )
