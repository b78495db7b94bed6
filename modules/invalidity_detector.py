"""
Invalidity Detector module for cl-fakechan-audit

Compares our subjective view of each channel against the channel graph.

The channel graph only admits channels whose funding output was validated
on chain, so it holds the true capacity. A node can however be tricked into
storing a different value (or outpoint) in its own channel record. A channel
is INVALID when:

- the graph has no record of it (ABSENT), including when the lookup itself
  fails; a legitimate channel is always resolvable in the graph
- the graph's capacity differs from ours by any amount (MISMATCH)

Both reasons land in the same invalid set. The reason is kept on the
diagnostic record so the operator can tell them apart.

Lookups are independent, so they are fanned out over a bounded thread pool
and merged in completion order. Nothing is retried.
"""

import concurrent.futures
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .channel_id import ShortChannelId

CapacityLookup = Callable[[ShortChannelId], Optional[int]]


class InvalidityReason(Enum):
    """
    Why a channel was classified invalid.

    ABSENT: Channel graph has no record (or the lookup failed)
    MISMATCH: Channel graph capacity differs from ours
    """
    ABSENT = "absent"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class ChannelDiagnostic:
    """
    Diagnostic record for one invalid channel.

    Attributes:
        channel_id: The invalid channel
        reason: ABSENT or MISMATCH
        subjective_capacity_msat: What our node believes
        authoritative_capacity_msat: What the channel graph says (None if absent)
        error: Lookup error text, when the lookup raised
    """
    channel_id: ShortChannelId
    reason: InvalidityReason
    subjective_capacity_msat: int
    authoritative_capacity_msat: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "channel_id": str(self.channel_id),
            "reason": self.reason.value,
            "subjective_capacity_msat": self.subjective_capacity_msat,
            "authoritative_capacity_msat": self.authoritative_capacity_msat,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class DetectionResult:
    invalid_channels: FrozenSet[ShortChannelId]
    diagnostics: Tuple[ChannelDiagnostic, ...]
    lookup_failures: int = 0

    @property
    def affected(self) -> bool:
        return bool(self.invalid_channels)


def classify_channel(scid: ShortChannelId, subjective_msat: int,
                     authoritative_msat: Optional[int],
                     error: Optional[Exception] = None) -> Optional[ChannelDiagnostic]:
    """
    Decide a single channel.

    Returns a ChannelDiagnostic if the channel is invalid, None if valid.
    """
    if error is not None or authoritative_msat is None:
        return ChannelDiagnostic(
            channel_id=scid,
            reason=InvalidityReason.ABSENT,
            subjective_capacity_msat=subjective_msat,
            error=str(error) if error is not None else None,
        )
    if authoritative_msat != subjective_msat:
        return ChannelDiagnostic(
            channel_id=scid,
            reason=InvalidityReason.MISMATCH,
            subjective_capacity_msat=subjective_msat,
            authoritative_capacity_msat=authoritative_msat,
        )
    return None


class InvalidityDetector:
    """
    Cross-checks the subjective view against the channel graph.

    Args:
        lookup: Returns the graph capacity for a channel, None if unknown
        plugin: Object with a `log(message, level=...)` method
        max_workers: Upper bound on concurrent lookups
    """

    def __init__(self, lookup: CapacityLookup, plugin, max_workers: int = 8):
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.lookup = lookup
        self.plugin = plugin
        self.max_workers = max_workers

    def detect(self, view: Mapping[ShortChannelId, int]) -> DetectionResult:
        """Classify every channel in `view`."""
        invalid = set()
        diagnostics: List[ChannelDiagnostic] = []
        failures = 0

        if not view:
            return DetectionResult(frozenset(), ())

        workers = min(self.max_workers, len(view))
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="fakechan-lookup"
        ) as executor:
            futures = {executor.submit(self.lookup, scid): scid for scid in view}

            for future in concurrent.futures.as_completed(futures):
                scid = futures[future]
                authoritative, error = None, None
                try:
                    authoritative = future.result()
                except Exception as e:
                    error = e
                    failures += 1
                    self.plugin.log(
                        f"Unable to obtain graph channel for cid({scid}): {e}",
                        level='warn'
                    )

                diagnostic = classify_channel(scid, view[scid], authoritative, error)
                if diagnostic is None:
                    continue

                invalid.add(scid)
                diagnostics.append(diagnostic)
                self._log_diagnostic(diagnostic)

        # Completion order is arbitrary; report in chain order
        diagnostics.sort(key=lambda d: d.channel_id)
        return DetectionResult(frozenset(invalid), tuple(diagnostics), failures)

    def _log_diagnostic(self, diagnostic: ChannelDiagnostic) -> None:
        if diagnostic.reason is InvalidityReason.MISMATCH:
            self.plugin.log("**** FAKE CHANNEL FOUND ****", level='warn')
            self.plugin.log(f"CID: {diagnostic.channel_id}", level='warn')
            self.plugin.log(
                f"Actual channel value: {diagnostic.authoritative_capacity_msat}msat",
                level='warn'
            )
            self.plugin.log(
                f"Subjective channel value: {diagnostic.subjective_capacity_msat}msat",
                level='warn'
            )
            self.plugin.log("****************************", level='warn')
        elif diagnostic.error is None:
            self.plugin.log(
                f"Channel {diagnostic.channel_id} not found in channel graph",
                level='warn'
            )
