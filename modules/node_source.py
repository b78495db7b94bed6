"""
Node Source module for cl-fakechan-audit

Wraps the lightningd JSON-RPC interface behind the three capabilities the
audit consumes:

- list_open_channels:     our subjective view of channels (listpeerchannels)
- get_channel_capacity:   the channel graph's view of one channel (listchannels)
- get_forwarding_history: every settled forward we ever made (listforwards)

The channel graph only accepts channels whose funding output it could
validate on chain, so its `amount_msat` is the authoritative capacity. Our
own channel records (`total_msat`) are what a fake-channel attack corrupts.
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple

from pyln.client import RpcError

from .channel_id import ShortChannelId
from .loss_quantifier import ForwardingEvent

# Channel states that count as "currently open"
OPEN_CHANNEL_STATES = frozenset({
    "CHANNELD_NORMAL",
    "CHANNELD_AWAITING_SPLICE",
})


class AuditError(Exception):
    """Base class for audit failures."""


class AuditPreconditionError(AuditError):
    """
    A call the whole audit depends on could not complete.

    Raised for the channel listing and the forwarding history. There is no
    meaningful degraded mode for either, so the audit aborts.
    """

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Unable to {operation}: {cause}")


def to_msat(value: Any) -> int:
    """
    Normalise an amount field to integer millisatoshis.

    CLN returns plain ints on current versions, pyln-client may already have
    wrapped `*_msat` fields in Millisatoshi, and older nodes report strings
    like "1000msat".
    """
    if value is None:
        return 0
    if hasattr(value, 'millisatoshis'):
        return int(value.millisatoshis)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        clean = value[:-4] if value.endswith('msat') else value
        if clean.isdigit():
            return int(clean)
    raise ValueError(f"Invalid msat amount: {value!r}")


def _amount_field(record: Dict[str, Any], name: str) -> int:
    """Read `<name>_msat`, falling back to the legacy `<name>_msatoshi`."""
    value = record.get(f"{name}_msat")
    if value is None:
        value = record.get(f"{name}_msatoshi")
    return to_msat(value)


class NodeSource:
    """
    Read-only view of a CLN node for the audit.

    Args:
        rpc: pyln LightningRpc (or plugin.rpc)
        plugin: Object with a `log(message, level=...)` method
        forwards_page_size: Page size for listforwards (0 = one call)
    """

    def __init__(self, rpc, plugin, forwards_page_size: int = 0):
        self.rpc = rpc
        self.plugin = plugin
        self.forwards_page_size = forwards_page_size

    def list_open_channels(self) -> List[Tuple[ShortChannelId, int]]:
        """
        Return (scid, capacity_msat) for every open channel.

        Raises:
            AuditPreconditionError: if listpeerchannels fails or returns
                                    a record that cannot be parsed
        """
        try:
            result = self.rpc.listpeerchannels()
        except (RpcError, OSError) as e:
            raise AuditPreconditionError("obtain channels", e) from e

        channels = []
        try:
            for channel in result.get("channels", []):
                if channel.get("state") not in OPEN_CHANNEL_STATES:
                    continue
                scid = channel.get("short_channel_id")
                if not scid:
                    # Not yet confirmed, nothing to check against the graph
                    continue
                channels.append((ShortChannelId.parse(scid), _amount_field(channel, "total")))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise AuditPreconditionError("parse channel listing", e) from e

        self.plugin.log(f"Found {len(channels)} open channels", level='debug')
        return channels

    def get_channel_capacity(self, scid: ShortChannelId) -> Optional[int]:
        """
        Return the channel graph's capacity for `scid`, or None if unknown.

        Errors are not caught here; the caller decides how a failed lookup
        is classified.
        """
        result = self.rpc.listchannels(short_channel_id=str(scid))
        entries = result.get("channels", [])
        if not entries:
            return None
        # Both directions carry the same funding amount
        return _amount_field(entries[0], "amount")

    def get_forwarding_history(self) -> List[ForwardingEvent]:
        """
        Return every settled forward in node history.

        Raises:
            AuditPreconditionError: if any listforwards call fails or a
                                    settled forward cannot be parsed
        """
        try:
            raw = list(self._iter_raw_forwards())
        except (RpcError, OSError) as e:
            raise AuditPreconditionError("obtain forwarding history", e) from e
        except (ValueError, TypeError, AttributeError) as e:
            raise AuditPreconditionError("parse forwarding history", e) from e

        events = []
        try:
            for fwd in raw:
                if fwd.get("status", "settled") != "settled":
                    continue
                events.append(self._parse_forward(fwd))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise AuditPreconditionError("parse forwarding history", e) from e

        self.plugin.log(f"Loaded {len(events)} settled forwards", level='debug')
        return events

    def _iter_raw_forwards(self) -> Iterator[Dict[str, Any]]:
        if self.forwards_page_size <= 0:
            result = self.rpc.listforwards(status="settled")
            yield from result.get("forwards", [])
            return

        start = 0
        while True:
            result = self.rpc.listforwards(
                status="settled",
                index="created",
                start=start,
                limit=self.forwards_page_size,
            )
            page = result.get("forwards", [])
            yield from page
            if len(page) < self.forwards_page_size:
                return
            last_index = page[-1].get("created_index")
            if last_index is None:
                raise RpcError(
                    "listforwards", {"index": "created"},
                    "node returned pages without created_index",
                )
            start = int(last_index) + 1

    @staticmethod
    def _parse_forward(fwd: Dict[str, Any]) -> ForwardingEvent:
        in_msat = _amount_field(fwd, "in")
        out_msat = _amount_field(fwd, "out")
        if fwd.get("fee_msat") is None and fwd.get("fee_msatoshi") is None:
            fee_msat = in_msat - out_msat
        else:
            fee_msat = _amount_field(fwd, "fee")

        return ForwardingEvent(
            in_channel=ShortChannelId.parse(fwd["in_channel"]),
            out_channel=ShortChannelId.parse(fwd["out_channel"]),
            in_msat=in_msat,
            out_msat=out_msat,
            fee_msat=fee_msat,
        )
