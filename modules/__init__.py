"""
cl-fakechan-audit modules package

This package contains the core modules for the Fake Channel Audit plugin:
- channel_id: Short channel id value type
- node_source: lightningd RPC access (channels, channel graph, forwards)
- subjective_view: Our own view of open channel capacities
- invalidity_detector: Cross-check against the channel graph
- loss_quantifier: Forwarding ledger replay and loss accounting
- auditor: Runs the three stages in order
- config: Configuration and constants
- metrics: Prometheus exporter for the last audit result
"""

from .channel_id import ShortChannelId
from .config import Config, ConfigSnapshot
from .node_source import NodeSource, AuditError, AuditPreconditionError
from .subjective_view import build_subjective_view
from .invalidity_detector import InvalidityDetector, InvalidityReason, ChannelDiagnostic
from .loss_quantifier import ForwardingEvent, LossReport, quantify_losses
from .auditor import FakeChannelAuditor, AuditResult

__all__ = [
    'ShortChannelId',
    'Config',
    'ConfigSnapshot',
    'NodeSource',
    'AuditError',
    'AuditPreconditionError',
    'build_subjective_view',
    'InvalidityDetector',
    'InvalidityReason',
    'ChannelDiagnostic',
    'ForwardingEvent',
    'LossReport',
    'quantify_losses',
    'FakeChannelAuditor',
    'AuditResult',
]
