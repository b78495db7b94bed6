#!/usr/bin/env python3
"""
cl-fakechan-audit: Fake Channel Audit Plugin for Core Lightning

Checks whether this node accepted channels whose capacity does not match
their funding output on chain (CVE-2019-12999 and relatives), and if so,
how much routing over those channels cost us.

A peer exploiting this class of bug opens a channel that our node records
with a larger capacity than the chain backs. Forwarding HTLCs that arrive
on such a channel trades counterfeit inbound balance for real outbound
coins. The audit:

1. Lists our open channels and the capacity we believe each has
2. Compares each with the channel graph, which only holds channels it
   validated on chain
3. Replays every settled forward over the invalid channels and reports the
   net balance change per channel

The audit is point-in-time. It does not close channels or ban peers.

Dependencies:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import threading
from typing import Any, Dict, Optional

from pyln.client import Plugin, RpcException

from modules.auditor import AuditResult, FakeChannelAuditor
from modules.config import Config
from modules.metrics import PrometheusExporter, publish_audit_result
from modules.node_source import AuditPreconditionError, NodeSource


plugin = Plugin()

# Global instances (initialized in init)
config: Optional[Config] = None
metrics_exporter: Optional[PrometheusExporter] = None
last_result: Optional[AuditResult] = None

# One audit at a time
AUDIT_LOCK = threading.Lock()


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='fakechan-max-concurrent-lookups',
    default='8',
    description='Max concurrent channel graph lookups during an audit (default: 8)'
)

plugin.add_option(
    name='fakechan-forwards-page-size',
    default='0',
    description='Page size for listforwards; 0 fetches the whole history in one call (default: 0)'
)

plugin.add_option(
    name='fakechan-audit-on-startup',
    default='false',
    description='If true, run one audit in the background when the plugin starts (default: false)'
)

plugin.add_option(
    name='fakechan-enable-prometheus',
    default='false',
    description='If true, export the last audit result on a Prometheus HTTP endpoint (default: false)'
)

plugin.add_option(
    name='fakechan-prometheus-port',
    default='9810',
    description='Port for Prometheus HTTP metrics server (default: 9810)'
)


# =============================================================================
# AUDIT
# =============================================================================

def run_audit() -> AuditResult:
    """
    Run one audit and remember its result.

    Raises:
        AuditPreconditionError: if channels or forwarding history are unavailable
    """
    global last_result

    cfg = config.snapshot()
    source = NodeSource(plugin.rpc, plugin, forwards_page_size=cfg.forwards_page_size)
    auditor = FakeChannelAuditor(source, plugin, cfg)

    with AUDIT_LOCK:
        result = auditor.run()
        last_result = result

    if metrics_exporter is not None:
        publish_audit_result(metrics_exporter, result)

    return result


def _startup_audit():
    try:
        run_audit()
    except AuditPreconditionError as e:
        plugin.log(f"Startup audit aborted: {e}", level='error')
    except Exception as e:
        plugin.log(f"Error in startup audit: {e}", level='error')


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the plugin.

    1. Parse and validate options
    2. Start Prometheus metrics exporter (if enabled)
    3. Kick off a background audit (if enabled)
    """
    global config, metrics_exporter

    plugin.log("Initializing cl-fakechan-audit plugin...")

    config = Config.from_options(options)
    plugin.log(f"Configuration loaded: max_concurrent_lookups={config.max_concurrent_lookups}, "
               f"forwards_page_size={config.forwards_page_size}")

    if config.enable_prometheus:
        metrics_exporter = PrometheusExporter(port=config.prometheus_port, plugin=plugin)
        if not metrics_exporter.start_server():
            metrics_exporter = None

    if config.audit_on_startup:
        threading.Thread(target=_startup_audit, daemon=True, name="fakechan-startup-audit").start()

    plugin.log("cl-fakechan-audit initialized")


# =============================================================================
# RPC METHODS - Exposed to lightning-cli
# =============================================================================

@plugin.method("fakechan-audit")
def fakechan_audit(plugin: Plugin) -> Dict[str, Any]:
    """
    Audit this node for accepted fake channels and the resulting losses.

    Usage: lightning-cli fakechan-audit
    """
    if config is None:
        raise RpcException("Plugin not fully initialized")

    try:
        result = run_audit()
    except AuditPreconditionError as e:
        plugin.log(f"Audit aborted: {e}", level='error')
        raise RpcException(f"Audit aborted: {e}") from e

    return result.to_dict()


@plugin.method("fakechan-status")
def fakechan_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Show the last completed audit and the active configuration.

    Usage: lightning-cli fakechan-status
    """
    if config is None:
        raise RpcException("Plugin not fully initialized")

    return {
        "status": "never run" if last_result is None else "completed",
        "config": config.snapshot().to_dict(),
        "last_audit": last_result.to_dict() if last_result is not None else None,
        "prometheus_running": bool(metrics_exporter and metrics_exporter.is_running()),
    }


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
