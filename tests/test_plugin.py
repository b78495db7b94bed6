"""
Tests for the cl-fakechan-audit plugin entry point.

Tests:
- RPC methods refuse to run before init
- init parses options and wires the exporter and startup audit
- fakechan-audit turns aborted audits into RPC errors
- fakechan-status reports never run, then the last audit
- Startup audit failures are logged
"""

import importlib.util
import os

import pytest
from unittest.mock import MagicMock, patch

from pyln.client import RpcError, RpcException

from conftest import SCID_A, SCID_B, make_graph, raw_forward


PLUGIN_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "cl-fakechan-audit.py",
)

DEFAULT_OPTIONS = {
    'fakechan-max-concurrent-lookups': '8',
    'fakechan-forwards-page-size': '0',
    'fakechan-audit-on-startup': 'false',
    'fakechan-enable-prometheus': 'false',
    'fakechan-prometheus-port': '9810',
}


def load_plugin_module():
    """
    Import the plugin script with a mock Plugin object.

    The decorators pass functions through unchanged so the handlers stay
    callable from tests.
    """
    fake_plugin = MagicMock()
    fake_plugin.init.return_value = lambda f: f
    fake_plugin.method.side_effect = lambda *args, **kwargs: (lambda f: f)

    spec = importlib.util.spec_from_file_location("cl_fakechan_audit", PLUGIN_PATH)
    module = importlib.util.module_from_spec(spec)
    with patch("pyln.client.Plugin", return_value=fake_plugin):
        spec.loader.exec_module(module)
    return module


@pytest.fixture
def plugin_module(mock_rpc):
    module = load_plugin_module()
    module.plugin.rpc = mock_rpc
    return module


@pytest.fixture
def initialized(plugin_module, mock_plugin):
    plugin_module.init(dict(DEFAULT_OPTIONS), {}, mock_plugin)
    return plugin_module


class TestNotInitialized:
    """RPC methods before init."""

    def test_audit_rejected(self, plugin_module, mock_plugin):
        with pytest.raises(RpcException):
            plugin_module.fakechan_audit(mock_plugin)
        plugin_module.plugin.rpc.listpeerchannels.assert_not_called()

    def test_status_rejected(self, plugin_module, mock_plugin):
        with pytest.raises(RpcException):
            plugin_module.fakechan_status(mock_plugin)


class TestInit:
    """Test option handling in init."""

    def test_options_loaded(self, plugin_module, mock_plugin):
        options = dict(DEFAULT_OPTIONS, **{'fakechan-max-concurrent-lookups': '3'})
        plugin_module.init(options, {}, mock_plugin)

        assert plugin_module.config.max_concurrent_lookups == 3
        assert plugin_module.metrics_exporter is None

    def test_invalid_option_rejected(self, plugin_module, mock_plugin):
        options = dict(DEFAULT_OPTIONS, **{'fakechan-max-concurrent-lookups': '0'})
        with pytest.raises(ValueError):
            plugin_module.init(options, {}, mock_plugin)

    def test_startup_audit_thread_started(self, plugin_module, mock_plugin):
        options = dict(DEFAULT_OPTIONS, **{'fakechan-audit-on-startup': 'true'})
        with patch.object(plugin_module.threading, "Thread") as thread_cls:
            plugin_module.init(options, {}, mock_plugin)

        thread_cls.assert_called_once()
        assert thread_cls.call_args.kwargs["target"] is plugin_module._startup_audit
        thread_cls.return_value.start.assert_called_once()

    def test_exporter_dropped_when_server_fails(self, plugin_module, mock_plugin):
        options = dict(DEFAULT_OPTIONS, **{'fakechan-enable-prometheus': 'true'})
        with patch.object(plugin_module, "PrometheusExporter") as exporter_cls:
            exporter_cls.return_value.start_server.return_value = False
            plugin_module.init(options, {}, mock_plugin)

        exporter_cls.assert_called_once_with(port=9810, plugin=mock_plugin)
        assert plugin_module.metrics_exporter is None


class TestAuditMethod:
    """Test fakechan-audit."""

    def test_not_affected(self, initialized, mock_plugin):
        result = initialized.fakechan_audit(mock_plugin)
        assert result["status"] == "not affected"
        assert result["channels_checked"] == 1

    def test_affected(self, initialized, mock_plugin):
        rpc = initialized.plugin.rpc
        rpc.listchannels.side_effect = make_graph({})
        rpc.listforwards.return_value = {"forwards": [
            raw_forward(SCID_A, SCID_B, 100_000, 99_900, fee_msat=100),
        ]}

        result = initialized.fakechan_audit(mock_plugin)

        assert result["status"] == "affected"
        assert result["total_loss_msat"] == -99_900

    def test_precondition_failure_becomes_rpc_error(self, initialized, mock_plugin):
        initialized.plugin.rpc.listpeerchannels.side_effect = RpcError(
            "listpeerchannels", {}, "denied")

        with pytest.raises(RpcException) as exc_info:
            initialized.fakechan_audit(mock_plugin)

        assert "obtain channels" in str(exc_info.value)
        assert initialized.last_result is None
        levels = [c.kwargs.get("level") for c in mock_plugin.log.call_args_list]
        assert "error" in levels

    def test_malformed_listing_becomes_rpc_error(self, initialized, mock_plugin):
        initialized.plugin.rpc.listpeerchannels.return_value = {"channels": [
            {"short_channel_id": SCID_A, "state": "CHANNELD_NORMAL", "total_msat": "garbage"},
        ]}
        with pytest.raises(RpcException):
            initialized.fakechan_audit(mock_plugin)

    def test_result_published_when_exporter_enabled(self, initialized, mock_plugin):
        exporter = MagicMock()
        initialized.metrics_exporter = exporter

        with patch.object(initialized, "publish_audit_result") as publish:
            initialized.fakechan_audit(mock_plugin)

        publish.assert_called_once_with(exporter, initialized.last_result)

    def test_nothing_published_without_exporter(self, initialized, mock_plugin):
        with patch.object(initialized, "publish_audit_result") as publish:
            initialized.fakechan_audit(mock_plugin)
        publish.assert_not_called()


class TestStatusMethod:
    """Test fakechan-status."""

    def test_never_run(self, initialized, mock_plugin):
        status = initialized.fakechan_status(mock_plugin)

        assert status["status"] == "never run"
        assert status["last_audit"] is None
        assert status["config"]["max_concurrent_lookups"] == 8
        assert status["prometheus_running"] is False

    def test_completed_after_audit(self, initialized, mock_plugin):
        audit = initialized.fakechan_audit(mock_plugin)
        status = initialized.fakechan_status(mock_plugin)

        assert status["status"] == "completed"
        assert status["last_audit"] == audit


class TestStartupAudit:
    """Failures in the background audit end up in the plugin log."""

    def test_precondition_failure_logged(self, initialized):
        initialized.plugin.rpc.listpeerchannels.side_effect = RpcError(
            "listpeerchannels", {}, "denied")

        initialized._startup_audit()

        messages = [c.args[0] for c in initialized.plugin.log.call_args_list]
        assert any("Startup audit aborted" in m for m in messages)

    def test_unexpected_error_logged(self, initialized):
        initialized.plugin.rpc.listpeerchannels.side_effect = RuntimeError("socket closed")

        initialized._startup_audit()

        error_calls = [
            c for c in initialized.plugin.log.call_args_list
            if c.kwargs.get("level") == "error"
        ]
        assert any("socket closed" in c.args[0] for c in error_calls)
