"""
Unit Tests for handshake command building and capability parsing
"""

import pytest

import mongowire
from mongowire.handshake import (
    DRIVER_NAME,
    ServerHandshake,
    build_client_metadata,
    build_hello_command,
    log_server_capabilities,
)

pytestmark = pytest.mark.unit


class TestHelloCommand:

    def test_metadata(self):
        metadata = build_client_metadata("reports")

        assert metadata["driver"]["name"] == DRIVER_NAME
        assert metadata["application"] == {"name": "reports"}
        assert {"type", "name", "architecture", "version"} <= set(metadata["os"])

    def test_metadata_reports_package_version(self):
        assert build_client_metadata()["driver"]["version"] == mongowire.__version__

    def test_package_exports(self):
        from mongowire.pool import ConnectionPool

        assert mongowire.ConnectionPool is ConnectionPool
        assert set(mongowire.__all__) >= {"ConnectionPool", "ConnectionSettings", "Namespace"}

    def test_metadata_without_app_name(self):
        assert "application" not in build_client_metadata()

    def test_command_shape(self):
        command = build_hello_command(build_client_metadata())

        assert next(iter(command)) == "isMaster"
        assert "saslSupportedMechs" not in command

    def test_requests_user_mechanisms(self):
        command = build_hello_command(build_client_metadata(), "admin.app")

        assert command["saslSupportedMechs"] == "admin.app"


class TestServerHandshake:

    def test_modern_server(self):
        handshake = ServerHandshake.from_document({
            "ismaster": True,
            "maxWireVersion": 17,
            "minWireVersion": 0,
            "maxMessageSizeBytes": 48000000,
            "logicalSessionTimeoutMinutes": 30,
            "saslSupportedMechs": ["SCRAM-SHA-256", "SCRAM-SHA-1"],
            "ok": 1.0,
        })

        assert handshake.supports_op_msg
        assert handshake.supports_sessions
        assert handshake.supports_transactions
        assert not handshake.is_deprecated
        assert handshake.writable
        assert handshake.sasl_supported_mechs == ("SCRAM-SHA-256", "SCRAM-SHA-1")
        assert handshake.raw["ok"] == 1.0

    @pytest.mark.parametrize("wire,op_msg,cursor_commands,transactions,deprecated", [
        (3, False, False, False, True),
        (4, False, True, False, True),
        (5, False, True, False, True),
        (6, True, True, False, True),
        (7, True, True, True, True),
        (8, True, True, True, False),
    ])
    def test_wire_version_thresholds(self, wire, op_msg, cursor_commands, transactions, deprecated):
        handshake = ServerHandshake(max_wire_version=wire)

        assert handshake.supports_op_msg is op_msg
        assert handshake.supports_cursor_commands is cursor_commands
        assert handshake.supports_transactions is transactions
        assert handshake.is_deprecated is deprecated

    def test_read_only_server_is_not_writable(self):
        handshake = ServerHandshake.from_document({"ismaster": True, "readOnly": True, "maxWireVersion": 17})

        assert handshake.read_only
        assert not handshake.writable

    def test_secondary_is_not_writable(self):
        handshake = ServerHandshake.from_document({"ismaster": False, "secondary": True, "maxWireVersion": 17})

        assert not handshake.read_only
        assert not handshake.writable

    def test_is_writable_primary_preferred(self):
        handshake = ServerHandshake.from_document({"isWritablePrimary": False, "ismaster": True})

        assert not handshake.writable

    def test_missing_fields_default(self):
        handshake = ServerHandshake.from_document({"ok": 1})

        assert handshake.max_wire_version == 0
        assert handshake.sasl_supported_mechs is None
        assert handshake.logical_session_timeout_minutes is None


class TestCapabilityLogging:

    def test_deprecated_server_warns(self, monkeypatch):
        events = []

        class Recorder:
            def info(self, event, **kw):
                events.append(("info", event))

            def warning(self, event, **kw):
                events.append(("warning", event))

        monkeypatch.setattr("mongowire.handshake.logger", Recorder())

        log_server_capabilities(ServerHandshake(max_wire_version=5), "db:27017")
        log_server_capabilities(ServerHandshake(max_wire_version=17), "db:27017")

        assert [level for level, _ in events] == ["info", "warning", "info"]
