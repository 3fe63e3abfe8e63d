from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.config.config_exception import ConfigException

from ekspose.src.__main__ import JSONFormatter, main, parse_args


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "thread" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(msg="token=abc123 Authorization: Bearer abc.def.ghi")

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "abc.def.ghi" not in message


class TestParseArgs:
    def test_kubeconfig_defaults_to_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBECONFIG", "/etc/kube/config")

        assert parse_args([]).kubeconfig == "/etc/kube/config"

    def test_kubeconfig_flag_overrides_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBECONFIG", "/etc/kube/config")

        assert parse_args(["--kubeconfig", "/tmp/other"]).kubeconfig == "/tmp/other"

    def test_kubeconfig_is_none_without_flag_or_environment(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("KUBECONFIG", raising=False)

        assert parse_args([]).kubeconfig is None


@pytest.fixture
def mock_controller() -> MagicMock:
    controller = MagicMock()
    controller.ready = threading.Event()

    def fake_run(shutdown_event: threading.Event | None = None) -> None:
        if shutdown_event is not None:
            shutdown_event.set()

    controller.run.side_effect = fake_run
    return controller


@pytest.fixture
def quiet_root_logger() -> Iterator[None]:
    handlers = list(logging.root.handlers)
    level = logging.root.level
    yield
    logging.root.handlers[:] = handlers
    logging.root.setLevel(level)


@pytest.mark.usefixtures("quiet_root_logger")
class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def test_main_wires_informer_controller_and_health(
        self, monkeypatch: pytest.MonkeyPatch, mock_controller: MagicMock
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9090")
        clients = SimpleNamespace()

        with (
            patch("ekspose.src.__main__.load_kube_configuration") as mock_load,
            patch("ekspose.src.__main__.build_clients", return_value=clients),
            patch(
                "ekspose.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ) as mock_build,
            patch("ekspose.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main(["--kubeconfig", "/tmp/kubeconfig"])

        mock_load.assert_called_once_with("/tmp/kubeconfig")
        mock_build.assert_called_once_with(clients)
        mock_controller.run.assert_called_once()
        assert mock_health.call_args.kwargs["port"] == 9090
        assert mock_health.call_args.kwargs["ready"] is mock_controller.ready
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_starts_informer_with_shared_shutdown_event(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        controller = MagicMock()
        controller.ready = threading.Event()
        informer_events: list[threading.Event] = []
        informer_started = threading.Event()

        def fake_informer_run(shutdown_event: threading.Event) -> None:
            informer_events.append(shutdown_event)
            informer_started.set()
            shutdown_event.wait(timeout=2)

        def fake_run(shutdown_event: threading.Event) -> None:
            assert informer_started.wait(timeout=2)
            shutdown_event.set()

        controller.informer.run.side_effect = fake_informer_run
        controller.run.side_effect = fake_run

        with (
            patch("ekspose.src.__main__.load_kube_configuration"),
            patch("ekspose.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch("ekspose.src.__main__.build_controller_from_env", return_value=controller),
            patch("ekspose.src.__main__.start_health_server", return_value=MagicMock()),
        ):
            main([])

        assert informer_events[0] is controller.run.call_args.kwargs["shutdown_event"]

    def test_main_registers_signal_handlers(
        self, monkeypatch: pytest.MonkeyPatch, mock_controller: MagicMock
    ) -> None:
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("ekspose.src.__main__.load_kube_configuration"),
            patch("ekspose.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "ekspose.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ),
            patch("ekspose.src.__main__.start_health_server", return_value=MagicMock()),
            patch("ekspose.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            main([])

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals

    def test_main_exits_when_no_kube_configuration_loads(self) -> None:
        with (
            patch(
                "ekspose.src.__main__.load_kube_configuration",
                side_effect=ConfigException("no config"),
            ),
            patch("ekspose.src.__main__.start_health_server") as mock_health,
            pytest.raises(SystemExit) as excinfo,
        ):
            main([])

        assert excinfo.value.code == 1
        mock_health.assert_not_called()

    def test_main_exits_on_invalid_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("WORKERS", "zero")

        with (
            patch("ekspose.src.__main__.load_kube_configuration"),
            patch("ekspose.src.__main__.build_clients", return_value=SimpleNamespace()),
            pytest.raises(SystemExit) as excinfo,
        ):
            main([])

        assert excinfo.value.code == 1

    def test_main_rejects_invalid_health_port(
        self, monkeypatch: pytest.MonkeyPatch, mock_controller: MagicMock
    ) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("ekspose.src.__main__.load_kube_configuration"),
            patch("ekspose.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "ekspose.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ),
            pytest.raises(SystemExit),
        ):
            main([])

        mock_controller.run.assert_not_called()

    def test_main_rejects_ephemeral_health_port(
        self, monkeypatch: pytest.MonkeyPatch, mock_controller: MagicMock
    ) -> None:
        monkeypatch.setenv("HEALTH_PORT", "0")

        with (
            patch("ekspose.src.__main__.load_kube_configuration"),
            patch("ekspose.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch(
                "ekspose.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ),
            patch("ekspose.src.__main__.start_health_server") as mock_health,
            pytest.raises(SystemExit) as excinfo,
        ):
            main([])

        assert excinfo.value.code == 1
        mock_health.assert_not_called()
