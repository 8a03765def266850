from __future__ import annotations

import json
from pathlib import Path

import pytest

import recobar.diagnostics as diagnostics
from recobar.config import DATA_DIR_ENV, ConfigManager


def test_collect_diagnostics_reports_storage(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    manager = ConfigManager(config_path)
    manager.set_tenant_id("acme")
    manager.set_device_id("cam-1")

    payload = diagnostics.collect_diagnostics(config_path)

    assert payload["version"] == diagnostics.APP_VERSION
    assert payload["config_path"] == str(config_path)
    assert payload["setup_complete"] is True
    storage = payload["storage"]
    assert storage["status"] == "ok"
    assert storage["local"]["writable"] is True
    assert storage["remote_enabled"] is False
    assert (tmp_path / "recordings").is_dir()


def test_probe_directory_rejects_files(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x")
    result = diagnostics.probe_directory(blocker)
    assert result["writable"] is False
    assert "not a directory" in result["error"]


def test_storage_disabled_everywhere_is_an_error(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    manager.set_storage_settings({"local": {"enabled": False}})
    report = diagnostics.diagnose_storage(manager)
    assert report["status"] == "error"
    assert "No storage location" in report["details"][0]


def test_missing_dependency_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    real_import = diagnostics.importlib.import_module

    def fake_import(name: str, *args, **kwargs):
        if name == "boto3":
            raise ModuleNotFoundError("No module named 'boto3'")
        return real_import(name, *args, **kwargs)

    monkeypatch.setattr(diagnostics.importlib, "import_module", fake_import)
    report = diagnostics.diagnose_dependencies()
    assert report["status"] == "error"
    assert report["details"] == ["boto3 module not found."]
    assert report["hints"] == [diagnostics.BOTO3_INSTALL_HINT]


def test_run_json_output(
    capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path))
    exit_code = diagnostics.run(["--json"])
    assert exit_code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["config_path"] == str(tmp_path / "config.json")
    assert payload["setup_complete"] is False


def test_run_text_output(capsys: pytest.CaptureFixture[str], tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    ConfigManager(config_path).set_storage_settings({"local": {"enabled": False}})
    assert diagnostics.main(["--config", str(config_path)]) == 0
    output = capsys.readouterr().out
    assert "First-time setup pending" in output
    assert "Storage issues detected:" in output
    assert "No storage location is enabled" in output
