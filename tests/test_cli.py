from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from fcvm.__main__ import cli

runner = CliRunner()


def _last_json(output):
    lines = [line for line in output.splitlines() if line.startswith("{")]
    assert lines, output
    return json.loads(lines[-1])


@pytest.fixture(autouse=True)
def _default_config(monkeypatch, tmp_path):
    monkeypatch.setenv("FCVM_CONFIG", str(tmp_path / "missing.json"))


@pytest.fixture
def spec_file(images, tmp_path):
    kernel, rootfs = images
    path = tmp_path / "vm.json"
    path.write_text(
        json.dumps(
            {
                "vm_id": "cli-vm",
                "machine-config": {"vcpu_count": 1, "mem_size_mib": 128},
                "boot-source": {"kernel_image_path": str(kernel)},
                "drives": [{"drive_id": "rootfs", "path_on_host": str(rootfs), "is_root_device": True}],
            }
        )
    )
    return path


def test_validate_ok(spec_file):
    result = runner.invoke(cli, ["validate", str(spec_file)])
    assert result.exit_code == 0
    assert _last_json(result.output) == {"status": "ok", "vm_id": "cli-vm"}


def test_validate_reports_errors(spec_file):
    doc = json.loads(spec_file.read_text())
    doc["machine-config"]["vcpu_count"] = 0
    spec_file.write_text(json.dumps(doc))
    result = runner.invoke(cli, ["validate", str(spec_file)])
    assert result.exit_code == 1
    out = _last_json(result.output)
    assert out["error"] == "Spec validation failed"
    assert any("machine.vcpu_count" in e for e in out["errors"])


def test_invalid_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{nope")
    result = runner.invoke(cli, ["validate", str(path)])
    assert result.exit_code == 1
    assert "Invalid JSON" in _last_json(result.output)["error"]


def test_missing_section_is_rejected(tmp_path):
    path = tmp_path / "vm.json"
    path.write_text(json.dumps({"machine-config": {"vcpu_count": 1, "mem_size_mib": 128}}))
    result = runner.invoke(cli, ["validate", str(path)])
    assert result.exit_code == 1
    out = _last_json(result.output)
    assert out["error"].startswith("Invalid spec")
    assert any(e.startswith("boot-source") for e in out["errors"])


def test_render(spec_file):
    result = runner.invoke(cli, ["render", str(spec_file)])
    assert result.exit_code == 0
    out = _last_json(result.output)
    assert out["machine-config"]["vcpu_count"] == 1
    assert out["drives"][0]["drive_id"] == "rootfs"
    assert out["logger"] is None


def test_run_reports_start_failure(spec_file, fake_firecracker_bin, short_dir, monkeypatch):
    monkeypatch.setenv("FCVM_FIRECRACKER_BIN", str(fake_firecracker_bin))
    monkeypatch.setenv("FCVM_RUN_DIR", str(short_dir / "run"))
    monkeypatch.setenv("FAKE_FC_FAIL_PATH", "/actions")
    result = runner.invoke(cli, ["run", str(spec_file), "--timeout", "20"])
    assert result.exit_code == 1
    assert _last_json(result.output)["error"].startswith("VM start failed")
    assert not list((short_dir / "run").glob("*.socket"))


def test_render_to_file(spec_file, tmp_path):
    target = tmp_path / "out" / "vm-config.json"
    result = runner.invoke(cli, ["render", str(spec_file), "--output", str(target)])
    assert result.exit_code == 0
    assert _last_json(result.output) == {"status": "ok", "written": str(target)}
    written = json.loads(target.read_text())
    assert written["machine-config"]["mem_size_mib"] == 128
    assert written["boot-source"]["kernel_image_path"].endswith("vmlinux")


def test_render_includes_logger_and_metrics(spec_file, tmp_path):
    doc = json.loads(spec_file.read_text())
    doc["logger"] = {"log_path": str(tmp_path / "fc.log"), "level": "Debug"}
    doc["metrics"] = {"metrics_path": str(tmp_path / "fc.metrics")}
    spec_file.write_text(json.dumps(doc))
    result = runner.invoke(cli, ["render", str(spec_file)])
    assert result.exit_code == 0
    out = _last_json(result.output)
    assert out["logger"]["level"] == "Debug"
    assert out["metrics"] == {"metrics_path": str(tmp_path / "fc.metrics")}
