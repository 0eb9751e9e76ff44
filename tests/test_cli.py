"""Tests for the command-line entry point."""

import json

import pytest

import llm_loadtest
from tests.stubs import StubInvoker, stub_variant

CONFIG = """
test:
  duration: 30s
  concurrency_levels: [1, 2]
models:
  - name: gpt
    type: openai
    api_key: sk-test
prompt:
  user_message: hello
"""


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG, encoding="utf-8")
    return path


def test_run_writes_report(config_path, tmp_path, monkeypatch, capsys):
    invoker = StubInvoker(latency_s=0.005)
    monkeypatch.setattr(llm_loadtest, "build_variants", lambda settings: [stub_variant("gpt", invoker)])
    out_dir = tmp_path / "reports"

    code = llm_loadtest.main(
        [
            "--config",
            str(config_path),
            "--duration",
            "100ms",
            "--output",
            "json",
            "--output-dir",
            str(out_dir),
        ]
    )

    assert code == 0
    reports = list(out_dir.glob("llm_test_report_*_standard.json"))
    assert len(reports) == 1
    payload = json.loads(reports[0].read_text(encoding="utf-8"))
    assert [(r["model_name"], r["concurrency"]) for r in payload["test_results"]] == [
        ("gpt", 1),
        ("gpt", 2),
    ]
    assert '"test_results"' in capsys.readouterr().out


def test_missing_config_fails(tmp_path):
    assert llm_loadtest.main(["--config", str(tmp_path / "absent.yaml")]) == 1


def test_cell_fault_fails_without_report(config_path, tmp_path, monkeypatch):
    invoker = StubInvoker(latency_s=0.005, fault=RuntimeError("crash"))
    monkeypatch.setattr(llm_loadtest, "build_variants", lambda settings: [stub_variant("gpt", invoker)])
    out_dir = tmp_path / "reports"

    code = llm_loadtest.main(
        ["--config", str(config_path), "--duration", "50ms", "--output-dir", str(out_dir)]
    )

    assert code == 1
    assert not out_dir.exists()


def test_all_models_skipped_fails(config_path, monkeypatch):
    monkeypatch.setattr(llm_loadtest, "build_variants", lambda settings: [])
    assert llm_loadtest.main(["--config", str(config_path)]) == 1


@pytest.mark.parametrize("argv", [["--duration", "soon"], ["--concurrency", "0"], ["--output", "xml"]])
def test_bad_arguments_exit(argv):
    with pytest.raises(SystemExit) as excinfo:
        llm_loadtest.main(argv)
    assert excinfo.value.code == 2
