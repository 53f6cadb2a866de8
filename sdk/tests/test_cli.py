import json
import os
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import spanora.cli as cli
from spanora.exporter import HttpSpanExporter


@pytest.fixture
def project(monkeypatch, tmp_path):
    for name in list(os.environ):
        if name.startswith("SPANORA_"):
            monkeypatch.delenv(name)
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'demo'\n")
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _run(argv) -> int:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    return exc_info.value.code


def test_upsert_env_updates_and_appends(tmp_path):
    env_path = tmp_path / ".env"
    env_path.write_text("# settings\nSPANORA_API_KEY=old\nOTHER=1\n")

    cli._upsert_env(env_path, {"SPANORA_API_KEY": "new", "SPANORA_ENDPOINT": "http://localhost:8000"})

    assert env_path.read_text().splitlines() == [
        "# settings",
        "SPANORA_API_KEY=new",
        "OTHER=1",
        "SPANORA_ENDPOINT=http://localhost:8000",
    ]


def test_find_project_root_walks_up(tmp_path):
    (tmp_path / "requirements.txt").write_text("")
    nested = tmp_path / "src" / "pkg"
    nested.mkdir(parents=True)

    assert cli._find_project_root(nested) == tmp_path


def test_init_writes_env_file(project, monkeypatch):
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: "sk-abc123456")
    monkeypatch.setattr("builtins.input", lambda prompt: "http://localhost:8000")

    assert _run(["init"]) == 0

    content = (project / ".env").read_text()
    assert "SPANORA_API_KEY=sk-abc123456" in content
    assert "SPANORA_ENDPOINT=http://localhost:8000" in content


def test_test_command_sends_synthetic_trace(project, monkeypatch, capsys):
    (project / ".env").write_text("SPANORA_API_KEY=sk-test\nSPANORA_ENDPOINT=http://collector.test\n")
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(202, json={"accepted": 3})

    def exporter_factory(**kwargs):
        return HttpSpanExporter(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(cli, "HttpSpanExporter", exporter_factory)

    assert _run(["test", "--json"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["ok"] is True
    assert output["spans"] == 3
    assert output["endpoint"] == "http://collector.test/api/v1/traces"
    (batch,) = received
    names = {span["name"] for span in batch["spans"]}
    assert names == {"spanora-cli", "test-llm", "test-tool"}
    assert {span["trace_id"] for span in batch["spans"]} == {output["trace_id"]}


def test_test_command_requires_api_key(project, capsys):
    assert _run(["test"]) == 1
    assert "spanora init" in capsys.readouterr().out


def test_status_reports_health(project, monkeypatch, capsys):
    (project / ".env").write_text("SPANORA_API_KEY=sk-status-key\nSPANORA_ENDPOINT=http://localhost:8000\n")
    calls = []

    def fake_request(method, url, **kwargs):
        calls.append(url)
        return httpx.Response(200, json={"status": "healthy"})

    monkeypatch.setattr(cli, "_request_json", fake_request)

    assert _run(["status", "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert calls == ["http://localhost:8000/health"]
    assert payload["health"]["ok"] is True
    assert payload["api_key"] == {"configured": True, "value": "sk-s…ey"}


def test_status_fails_when_collector_unreachable(project, monkeypatch, capsys):
    (project / ".env").write_text("SPANORA_API_KEY=sk-status-key\n")

    def refuse(method, url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(cli, "_request_json", refuse)

    assert _run(["status"]) == 1
    assert "Health: error" in capsys.readouterr().out


def test_traces_lists_recent_traces(project, monkeypatch, capsys):
    (project / ".env").write_text("SPANORA_API_KEY=sk-test\nSPANORA_ENDPOINT=http://localhost:8000\n")
    seen = {}

    def fake_request(method, url, headers=None, params=None):
        seen.update(url=url, headers=headers, params=params)
        return httpx.Response(200, json={"traces": [{
            "trace_id": "a" * 32,
            "name": "researcher",
            "status": "ok",
            "start_time": "2026-01-01T00:00:00Z",
            "span_count": 4,
            "total_cost_usd": 0.0123,
        }]})

    monkeypatch.setattr(cli, "_request_json", fake_request)

    assert _run(["traces", "--last", "3"]) == 0

    out = capsys.readouterr().out
    assert seen["url"] == "http://localhost:8000/api/v1/traces"
    assert seen["headers"] == {"Authorization": "Bearer sk-test"}
    assert seen["params"] == {"limit": 3}
    assert "researcher | ok" in out
    assert "$0.0123" in out


def test_no_command_prints_help(capsys):
    assert _run([]) == 1
    assert "usage: spanora" in capsys.readouterr().out
