from __future__ import annotations

import argparse
import csv
import json
import re

import httpx
import pytest

from llmbench_headless import config_from_args, _build_parser, main, parse_duration, run_headless
from llmbench_lib import ConfigError, LoadConfig, UnloadError, unload_model


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("LLM_API_KEY", "LLM_BASE_URL", "LLM_STYLE", "LLM_MODEL"):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_openai_requires_key(self):
        with pytest.raises(ConfigError, match="missing API key"):
            LoadConfig(style="openai").validate()

    def test_ollama_needs_no_key(self):
        cfg = LoadConfig(style="OLLAMA")
        cfg.validate()
        assert cfg.style == "ollama"

    def test_unknown_style(self):
        with pytest.raises(ConfigError, match="unknown style"):
            LoadConfig(style="anthropic", api_key="k").validate()

    def test_store_data_needs_directory(self):
        with pytest.raises(ConfigError, match="data-dir"):
            LoadConfig(api_key="k", store_data=True, data_dir="").validate()

    @pytest.mark.parametrize("overrides", [{"runs": 0}, {"concurrency": -1}, {"timeout_s": 0}])
    def test_bad_numbers(self, overrides):
        with pytest.raises(ConfigError):
            LoadConfig(api_key="k", **overrides).validate()

    @pytest.mark.parametrize(
        "base_url", ["http://localhost:abc/api", "ftp://files.test/v1", "localhost:11434/api", "http:///v1"]
    )
    def test_malformed_base_url(self, base_url):
        with pytest.raises(ConfigError, match="invalid base URL"):
            LoadConfig(base_url=base_url, api_key="k").validate()

    def test_config_error_is_a_value_error(self):
        assert issubclass(ConfigError, ValueError)

    @pytest.mark.parametrize(("concurrency", "expected"), [(0, 10), (4, 4), (50, 10)])
    def test_effective_concurrency(self, concurrency, expected):
        assert LoadConfig(runs=10, concurrency=concurrency).effective_concurrency() == expected

    def test_unload_only_for_ollama(self):
        assert LoadConfig(style="ollama", unload_model=True).should_unload()
        assert not LoadConfig(style="openai", unload_model=True).should_unload()


class TestParseDuration:
    @pytest.mark.parametrize(
        ("text", "seconds"),
        [("60", 60.0), ("90s", 90.0), ("500ms", 0.5), ("2m", 120.0), ("1h", 3600.0), ("1.5s", 1.5)],
    )
    def test_units(self, text, seconds):
        assert parse_duration(text) == pytest.approx(seconds)

    def test_rejects_garbage(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_duration("soon")


class TestArgs:
    def test_defaults(self):
        cfg = config_from_args(_build_parser().parse_args([]))
        assert cfg.base_url == "https://api.openai.com/v1"
        assert cfg.runs == 100
        assert cfg.concurrency == 0
        assert cfg.max_tokens == 4096
        assert cfg.timeout_s == 60.0
        assert cfg.data_dir == "./runs"
        assert not cfg.stream

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "sk-env")
        cfg = config_from_args(_build_parser().parse_args(["--timeout", "2m"]))
        assert cfg.api_key == "sk-env"
        assert cfg.timeout_s == 120.0


class TestMain:
    def test_missing_key_exits_one(self, capsys):
        assert main(["--style", "openai", "--runs", "1"]) == 1
        assert "missing API key" in capsys.readouterr().err

    def test_bad_style_exits_one(self, capsys):
        assert main(["--style", "grpc", "--key", "k"]) == 1
        assert "unknown style" in capsys.readouterr().err

    def test_malformed_base_url_exits_one(self, capsys):
        assert main(["--base-url", "http://localhost:abc/v1", "--key", "k", "--runs", "1"]) == 1
        assert "Config error: invalid base URL" in capsys.readouterr().err


def _chat_handler(unload_status: int = 200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if seen is not None:
            seen.append(body)
        if "keep_alive" in body:
            return httpx.Response(unload_status, text="unload failed" if unload_status != 200 else "")
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "hello there"}})

    return handler


class TestRunHeadless:
    async def test_prints_summary_and_exits_zero(self, capsys):
        cfg = LoadConfig(base_url="http://ollama.test/api", style="ollama", runs=3, concurrency=2)
        cfg.validate()
        code = await run_headless(cfg, transport=httpx.MockTransport(_chat_handler()))
        assert code == 0
        out = capsys.readouterr()
        assert "Successful calls  : 3 / 3" in out.out
        assert "Run 001 | request" in out.err

    async def test_status_and_event_lines_share_timestamp_format(self, capsys):
        cfg = LoadConfig(base_url="http://ollama.test/api", style="ollama", runs=1)
        cfg.validate()
        await run_headless(cfg, transport=httpx.MockTransport(_chat_handler()))
        err = capsys.readouterr().err.splitlines()
        stamp = re.compile(r"^\[\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z\] ")
        started = [line for line in err if "Load test started" in line]
        events = [line for line in err if "| request" in line]
        assert started and events
        assert all(stamp.match(line) for line in started + events)

    async def test_per_run_failures_keep_exit_zero(self, capsys):
        cfg = LoadConfig(base_url="http://llm.test/v1", api_key="k", runs=2)
        cfg.validate()
        transport = httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
        assert await run_headless(cfg, transport=transport) == 0
        assert "Successful calls  : 0 / 2" in capsys.readouterr().out

    async def test_unload_after_runs(self):
        seen = []
        cfg = LoadConfig(base_url="http://ollama.test/api", style="ollama", runs=2, unload_model=True, model="llama3")
        cfg.validate()
        assert await run_headless(cfg, transport=httpx.MockTransport(_chat_handler(seen=seen))) == 0
        assert seen[-1] == {"model": "llama3", "keep_alive": 0}

    async def test_unload_failure_propagates(self):
        cfg = LoadConfig(base_url="http://ollama.test/api", style="ollama", runs=1, unload_model=True)
        cfg.validate()
        with pytest.raises(UnloadError, match="status code 500"):
            await run_headless(cfg, transport=httpx.MockTransport(_chat_handler(unload_status=500)))

    async def test_metrics_csv(self, tmp_path):
        csv_path = tmp_path / "out" / "metrics.csv"
        cfg = LoadConfig(
            base_url="http://ollama.test/api",
            style="ollama",
            runs=3,
            metrics_csv=str(csv_path),
        )
        cfg.validate()
        await run_headless(cfg, transport=httpx.MockTransport(_chat_handler()))
        with csv_path.open(encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert sorted(int(r["run"]) for r in rows) == [1, 2, 3]
        assert all(r["completion_tokens"] == "2" for r in rows)


class TestUnloadModel:
    async def test_posts_keep_alive_zero(self, httpx_mock):
        httpx_mock.add_response(method="POST", url="http://ollama.test/api/chat", json={})
        async with httpx.AsyncClient() as client:
            await unload_model(client, "http://ollama.test/api/", "llama3")
        request = httpx_mock.get_request()
        assert json.loads(request.content) == {"model": "llama3", "keep_alive": 0}
        assert "Authorization" not in request.headers

    async def test_non_200_raises(self, httpx_mock):
        httpx_mock.add_response(
            method="POST", url="http://ollama.test/api/chat", status_code=404, text="model not found"
        )
        async with httpx.AsyncClient() as client:
            with pytest.raises(UnloadError, match="model not found"):
                await unload_model(client, "http://ollama.test/api", "llama3")

    async def test_transport_error_raises(self, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        async with httpx.AsyncClient() as client:
            with pytest.raises(UnloadError, match="ConnectError"):
                await unload_model(client, "http://ollama.test/api", "llama3")
