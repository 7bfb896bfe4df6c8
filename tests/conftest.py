from __future__ import annotations

import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from llmbench_lib import STYLE_OLLAMA, STYLE_OPENAI, EventLog, RunRequest


class EventRecorder:
    """Collects EventLog lines so tests can look events up by name."""

    def __init__(self) -> None:
        self.lines: List[str] = []

    def __call__(self, line: str) -> None:
        self.lines.append(line)

    def events(self, name: str) -> List[str]:
        return [line for line in self.lines if line.split(" | ")[1:2] == [name]]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def event_log(recorder: EventRecorder) -> EventLog:
    return EventLog(recorder)


@pytest.fixture
def make_client() -> Callable[[Callable[[httpx.Request], Any]], httpx.AsyncClient]:
    def factory(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def openai_request() -> Callable[..., RunRequest]:
    def factory(run_id: int = 1, stream: bool = False, prompt: str = "say hi there") -> RunRequest:
        return RunRequest(
            run_id=run_id,
            style=STYLE_OPENAI,
            model="gpt-test",
            prompt=prompt,
            stream=stream,
            max_tokens=64,
        )

    return factory


@pytest.fixture
def ollama_request() -> Callable[..., RunRequest]:
    def factory(run_id: int = 1, stream: bool = False, prompt: str = "say hi there") -> RunRequest:
        return RunRequest(
            run_id=run_id,
            style=STYLE_OLLAMA,
            model="llama3",
            prompt=prompt,
            stream=stream,
            max_tokens=64,
        )

    return factory


def usage_body(pt: int = 2, ct: int = 9, tt: int = 11) -> Dict[str, Any]:
    return {"usage": {"prompt_tokens": pt, "completion_tokens": ct, "total_tokens": tt}}


def ndjson(*chunks: Any) -> bytes:
    lines = [c if isinstance(c, str) else json.dumps(c) for c in chunks]
    return ("\n".join(lines) + "\n").encode("utf-8")


@pytest.fixture
def usage() -> Callable[..., Dict[str, Any]]:
    return usage_body


@pytest.fixture
def lines() -> Callable[..., bytes]:
    return ndjson
