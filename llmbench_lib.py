from __future__ import annotations

import asyncio
import csv
import datetime as dt
import json
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import httpx

STYLE_OPENAI = "openai"
STYLE_OLLAMA = "ollama"
STYLES = (STYLE_OPENAI, STYLE_OLLAMA)

FAIL_TRANSPORT = "transport"
FAIL_HTTP_STATUS = "httpStatus"
FAIL_PARSE = "parse"
FAIL_API = "api"

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_PROMPT = "Explain the fundamental concepts of relativity in detail."
DEFAULT_TEMPERATURE = 0.7


# ----------------------------
# Errors
# ----------------------------

class LLMBenchError(Exception):
    """Base class for errors that end a whole load session."""


class ConfigError(LLMBenchError, ValueError):
    pass


class UnloadError(LLMBenchError):
    pass


# ----------------------------
# Data models
# ----------------------------

@dataclass(frozen=True)
class RunRequest:
    run_id: int
    style: str  # "openai" | "ollama"
    model: str
    prompt: str
    stream: bool
    max_tokens: int  # ignored for ollama


@dataclass(frozen=True)
class RunMetrics:
    run_id: int
    model: str
    stream: bool
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    latency_ms: float
    tok_per_sec: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run": self.run_id,
            "model": self.model,
            "stream": self.stream,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "latency_ms": self.latency_ms,
            "tok_per_sec": self.tok_per_sec,
        }


@dataclass(frozen=True)
class RunFailure:
    run_id: int
    kind: str  # "transport" | "httpStatus" | "parse" | "api"
    detail: str
    status_code: int = 0


RunOutcome = Union[RunMetrics, RunFailure]


@dataclass(frozen=True)
class OllamaDoneMeta:
    """Terminal line of an ollama chat stream."""

    model: str
    created_at: str
    done_reason: str
    total_duration: Optional[int]
    load_duration: Optional[int]
    prompt_eval_count: Optional[int]
    prompt_eval_duration: Optional[int]
    eval_count: Optional[int]
    eval_duration: Optional[int]

    @classmethod
    def from_chunk(cls, chunk: Dict[str, Any]) -> Optional["OllamaDoneMeta"]:
        if "done_reason" not in chunk:
            return None
        return cls(
            model=str(chunk.get("model") or ""),
            created_at=str(chunk.get("created_at") or ""),
            done_reason=str(chunk.get("done_reason") or ""),
            total_duration=_opt_int(chunk.get("total_duration")),
            load_duration=_opt_int(chunk.get("load_duration")),
            prompt_eval_count=_opt_int(chunk.get("prompt_eval_count")),
            prompt_eval_duration=_opt_int(chunk.get("prompt_eval_duration")),
            eval_count=_opt_int(chunk.get("eval_count")),
            eval_duration=_opt_int(chunk.get("eval_duration")),
        )


@dataclass
class StreamAccumulator:
    parts: List[str] = field(default_factory=list)
    meta: Optional[OllamaDoneMeta] = None

    def append(self, fragment: str) -> None:
        self.parts.append(fragment)

    @property
    def text(self) -> str:
        return "".join(self.parts)


@dataclass(frozen=True)
class Summary:
    attempted: int
    succeeded: int
    # averages are None when nothing succeeded
    avg_completion_tokens: Optional[float]
    avg_total_tokens: Optional[float]
    avg_tok_per_sec: Optional[float]
    sum_completion_tokens: int
    sum_total_tokens: int
    failures_by_kind: Dict[str, int] = field(default_factory=dict)


@dataclass
class LoadConfig:
    base_url: str = DEFAULT_BASE_URL
    api_key: Optional[str] = None
    style: str = STYLE_OPENAI
    stream: bool = False
    runs: int = 100
    concurrency: int = 0  # 0 means "= runs"
    max_tokens: int = 4096
    model: str = DEFAULT_MODEL
    prompt: str = DEFAULT_PROMPT
    timeout_s: float = 60.0  # ignored when stream=True
    unload_model: bool = False  # ollama only
    data_dir: str = "./runs"
    store_data: bool = False
    metrics_csv: Optional[str] = None

    def validate(self) -> None:
        self.style = (self.style or "").strip().lower()
        if self.style not in STYLES:
            raise ConfigError(f"unknown style {self.style!r} (expected one of: {', '.join(STYLES)})")
        if self.style != STYLE_OLLAMA and not self.api_key:
            raise ConfigError("missing API key (use --key or set LLM_API_KEY)")
        if self.store_data and not self.data_dir:
            raise ConfigError("data-dir must be set when store-data is enabled")
        if self.runs < 1:
            raise ConfigError("runs must be at least 1")
        if self.concurrency < 0:
            raise ConfigError("concurrency must be >= 0")
        if self.timeout_s <= 0:
            raise ConfigError("timeout must be positive")
        try:
            url = httpx.URL(self.base_url)
        except (httpx.InvalidURL, TypeError) as e:
            raise ConfigError(f"invalid base URL {self.base_url!r}: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ConfigError(f"invalid base URL {self.base_url!r} (expected http(s)://host/...)")

    def effective_concurrency(self) -> int:
        return clamp_concurrency(self.concurrency, self.runs)

    def should_unload(self) -> bool:
        return self.style == STYLE_OLLAMA and self.unload_model


OnRunDone = Callable[[RunOutcome], Awaitable[None]]


# ----------------------------
# Utilities
# ----------------------------

def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None).isoformat(timespec="milliseconds") + "Z"


def _truncate(s: str, n: int = 700) -> str:
    return s if len(s) <= n else s[:n] + "…"


def _join_url(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + path


def _opt_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _rate(tokens: int, elapsed_s: float) -> float:
    return (tokens / elapsed_s) if elapsed_s > 0 else 0.0


def clamp_concurrency(concurrency: int, runs: int) -> int:
    if concurrency <= 0 or concurrency > runs:
        return runs
    return concurrency


def make_messages(prompt: str) -> List[Dict[str, str]]:
    return [{"role": "user", "content": prompt}]


def count_tokens(text: str) -> int:
    """Whitespace word count; an approximation, not model tokenization."""
    return len(text.split())


def build_requests(cfg: LoadConfig) -> List[RunRequest]:
    return [
        RunRequest(
            run_id=i,
            style=cfg.style,
            model=cfg.model,
            prompt=cfg.prompt,
            stream=cfg.stream,
            max_tokens=cfg.max_tokens,
        )
        for i in range(1, cfg.runs + 1)
    ]


# ----------------------------
# Event log
# ----------------------------

def _print_stderr(line: str) -> None:
    print(line, file=sys.stderr, flush=True)


class EventLog:
    """
    Per-run event lines: "[ts] Run 003 | event | key=value | ...".
    Keys are sorted so lines diff cleanly between sessions.
    """

    def __init__(self, write: Optional[Callable[[str], None]] = None):
        self._write = write or _print_stderr

    def event(self, run_id: int, event: str, **fields: Any) -> None:
        parts = [f"Run {run_id:03d}", event]
        parts.extend(f"{k}={fields[k]}" for k in sorted(fields))
        self._write(f"[{now_utc_iso()}] " + " | ".join(parts))


# ----------------------------
# Run data store
# ----------------------------

class RunDataStore:
    """
    Writes one artifact per (run, kind) under data_dir.

    Content may be raw bytes or text; text is stored as UTF-8.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def path_for(self, run_id: int, kind: str) -> Path:
        return self.data_dir / f"{run_id:03d}.{kind}.txt"

    def _write(self, path: Path, content: Union[str, bytes]) -> None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    async def store(self, run_id: int, kind: str, content: Union[str, bytes]) -> Path:
        path = self.path_for(run_id, kind)
        await asyncio.to_thread(self._write, path, content)
        return path


# ----------------------------
# Request building
# ----------------------------

@dataclass(frozen=True)
class OpenAIRequest:
    model: str
    messages: List[Dict[str, str]]
    max_tokens: int
    stream: bool
    temperature: float = DEFAULT_TEMPERATURE

    def payload(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": self.messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": self.stream,
        }


@dataclass(frozen=True)
class OllamaRequest:
    model: str
    messages: List[Dict[str, str]]
    stream: bool

    def payload(self) -> Dict[str, Any]:
        return {"model": self.model, "messages": self.messages, "stream": self.stream}


@dataclass(frozen=True)
class BuiltRequest:
    url: str
    body: bytes
    headers: Dict[str, str]
    prompt_tokens: int


def build_request(base_url: str, api_key: Optional[str], req: RunRequest) -> BuiltRequest:
    headers = {"Content-Type": "application/json"}
    wire: Union[OpenAIRequest, OllamaRequest]
    if req.style == STYLE_OLLAMA:
        url = _join_url(base_url, "/chat")
        wire = OllamaRequest(model=req.model, messages=make_messages(req.prompt), stream=req.stream)
    else:
        url = _join_url(base_url, "/chat/completions")
        wire = OpenAIRequest(
            model=req.model,
            messages=make_messages(req.prompt),
            max_tokens=req.max_tokens,
            stream=req.stream,
        )
        headers["Authorization"] = f"Bearer {api_key or ''}"
    return BuiltRequest(
        url=url,
        body=json.dumps(wire.payload()).encode("utf-8"),
        headers=headers,
        prompt_tokens=count_tokens(req.prompt),
    )


# ----------------------------
# Response normalization
# ----------------------------

def _decode_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except (ValueError, RecursionError):
        # malformed or pathologically nested lines are skipped
        return None
    return data if isinstance(data, dict) else None


def _content_fragment(chunk: Dict[str, Any]) -> Optional[str]:
    message = chunk.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


def _ollama_content(data: Dict[str, Any]) -> Optional[str]:
    message = data.get("message")
    if message is None:
        return ""
    if not isinstance(message, dict):
        return None
    content = message.get("content", "")
    return content if isinstance(content, str) else None


def _openai_usage(data: Dict[str, Any]) -> Optional[Tuple[int, int, int]]:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return None
    pt = _opt_int(usage.get("prompt_tokens"))
    ct = _opt_int(usage.get("completion_tokens"))
    tt = _opt_int(usage.get("total_tokens"))
    if ct is None:
        return None
    if tt is None:
        tt = (pt or 0) + ct
    return pt or 0, ct, tt


def _api_error_message(data: Dict[str, Any]) -> str:
    err = data.get("error")
    if isinstance(err, str):
        return err
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    return ""


class ResponseNormalizer:
    """
    Turns one HTTP response into a RunMetrics or a RunFailure.

    Batch bodies are parsed as a single JSON envelope. Streaming bodies are
    read line by line; ollama streams end at the line carrying done_reason.
    normalize() also returns the response text that should be persisted.
    """

    def __init__(
        self,
        log: EventLog,
        store: Optional[RunDataStore] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._log = log
        self._store = store
        self.clock = clock

    async def normalize(
        self,
        resp: httpx.Response,
        req: RunRequest,
        prompt_tokens: int,
        t0: float,
    ) -> Tuple[RunOutcome, str]:
        if resp.status_code != 200:
            raw = (await resp.aread()).decode("utf-8", errors="replace").strip()
            self._log.event(
                req.run_id,
                "error",
                type=FAIL_HTTP_STATUS,
                status_code=resp.status_code,
                response=_truncate(raw),
            )
            return RunFailure(req.run_id, FAIL_HTTP_STATUS, raw, status_code=resp.status_code), ""

        if req.stream:
            return await self._read_stream(resp, req, prompt_tokens, t0)

        # batch latency is time to headers
        elapsed = self.clock() - t0
        raw = await resp.aread()
        return self._parse_batch(raw, req, prompt_tokens, elapsed)

    def _fail(self, req: RunRequest, kind: str, detail: str) -> Tuple[RunOutcome, str]:
        self._log.event(req.run_id, "error", type=kind, error=_truncate(detail))
        return RunFailure(req.run_id, kind, detail), ""

    def _success(
        self,
        req: RunRequest,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
        elapsed_s: float,
        work_tokens: int,
    ) -> RunMetrics:
        metrics = RunMetrics(
            run_id=req.run_id,
            model=req.model,
            stream=req.stream,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            latency_ms=elapsed_s * 1e3,
            tok_per_sec=_rate(work_tokens, elapsed_s),
        )
        self._log.event(req.run_id, "success", **metrics.to_dict())
        return metrics

    def _parse_batch(
        self,
        raw: bytes,
        req: RunRequest,
        prompt_tokens: int,
        elapsed: float,
    ) -> Tuple[RunOutcome, str]:
        text = raw.decode("utf-8", errors="replace")
        brace = text.find("{")
        if brace >= 0:
            text = text[brace:]

        try:
            data = json.loads(text)
        except (ValueError, RecursionError) as e:
            return self._fail(req, FAIL_PARSE, f"{type(e).__name__}: {e}")
        if not isinstance(data, dict):
            return self._fail(req, FAIL_PARSE, f"expected JSON object, got {type(data).__name__}")

        if req.style == STYLE_OLLAMA:
            content = _ollama_content(data)
            if content is None:
                return self._fail(req, FAIL_PARSE, "message.content is not a string")
            ct = count_tokens(content)
            return self._success(req, prompt_tokens, ct, ct, elapsed, ct), content

        usage = _openai_usage(data)
        if usage is None:
            message = _api_error_message(data)
            if message:
                return self._fail(req, FAIL_API, message)
            return self._fail(req, FAIL_PARSE, "response has neither usage nor error")
        _pt, ct, tt = usage
        # openai batch throughput counts every token the call processed
        return self._success(req, prompt_tokens, ct, tt, elapsed, tt), text

    async def _read_stream(
        self,
        resp: httpx.Response,
        req: RunRequest,
        prompt_tokens: int,
        t0: float,
    ) -> Tuple[RunOutcome, str]:
        acc = StreamAccumulator()
        self._log.event(req.run_id, "stream-start", model=req.model)

        try:
            async for line in resp.aiter_lines():
                line = line.strip()
                if not line:
                    continue
                chunk = _decode_object(line)
                if chunk is None:
                    continue
                if req.style == STYLE_OLLAMA:
                    meta = OllamaDoneMeta.from_chunk(chunk)
                    if meta is not None:
                        acc.meta = meta
                        break
                fragment = _content_fragment(chunk)
                if fragment is None:
                    continue
                acc.append(fragment)
                if self._store is not None:
                    await self._store_partial(req.run_id, acc.text)
        except httpx.HTTPError as e:
            self._log.event(
                req.run_id,
                "stream-interrupted",
                error=f"{type(e).__name__}: {_truncate(str(e))}",
            )

        elapsed = self.clock() - t0
        text = acc.text
        ct = count_tokens(text)
        pt = prompt_tokens
        if acc.meta is not None and acc.meta.prompt_eval_count is not None:
            pt = acc.meta.prompt_eval_count
        return self._success(req, pt, ct, ct, elapsed, ct), text

    async def _store_partial(self, run_id: int, text: str) -> None:
        assert self._store is not None
        try:
            await self._store.store(run_id, "response", text)
        except OSError as e:
            self._log.event(run_id, "error", type="store_data", error=str(e))


# ----------------------------
# Dispatcher
# ----------------------------

_DONE = object()


class Dispatcher:
    """
    Bounded fan-out of runs over one shared AsyncClient.

    At most `concurrency` runs are in flight; a slot is held until the run's
    persistence and result callback have finished. Outcomes are yielded in
    completion order and the iterator ends once every launched run is done.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str,
        api_key: Optional[str],
        log: EventLog,
        timeout_s: float = 60.0,
        store: Optional[RunDataStore] = None,
        on_result: Optional[OnRunDone] = None,
        cancel: Optional[asyncio.Event] = None,
        normalizer: Optional[ResponseNormalizer] = None,
    ):
        self._client = client
        self._base_url = base_url
        self._api_key = api_key
        self._log = log
        self._timeout_s = timeout_s
        self._store = store
        self._on_result = on_result
        self._cancel = cancel
        self._normalizer = normalizer or ResponseNormalizer(log, store)

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    async def run(self, requests: Sequence[RunRequest], concurrency: int) -> AsyncIterator[RunOutcome]:
        if not requests:
            return
        limit = clamp_concurrency(concurrency, len(requests))
        queue: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._produce(requests, limit, queue))
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.wait([producer])

    async def _produce(self, requests: Sequence[RunRequest], limit: int, queue: asyncio.Queue) -> None:
        sem = asyncio.Semaphore(limit)
        tasks: List[asyncio.Task] = []
        watcher = asyncio.create_task(self._watch_cancel(tasks)) if self._cancel is not None else None
        try:
            for req in requests:
                if self._cancelled():
                    break
                await sem.acquire()
                if self._cancelled():
                    sem.release()
                    break
                tasks.append(asyncio.create_task(self._run_one(req, sem, queue)))
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            if watcher is not None:
                watcher.cancel()
            queue.put_nowait(_DONE)
        # a failing on_result callback is a caller bug, not a run failure
        for r in results:
            if isinstance(r, Exception):
                raise r

    async def _watch_cancel(self, tasks: List[asyncio.Task]) -> None:
        assert self._cancel is not None
        await self._cancel.wait()
        for task in tasks:
            task.cancel()

    async def _run_one(self, req: RunRequest, sem: asyncio.Semaphore, queue: asyncio.Queue) -> None:
        try:
            outcome = await self._execute(req)
            queue.put_nowait(outcome)
            if self._on_result is not None:
                await self._on_result(outcome)
        except asyncio.CancelledError:
            self._log.event(req.run_id, "cancelled")
            raise
        finally:
            sem.release()

    async def _execute(self, req: RunRequest) -> RunOutcome:
        built = build_request(self._base_url, self._api_key, req)
        self._log.event(
            req.run_id,
            "request",
            model=req.model,
            stream=req.stream,
            prompt_tokens=built.prompt_tokens,
        )
        # streaming runs have no per-call deadline
        timeout = None if req.stream else self._timeout_s
        t0 = self._normalizer.clock()
        try:
            async with self._client.stream(
                "POST",
                built.url,
                content=built.body,
                headers=built.headers,
                timeout=timeout,
            ) as resp:
                outcome, content = await self._normalizer.normalize(resp, req, built.prompt_tokens, t0)
        except httpx.HTTPError as e:
            detail = f"{type(e).__name__}: {_truncate(str(e), 1200)}"
            self._log.event(req.run_id, "error", type=FAIL_TRANSPORT, error=detail)
            return RunFailure(req.run_id, FAIL_TRANSPORT, detail)

        if isinstance(outcome, RunMetrics) and self._store is not None:
            await self._persist(outcome, content)
        return outcome

    async def _persist(self, metrics: RunMetrics, content: str) -> None:
        assert self._store is not None
        artifacts = (
            ("response", content),
            ("metrics", json.dumps(metrics.to_dict())),
        )
        for kind, payload in artifacts:
            try:
                path = await self._store.store(metrics.run_id, kind, payload)
            except OSError as e:
                self._log.event(metrics.run_id, "error", type="store_data", error=str(e))
                continue
            self._log.event(metrics.run_id, f"{kind}-stored", file=str(path))


# ----------------------------
# Aggregation
# ----------------------------

class Aggregator:
    def __init__(self, attempted: int):
        self.attempted = attempted
        self.succeeded = 0
        self.sum_completion_tokens = 0
        self.sum_total_tokens = 0
        self.sum_tok_per_sec = 0.0
        self.failures_by_kind: Dict[str, int] = {}

    def add(self, outcome: RunOutcome) -> None:
        if isinstance(outcome, RunFailure):
            self.failures_by_kind[outcome.kind] = self.failures_by_kind.get(outcome.kind, 0) + 1
            return
        self.succeeded += 1
        self.sum_completion_tokens += outcome.completion_tokens
        self.sum_total_tokens += outcome.total_tokens
        self.sum_tok_per_sec += outcome.tok_per_sec

    def summary(self) -> Summary:
        good = self.succeeded
        return Summary(
            attempted=self.attempted,
            succeeded=good,
            avg_completion_tokens=(self.sum_completion_tokens / good) if good else None,
            avg_total_tokens=(self.sum_total_tokens / good) if good else None,
            avg_tok_per_sec=(self.sum_tok_per_sec / good) if good else None,
            sum_completion_tokens=self.sum_completion_tokens,
            sum_total_tokens=self.sum_total_tokens,
            failures_by_kind=dict(self.failures_by_kind),
        )


def render_summary(summary: Summary) -> str:
    lines = [
        "",
        "=== Summary ===",
        f"Successful calls  : {summary.succeeded} / {summary.attempted}",
    ]
    if summary.succeeded > 0:
        lines.extend(
            [
                f"Avg completion tokens    : {summary.avg_completion_tokens:.2f}",
                f"Avg total tokens         : {summary.avg_total_tokens:.2f}",
                f"Avg tokens / sec         : {summary.avg_tok_per_sec:.2f}",
                f"Total completion tokens  : {summary.sum_completion_tokens}",
                f"Total tokens             : {summary.sum_total_tokens}",
            ]
        )
    if summary.failures_by_kind:
        counts = ", ".join(f"{k}={v}" for k, v in sorted(summary.failures_by_kind.items()))
        lines.append(f"Failures                 : {counts}")
    return "\n".join(lines)


# ----------------------------
# Session
# ----------------------------

async def run_load(
    cfg: LoadConfig,
    client: httpx.AsyncClient,
    *,
    log: Optional[EventLog] = None,
    store: Optional[RunDataStore] = None,
    on_result: Optional[OnRunDone] = None,
    cancel: Optional[asyncio.Event] = None,
) -> Summary:
    """
    Validate cfg, dispatch cfg.runs requests and return the aggregate summary.
    Per-run failures are folded into the summary; only ConfigError escapes.
    """
    cfg.validate()
    log = log or EventLog()
    if store is None and cfg.store_data:
        store = RunDataStore(Path(cfg.data_dir))

    dispatcher = Dispatcher(
        client,
        base_url=cfg.base_url,
        api_key=cfg.api_key,
        log=log,
        timeout_s=cfg.timeout_s,
        store=store,
        on_result=on_result,
        cancel=cancel,
    )
    aggregator = Aggregator(cfg.runs)
    async for outcome in dispatcher.run(build_requests(cfg), cfg.concurrency):
        aggregator.add(outcome)
    return aggregator.summary()


async def unload_model(
    client: httpx.AsyncClient,
    base_url: str,
    model: str,
    timeout_s: float = 60.0,
) -> None:
    """Ask an ollama server to evict `model` from memory (keep_alive=0)."""
    url = _join_url(base_url, "/chat")
    try:
        resp = await client.post(
            url,
            headers={"Content-Type": "application/json"},
            json={"model": model, "keep_alive": 0},
            timeout=timeout_s,
        )
    except httpx.HTTPError as e:
        raise UnloadError(f"error unloading model: {type(e).__name__}: {e}") from e
    if resp.status_code != 200:
        raise UnloadError(
            f"error unloading model: {resp.text.strip()} (status code {resp.status_code})"
        )


# ----------------------------
# CSV helpers
# ----------------------------

def append_csv(path: Path, row_dict: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    write_header = not path.exists() or path.stat().st_size == 0
    with path.open("a", newline="", encoding="utf-8") as f:
        # preserve deterministic column order
        fields = list(row_dict.keys())
        writer = csv.DictWriter(f, fieldnames=fields)
        if write_header:
            writer.writeheader()
        writer.writerow(row_dict)


def metrics_csv_writer(path: Path) -> OnRunDone:
    async def on_result(outcome: RunOutcome) -> None:
        if isinstance(outcome, RunMetrics):
            append_csv(path, outcome.to_dict())

    return on_result
