from __future__ import annotations

import argparse
import asyncio
import os
import re
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence

import httpx
from dotenv import load_dotenv

from llmbench_lib import (
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    DEFAULT_PROMPT,
    STYLE_OPENAI,
    ConfigError,
    EventLog,
    LoadConfig,
    UnloadError,
    metrics_csv_writer,
    now_utc_iso,
    render_summary,
    run_load,
    unload_model,
)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(text: str) -> float:
    """Seconds from "90", "90s", "500ms", "2m" or "1h"."""
    m = _DURATION_RE.match(text)
    if not m:
        raise argparse.ArgumentTypeError(f"invalid duration: {text!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2) or "s"]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llmbench",
        description="tiny load-tester for OpenAI & Ollama like chat APIs",
    )
    parser.add_argument("--base-url", default=os.getenv("LLM_BASE_URL", DEFAULT_BASE_URL), help="API base URL")
    parser.add_argument("--key", default=os.getenv("LLM_API_KEY"), help="Bearer token (not used by Ollama)")
    parser.add_argument("--style", default=os.getenv("LLM_STYLE", STYLE_OPENAI), help="API style: openai or ollama")
    parser.add_argument("--stream", action="store_true", help="enable streaming mode")
    parser.add_argument("--runs", type=int, default=100, help="total requests to send")
    parser.add_argument("--concurrency", type=int, default=0, help="simultaneous requests (0 = runs)")
    parser.add_argument("--max-tokens", type=int, default=4096, help="max_tokens per request (OpenAI only)")
    parser.add_argument("--model", default=os.getenv("LLM_MODEL", DEFAULT_MODEL), help="model ID")
    parser.add_argument("--prompt", default=DEFAULT_PROMPT, help="user message")
    parser.add_argument(
        "--timeout",
        type=parse_duration,
        default=60.0,
        help="HTTP timeout, e.g. 60s or 2m (ignored in streaming)",
    )
    parser.add_argument(
        "--unload-model",
        action="store_true",
        help="unload model after all runs complete (Ollama only)",
    )
    parser.add_argument("--data-dir", default="./runs", help="directory to save data files")
    parser.add_argument("--store-data", action="store_true", help="store data files (responses, metrics)")
    parser.add_argument("--metrics-csv", default=None, help="append per-run metrics to this CSV file")
    return parser


def config_from_args(args: argparse.Namespace) -> LoadConfig:
    return LoadConfig(
        base_url=args.base_url,
        api_key=args.key,
        style=args.style,
        stream=args.stream,
        runs=args.runs,
        concurrency=args.concurrency,
        max_tokens=args.max_tokens,
        model=args.model,
        prompt=args.prompt,
        timeout_s=args.timeout,
        unload_model=args.unload_model,
        data_dir=args.data_dir,
        store_data=args.store_data,
        metrics_csv=args.metrics_csv,
    )


def _register_signals(loop: asyncio.AbstractEventLoop, cancel: asyncio.Event) -> List[int]:
    installed: List[int] = []
    for sig in (signal.SIGINT, signal.SIGTERM, getattr(signal, "SIGHUP", None)):
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (NotImplementedError, RuntimeError, ValueError):
            # no loop signal support here (e.g. Windows or a non-main thread)
            continue
        installed.append(sig)
    return installed


def _unregister_signals(loop: asyncio.AbstractEventLoop, installed: Sequence[int]) -> None:
    for sig in installed:
        loop.remove_signal_handler(sig)


async def run_headless(
    cfg: LoadConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = _register_signals(loop, cancel)
    on_result = metrics_csv_writer(Path(cfg.metrics_csv)) if cfg.metrics_csv else None

    started_at = time.time()
    print(
        f"[{now_utc_iso()}] Load test started. style={cfg.style} model={cfg.model} "
        f"runs={cfg.runs} concurrency={cfg.effective_concurrency()} stream={cfg.stream}",
        file=sys.stderr,
        flush=True,
    )
    try:
        async with httpx.AsyncClient(transport=transport) as client:
            summary = await run_load(cfg, client, log=EventLog(), on_result=on_result, cancel=cancel)
            print(render_summary(summary), flush=True)

            if cancel.is_set():
                elapsed = time.time() - started_at
                print(
                    f"[{now_utc_iso()}] Stop requested; in-flight runs cancelled. Elapsed={elapsed:.1f}s",
                    file=sys.stderr,
                    flush=True,
                )
                return 130

            if cfg.should_unload():
                await unload_model(client, cfg.base_url, cfg.model, cfg.timeout_s)
                print(f"[{now_utc_iso()}] Unloaded model {cfg.model}.", file=sys.stderr, flush=True)
    finally:
        _unregister_signals(loop, installed)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = _build_parser().parse_args(argv)
    cfg = config_from_args(args)

    try:
        cfg.validate()
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(run_headless(cfg))
    except UnloadError as exc:
        print(f"Fatal: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
