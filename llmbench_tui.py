from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import Optional

import httpx
from dotenv import load_dotenv
from textual import on
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.widgets import (
    Button,
    Checkbox,
    DataTable,
    Footer,
    Header,
    Input,
    Label,
    ProgressBar,
    RichLog,
    Static,
)
from rich.text import Text

from llmbench_lib import (
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    DEFAULT_PROMPT,
    STYLE_OLLAMA,
    STYLE_OPENAI,
    ConfigError,
    EventLog,
    LoadConfig,
    RunFailure,
    RunOutcome,
    metrics_csv_writer,
    render_summary,
    run_load,
    unload_model,
)

load_dotenv()


class LLMBenchTUI(App):
    CSS = """
    Screen { layout: vertical; }
    #pre_run { height: 1fr; }
    #cfg { border: solid green; padding: 1; }
    .field { width: 1fr; }
    .field Input { width: 1fr; }
    #bench_panel { height: 1fr; }
    #progress_row { height: 1; }
    #run_table { height: 1fr; }
    #event_log { height: 10; }
    #summary { height: auto; border: solid green; }
    DataTable { height: 1fr; }
    .hidden { display: none; }
    """

    BINDINGS = [("q", "quit", "Quit")]

    def __init__(self):
        super().__init__()
        self.base_url = os.getenv("LLM_BASE_URL", DEFAULT_BASE_URL)
        self.api_key = os.getenv("LLM_API_KEY", "")
        self.data_dir = os.getenv("LLM_DATA_DIR", "./runs")
        self.metrics_csv = os.getenv("METRICS_CSV", "")

        self.cancel: Optional[asyncio.Event] = None
        self.runs_total = 0
        self.runs_done = 0
        self.errors = 0
        self.start_time: float | None = None
        self._run_timer = None
        self.table_col_keys = {
            "run": "run",
            "state": "state",
            "prompt": "prompt_tokens",
            "completion": "completion_tokens",
            "total": "total_tokens",
            "latency": "latency_ms",
            "tps": "tok_per_sec",
            "detail": "detail",
        }

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        with VerticalScroll(id="pre_run"):
            with Vertical(id="cfg"):
                yield Label("Load test settings:")
                with Horizontal():
                    yield from self._field("Base URL", self.base_url, "base_url")
                    yield from self._field("Model", os.getenv("LLM_MODEL", DEFAULT_MODEL), "model")
                yield from self._field("Prompt", DEFAULT_PROMPT, "prompt")
                with Horizontal():
                    yield from self._field("Runs", os.getenv("RUNS", "20"), "runs")
                    yield from self._field("Concurrency (0 = runs)", os.getenv("CONCURRENCY", "0"), "concurrency")
                    yield from self._field("Max tokens", os.getenv("MAX_TOKENS", "4096"), "max_tokens")
                    yield from self._field("Timeout (s)", os.getenv("TIMEOUT_S", "60"), "timeout_s")
                yield Horizontal(
                    Checkbox(label="Ollama style", value=os.getenv("LLM_STYLE", "") == STYLE_OLLAMA, id="ollama"),
                    Checkbox(label="Stream", value=False, id="stream"),
                    Checkbox(label="Store data", value=False, id="store_data"),
                    Checkbox(label="Unload model after", value=False, id="unload_model"),
                )

            with Horizontal(id="controls"):
                yield Button("Run Load Test", id="run", variant="success")
            yield Static("Status: idle", id="pre_status_text")

        with Vertical(id="bench_panel", classes="hidden"):
            with Horizontal(id="progress_row"):
                yield Static("Status: idle", id="status_text")
                yield ProgressBar(total=100, id="global_bar")
                yield Label("Elapsed: --", id="elapsed")

            table = DataTable(id="run_table")
            table.add_column("Run", key=self.table_col_keys["run"])
            table.add_column("State", key=self.table_col_keys["state"])
            table.add_column("Prompt tok", key=self.table_col_keys["prompt"])
            table.add_column("Completion tok", key=self.table_col_keys["completion"])
            table.add_column("Total tok", key=self.table_col_keys["total"])
            table.add_column("Latency ms", key=self.table_col_keys["latency"])
            table.add_column("Tok/s", key=self.table_col_keys["tps"])
            table.add_column("Detail", key=self.table_col_keys["detail"])
            yield table
            yield RichLog(id="event_log", wrap=True, highlight=False, max_lines=500)
            yield Static("", id="summary", classes="hidden")
            with Horizontal():
                yield Button("Stop", id="stop", variant="error")
                yield Button("Back to setup", id="back_to_setup", classes="hidden")
        yield Footer()

    def _field(self, label: str, value: str, input_id: str) -> ComposeResult:
        with Vertical(classes="field"):
            yield Label(label)
            yield Input(value=value, id=input_id, placeholder=input_id)

    def _set_status(self, text: str) -> None:
        self.query_one("#status_text", Static).update(f"Status: {text}")

    def _set_pre_status(self, text: str) -> None:
        self.query_one("#pre_status_text", Static).update(f"Status: {text}")

    def _write_event(self, line: str) -> None:
        self.query_one("#event_log", RichLog).write(line)

    def _safe_update_cell(self, table: DataTable, row_key: str, column_key: str, value: object) -> None:
        try:
            table.update_cell(row_key, column_key, value)
        except Exception as e:
            self.log.warning("Skipping update for row=%s col=%s: %s", row_key, column_key, e)

    def _format_elapsed(self, elapsed_s: float | None) -> str:
        if elapsed_s is None or elapsed_s < 0:
            return "--"
        seconds = int(elapsed_s)
        mins, secs = divmod(seconds, 60)
        hours, mins = divmod(mins, 60)
        if hours > 0:
            return f"{hours:d}:{mins:02d}:{secs:02d}"
        return f"{mins:02d}:{secs:02d}"

    def _update_elapsed(self) -> None:
        if self.start_time is None:
            return
        elapsed = self._format_elapsed(time.time() - self.start_time)
        self.query_one("#elapsed", Label).update(f"Elapsed: {elapsed}")

    def _state_render(self, state: str) -> object:
        if state == "error":
            return Text(state, style="bold red")
        if state == "queued":
            return Text(state, style="dim")
        if state == "done":
            return Text(state, style="green")
        return state

    def _read_config(self) -> LoadConfig:
        def value(input_id: str) -> str:
            return self.query_one(f"#{input_id}", Input).value.strip()

        try:
            runs = int(value("runs"))
            concurrency = int(value("concurrency"))
            max_tokens = int(value("max_tokens"))
            timeout_s = float(value("timeout_s"))
        except ValueError as e:
            raise ConfigError(f"bad numeric input: {e}") from e

        cfg = LoadConfig(
            base_url=value("base_url"),
            api_key=self.api_key or None,
            style=STYLE_OLLAMA if self.query_one("#ollama", Checkbox).value else STYLE_OPENAI,
            stream=self.query_one("#stream", Checkbox).value,
            runs=runs,
            concurrency=concurrency,
            max_tokens=max_tokens,
            model=value("model"),
            prompt=value("prompt"),
            timeout_s=timeout_s,
            unload_model=self.query_one("#unload_model", Checkbox).value,
            data_dir=self.data_dir,
            store_data=self.query_one("#store_data", Checkbox).value,
            metrics_csv=self.metrics_csv or None,
        )
        cfg.validate()
        return cfg

    def _refresh_table(self, runs: int) -> None:
        table = self.query_one(DataTable)
        table.clear()
        for run_id in range(1, runs + 1):
            table.add_row(
                f"{run_id:03d}",
                self._state_render("queued"),
                "",
                "",
                "",
                "",
                "",
                "",
                key=str(run_id),
            )

    async def _on_run_done(self, outcome: RunOutcome) -> None:
        self.runs_done += 1
        table = self.query_one(DataTable)
        row_key = str(outcome.run_id)
        if isinstance(outcome, RunFailure):
            self.errors += 1
            self._safe_update_cell(table, row_key, self.table_col_keys["state"], self._state_render("error"))
            detail = f"{outcome.kind}: {outcome.detail}".replace("\n", " ")
            self._safe_update_cell(table, row_key, self.table_col_keys["detail"], detail[:80])
        else:
            self._safe_update_cell(table, row_key, self.table_col_keys["state"], self._state_render("done"))
            self._safe_update_cell(table, row_key, self.table_col_keys["prompt"], str(outcome.prompt_tokens))
            self._safe_update_cell(table, row_key, self.table_col_keys["completion"], str(outcome.completion_tokens))
            self._safe_update_cell(table, row_key, self.table_col_keys["total"], str(outcome.total_tokens))
            self._safe_update_cell(table, row_key, self.table_col_keys["latency"], f"{outcome.latency_ms:.1f}")
            self._safe_update_cell(table, row_key, self.table_col_keys["tps"], f"{outcome.tok_per_sec:.2f}")

        bar = self.query_one("#global_bar", ProgressBar)
        bar.update(progress=int((self.runs_done / max(1, self.runs_total)) * 100))
        self._set_status(f"{self.runs_done}/{self.runs_total} runs finished, {self.errors} errors")

    @on(Button.Pressed, "#run")
    async def run_pressed(self) -> None:
        try:
            cfg = self._read_config()
        except ConfigError as e:
            self._set_pre_status(str(e))
            return

        self.query_one("#pre_run").add_class("hidden")
        self.query_one("#bench_panel").remove_class("hidden")

        self.run_worker(
            self._run_load(cfg),
            name="load",
            group="load",
            exclusive=True,
        )

    async def _run_load(self, cfg: LoadConfig) -> None:
        self.cancel = asyncio.Event()
        self.runs_total = cfg.runs
        self.runs_done = 0
        self.errors = 0
        self.start_time = time.time()
        self.query_one("#event_log", RichLog).clear()
        self.query_one("#summary", Static).add_class("hidden")
        self.query_one("#back_to_setup", Button).add_class("hidden")
        self.query_one("#stop", Button).remove_class("hidden")
        self._refresh_table(cfg.runs)
        if self._run_timer is not None:
            self._run_timer.stop()
        self._run_timer = self.set_interval(1.0, self._update_elapsed, pause=False)

        self._set_status(
            f"Running {cfg.runs} {cfg.style} requests at concurrency {cfg.effective_concurrency()}…"
        )
        write_csv = metrics_csv_writer(Path(self.metrics_csv)) if self.metrics_csv else None

        async def on_result(outcome: RunOutcome) -> None:
            await self._on_run_done(outcome)
            if write_csv is not None:
                await write_csv(outcome)

        try:
            async with httpx.AsyncClient() as client:
                summary = await run_load(
                    cfg,
                    client,
                    log=EventLog(self._write_event),
                    on_result=on_result,
                    cancel=self.cancel,
                )
                summary_widget = self.query_one("#summary", Static)
                summary_widget.update(render_summary(summary).strip())
                summary_widget.remove_class("hidden")

                if cfg.should_unload() and not self.cancel.is_set():
                    await unload_model(client, cfg.base_url, cfg.model, cfg.timeout_s)
                    self._write_event(f"Unloaded model {cfg.model}")
        except Exception as e:
            self.log.error("Load test failed", exc_info=True)
            self._set_status(f"Error: {type(e).__name__}: {e}")
        else:
            self._set_status("Stopped." if self.cancel.is_set() else "Complete.")
        finally:
            if self._run_timer is not None:
                self._run_timer.stop()
                self._run_timer = None
            self._update_elapsed()
            self.query_one("#stop", Button).add_class("hidden")
            self.query_one("#back_to_setup", Button).remove_class("hidden")

    @on(Button.Pressed, "#stop")
    def stop_pressed(self) -> None:
        if self.cancel is not None:
            self.cancel.set()
            self._set_status("Stopping…")

    @on(Button.Pressed, "#back_to_setup")
    def back_to_setup(self) -> None:
        self.query_one("#bench_panel").add_class("hidden")
        self.query_one("#pre_run").remove_class("hidden")


def main() -> None:
    LLMBenchTUI().run()


if __name__ == "__main__":
    main()
