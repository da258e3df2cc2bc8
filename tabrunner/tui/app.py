from __future__ import annotations
import logging
import re
import uuid
from pathlib import Path
from typing import List, Optional

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.widgets import DataTable, Footer, Header, Input, Label, RichLog

from tabrunner.agent.control import ControlChannel, ControlChannelError
from tabrunner.agent.orchestrator import Orchestrator
from tabrunner.core.events import Event, event_bus

logger = logging.getLogger(__name__)


def parse_urls(text: str) -> List[str]:
    return [part for part in re.split(r"[\s,]+", text) if part]


class TabRunnerApp(App):
    """Control surface: start and stop searches, watch their progress."""

    CSS = """
    #status-card { height: 3; padding: 0 1; }
    #sessions { height: 10; }
    .section-title { text-style: bold; padding: 0 1; }
    #activity-feed { height: 1fr; }
    #log-output { height: 1fr; }
    #input-area { height: 3; }
    .prompt-symbol { width: 2; padding: 1 0; }
    """

    BINDINGS = [("ctrl+q", "quit", "Quit")]

    HELP_TEXT = "Paste profile URLs, or: /load <file>  /stop [search id]  /exit"

    def __init__(self, orchestrator: Orchestrator, **kwargs):
        super().__init__(**kwargs)
        self.orchestrator = orchestrator
        self.channel = ControlChannel(orchestrator)
        self.last_session_id: Optional[str] = None

    def compose(self) -> ComposeResult:
        yield Header()
        with Container(id="status-card"):
            yield Label("Starting browser...", id="main-status")
        yield Label("Searches", classes="section-title")
        yield DataTable(id="sessions")
        with Horizontal():
            with Vertical():
                yield Label("Live Activity", classes="section-title")
                yield RichLog(id="activity-feed", wrap=True, highlight=True, markup=True)
            with Vertical():
                yield Label("System Logs", classes="section-title")
                yield RichLog(id="log-output", wrap=True, highlight=True, markup=True)
        with Horizontal(id="input-area"):
            yield Label(">", classes="prompt-symbol")
            yield Input(placeholder=self.HELP_TEXT, id="command-input")
        yield Footer()

    async def on_mount(self) -> None:
        table = self.query_one("#sessions", DataTable)
        table.add_column("Search", key="search")
        table.add_column("Progress", key="progress")
        table.add_column("Errors", key="errors")
        event_bus.subscribe(self.handle_event)
        self.run_worker(self._start_orchestrator(), exclusive=True)
        self.query_one("#command-input", Input).focus()

    async def _start_orchestrator(self):
        try:
            await self.orchestrator.start()
            self.query_one("#main-status", Label).update("Ready")
        except Exception as e:
            self.query_one("#main-status", Label).update(f"[red]Browser failed to start: {e}[/]")

    async def on_unmount(self) -> None:
        """Clean up resources on exit."""
        event_bus.unsubscribe(self.handle_event)
        await self.orchestrator.shutdown()

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        value = event.value.strip()
        event.input.value = ""
        if not value:
            return

        if value == "/exit":
            self.exit()
            return

        try:
            if value.startswith("/stop"):
                parts = value.split(maxsplit=1)
                session_id = parts[1] if len(parts) > 1 else self.last_session_id
                if not session_id:
                    self.notify("No search to stop.", severity="warning")
                    return
                response = await self.channel.send({"action": "stopSearch", "sessionId": session_id})
                self.notify(response.get("message") or response.get("error", ""))
                return

            if value.startswith("/load"):
                parts = value.split(maxsplit=1)
                if len(parts) < 2:
                    self.notify("Usage: /load <file>", severity="warning")
                    return
                urls = parse_urls(Path(parts[1]).expanduser().read_text())
            else:
                urls = parse_urls(value)

            await self.start_search(urls)
        except (ControlChannelError, OSError) as e:
            self.notify(str(e), severity="error")

    async def start_search(self, urls: List[str]):
        session_id = f"search-{uuid.uuid4().hex[:8]}"
        response = await self.channel.send(
            {"action": "startSearch", "sessionId": session_id, "urls": urls}
        )
        if not response.get("success"):
            self.notify(f"Failed to start: {response.get('error')}", severity="error")
            return
        self.last_session_id = session_id

    def handle_event(self, event: Event):
        """Handle events from the event bus."""
        # Schedule UI updates on the main thread
        self.call_later(self._update_ui, event)

    def _update_ui(self, event: Event):
        try:
            payload = event.payload
            table = self.query_one("#sessions", DataTable)
            feed = self.query_one("#activity-feed", RichLog)

            if event.type == "session_started":
                table.add_row(
                    payload["session_id"], f"0/{payload['total']}", "0", key=payload["session_id"]
                )
                feed.write(f"[green]Started {payload['session_id']} ({payload['total']} URLs)[/]")

            elif event.type == "progress":
                session_id = payload.get("session_id")
                if session_id is None:
                    self.query_one("#main-status", Label).update("Idle")
                    return
                self.query_one("#main-status", Label).update(f"{session_id}: {payload['text']}")
                if session_id in table.rows:
                    table.update_cell(session_id, "progress", payload["text"])
                    table.update_cell(session_id, "errors", str(payload["errors"]))

            elif event.type == "job_error":
                feed.write(f"[red]{payload['kind']}[/] {payload['url']}: {payload['error']} - continuing")

            elif event.type == "session_finished":
                session_id = payload["session_id"]
                if session_id in table.rows:
                    table.remove_row(session_id)
                feed.write(
                    f"[bold]{session_id} finished[/]: {payload['completed']}/{payload['total']} completed, "
                    f"{payload['total_errors']} errors, {round(payload['duration'])}s"
                )

            elif event.type == "log":
                self.query_one("#log-output", RichLog).write(payload["message"])

        except Exception as e:
            # Log error to file so we can see it
            logger.error(f"UI Update failed: {e}")
