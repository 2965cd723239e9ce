#!/usr/bin/env python3
"""
Textual TUI for Generative Psychosis

A three-pane interface for watching a model come apart:
- Output Pane: the monologue, word by word, coloured by madness tier
- Madness Pane: madness meter, severity tier, coherence
- Status Pane: loop status, generation counts, errors
"""

import argparse
import asyncio
from typing import Optional
from pathlib import Path

from loguru import logger
from textual import work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.message import Message
from textual.widgets import Static, RichLog, Footer, Header
from textual.worker import Worker
from rich.style import Style
from rich.markup import escape
from rich.text import Text

from psychosis_loop import (
    DEBUG_PSYCHOSIS,
    LLM_URL,
    MADNESS_NOTICE,
    MODEL,
    PARAGRAPH_BREAK,
    PREAMBLE_LINES,
    WORD_DELAY,
    GenerationSession,
    LoopStatus,
    ModelNotLoadedError,
    ProgressionController,
    setup_logger,
)



def get_madness_style(madness: float) -> Style:
    """Rich style for text written at this madness level."""
    if madness > 80:
        return Style(color="red", bold=True)
    elif madness > 60:
        return Style(color="dark_orange")
    elif madness > 40:
        return Style(color="yellow")
    return Style(color="green")


def build_intensity_bar(fraction: float, width: int = 20) -> str:
    """Build a bar like: ████████░░"""
    filled = int(max(0.0, min(1.0, fraction)) * width)
    return "█" * filled + "░" * (width - filled)


class TypingLine(Static):
    """The line currently being written."""

    DEFAULT_CSS = """
    TypingLine {
        height: auto;
        min-height: 1;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, **kwargs):
        super().__init__("", **kwargs)
        self._text = Text()

    def append(self, text: str, style: Optional[Style] = None):
        self._text.append(text, style=style or Style())
        self.update(self._text)

    def get_text(self) -> Text:
        return self._text

    def clear(self):
        self._text = Text()
        self.update("")


class OutputHistory(RichLog):
    """Scrolling history of completed lines."""

    DEFAULT_CSS = """
    OutputHistory {
        height: 1fr;
        background: $surface;
        scrollbar-gutter: stable;
    }
    """

    def __init__(self, **kwargs):
        super().__init__(highlight=False, markup=False, wrap=True, **kwargs)


class OutputPane(Vertical):
    """History plus typing line."""

    DEFAULT_CSS = """
    OutputPane {
        height: 100%;
        border: solid $primary;
        background: $surface;
    }
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._history: Optional[OutputHistory] = None
        self._typing: Optional[TypingLine] = None

    def compose(self) -> ComposeResult:
        yield OutputHistory(id="history")
        yield TypingLine(id="typing")

    def on_mount(self):
        self._history = self.query_one("#history", OutputHistory)
        self._typing = self.query_one("#typing", TypingLine)

    def append_word(self, word: str, style: Optional[Style] = None):
        """Add a word to the typing line, with a space unless the line is empty."""
        if not self._typing:
            return
        spacer = " " if self._typing.get_text().plain else ""
        self._typing.append(spacer + word, style)

    def break_paragraph(self):
        """Finish the current line and leave a blank one."""
        self.flush_line()
        self.write_line(Text(""))

    def write_line(self, text):
        if self._history:
            self._history.write(text)
            self._history.scroll_end(animate=False)

    def flush_line(self):
        if self._typing and self._history:
            current = self._typing.get_text()
            if current.plain:
                self._history.write(current)
            self._typing.clear()
            self._history.scroll_end(animate=False)

    def clear(self):
        if self._history:
            self._history.clear()
        if self._typing:
            self._typing.clear()


class MadnessPane(Static):
    """Madness meter and coherence."""

    DEFAULT_CSS = """
    MadnessPane {
        width: 1fr;
        height: 100%;
        border: solid $secondary;
        padding: 1;
        background: $surface;
    }
    """

    def update_status(self, status: LoopStatus):
        style = get_madness_style(status.madness_level)
        bar = build_intensity_bar(status.madness_level / 100)

        lines = []
        lines.append(f"[{style}]{bar}[/]  {status.madness_level:.0f}%")
        lines.append(f"[{style}]{status.severity_label or '[STABLE]'}[/]")
        lines.append("")
        lines.append(f"[bold]Coherence:[/] {status.coherence_score}%")
        lines.append(f"[dim]{build_intensity_bar(status.coherence_score / 100, width=10)}[/]")
        self.update("\n".join(lines))


class StatusPane(Static):
    """Loop status, counters and the error banner."""

    DEFAULT_CSS = """
    StatusPane {
        width: 1fr;
        height: 100%;
        border: solid $secondary;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, **kwargs):
        super().__init__("", **kwargs)
        self.shown_text = ""

    def _show(self, text: str):
        self.shown_text = text
        self.update(text)

    def update_status(self, status: LoopStatus, word_count: int):
        last = status.last_generation_time.strftime("%H:%M:%S") if status.last_generation_time else "NEVER"

        lines = []
        lines.append(f"[bold]Status:[/] [cyan]{status.status_label}[/]")
        lines.append(
            f"[bold]Generations:[/] {status.generation_count}/{status.target_generation_count}"
            f"  [bold]Words:[/] {word_count}"
        )
        lines.append(f"[bold]Rejected in a row:[/] {status.consecutive_failures}")
        lines.append(f"[bold]Last fragment:[/] {last}")
        if status.error:
            retry = f" (Retry {status.retry_count}/{status.max_retries})" if status.retry_count > 0 else ""
            lines.append("")
            lines.append(f"[red]ERROR: {escape(status.error)}{retry}[/]")
        if status.madness_level >= 100:
            lines.append("")
            lines.append(f"[bold red]{escape(MADNESS_NOTICE)}[/]")
        self._show("\n".join(lines))

    def show_fatal(self, message: str):
        self._show(f"[bold red]SYSTEM ERROR[/]\n\n[red]{escape(message)}[/]\n\n[dim]Press 'r' to retry.[/]")


class ShowFragment(Message):
    """Words of an accepted fragment."""
    def __init__(self, tokens: list) -> None:
        super().__init__()
        self.tokens = tokens


class ResetOutput(Message):
    """Narrative went back to the seed text."""
    def __init__(self, tokens: list) -> None:
        super().__init__()
        self.tokens = tokens


class UpdateStatus(Message):
    """Fresh loop status snapshot."""
    def __init__(self, status: LoopStatus) -> None:
        super().__init__()
        self.status = status


class ShowError(Message):
    """A generation call failed."""
    def __init__(self, message: str, retry_count: int, max_retries: int) -> None:
        super().__init__()
        self.message = message
        self.retry_count = retry_count
        self.max_retries = max_retries


class ShowNotice(Message):
    """A line written across the monologue, outside the word flow."""
    def __init__(self, text: str) -> None:
        super().__init__()
        self.text = text


class TUICallback:
    """Loop callback that posts messages to the app."""

    def __init__(self, app: "PsychosisApp"):
        self.app = app

    def on_fragment(self, tokens: list) -> None:
        self.app.post_message(ShowFragment(tokens))

    def on_reset(self, tokens: list) -> None:
        self.app.post_message(ResetOutput(tokens))

    def on_status_change(self, status: LoopStatus) -> None:
        self.app.post_message(UpdateStatus(status))

    def on_error(self, message: str, retry_count: int, max_retries: int) -> None:
        self.app.post_message(ShowError(message, retry_count, max_retries))


class PsychosisApp(App):
    """Textual TUI for the generation loop."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 1 2;
        grid-rows: 7fr 3fr;
    }

    #output-container {
        height: 100%;
    }

    #bottom-container {
        height: 100%;
        layout: horizontal;
    }

    OutputPane, MadnessPane, StatusPane {
        border-title-color: $text;
        border-title-style: bold;
    }
    """

    TITLE = "generative_psychosis.exe"

    BINDINGS = [
        Binding("p", "toggle_pause", "Pause/Resume", show=True),
        Binding("r", "reset", "Reset", show=True),
        Binding("q", "quit_app", "Terminate", show=True),
        Binding("escape", "quit_app", "Terminate", show=False),
    ]

    def __init__(self, session: GenerationSession):
        super().__init__()
        self.session = session
        self.callback = TUICallback(self)
        self.controller = ProgressionController(session, callback=self.callback)
        self._output_pane: Optional[OutputPane] = None
        self._madness_pane: Optional[MadnessPane] = None
        self._status_pane: Optional[StatusPane] = None
        self._controller_worker: Optional[Worker] = None
        self._word_queue: Optional[asyncio.Queue] = None
        self._status = LoopStatus()
        self._word_count = 0
        self._seed_shown = False

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        with Container(id="output-container"):
            yield OutputPane(id="output")

        with Horizontal(id="bottom-container"):
            yield MadnessPane(id="madness")
            yield StatusPane(id="status")

        yield Footer()

    def on_mount(self):
        self._word_queue = asyncio.Queue()

        self._output_pane = self.query_one("#output", OutputPane)
        self._madness_pane = self.query_one("#madness", MadnessPane)
        self._status_pane = self.query_one("#status", StatusPane)

        self._output_pane.border_title = "Monologue"
        self._madness_pane.border_title = "Madness"
        self._status_pane.border_title = "Status"

        # Child widgets need to be mounted before writing
        self.call_later(self._show_preamble)

    def _show_preamble(self):
        for line in PREAMBLE_LINES:
            self._output_pane.write_line(Text(line, style=Style(italic=True, dim=True)))
        self._output_pane.write_line(Text("Press 'p' to pause, 'r' to reset, 'q' to terminate.", style=Style(dim=True)))
        self._output_pane.write_line(Text("─" * 60, style=Style(dim=True)))
        self._output_pane.write_line(Text(""))

        self.display_words()
        self._controller_worker = self.run_controller()

    @work(exclusive=True, group="controller")
    async def run_controller(self):
        """Load the model once, then run the loop until it finishes or is stopped."""
        try:
            await self.session.load()
            await self.controller.run()
        except ModelNotLoadedError as e:
            logger.error("Model not loaded: {}", e)
            if self._status_pane:
                self._status_pane.show_fatal(str(e))
            return

        if self.controller.aborted and not self.controller.stopped:
            # Behind the last ShowFragment in the message queue
            self.post_message(ShowNotice(MADNESS_NOTICE))

    @work(group="display")
    async def display_words(self):
        """Drain the word queue at a steady pace."""
        while True:
            word = await self._word_queue.get()
            if isinstance(word, Text):
                self._output_pane.flush_line()
                self._output_pane.write_line(word)
                continue
            if word == PARAGRAPH_BREAK:
                self._output_pane.break_paragraph()
                continue
            self._output_pane.append_word(word, get_madness_style(self._status.madness_level))
            self._word_count += 1
            await asyncio.sleep(WORD_DELAY)

    def _enqueue(self, tokens: list):
        for token in tokens:
            self._word_queue.put_nowait(token)

    def _refresh_panes(self):
        if self._madness_pane:
            self._madness_pane.update_status(self._status)
        if self._status_pane:
            self._status_pane.update_status(self._status, self._word_count)

    def on_show_fragment(self, message: ShowFragment) -> None:
        self._enqueue(message.tokens)

    def on_show_notice(self, message: ShowNotice) -> None:
        self._word_queue.put_nowait(Text(message.text, style=Style(color="red", bold=True)))

    def on_reset_output(self, message: ResetOutput) -> None:
        while not self._word_queue.empty():
            self._word_queue.get_nowait()
        # The first seed goes under the preamble
        if self._seed_shown:
            self._output_pane.clear()
        self._seed_shown = True
        self._word_count = 0
        self._enqueue(message.tokens)
        self._refresh_panes()

    def on_update_status(self, message: UpdateStatus) -> None:
        self._status = message.status
        self._refresh_panes()

    def on_show_error(self, message: ShowError) -> None:
        retry = f" (Retry {message.retry_count}/{message.max_retries})" if message.retry_count > 0 else ""
        self.notify(f"{message.message}{retry}", title="ERROR", severity="error")

    def action_toggle_pause(self):
        self.controller.toggle_pause()

    def action_reset(self):
        self.controller.reset()
        # The worker exits at full madness or on a failed load
        if self._controller_worker is None or self._controller_worker.is_finished:
            self._controller_worker = self.run_controller()

    async def action_quit_app(self):
        self.controller.stop()
        await self.session.close()
        self.exit()


def main():
    """Run the TUI application."""
    parser = argparse.ArgumentParser(description="Generative Psychosis TUI")
    parser.add_argument("--url", default=LLM_URL, help="OpenAI-compatible server URL")
    parser.add_argument("--model", default=MODEL, help="Model name on the server")
    parser.add_argument("--log-file", type=Path, default=None, help="Write the cycle log to this file")
    args = parser.parse_args()

    # The screen belongs to Textual, so logs only go to the file
    setup_logger("DEBUG" if DEBUG_PSYCHOSIS else "INFO", args.log_file, console=False)

    app = PsychosisApp(GenerationSession(base_url=args.url, model=args.model))
    app.run()


if __name__ == "__main__":
    main()
