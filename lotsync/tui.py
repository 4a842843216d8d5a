#!/usr/bin/env python3
"""TUI (Text User Interface) for LotSync conflict resolution using Textual.

This module provides a terminal screen for walking through sync conflicts
one at a time and choosing which version of each record to keep.
Uses only core/ modules - no Flask dependencies.

Features:
    - Side-by-side view: one row per conflicting field with the original
      value and a button for each side
    - Unified view: diff of the conflicting fields (server -> local)
    - Auto-merged fields are listed below the conflicting ones
    - Notifications report each resolution and any errors

Controls:
    - Click Local/Server on a row: Choose that side for the field
    - l: Keep local version of the whole record
    - s: Keep server version of the whole record
    - m: Merge (every conflicting field needs a choice)
    - p / n: Previous / next conflict (choices are discarded)
    - v: Toggle side-by-side / unified view
    - y: Sync now (when a backend is configured)
    - r: Reload conflicts from the queue
    - q: Quit
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from rich.text import Text as RichText

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, VerticalScroll
from textual.widget import Widget
from textual.widgets import Button, Footer, Label, Static

from lotsync.core.background import BackgroundSync
from lotsync.core.backend import BackendClient, OfflineError
from lotsync.core.config import Config
from lotsync.core.conflicts import format_value_for_display
from lotsync.core.models import ConflictInfo, FieldSide, SyncResult
from lotsync.core.resolution import ConflictResolutionSession, ViewMode
from lotsync.core.store import open_store
from lotsync.core.sync_queue import SyncQueue
from lotsync.core.validation import ValidationError

__all__ = ["LotSyncTUI", "FieldRow", "run", "add_tui_subparser"]

logger = logging.getLogger(__name__)


class FieldRow(Horizontal):
    """One conflicting field with a choice button for each side."""

    def __init__(self, index: int, conflict: ConflictInfo, chosen: Optional[FieldSide]) -> None:
        super().__init__(classes="field-row")
        self.index = index
        self.conflict = conflict
        self.chosen = chosen

    def compose(self) -> ComposeResult:
        yield Label(self.conflict.field, classes="field-name")
        yield Static(
            format_value_for_display(self.conflict.original_value),
            classes="field-original",
        )
        yield Button(
            f"Local: {format_value_for_display(self.conflict.local_value)}",
            id=f"local-{self.index}",
            classes="choice",
        )
        yield Button(
            f"Server: {format_value_for_display(self.conflict.server_value)}",
            id=f"server-{self.index}",
            classes="choice",
        )

    def on_mount(self) -> None:
        self.show_choice(self.chosen)

    def show_choice(self, side: Optional[FieldSide]) -> None:
        """Highlight the chosen side."""
        self.chosen = side
        self.query_one(f"#local-{self.index}", Button).variant = (
            "success" if side == FieldSide.LOCAL else "default"
        )
        self.query_one(f"#server-{self.index}", Button).variant = (
            "primary" if side == FieldSide.SERVER else "default"
        )


class LotSyncTUI(App):
    """LotSync conflict resolution TUI Application."""

    # Border and diff colors are loaded from config in __init__ and applied via CSS.

    def __init__(
        self,
        queue: SyncQueue,
        config: Config,
        backend: Optional[BackendClient] = None,
    ) -> None:
        super().__init__()
        self.queue = queue
        self.config = config
        self.backend = backend
        self.skip_fields = config.get_skip_fields()
        tui_colors = config.get_tui_colors()
        self._border_focused = tui_colors["focused"]
        self._border_unfocused = tui_colors["unfocused"]
        self._local_color = tui_colors["local"]
        self._server_color = tui_colors["server"]
        self.session = self._new_session()

    @property
    def CSS(self) -> str:
        """Generate CSS with colors from config."""
        return f"""
    #conflict-header {{
        height: 3;
        background: $surface;
        padding: 1;
        width: 100%;
    }}

    #conflict-body {{
        height: 1fr;
        border: solid {self._border_unfocused};
        padding: 0 1;
    }}

    #conflict-body:focus-within {{
        border: solid {self._border_focused};
    }}

    .field-row {{
        height: auto;
        margin: 1 0 0 0;
    }}

    .field-name {{
        width: 20;
        padding: 1 0;
        text-style: bold;
    }}

    .field-original {{
        width: 1fr;
        padding: 1 1;
        color: $text-muted;
    }}

    .choice {{
        width: 1fr;
        margin: 0 1;
    }}

    #auto-merged {{
        margin: 1 0;
        color: $text-muted;
    }}

    #diff-view {{
        margin: 1 0;
    }}

    #action-buttons {{
        height: 3;
        align: center middle;
    }}

    Button {{
        margin: 0 1;
    }}

    """

    TITLE = "LotSync"

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("l", "keep_local", "Keep Local"),
        Binding("s", "keep_server", "Keep Server"),
        Binding("m", "merge", "Merge"),
        Binding("p", "previous", "Previous"),
        Binding("n", "next", "Next"),
        Binding("v", "toggle_view", "Toggle View"),
        Binding("y", "sync", "Sync"),
        Binding("r", "reload", "Reload"),
    ]

    def _new_session(self) -> ConflictResolutionSession:
        return ConflictResolutionSession(
            self.queue.get_conflicts(),
            self.queue.resolve_conflict,
            on_close=self._on_session_closed,
            skip_fields=self.skip_fields,
        )

    def _on_session_closed(self) -> None:
        self.notify("All conflicts resolved")

    def compose(self) -> ComposeResult:
        yield Label("", id="conflict-header")
        yield VerticalScroll(id="conflict-body")
        yield Horizontal(
            Button("Previous", id="prev-btn"),
            Button("Keep Local", id="local-btn", variant="success"),
            Button("Keep Server", id="server-btn", variant="primary"),
            Button("Merge", id="merge-btn", variant="warning"),
            Button("Next", id="next-btn"),
            id="action-buttons",
        )
        footer = Footer()
        footer.command_palette_key_display = "● ^p"
        yield footer

    async def on_mount(self) -> None:
        await self.render_conflict()

    # ===== Rendering =====

    def _header_text(self) -> str:
        mutation = self.session.current
        if mutation is None:
            return "No conflicts to resolve"
        mode = "Unified" if self.session.view_mode == ViewMode.UNIFIED else "Side by side"
        return (
            f"Conflict {self.session.position_label} | {mutation.type.value} "
            f"{mutation.table}/{mutation.record_id} | {mode}"
        )

    def _diff_text(self) -> RichText:
        diff = self.session.unified_diff()
        text = RichText()
        if not diff:
            text.append("(no differences)")
            return text
        for line in diff.splitlines():
            if line.startswith("+++") or line.startswith("---"):
                style = "bold"
            elif line.startswith("+"):
                style = self._local_color
            elif line.startswith("-"):
                style = self._server_color
            elif line.startswith("@@"):
                style = "magenta"
            else:
                style = ""
            text.append(line + "\n", style=style)
        return text

    def _auto_merged_text(self) -> str:
        items = self.session.analysis.auto_mergeable
        if not items:
            return ""
        lines = [f"Auto-merged fields ({len(items)}):"]
        for item in items:
            value = item.local_value if item.resolution == FieldSide.LOCAL else item.server_value
            lines.append(
                f"  {item.field}: {format_value_for_display(value)} ({item.resolution.value})"
            )
        return "\n".join(lines)

    async def render_conflict(self) -> None:
        """Rebuild the body for the current conflict and view mode."""
        self.query_one("#conflict-header", Label).update(self._header_text())

        body = self.query_one("#conflict-body", VerticalScroll)
        await body.remove_children()

        widgets: List[Widget] = []
        if self.session.current is not None:
            if self.session.view_mode == ViewMode.UNIFIED:
                widgets.append(Static(self._diff_text(), id="diff-view"))
            else:
                for index, conflict in enumerate(self.session.analysis.conflicts):
                    widgets.append(FieldRow(
                        index, conflict, self.session.resolutions.get(conflict.field)
                    ))
            auto = self._auto_merged_text()
            if auto:
                widgets.append(Static(auto, id="auto-merged"))

        if widgets:
            await body.mount_all(widgets)
        self._update_buttons()

    def _update_buttons(self) -> None:
        has_current = self.session.current is not None
        for button_id in ("#local-btn", "#server-btn", "#prev-btn", "#next-btn"):
            self.query_one(button_id, Button).disabled = not has_current
        self.query_one("#merge-btn", Button).disabled = not self.session.can_merge

    # ===== Events =====

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        """Handle button presses."""
        button_id = event.button.id or ""
        if button_id == "local-btn":
            await self.action_keep_local()
        elif button_id == "server-btn":
            await self.action_keep_server()
        elif button_id == "merge-btn":
            await self.action_merge()
        elif button_id == "prev-btn":
            await self.action_previous()
        elif button_id == "next-btn":
            await self.action_next()
        elif button_id.startswith(("local-", "server-")):
            side, _, index = button_id.partition("-")
            self.choose_field(int(index), FieldSide(side))

    def choose_field(self, index: int, side: FieldSide) -> None:
        """Record a per-field choice from a row button."""
        conflicts = self.session.analysis.conflicts
        if index >= len(conflicts):
            return
        self.session.set_field_resolution(conflicts[index].field, side)
        for row in self.query(FieldRow):
            if row.index == index:
                row.show_choice(side)
        self._update_buttons()

    # ===== Actions =====

    async def _resolve(self, action: str) -> None:
        mutation = self.session.current
        if mutation is None:
            self.notify("No conflict selected", severity="warning")
            return
        try:
            if action == "merge":
                self.session.merge()
            elif action == "local":
                self.session.keep_local()
            else:
                self.session.keep_server()
        except ValidationError as e:
            self.notify(e.message, title=f"Cannot {action}", severity="warning")
            return
        except Exception as e:
            logger.error(f"Failed to resolve {mutation.id}: {e}")
            self.notify(str(e), title="Resolution failed", severity="error")
            return

        labels = {
            "local": "Kept local version",
            "server": "Kept server version",
            "merge": "Merged changes",
        }
        self.notify(f"{labels[action]} for {mutation.table}/{mutation.record_id}")
        await self.render_conflict()

    async def action_keep_local(self) -> None:
        """Keep the local version of the current record."""
        await self._resolve("local")

    async def action_keep_server(self) -> None:
        """Keep the server version of the current record."""
        await self._resolve("server")

    async def action_merge(self) -> None:
        """Merge using the per-field choices."""
        await self._resolve("merge")

    async def action_previous(self) -> None:
        """Go back one conflict."""
        if self.session.previous():
            await self.render_conflict()

    async def action_next(self) -> None:
        """Skip to the next conflict."""
        if self.session.next():
            await self.render_conflict()

    async def action_toggle_view(self) -> None:
        """Switch between side-by-side and unified views."""
        self.session.toggle_view()
        await self.render_conflict()

    async def action_reload(self) -> None:
        """Reload conflicts from the queue."""
        view_mode = self.session.view_mode
        self.session = self._new_session()
        self.session.view_mode = view_mode
        await self.render_conflict()
        self.notify(f"{self.session.total} conflict(s) loaded")

    def action_sync(self) -> None:
        """Replay the queue on a worker thread, then reload conflicts."""
        if self.backend is None:
            self.notify("No backend configured", severity="warning")
            return

        self.notify("Syncing...")
        self.run_worker(
            self._sync_in_thread, name="sync", group="sync", thread=True, exclusive=True
        )

    def _sync_in_thread(self) -> None:
        """Runs on a worker thread; widgets are only touched via call_from_thread."""
        sync = BackgroundSync(self.queue, self.backend.execute_mutation, self.backend.is_reachable)
        try:
            result = sync.force_sync()
        except OfflineError:
            self.call_from_thread(
                self.notify, "Backend is unreachable", title="Offline", severity="warning"
            )
            return
        self.call_from_thread(self._sync_finished, result)

    async def _sync_finished(self, result: SyncResult) -> None:
        self.notify(
            f"Synced {result.success}, failed {result.failed}, conflicts {result.conflicts}",
            severity="error" if result.failed else "information",
        )
        await self.action_reload()


def add_tui_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add TUI subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add TUI parser to
    """
    subparsers.add_parser(
        "tui",
        help="Launch conflict resolution terminal interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="""
Terminal interface for resolving LotSync conflicts.

Controls:
  Local/Server  Choose a side for one field
  l             Keep local version
  s             Keep server version
  m             Merge field choices
  p / n         Previous / next conflict
  v             Toggle side-by-side / unified view
  y             Sync now
  r             Reload conflicts
  q             Quit
""",
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run TUI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    # Console logging interferes with Textual's display
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        if isinstance(handler, logging.StreamHandler):
            root_logger.removeHandler(handler)

    config = Config(config_dir=config_dir)
    store = open_store(config)
    backend = BackendClient.from_config(config)
    queue = SyncQueue(
        store,
        is_online=backend.is_reachable if backend else (lambda: False),
        max_attempts=int(config.get_sync_config().get("max_attempts", 3)),
        skip_fields=config.get_skip_fields(),
    )

    app = LotSyncTUI(queue, config, backend)

    try:
        app.run()
    finally:
        store.close()
        for handler in original_handlers:
            if handler not in root_logger.handlers:
                root_logger.addHandler(handler)

    return 0
