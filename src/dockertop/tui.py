"""Textual-based front end for dockertop."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from rich.text import Text
from textual import events
from textual.app import App, ComposeResult
from textual.containers import Vertical
from textual.widgets import Static

from .config import KeyBindings
from .events import (
    CancelMenu,
    CycleHostFilter,
    CycleSortField,
    EnterPressed,
    EnterSearchMode,
    Event,
    EventChannel,
    ExitView,
    OpenExternalViewer,
    Quit,
    RequestOlderLogs,
    Resize,
    ScrollDown,
    ScrollPageDown,
    ScrollPageUp,
    ScrollToBottom,
    ScrollToTop,
    ScrollUp,
    SearchKeyEvent,
    SelectActionDown,
    SelectActionUp,
    SelectNext,
    SelectPrevious,
    SetSortField,
    ShowActionMenu,
    ShowLogView,
    ToggleHelp,
    ToggleShowAll,
)
from .main import run_event_loop
from .model import Container, HealthStatus, SortField, ViewKind
from .state import AppState
from .stats import summarize

# Title row, status bar and the body border
CHROME_ROWS = 4

SORT_KEYS = {
    "u": SortField.UPTIME,
    "n": SortField.NAME,
    "c": SortField.CPU,
    "m": SortField.MEMORY,
}

HELP_TEXT = """\
dockertop - keys

  Up/k, Down/j    Move selection / scroll logs
  Enter           Actions for the selected container
  l               Show logs        Esc   Back / close
  Right, Left     Open / cancel the action menu
  /               Search (Enter keeps the filter, Esc clears it)
  s               Cycle sort field
  u n c m         Sort by uptime, name, CPU, memory (again: reverse)
  a               Show all containers / running only
  h               Cycle host filter
  o               Open the external log viewer
  g, G            Top / bottom of the logs (top loads older lines)
  r               Load older log lines
  PgUp, PgDn      Scroll logs by half a page
  ?               Toggle this help
  q               Quit
"""


def _token(key: str, character: Optional[str]) -> str:
    if character and character.isprintable() and character != " ":
        return character
    return key


def intents_for_key(key: str, character: Optional[str], view: ViewKind,
                    bindings: Optional[KeyBindings] = None) -> list[Event]:
    """
    Events for one key press.

    Navigation keys map to every intent they can mean; the state machine
    ignores the ones that do not apply to the active view.
    """
    bindings = bindings or KeyBindings()
    if key in ("ctrl+c", "ctrl+q"):
        return [Quit()]

    if view is ViewKind.SEARCH_MODE:
        if key == "enter":
            return [EnterPressed()]
        if key == "escape":
            return [ExitView()]
        return [SearchKeyEvent(key, character)]

    token = _token(key, character)
    if token in ("up", "k"):
        return [SelectPrevious(), ScrollUp(), SelectActionUp()]
    if token in ("down", "j"):
        return [SelectNext(), ScrollDown(), SelectActionDown()]

    fixed = {
        "enter": EnterPressed,
        "escape": ExitView,
        "right": ShowActionMenu,
        "left": CancelMenu,
        "home": ScrollToTop,
        "g": ScrollToTop,
        "end": ScrollToBottom,
        "G": ScrollToBottom,
        "pageup": ScrollPageUp,
        "pagedown": ScrollPageDown,
        "r": RequestOlderLogs,
    }
    if token in fixed:
        return [fixed[token]()]

    configured = {
        bindings.quit: Quit,
        bindings.help: ToggleHelp,
        bindings.search: EnterSearchMode,
        bindings.logs: ShowLogView,
        bindings.show_all: ToggleShowAll,
        bindings.show_all.upper(): ToggleShowAll,
        bindings.host_filter: CycleHostFilter,
        bindings.cycle_sort: CycleSortField,
        bindings.open_viewer: OpenExternalViewer,
    }
    if token in configured:
        return [configured[token]()]

    sort_field = SORT_KEYS.get(token.lower()) if len(token) == 1 else None
    if sort_field is not None:
        return [SetSortField(sort_field)]
    return []


# --- Formatting ---

def format_uptime(container: Container, now: Optional[datetime] = None) -> str:
    if not container.is_running:
        return "N/A"
    if container.created is None:
        return "Unknown"
    now = now or datetime.now(timezone.utc)
    seconds = max(0, int((now - container.created).total_seconds()))
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_bytes_per_sec(value: float) -> str:
    if value < 1024:
        return f"{value:.0f} B/s"
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}/s"
    return f"{value:.1f} GB/s"


def _health_label(health: Optional[HealthStatus]) -> str:
    return health.value if health is not None else "-"


def render_container_table(state: AppState, height: int,
                           now: Optional[datetime] = None) -> str:
    sort = state.sort_state

    def title(label: str, field: SortField) -> str:
        return f"{label}{sort.direction.symbol}" if field is sort.field else label

    header = (
        f"  {'HOST':14} {title('NAME', SortField.NAME):24} {'STATE':10} {'HEALTH':9} "
        f"{title('CPU%', SortField.CPU):7} {title('MEM%', SortField.MEMORY):7} "
        f"{'NET TX':11} {'NET RX':11} {title('UPTIME', SortField.UPTIME)}"
    )
    lines = [header]

    containers = state.visible_containers()
    if not containers:
        lines.append("  (no containers)")
        return "\n".join(lines)

    rows = max(1, height - 1)
    selected = state.selected or 0
    start = max(0, min(selected - rows // 2, len(containers) - rows))
    for index, c in enumerate(containers[start:start + rows], start=start):
        marker = ">" if index == state.selected else " "
        pending = state.pending_actions.get(c.key)
        state_label = f"{pending.value}..." if pending else c.state.value
        lines.append(
            f"{marker} {c.host_id[:14]:14} {c.name[:24]:24} {state_label[:10]:10} "
            f"{_health_label(c.health):9} {c.stats.cpu:6.1f}% {c.stats.memory:6.1f}% "
            f"{format_bytes_per_sec(c.stats.network_tx_bytes_per_sec):11} "
            f"{format_bytes_per_sec(c.stats.network_rx_bytes_per_sec):11} "
            f"{format_uptime(c, now)}"
        )
    return "\n".join(lines)


def render_log_view(state: AppState, height: int) -> str:
    log_state = state.log_state
    if log_state is None:
        return "(no logs)"

    container = state.containers.get(log_state.key)
    name = container.name if container is not None else log_state.key.container_id
    flags = [f"{log_state.total_loaded} lines"]
    if log_state.fetching_older:
        flags.append("loading older...")
    elif log_state.has_more_history:
        flags.append("more above")
    if log_state.is_at_bottom:
        flags.append("following")
    lines = [f"Logs: {name} ({log_state.key.host_id})  [{', '.join(flags)}]"]

    rows = max(1, height - 1)
    if log_state.is_at_bottom:
        visible = log_state.entries[-rows:]
    else:
        visible = log_state.entries[log_state.scroll_offset:log_state.scroll_offset + rows]
    for entry in visible:
        lines.append(f"{entry.timestamp:%Y-%m-%d %H:%M:%S} {entry.text}")
    if not log_state.entries:
        lines.append("(waiting for log lines)")
    return "\n".join(lines)


def render_action_menu(state: AppState) -> str:
    key = state.view_state.key
    container = state.containers.get(key) if key is not None else None
    name = container.name if container is not None else "?"
    lines = [f"Actions for {name}", ""]
    actions = state.menu_actions()
    for index, action in enumerate(actions):
        marker = ">" if index == state.action_menu_index else " "
        lines.append(f"{marker} {action.display_name}")
    if not actions:
        lines.append("  (no actions for this state)")
    lines.extend(["", "[Up/Down] Move  [Enter] Run  [Esc] Cancel"])
    return "\n".join(lines)


def render_status(state: AppState) -> str:
    summary = summarize(state.containers.values())
    parts = [
        f"{summary['running']}/{summary['total']} running",
        f"CPU {summary['total_cpu']:.1f}%",
        f"sort: {state.sort_state.field.label}",
    ]
    if state.host_filter:
        parts.append(f"host: {state.host_filter}")
    if state.show_all_containers:
        parts.append("all")
    if state.view is ViewKind.SEARCH_MODE:
        parts.append(f"/{state.search_text}_")
    elif state.search_text:
        parts.append(f"filter: {state.search_text}")
    for host, message in state.active_connection_errors().items():
        parts.append(f"{host}: {message}")
    message = state.active_message()
    if message:
        parts.append(f"ERROR: {message}" if state.message_is_error else message)
    return "  ".join(parts)


def render_body(state: AppState, height: int) -> str:
    if state.show_help:
        return HELP_TEXT
    if state.view is ViewKind.LOG_VIEW:
        return render_log_view(state, height)
    if state.view is ViewKind.ACTION_MENU:
        return render_action_menu(state)
    return render_container_table(state, height)


class DashboardApp(App[None]):
    TITLE = "dockertop"
    SUB_TITLE = "Docker monitor"

    CSS = """
    Screen {
      layout: vertical;
    }

    #title {
      height: 1;
      padding: 0 1;
      background: $surface;
      color: $text;
      text-style: bold;
    }

    #main {
      height: 1fr;
    }

    #body {
      height: 1fr;
      border: round $accent;
      padding: 0 1;
      overflow: hidden;
    }

    #status {
      height: 1;
      padding: 0 1;
      background: $panel;
      color: $text;
    }
    """

    def __init__(self, channel: EventChannel, state: AppState,
                 keybindings: Optional[KeyBindings] = None,
                 draw_interval: float = 0.5) -> None:
        super().__init__()
        self.channel = channel
        self.state = state
        self.keybindings = keybindings or KeyBindings()
        self.draw_interval = draw_interval

    def compose(self) -> ComposeResult:
        yield Static("", id="title", markup=False)
        yield Vertical(Static("", id="body", markup=False), id="main")
        yield Static("", id="status", markup=False)

    def on_mount(self) -> None:
        self._send_resize(self.size.width, self.size.height)
        self.run_worker(self._consume(), group="events", exclusive=True, thread=False)

    async def _consume(self) -> None:
        await run_event_loop(self.channel, self.state, self.draw, self.draw_interval)
        self.exit()

    def _body_height(self) -> int:
        return max(1, self.size.height - CHROME_ROWS)

    def _send_resize(self, width: int, height: int) -> None:
        # The log view spends one body row on its title
        self.channel.try_send(Resize(width, max(1, height - CHROME_ROWS - 1)))

    def on_resize(self, event: events.Resize) -> None:
        self._send_resize(event.size.width, event.size.height)

    def draw(self) -> None:
        # Plain Text renderables: container names and log lines may contain "["
        hosts = ", ".join(self.state.known_hosts()) or "connecting..."
        self.query_one("#title", Static).update(Text(f"dockertop  [{hosts}]"))
        self.query_one("#body", Static).update(Text(render_body(self.state, self._body_height())))
        self.query_one("#status", Static).update(Text(render_status(self.state)))

    def _send(self, intents: list[Event]) -> None:
        for intent in intents:
            self.channel.try_send(intent)

    async def on_key(self, event: events.Key) -> None:
        intents = intents_for_key(event.key, event.character, self.state.view, self.keybindings)
        if intents:
            self._send(intents)
            event.stop()

    def on_mouse_scroll_up(self, event: events.MouseScrollUp) -> None:
        self._send([SelectPrevious(), ScrollUp()])

    def on_mouse_scroll_down(self, event: events.MouseScrollDown) -> None:
        self._send([SelectNext(), ScrollDown()])

    async def action_quit(self) -> None:
        # Quit goes through the event loop so teardown runs in order
        if not self.channel.try_send(Quit()):
            self.exit()
