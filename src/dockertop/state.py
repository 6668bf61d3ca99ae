"""
Application state machine.

AppState is the only owner of the container table, the filtered/sorted
projection, the selection, the active view and the log buffer. The main loop
feeds it one event at a time through handle_event(), which returns True when
the event changed something visible enough to redraw immediately.

Architecture:
  - Dispatch table from event type to handler method
  - Handlers never block: log streaming, pagination, actions and the browser
    are started as background work that reports back through the channel
  - refresh_view(): filter + sort pipeline, rerun after every structural
    change and on every search keystroke
  - adjust_selection(): one selection rule applied after every refresh

Views:
  ContainerList -> LogView(key)     "l": open logs for the selection
  ContainerList -> ActionMenu(key)  Enter: actions for the selection
  ContainerList -> SearchMode       "/": live filter
  LogView -> ContainerList          Esc: stops the log task, drops the buffer
  ActionMenu -> ContainerList       Esc/left, or after running an action
  SearchMode -> ContainerList       Enter keeps the filter, Esc clears it

Filtering and Sorting:
  A container is shown when it is running (or "show all" is on), belongs to
  the host filter (if any) and its name, id or host contains the search text
  (case-insensitive). Rows are grouped by host id, then ordered by the sort
  field; rows without a value for the field (no creation time) come last in
  either direction.
"""

import logging
import os
import threading
import time
import webbrowser
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .config import EngineConfig
from .events import (
    ActionError,
    ActionInProgress,
    ActionSuccess,
    CancelMenu,
    ContainerCreated,
    ContainerDestroyed,
    ContainerHealthChanged,
    ContainerStat,
    ContainerStateChanged,
    CycleHostFilter,
    CycleSortField,
    EnterPressed,
    EnterSearchMode,
    Event,
    EventChannel,
    ExecuteAction,
    ExitSearchMode,
    ExitView,
    HostConnected,
    HostConnectionError,
    InitialContainerList,
    LogBatchPrepend,
    LogLine,
    OlderLogsFailed,
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
from .logs import LogState
from .model import (
    Container,
    ContainerAction,
    ContainerKey,
    SortDirection,
    SortField,
    SortState,
    ViewKind,
    ViewState,
)

logger = logging.getLogger(__name__)

SSH_ENV_VARS = ("SSH_CLIENT", "SSH_TTY", "SSH_CONNECTION")
DEFAULT_VIEWPORT_HEIGHT = 20


def detect_ssh_session(environ: Optional[Mapping[str, str]] = None) -> bool:
    environ = os.environ if environ is None else environ
    return any(var in environ for var in SSH_ENV_VARS)


def open_in_browser(url: str) -> None:
    """Open a URL without blocking the caller."""
    threading.Thread(target=webbrowser.open, args=(url,), daemon=True).start()


def viewer_url_for(container: Container) -> Optional[str]:
    if not container.viewer_url:
        return None
    return f"{container.viewer_url.rstrip('/')}/container/{container.id}"


def _sort_value(container: Container, sort_field: SortField):
    if sort_field is SortField.UPTIME:
        return container.created
    if sort_field is SortField.NAME:
        return container.name.lower()
    if sort_field is SortField.CPU:
        return container.stats.cpu
    return container.stats.memory


class AppState:
    """State machine driven by events from the channel."""

    def __init__(self, channel: Optional[EventChannel] = None, log_streamer=None,
                 action_executor=None, url_opener: Callable[[str], None] = open_in_browser,
                 engine: Optional[EngineConfig] = None,
                 is_ssh_session: Optional[bool] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.channel = channel
        self.log_streamer = log_streamer
        self.action_executor = action_executor
        self.url_opener = url_opener
        self.engine = engine or EngineConfig()
        self.clock = clock

        self.containers: Dict[ContainerKey, Container] = {}
        self.sorted_container_keys: List[ContainerKey] = []
        self.selected: Optional[int] = None
        self.view_state = ViewState.container_list()
        self.sort_state = SortState()
        self.show_all_containers = False
        self.host_filter: Optional[str] = None
        self.search_text = ""
        self.show_help = False
        self.action_menu_index = 0
        self.log_state: Optional[LogState] = None
        self.log_viewport_height = DEFAULT_VIEWPORT_HEIGHT
        self._log_generation = 0

        self.hosts: Dict[str, object] = {}
        self.connection_errors: Dict[str, Tuple[str, float]] = {}
        self.pending_actions: Dict[ContainerKey, ContainerAction] = {}
        self.message = ""
        self.message_is_error = False
        self.message_timestamp = 0.0

        self.should_quit = False
        self.is_ssh_session = detect_ssh_session() if is_ssh_session is None else is_ssh_session

        self._handlers: Dict[type, Callable[[Event], bool]] = {
            InitialContainerList: self._on_initial_container_list,
            ContainerCreated: self._on_container_created,
            ContainerDestroyed: self._on_container_destroyed,
            ContainerStateChanged: self._on_container_state_changed,
            ContainerStat: self._on_container_stat,
            ContainerHealthChanged: self._on_container_health_changed,
            HostConnected: self._on_host_connected,
            HostConnectionError: self._on_connection_error,
            Quit: self._on_quit,
            Resize: self._on_resize,
            SelectPrevious: self._on_select_previous,
            SelectNext: self._on_select_next,
            EnterPressed: self._on_enter_pressed,
            ExitView: self._on_exit_view,
            CancelMenu: self._on_cancel_menu,
            ShowLogView: self._on_show_log_view,
            ScrollUp: self._on_scroll_up,
            ScrollDown: self._on_scroll_down,
            ScrollToTop: self._on_scroll_to_top,
            ScrollToBottom: self._on_scroll_to_bottom,
            ScrollPageUp: self._on_scroll_page_up,
            ScrollPageDown: self._on_scroll_page_down,
            LogLine: self._on_log_line,
            LogBatchPrepend: self._on_log_batch_prepend,
            RequestOlderLogs: self._on_request_older_logs,
            OlderLogsFailed: self._on_older_logs_failed,
            OpenExternalViewer: self._on_open_external_viewer,
            ToggleHelp: self._on_toggle_help,
            CycleSortField: self._on_cycle_sort_field,
            SetSortField: self._on_set_sort_field,
            ToggleShowAll: self._on_toggle_show_all,
            CycleHostFilter: self._on_cycle_host_filter,
            ShowActionMenu: self._on_show_action_menu,
            SelectActionUp: self._on_select_action_up,
            SelectActionDown: self._on_select_action_down,
            ExecuteAction: self._on_execute_action,
            ActionInProgress: self._on_action_in_progress,
            ActionSuccess: self._on_action_success,
            ActionError: self._on_action_error,
            EnterSearchMode: self._on_enter_search_mode,
            ExitSearchMode: self._on_exit_search_mode,
            SearchKeyEvent: self._on_search_key,
        }

    # --- Dispatch ---

    def handle_event(self, event: Event) -> bool:
        """Apply one event. Returns True if the screen should be redrawn now."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"No handler for event {type(event).__name__}")
            return False
        if not isinstance(event, (ContainerStat, LogLine)):
            logger.debug(f"Handling {event!r}")
        return handler(event)

    # --- Queries used by the renderer ---

    @property
    def view(self) -> ViewKind:
        return self.view_state.kind

    def visible_containers(self) -> List[Container]:
        return [self.containers[key] for key in self.sorted_container_keys]

    def selected_key(self) -> Optional[ContainerKey]:
        if self.selected is None or self.selected >= len(self.sorted_container_keys):
            return None
        return self.sorted_container_keys[self.selected]

    def selected_container(self) -> Optional[Container]:
        key = self.selected_key()
        return self.containers.get(key) if key is not None else None

    def menu_actions(self) -> List[ContainerAction]:
        key = self.view_state.key
        if self.view is not ViewKind.ACTION_MENU or key not in self.containers:
            return []
        return ContainerAction.available_for_state(self.containers[key].state)

    def known_hosts(self) -> List[str]:
        hosts = set(self.hosts)
        hosts.update(key.host_id for key in self.containers)
        return sorted(hosts)

    def active_connection_errors(self) -> Dict[str, str]:
        self._prune_connection_errors()
        return {host: msg for host, (msg, _) in self.connection_errors.items()}

    def active_message(self) -> Optional[str]:
        if not self.message:
            return None
        if self.clock() - self.message_timestamp >= self.engine.connection_error_ttl:
            self.message = ""
            return None
        return self.message

    # --- Filter / sort pipeline ---

    def _matches(self, key: ContainerKey, container: Container, needle: str) -> bool:
        if not self.show_all_containers and not container.is_running:
            return False
        if self.host_filter is not None and key.host_id != self.host_filter:
            return False
        if needle:
            return (
                needle in container.name.lower()
                or needle in container.id.lower()
                or needle in key.host_id.lower()
            )
        return True

    def refresh_view(self) -> None:
        """Rebuild sorted_container_keys from the container map."""
        needle = self.search_text.lower()
        keys = [k for k, c in self.containers.items() if self._matches(k, c, needle)]

        sort_field = self.sort_state.field
        descending = self.sort_state.direction is SortDirection.DESCENDING
        present = [k for k in keys if _sort_value(self.containers[k], sort_field) is not None]
        missing = [k for k in keys if _sort_value(self.containers[k], sort_field) is None]
        present.sort(key=lambda k: _sort_value(self.containers[k], sort_field), reverse=descending)

        ordered = present + missing
        # Stable, so the field order survives inside each host group
        ordered.sort(key=lambda k: k.host_id)
        self.sorted_container_keys = ordered
        self.adjust_selection()

    def adjust_selection(self) -> None:
        count = len(self.sorted_container_keys)
        if count == 0:
            self.selected = None
        elif self.selected is None:
            self.selected = 0
        elif self.selected >= count:
            self.selected = count - 1

    # --- Container events ---

    def _on_initial_container_list(self, event: InitialContainerList) -> bool:
        for container in event.containers:
            self.containers[container.key] = container
        self.refresh_view()
        return True

    def _on_container_created(self, event: ContainerCreated) -> bool:
        container = event.container
        previous = self.containers.get(container.key)
        if previous is not None:
            container.stats = previous.stats
        self.containers[container.key] = container
        self.refresh_view()
        return True

    def _on_container_destroyed(self, event: ContainerDestroyed) -> bool:
        if self.containers.pop(event.key, None) is None:
            return False
        self.pending_actions.pop(event.key, None)
        if self.view is ViewKind.ACTION_MENU and self.view_state.key == event.key:
            self.view_state = ViewState.container_list()
        self.refresh_view()
        return True

    def _on_container_state_changed(self, event: ContainerStateChanged) -> bool:
        container = self.containers.get(event.key)
        if container is None:
            return False
        container.state = event.state
        self.refresh_view()
        return True

    def _on_container_stat(self, event: ContainerStat) -> bool:
        container = self.containers.get(event.key)
        if container is not None:
            container.stats = event.stats
        return False

    def _on_container_health_changed(self, event: ContainerHealthChanged) -> bool:
        container = self.containers.get(event.key)
        if container is not None:
            container.health = event.health
        return True

    # --- Hosts ---

    def _on_host_connected(self, event: HostConnected) -> bool:
        host_id = event.backend.host_id
        self.hosts[host_id] = event.backend
        self.connection_errors.pop(host_id, None)
        return True

    def _prune_connection_errors(self) -> None:
        now = self.clock()
        ttl = self.engine.connection_error_ttl
        self.connection_errors = {
            host: (msg, at) for host, (msg, at) in self.connection_errors.items()
            if now - at < ttl
        }

    def _on_connection_error(self, event: HostConnectionError) -> bool:
        self.connection_errors[event.host_id] = (event.message, self.clock())
        self._prune_connection_errors()
        return True

    # --- App ---

    def _on_quit(self, event: Quit) -> bool:
        self.should_quit = True
        if self.log_state is not None:
            self.log_state.close()
        return False

    def _on_resize(self, event: Resize) -> bool:
        if event.height > 0:
            self.log_viewport_height = event.height
        return True

    def _on_toggle_help(self, event: ToggleHelp) -> bool:
        self.show_help = not self.show_help
        return True

    # --- Navigation ---

    def _on_select_previous(self, event: SelectPrevious) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST or not self.sorted_container_keys:
            return False
        if self.selected is not None and self.selected > 0:
            self.selected -= 1
        return True

    def _on_select_next(self, event: SelectNext) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST or not self.sorted_container_keys:
            return False
        if self.selected is None:
            self.selected = 0
        elif self.selected < len(self.sorted_container_keys) - 1:
            self.selected += 1
        return True

    def _on_enter_pressed(self, event: EnterPressed) -> bool:
        if self.view is ViewKind.SEARCH_MODE:
            # Keep the filter, go back to the list
            self.view_state = ViewState.container_list()
            return True
        if self.view is ViewKind.CONTAINER_LIST:
            return self._on_show_action_menu(event)
        if self.view is ViewKind.ACTION_MENU:
            return self._on_execute_action(event)
        return False

    def _on_exit_view(self, event: ExitView) -> bool:
        if self.show_help:
            self.show_help = False
            return True
        if self.view is ViewKind.SEARCH_MODE:
            return self._on_exit_search_mode(event)
        if self.view is ViewKind.LOG_VIEW:
            self.close_log_view()
            return True
        if self.view is ViewKind.ACTION_MENU:
            return self._on_cancel_menu(event)
        return False

    def _on_cancel_menu(self, event: Event) -> bool:
        if self.view is not ViewKind.ACTION_MENU:
            return False
        self.view_state = ViewState.container_list()
        self.action_menu_index = 0
        return True

    # --- Log view ---

    def _on_show_log_view(self, event: ShowLogView) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST:
            return False
        key = self.selected_key()
        if key is None:
            return False

        if self.log_state is not None:
            self.log_state.close()
        self.log_state = LogState(key, generation=self._log_generation)
        self._log_generation += 1
        self.view_state = ViewState.log_view(key)

        backend = self.hosts.get(key.host_id)
        if backend is not None and self.log_streamer is not None:
            self.log_state.tail_task = self.log_streamer.start_tail(
                backend, key, self.log_state.generation
            )
        else:
            logger.warning(f"No connected host for {key}, logs unavailable")
        return True

    def close_log_view(self) -> None:
        if self.log_state is not None:
            self.log_state.close()
            self.log_state = None
        if self.view is ViewKind.LOG_VIEW:
            self.view_state = ViewState.container_list()

    def _current_log_state(self) -> Optional[LogState]:
        if self.view is not ViewKind.LOG_VIEW:
            return None
        return self.log_state

    def request_older_logs(self, force: bool = False) -> bool:
        """Start a pagination task if one is due. Returns True if started."""
        log_state = self._current_log_state()
        if log_state is None:
            return False
        if force:
            due = log_state.has_more_history and not log_state.fetching_older and bool(log_state.entries)
        else:
            due = log_state.needs_older(self.engine.older_logs_threshold)
        if not due:
            return False

        key = log_state.key
        backend = self.hosts.get(key.host_id)
        if backend is None or self.log_streamer is None:
            return False
        container = self.containers.get(key)
        created = container.created if container is not None else None

        # Density comes from the last loaded batch, not from live lines or
        # earlier pages
        newest = log_state.batch_newest or log_state.newest_timestamp

        log_state.fetching_older = True
        log_state.older_task = self.log_streamer.fetch_older(
            backend, key, log_state.oldest_timestamp, newest, created, log_state.generation,
        )
        return True

    def _scroll(self, delta: int) -> bool:
        log_state = self._current_log_state()
        if log_state is None:
            return False
        log_state.scroll_by(delta, self.log_viewport_height)
        if delta < 0:
            self.request_older_logs()
        return True

    def _page_size(self) -> int:
        return max(1, self.log_viewport_height // 2)

    def _on_scroll_up(self, event: ScrollUp) -> bool:
        return self._scroll(-1)

    def _on_scroll_down(self, event: ScrollDown) -> bool:
        return self._scroll(1)

    def _on_scroll_page_up(self, event: ScrollPageUp) -> bool:
        return self._scroll(-self._page_size())

    def _on_scroll_page_down(self, event: ScrollPageDown) -> bool:
        return self._scroll(self._page_size())

    def _on_scroll_to_top(self, event: ScrollToTop) -> bool:
        log_state = self._current_log_state()
        if log_state is None:
            return False
        log_state.scroll_to_top()
        self.request_older_logs(force=True)
        return True

    def _on_scroll_to_bottom(self, event: ScrollToBottom) -> bool:
        log_state = self._current_log_state()
        if log_state is None:
            return False
        log_state.scroll_to_bottom(self.log_viewport_height)
        return True

    def _on_request_older_logs(self, event: RequestOlderLogs) -> bool:
        return self.request_older_logs(force=True)

    def _log_state_for(self, key: ContainerKey, generation: int) -> Optional[LogState]:
        log_state = self.log_state
        if log_state is None or log_state.key != key or log_state.generation != generation:
            return None
        return log_state

    def _on_log_line(self, event: LogLine) -> bool:
        log_state = self._log_state_for(event.key, event.generation)
        if log_state is None:
            return False
        log_state.append(event.entry)
        if log_state.is_at_bottom:
            log_state.scroll_offset = log_state.max_offset(self.log_viewport_height)
        return True

    def _on_log_batch_prepend(self, event: LogBatchPrepend) -> bool:
        log_state = self._log_state_for(event.key, event.generation)
        if log_state is None:
            return False
        log_state.prepend(event.entries, event.has_more_history)
        if log_state.is_at_bottom:
            log_state.scroll_offset = log_state.max_offset(self.log_viewport_height)
        return True

    def _on_older_logs_failed(self, event: OlderLogsFailed) -> bool:
        log_state = self._log_state_for(event.key, event.generation)
        if log_state is None:
            return False
        log_state.fetching_older = False
        self._set_message(f"Loading older logs failed: {event.message}", error=True)
        return True

    # --- External viewer ---

    def _on_open_external_viewer(self, event: OpenExternalViewer) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST or self.is_ssh_session:
            return False
        container = self.selected_container()
        if container is None:
            return False
        url = viewer_url_for(container)
        if url is None:
            return False
        logger.info(f"Opening {url}")
        self.url_opener(url)
        return False

    # --- Sorting and filtering ---

    def _on_cycle_sort_field(self, event: CycleSortField) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST:
            return False
        self.sort_state = SortState.for_field(self.sort_state.field.next())
        self.refresh_view()
        return True

    def _on_set_sort_field(self, event: SetSortField) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST:
            return False
        if event.field is self.sort_state.field:
            self.sort_state = SortState(event.field, self.sort_state.direction.toggle())
        else:
            self.sort_state = SortState.for_field(event.field)
        self.refresh_view()
        return True

    def _on_toggle_show_all(self, event: ToggleShowAll) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST:
            return False
        self.show_all_containers = not self.show_all_containers
        self.refresh_view()
        return True

    def _on_cycle_host_filter(self, event: CycleHostFilter) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST:
            return False
        hosts = self.known_hosts()
        if self.host_filter is None or self.host_filter not in hosts:
            self.host_filter = hosts[0] if hosts else None
        else:
            index = hosts.index(self.host_filter) + 1
            self.host_filter = hosts[index] if index < len(hosts) else None
        self.refresh_view()
        return True

    def _on_enter_search_mode(self, event: EnterSearchMode) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST:
            return False
        self.view_state = ViewState.search_mode()
        self.search_text = ""
        self.refresh_view()
        return True

    def _on_exit_search_mode(self, event: Event) -> bool:
        if self.view is not ViewKind.SEARCH_MODE:
            return False
        self.view_state = ViewState.container_list()
        self.search_text = ""
        self.refresh_view()
        return True

    def _on_search_key(self, event: SearchKeyEvent) -> bool:
        if self.view is not ViewKind.SEARCH_MODE:
            return False
        if event.key in ("enter", "escape"):
            return False
        if event.key == "backspace":
            self.search_text = self.search_text[:-1]
        elif event.key == "ctrl+u":
            self.search_text = ""
        elif event.character and event.character.isprintable():
            self.search_text += event.character
        else:
            return False
        self.refresh_view()
        return True

    # --- Actions ---

    def _on_show_action_menu(self, event: Event) -> bool:
        if self.view is not ViewKind.CONTAINER_LIST:
            return False
        key = self.selected_key()
        if key is None:
            return False
        self.view_state = ViewState.action_menu(key)
        self.action_menu_index = 0
        return True

    def _on_select_action_up(self, event: SelectActionUp) -> bool:
        if not self.menu_actions() or self.action_menu_index == 0:
            return False
        self.action_menu_index -= 1
        return True

    def _on_select_action_down(self, event: SelectActionDown) -> bool:
        actions = self.menu_actions()
        if not actions or self.action_menu_index >= len(actions) - 1:
            return False
        self.action_menu_index += 1
        return True

    def _on_execute_action(self, event: Event) -> bool:
        actions = self.menu_actions()
        if not 0 <= self.action_menu_index < len(actions):
            return False
        key = self.view_state.key
        backend = self.hosts.get(key.host_id)
        if backend is None or self.action_executor is None:
            logger.warning(f"No connected host for {key}, cannot run action")
            return False

        action = actions[self.action_menu_index]
        self.action_executor.dispatch(backend, key, action)
        self.view_state = ViewState.container_list()
        self.action_menu_index = 0
        return True

    def _container_label(self, key: ContainerKey) -> str:
        container = self.containers.get(key)
        return container.name if container is not None else key.container_id

    def _set_message(self, message: str, error: bool = False) -> None:
        self.message = message
        self.message_is_error = error
        self.message_timestamp = self.clock()

    def _on_action_in_progress(self, event: ActionInProgress) -> bool:
        self.pending_actions[event.key] = event.action
        self._set_message(f"{event.action.display_name} {self._container_label(event.key)}...")
        return True

    def _on_action_success(self, event: ActionSuccess) -> bool:
        self.pending_actions.pop(event.key, None)
        self._set_message(f"{event.action.display_name} {self._container_label(event.key)}: done")
        return True

    def _on_action_error(self, event: ActionError) -> bool:
        self.pending_actions.pop(event.key, None)
        self._set_message(event.message, error=True)
        return True

    # --- Teardown ---

    def shutdown(self) -> None:
        if self.log_state is not None:
            self.log_state.close()
            self.log_state = None
