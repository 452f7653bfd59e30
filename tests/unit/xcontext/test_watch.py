from __future__ import annotations

import json
import os
import queue
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest
from watchdog.events import DirModifiedEvent, FileClosedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from xcontext.config import default_layer, resolve_config
from xcontext.exceptions import XContextError
from xcontext.ignore import ReservedPaths
from xcontext.logging import RunContext
from xcontext.settings import load_config
from xcontext.watch import (
    STOP,
    Action,
    QueueingEventHandler,
    Signal,
    WatchLoop,
    WatchSession,
    WatchState,
    transition,
)

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


@pytest.mark.unit
@pytest.mark.parametrize(
    ("state", "signal", "pending", "expected"),
    [
        (WatchState.IDLE, Signal.FS_EVENT, False, (WatchState.DEBOUNCING, False, Action.START_TIMER)),
        (WatchState.DEBOUNCING, Signal.FS_EVENT, False, (WatchState.DEBOUNCING, False, Action.START_TIMER)),
        (WatchState.DEBOUNCING, Signal.TIMER_EXPIRED, False, (WatchState.REGENERATING, False, Action.REGENERATE)),
        (WatchState.REGENERATING, Signal.FS_EVENT, False, (WatchState.REGENERATING, True, Action.NONE)),
        (WatchState.REGENERATING, Signal.REGENERATION_DONE, True, (WatchState.DEBOUNCING, False, Action.START_TIMER)),
        (WatchState.REGENERATING, Signal.REGENERATION_DONE, False, (WatchState.IDLE, False, Action.NONE)),
        (WatchState.IDLE, Signal.TIMER_EXPIRED, False, (WatchState.IDLE, False, Action.NONE)),
    ],
)
def test_transition_table(
    state: WatchState,
    signal: Signal,
    pending: bool,  # noqa: FBT001
    expected: tuple[WatchState, bool, Action],
) -> None:
    step = transition(state, signal, pending)

    assert (step.state, step.pending, step.action) == expected


@pytest.mark.unit
def test_burst_of_events_triggers_one_regeneration() -> None:
    events: queue.Queue[Any] = queue.Queue()
    for index in range(20):
        events.put(Path(f"file_{index}.py"))
    calls: list[float] = []

    loop = WatchLoop(events, delay=0.05, regenerate=lambda: calls.append(time.monotonic()), ctx=RunContext())
    cycles = loop.run(max_cycles=1)

    assert cycles == 1
    assert len(calls) == 1
    assert events.empty()


@pytest.mark.unit
def test_event_during_regeneration_triggers_exactly_one_more_cycle() -> None:
    events: queue.Queue[Any] = queue.Queue()
    events.put(Path("a.py"))
    calls: list[int] = []

    def regenerate() -> None:
        calls.append(len(calls))
        if len(calls) == 1:
            events.put(Path("b.py"))
            events.put(Path("c.py"))
        else:
            events.put(STOP)

    loop = WatchLoop(events, delay=0.01, regenerate=regenerate, ctx=RunContext())

    assert loop.run() == 2
    assert loop.state is WatchState.IDLE


@pytest.mark.unit
def test_failed_regeneration_does_not_stop_the_loop() -> None:
    events: queue.Queue[Any] = queue.Queue()
    events.put(Path("a.py"))

    def regenerate() -> None:
        events.put(STOP)
        raise XContextError(message="boom")

    loop = WatchLoop(events, delay=0.01, regenerate=regenerate, ctx=RunContext())

    assert loop.run() == 1


@pytest.mark.unit
def test_handler_enqueues_relevant_events_only(tmp_path: Path) -> None:
    events: queue.Queue[Any] = queue.Queue()
    save_dir = tmp_path / ".xtools" / "xcontext" / "cache"
    config = resolve_config(default_layer(), None, None, project_root=tmp_path)
    handler = QueueingEventHandler(events, reserved=ReservedPaths.for_config(config))

    handler.on_any_event(FileModifiedEvent(str(tmp_path / "src" / "app.py")))
    handler.on_any_event(DirModifiedEvent(str(tmp_path / "src")))
    handler.on_any_event(FileModifiedEvent(str(tmp_path / ".git" / "index")))
    handler.on_any_event(FileModifiedEvent(str(save_dir / "demo.json")))
    handler.on_any_event(FileClosedEvent(str(tmp_path / "src" / "app.py")))
    handler.on_any_event(FileMovedEvent(str(save_dir / "tmp"), str(tmp_path / "moved.py")))

    queued = [events.get_nowait() for _ in range(events.qsize())]
    assert queued == [tmp_path / "src" / "app.py", tmp_path / "moved.py"]


@pytest.mark.unit
def test_handler_drops_events_when_queue_is_full(tmp_path: Path) -> None:
    events: queue.Queue[Any] = queue.Queue(maxsize=1)
    handler = QueueingEventHandler(events)

    handler.on_any_event(FileModifiedEvent(str(tmp_path / "a.py")))
    handler.on_any_event(FileModifiedEvent(str(tmp_path / "b.py")))

    assert events.qsize() == 1


def write_config(root: Path, text: str) -> Path:
    path = root / ".xtools" / "xcontext" / "xcontext.toml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.unit
def test_session_reloads_config_when_file_changes(tmp_path: Path) -> None:
    path = write_config(tmp_path, '[output]\nformat = "json"\n')
    session = WatchSession(load_config(tmp_path), ctx=RunContext())

    assert session.refresh_config() is False

    path.write_text('[output]\nformat = "yaml"\n', encoding="utf-8")
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 5))

    assert session.refresh_config() is True
    assert session.config.output.format == "yaml"


@pytest.mark.unit
def test_session_keeps_previous_config_when_reload_fails(tmp_path: Path) -> None:
    path = write_config(tmp_path, '[output]\nformat = "yaml"\n')
    session = WatchSession(load_config(tmp_path), ctx=RunContext())

    path.write_text("[output\n", encoding="utf-8")
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 5))

    assert session.refresh_config() is False
    assert session.config.output.format == "yaml"


@pytest.mark.unit
def test_session_regenerate_writes_output(tmp_path: Path, mocker: MockerFixture) -> None:
    (tmp_path / "main.py").write_text("print('hi')\n", encoding="utf-8")
    config = resolve_config(default_layer(), {"general": {"project_name": "demo"}}, None, project_root=tmp_path)
    session = WatchSession(config, ctx=RunContext())
    refresh = mocker.spy(session, "refresh_config")

    session.regenerate()

    refresh.assert_called_once()
    assert (tmp_path / ".xtools" / "xcontext" / "cache" / "demo.json").is_file()
    assert session.reserved_paths().contains(tmp_path / ".xtools" / "xcontext" / "cache" / "demo.json")


@pytest.mark.unit
def test_output_file_inside_root_is_never_read_back_nor_watched(tmp_path: Path) -> None:
    (tmp_path / "main.py").write_text("print('hi')\n", encoding="utf-8")
    output_file = tmp_path / "context.json"
    config = resolve_config(default_layer(), None, None, project_root=tmp_path)
    session = WatchSession(config, ctx=RunContext(), output_file=output_file)

    session.regenerate()
    session.regenerate()

    payload = json.loads(output_file.read_text(encoding="utf-8"))
    assert [f["path"] for f in payload["source"]["files"]] == ["main.py"]

    events: queue.Queue[Any] = queue.Queue()
    handler = QueueingEventHandler(events, reserved=session.reserved_paths())
    temporary = tmp_path / ".context.json.k2j4x9.tmp"
    handler.on_any_event(FileCreatedEvent(str(temporary)))
    handler.on_any_event(FileModifiedEvent(str(temporary)))
    handler.on_any_event(FileMovedEvent(str(temporary), str(output_file)))
    handler.on_any_event(FileModifiedEvent(str(output_file)))
    assert events.empty()

    handler.on_any_event(FileModifiedEvent(str(tmp_path / "main.py")))
    assert events.get_nowait() == tmp_path / "main.py"
