"""Regenerate the context document when the project changes.

File-system notifications arrive on a watchdog observer thread, which only
puts them on a bounded queue. A single-threaded loop pulls from that queue and
drives a small state machine:

    IDLE --event--> DEBOUNCING --delay expired--> REGENERATING --done--> IDLE

Events while debouncing restart the delay. Events while regenerating mark the
cycle as pending, which triggers exactly one more debounced cycle once the
current one is done. A regeneration is never interrupted.
"""

from __future__ import annotations

import os
import queue
import time
from dataclasses import dataclass
from enum import StrEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from xcontext.exceptions import ConfigError, XContextError
from xcontext.ignore import ReservedPaths
from xcontext.pipeline import deliver, output_path, run_generation
from xcontext.settings import load_config

if TYPE_CHECKING:
    from collections.abc import Callable

    from xcontext.config import Config
    from xcontext.logging import RunContext

EVENT_QUEUE_SIZE = 1024
RELEVANT_EVENT_TYPES = frozenset({"created", "modified", "deleted", "moved"})


class WatchState(StrEnum):
    IDLE = auto()
    DEBOUNCING = auto()
    REGENERATING = auto()


class Signal(StrEnum):
    FS_EVENT = auto()
    TIMER_EXPIRED = auto()
    REGENERATION_DONE = auto()


class Action(StrEnum):
    """What the loop must do after a transition."""

    NONE = auto()
    START_TIMER = auto()
    REGENERATE = auto()


@dataclass(frozen=True)
class Transition:
    state: WatchState
    pending: bool
    action: Action


def transition(state: WatchState, signal: Signal, pending: bool) -> Transition:  # noqa: FBT001
    """Pure transition table of the watch loop.

    Args:
        state (WatchState): the current state.
        signal (Signal): what just happened.
        pending (bool): whether an event arrived during the running regeneration.

    Returns:
        Transition: the next state, pending flag and action.
    """
    match state, signal:
        case WatchState.IDLE, Signal.FS_EVENT:
            return Transition(WatchState.DEBOUNCING, False, Action.START_TIMER)
        case WatchState.DEBOUNCING, Signal.FS_EVENT:
            return Transition(WatchState.DEBOUNCING, False, Action.START_TIMER)
        case WatchState.DEBOUNCING, Signal.TIMER_EXPIRED:
            return Transition(WatchState.REGENERATING, False, Action.REGENERATE)
        case WatchState.REGENERATING, Signal.FS_EVENT:
            return Transition(WatchState.REGENERATING, True, Action.NONE)
        case WatchState.REGENERATING, Signal.REGENERATION_DONE if pending:
            return Transition(WatchState.DEBOUNCING, False, Action.START_TIMER)
        case WatchState.REGENERATING, Signal.REGENERATION_DONE:
            return Transition(WatchState.IDLE, False, Action.NONE)
        case _:
            return Transition(state, pending, Action.NONE)


class _Stop:
    """Queue sentinel that ends the loop."""


STOP = _Stop()


class WatchLoop:
    """Single-threaded debounce loop pulling events from a bounded queue."""

    def __init__(
        self,
        events: queue.Queue[Any],
        *,
        delay: float,
        regenerate: Callable[[], None],
        ctx: RunContext,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.events = events
        self.delay = delay
        self.regenerate = regenerate
        self.ctx = ctx
        self.clock = clock
        self.state = WatchState.IDLE
        self.pending = False
        self.cycles = 0
        self._deadline: float | None = None
        self._stopped = False

    def _apply(self, signal: Signal) -> Action:
        step = transition(self.state, signal, self.pending)
        if step.state is not self.state:
            self.ctx.log.debug("watch_transition", source=str(self.state), target=str(step.state), signal=str(signal))
        self.state, self.pending = step.state, step.pending
        match step.action:
            case Action.START_TIMER:
                self._deadline = self.clock() + self.delay
            case Action.REGENERATE:
                self._deadline = None
            case Action.NONE:
                pass
        return step.action

    def _run_cycle(self) -> None:
        self.ctx.log.info("regeneration_started", cycle=self.cycles + 1)
        try:
            self.regenerate()
        except (XContextError, OSError) as exc:
            self.ctx.log.error("regeneration_failed", error=str(exc))
        self.cycles += 1
        while True:
            try:
                item = self.events.get_nowait()
            except queue.Empty:
                break
            if item is STOP:
                self._stopped = True
                continue
            self._apply(Signal.FS_EVENT)
        self._apply(Signal.REGENERATION_DONE)

    def run(self, *, max_cycles: int | None = None) -> int:
        """Process events until `STOP` is received or `max_cycles` regenerations ran.

        Args:
            max_cycles (int | None): stop after this many regeneration cycles.

        Returns:
            int: the number of regeneration cycles run.
        """
        while not self._stopped:
            timeout = None if self._deadline is None else max(0.0, self._deadline - self.clock())
            try:
                item = self.events.get(timeout=timeout)
            except queue.Empty:
                signal = Signal.TIMER_EXPIRED
            else:
                if item is STOP:
                    break
                signal = Signal.FS_EVENT
            if self._apply(signal) is Action.REGENERATE:
                self._run_cycle()
                if max_cycles is not None and self.cycles >= max_cycles:
                    break
        return self.cycles


class QueueingEventHandler(FileSystemEventHandler):
    """Watchdog handler that only enqueues relevant event paths.

    Events on reserved paths (`.git`, the save directory, the output file and
    the temporaries written next to it) are dropped, so saving the document
    never triggers another cycle.
    """

    def __init__(self, events: queue.Queue[Any], *, reserved: ReservedPaths | None = None) -> None:
        super().__init__()
        self.events = events
        self.reserved = reserved

    def is_ignored(self, path: Path) -> bool:
        return self.reserved is not None and self.reserved.contains(path)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in RELEVANT_EVENT_TYPES:
            return
        if event.is_directory and event.event_type == "modified":
            return
        paths = [event.src_path]
        if getattr(event, "dest_path", ""):
            paths.append(event.dest_path)
        relevant = [p for p in (Path(os.fsdecode(raw)).absolute() for raw in paths) if not self.is_ignored(p)]
        if not relevant:
            return
        try:
            self.events.put_nowait(relevant[0])
        except queue.Full:
            # queue full means a regeneration is already due
            return


class WatchSession:
    """Owns the configuration between cycles and reloads it when its file changes."""

    def __init__(
        self,
        config: Config,
        *,
        ctx: RunContext,
        overrides: dict[str, Any] | None = None,
        config_file: str | Path | None = None,
        disable_config: bool = False,
        to_stdout: bool = False,
        output_file: Path | None = None,
    ) -> None:
        self.config = config
        self.ctx = ctx
        self.overrides = overrides
        self.config_file = config_file
        self.disable_config = disable_config
        self.to_stdout = to_stdout
        self.output_file = output_file
        self.config_mtime = self._mtime(config.config_path)

    @staticmethod
    def _mtime(path: Path | None) -> float | None:
        if path is None:
            return None
        try:
            return path.stat().st_mtime
        except OSError:
            return None

    def refresh_config(self) -> bool:
        """Reload the configuration when its file's mtime changed.

        On failure the previous configuration is kept and a warning is logged.

        Returns:
            bool: whether a new configuration was loaded.
        """
        path = self.config.config_path
        mtime = self._mtime(path)
        if path is None or mtime == self.config_mtime:
            return False
        try:
            config = load_config(
                self.config.project_root,
                self.overrides,
                config_file=self.config_file if self.config_file is not None else path,
                disable_config=self.disable_config,
            )
        except ConfigError as exc:
            self.ctx.log.warning("config_reload_failed", path=str(path), error=str(exc))
            self.config_mtime = mtime
            return False
        self.config = config
        self.config_mtime = mtime
        self.ctx.log.info("config_reloaded", path=str(path))
        return True

    def regenerate(self) -> None:
        self.refresh_config()
        result = run_generation(self.config, ctx=self.ctx, output_file=self.output_file)
        deliver(result, self.config, ctx=self.ctx, to_stdout=self.to_stdout, output_file=self.output_file)

    def reserved_paths(self) -> ReservedPaths:
        """Paths whose changes never trigger a cycle; follows the current configuration."""
        output_file = (self.output_file or output_path(self.config)).absolute()
        return ReservedPaths.for_config(self.config, output_file)


def watch_project(session: WatchSession, *, max_cycles: int | None = None) -> int:
    """Generate once, then regenerate on every debounced change until interrupted.

    Args:
        session (WatchSession): the session owning the configuration.
        max_cycles (int | None): stop after this many change-triggered cycles.

    Returns:
        int: the number of change-triggered cycles run.
    """
    ctx = session.ctx
    config = session.config
    events: queue.Queue[Any] = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
    handler = QueueingEventHandler(events, reserved=session.reserved_paths())

    def regenerate() -> None:
        try:
            session.regenerate()
        finally:
            loop.delay = session.config.watch.delay
            handler.reserved = session.reserved_paths()

    loop = WatchLoop(events, delay=config.watch.delay, regenerate=regenerate, ctx=ctx)
    observer = Observer()
    observer.schedule(handler, str(config.project_root), recursive=True)
    config_path = config.config_path
    if config_path is not None and not config_path.absolute().is_relative_to(config.project_root.absolute()):
        observer.schedule(handler, str(config_path.parent), recursive=False)
    observer.start()
    ctx.log.info("watch_started", root=str(config.project_root), delay=config.watch.delay)
    try:
        try:
            session.regenerate()
        except XContextError as exc:
            ctx.log.error("regeneration_failed", error=str(exc))
        return loop.run(max_cycles=max_cycles)
    except KeyboardInterrupt:
        ctx.log.info("watch_interrupted")
        return loop.cycles
    finally:
        observer.stop()
        observer.join()
