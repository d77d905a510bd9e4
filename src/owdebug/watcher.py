"""Source watcher.

Uses watchdog (inotify on Linux, FSEvents on macOS) for event-driven change
detection.  Events cross from the observer thread into asyncio through
``call_soon_threadsafe`` and are handed out as debounced change batches by
an async iterator.  Consumers pull: whatever changes while a batch is being
handled is coalesced into the next batch, so a burst during a reload causes
exactly one follow-up reload.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import AsyncIterator, Iterable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from owdebug.logger import logger
from owdebug.types import ChangeBatch

IGNORED_NAMES = frozenset({".git", ".hg", ".svn", "__pycache__", "node_modules", ".pytest_cache"})
_EVENT_TYPES = frozenset({"created", "modified", "moved", "deleted"})


def _is_editor_temp(path: Path) -> bool:
    return path.name.endswith(("~", ".swp", ".swx")) or path.name.startswith(".#")


class _PathFilter:
    """Decides whether a changed path belongs to the watched set."""

    def __init__(self, paths: Iterable[Path], ignore: Iterable[Path]) -> None:
        self.files: set[Path] = set()
        self.dirs: set[Path] = set()
        for path in paths:
            path = path.resolve()
            (self.dirs if path.is_dir() else self.files).add(path)
        self.ignore = {p.resolve() for p in ignore}

    def schedule(self) -> list[tuple[Path, bool]]:
        """Directories to observe as (path, recursive) pairs."""
        plan = {d: True for d in self.dirs}
        for file in self.files:
            parent = file.parent
            if parent in plan or any(parent.is_relative_to(d) for d in self.dirs):
                continue
            plan[parent] = False
        return [(d, recursive) for d, recursive in plan.items() if d.is_dir()]

    def __call__(self, path: Path) -> bool:
        if _is_editor_temp(path) or IGNORED_NAMES.intersection(path.parts):
            return False
        if any(path.is_relative_to(i) for i in self.ignore):
            return False
        return path in self.files or any(path.is_relative_to(d) for d in self.dirs)


class _ChangeHandler(FileSystemEventHandler):
    """Watchdog handler that enqueues matching paths for async consumption."""

    def __init__(
        self,
        accept: _PathFilter,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue[Path],
    ) -> None:
        super().__init__()
        self._accept = accept
        self._loop = loop
        self._queue = queue

    def on_any_event(self, event: Any) -> None:
        if event.is_directory or event.event_type not in _EVENT_TYPES:
            return
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if not raw:
                continue
            path = Path(os.fsdecode(raw))
            if self._accept(path):
                # loop may already be closed during shutdown
                with contextlib.suppress(RuntimeError):
                    self._loop.call_soon_threadsafe(self._queue.put_nowait, path)


class Watcher:
    """Produces debounced change batches for a set of files and directories.

    Directories are watched recursively; files through their parent
    directory.  Each call to :meth:`watch` starts a fresh observer, so the
    sequence can be restarted with a different path set.
    """

    def __init__(self, debounce: float = 0.2) -> None:
        self._debounce = debounce

    async def watch(
        self,
        paths: Iterable[Path],
        *,
        ignore: Iterable[Path] = (),
        resync: bool = False,
    ) -> AsyncIterator[ChangeBatch]:
        """Yield a batch for each debounced burst of changes under *paths*.

        With *resync*, an empty batch is yielded as soon as the observer is
        running, so a caller restarting the watch can catch up on edits
        made while no observer was active.
        """
        accept = _PathFilter(paths, ignore)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Path] = asyncio.Queue()

        handler = _ChangeHandler(accept, loop, queue)
        observer = Observer()
        for directory, recursive in accept.schedule():
            observer.schedule(handler, str(directory), recursive=recursive)
        observer.daemon = True
        observer.start()
        logger.debug(
            "Watching sources",
            files=sorted(str(f) for f in accept.files),
            dirs=sorted(str(d) for d in accept.dirs),
        )

        try:
            if resync:
                yield ChangeBatch(paths=frozenset())
            while True:
                yield await self._next_batch(queue)
        finally:
            observer.stop()
            await asyncio.to_thread(observer.join, 2.0)

    async def _next_batch(self, queue: asyncio.Queue[Path]) -> ChangeBatch:
        changed = {await queue.get()}
        while True:
            try:
                changed.add(await asyncio.wait_for(queue.get(), timeout=self._debounce))
            except TimeoutError:
                break
        logger.debug("Source change detected", paths=sorted(str(p) for p in changed))
        return ChangeBatch(paths=frozenset(changed))
