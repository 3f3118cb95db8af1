"""
Local shadow of the song requests sent to the player.

The queue is owned by this module: message handlers call `try_enqueue`,
the reconciler calls `reconcile`, and nothing else mutates it. It is a
best-effort record; reconciliation only ever drops the head entry once the
player reports it as the current track.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from .credentials import AuthError
from .player import PlayerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SongRequest:
    song_name: str
    requested_by: str


class RequestQueue:
    def __init__(self, player, *, empty_message: str = 'The song queue is empty',
                 entry_template: str = '{position}. {song} [{user}]'):
        self.player = player
        self.empty_message = empty_message
        self.entry_template = entry_template
        self._entries: List[SongRequest] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[SongRequest]:
        return list(self._entries)

    def contains(self, song_name: str) -> bool:
        return any(entry.song_name == song_name for entry in self._entries)

    async def try_enqueue(self, song_name: str, requested_by: str) -> bool:
        if self.contains(song_name):
            return False
        current = await self.player.get_current_track()
        if current is not None and current.name == song_name:
            return False
        # Another handler may have queued the same song while we awaited the player.
        if self.contains(song_name):
            return False
        self._entries.append(SongRequest(song_name, requested_by))
        logger.info("Queued %s for %s (%d pending)", song_name, requested_by, len(self._entries))
        return True

    def pop_head(self) -> Optional[SongRequest]:
        if not self._entries:
            return None
        return self._entries.pop(0)

    async def reconcile(self) -> Optional[SongRequest]:
        if not self._entries:
            return None
        current = await self.player.get_current_track()
        if current is None or not self._entries:
            return None
        if self._entries[0].song_name != current.name:
            return None
        played = self.pop_head()
        logger.info("Now playing queued request %s from %s", played.song_name, played.requested_by)
        return played

    def render(self) -> List[str]:
        if not self._entries:
            return [self.empty_message]
        return [
            self.entry_template.format(position=i, song=entry.song_name, user=entry.requested_by)
            for i, entry in enumerate(self._entries, start=1)
        ]


class Reconciler:
    def __init__(self, queue: RequestQueue, interval_ms: int):
        self.queue = queue
        self.interval = max(interval_ms, 0) / 1000
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> None:
        try:
            await self.queue.reconcile()
        except AuthError:
            raise
        except PlayerError as exc:
            logger.warning("Queue reconciliation failed: %s", exc)

    async def run(self) -> None:
        # The next run is scheduled after the previous one finishes.
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task = self._task
        if not task:
            return
        self._task = None
        if task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
