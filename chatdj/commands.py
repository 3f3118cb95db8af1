from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

SPOTIFY_LINK_START = 'https://open.spotify.com/track/'

_LEADING_INT = re.compile(r'[+-]?\d+')


@dataclass(frozen=True)
class AddToQueue:
    query: Optional[str] = None
    track_id: Optional[str] = None

    @property
    def is_link(self) -> bool:
        return self.track_id is not None


@dataclass(frozen=True)
class ShowHelp:
    topic: Optional[str] = None


@dataclass(frozen=True)
class ShowCurrentSong:
    pass


@dataclass(frozen=True)
class ShowQueue:
    pass


@dataclass(frozen=True)
class SkipNext:
    pass


@dataclass(frozen=True)
class SetVolume:
    volume: Optional[int] = None


@dataclass(frozen=True)
class NoOp:
    pass


Command = Union[AddToQueue, ShowHelp, ShowCurrentSong, ShowQueue, SkipNext, SetVolume, NoOp]


def get_track_id_from_link(text: str) -> Optional[str]:
    """Return the track id of an open.spotify.com track link, without its query string."""
    if not text.startswith(SPOTIFY_LINK_START):
        return None
    path = text[len(SPOTIFY_LINK_START):].split()
    if not path:
        return None
    return path[0].split('?', 1)[0].split('#', 1)[0].strip('/') or None


def parse_volume(text: str) -> Optional[int]:
    m = _LEADING_INT.match(text.strip())
    return int(m.group(0)) if m else None


class CommandParser:
    def __init__(self, prefixes: Dict[str, str]):
        # Longest prefix first so "!songqueue" is never read as "!song".
        self._table: List[Tuple[str, str]] = sorted(
            ((name, prefix) for name, prefix in prefixes.items() if prefix),
            key=lambda item: len(item[1]),
            reverse=True,
        )
        self.prefixes = dict(prefixes)

    def _match(self, text: str) -> Optional[Tuple[str, str]]:
        for name, prefix in self._table:
            if text == prefix:
                return name, ''
            if text.startswith(prefix) and text[len(prefix)].isspace():
                return name, text[len(prefix):].strip()
        return None

    def parse(self, raw: str) -> Command:
        text = (raw or '').strip()
        matched = self._match(text)
        if not matched:
            return NoOp()
        name, rest = matched
        if name == 'queue':
            if not rest:
                return ShowHelp('queue')
            if rest.startswith(SPOTIFY_LINK_START):
                return AddToQueue(track_id=get_track_id_from_link(rest) or '')
            return AddToQueue(query=rest)
        if name == 'help':
            return ShowHelp()
        if name == 'current_song':
            return ShowCurrentSong()
        if name == 'get_queue':
            return ShowQueue()
        if name == 'skip':
            return SkipNext()
        if name == 'set_volume':
            return SetVolume(parse_volume(rest) if rest else None)
        return NoOp()
