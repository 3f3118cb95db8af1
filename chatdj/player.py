from __future__ import annotations
import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import aiohttp

from .credentials import CredentialStore

logger = logging.getLogger(__name__)

API_BASE = 'https://api.spotify.com/v1'
INVALID_ID = re.compile(r'invalid (base62 )?id', re.I)


# ---- errors ----
class PlayerError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class PlayerNotFound(PlayerError):
    """Track, playlist or active device does not exist."""


class InvalidTrackId(PlayerError):
    pass


class DuplicateTrack(PlayerError):
    pass


class PlayerUnavailable(PlayerError):
    """Network failure, rate limit or server error; retrying later may work."""


@dataclass
class FoundTrack:
    id: str
    name: str
    info: Dict[str, object] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_api(cls, info: Dict[str, object]) -> 'FoundTrack':
        return cls(id=str(info.get('id') or ''), name=song_name(info), info=info)


def song_name(info: Dict[str, object]) -> str:
    artists = ', '.join(a.get('name', '') for a in info.get('artists') or [])
    return f"{artists} - {info.get('name', '')}"


def track_uri(track_id: str) -> str:
    return f"spotify:track:{track_id}"


def clamp_volume(volume: int) -> int:
    return max(0, min(100, int(volume)))


def _error_message(data: object) -> str:
    if isinstance(data, dict):
        error = data.get('error')
        if isinstance(error, dict):
            return str(error.get('message') or '')
        if error:
            return str(data.get('error_description') or error)
    return ''


class SpotifyPlayer:
    def __init__(
        self,
        credentials: CredentialStore,
        *,
        playlist_id: Optional[str] = None,
        base_url: str = API_BASE,
    ):
        self.credentials = credentials
        self.playlist_id = playlist_id
        self.base = base_url.rstrip('/')
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15))

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        payload: Optional[dict] = None,
    ):
        await self.credentials.ensure_fresh()
        if not self.session:
            await self.start()
        url = path if path.startswith('http') else f"{self.base}{path}"
        headers = {
            'Authorization': f"Bearer {self.credentials.access_token}",
            'Content-Type': 'application/json',
        }
        try:
            async with self.session.request(
                method,
                url,
                params=params,
                headers=headers,
                data=json.dumps(payload) if payload is not None else None,
            ) as r:
                is_json = r.headers.get('content-type', '').startswith('application/json')
                if r.status >= 400:
                    data: object = None
                    if is_json:
                        try:
                            data = await r.json()
                        except (aiohttp.ContentTypeError, ValueError):
                            data = None
                    detail = _error_message(data) or r.reason or f"{method} {path} failed"
                    raise self._error_for(r.status, detail)
                if r.status == 204:
                    return None
                if is_json:
                    return await r.json()
                return await r.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise PlayerUnavailable(0, f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _error_for(status: int, detail: str) -> PlayerError:
        if status == 404:
            return PlayerNotFound(status, detail)
        if status == 400 and INVALID_ID.search(detail):
            return InvalidTrackId(status, detail)
        if status == 429 or status >= 500:
            return PlayerUnavailable(status, detail)
        return PlayerError(status, detail)

    async def search(self, query: str, limit: int = 1) -> List[FoundTrack]:
        data = await self._req('GET', '/search', params={'q': query, 'type': 'track', 'limit': limit})
        items = ((data or {}).get('tracks') or {}).get('items') or []
        return [FoundTrack.from_api(item) for item in items if item]

    async def get_track(self, track_id: str) -> FoundTrack:
        data = await self._req('GET', f"/tracks/{track_id}")
        if not data:
            raise PlayerNotFound(404, f"track {track_id} not found")
        return FoundTrack.from_api(data)

    async def get_current_track(self) -> Optional[FoundTrack]:
        data = await self._req('GET', '/me/player/currently-playing')
        if not isinstance(data, dict) or not data.get('item'):
            return None
        return FoundTrack.from_api(data['item'])

    async def add_to_queue(self, track_id: str) -> None:
        await self._req('POST', '/me/player/queue', params={'uri': track_uri(track_id)})
        logger.info("Added %s to the player queue", track_id)

    async def playlist_contains(self, track_id: str) -> bool:
        url: Optional[str] = f"/playlists/{self.playlist_id}/tracks"
        params: Optional[dict] = {'fields': 'items(track(id)),next', 'limit': 100}
        while url:
            data = await self._req('GET', url, params=params) or {}
            for item in data.get('items') or []:
                track = item.get('track') or {}
                if track.get('id') == track_id:
                    return True
            # "next" already carries the query string.
            url = data.get('next')
            params = None
        return False

    async def add_to_playlist(self, track_id: str) -> bool:
        """Add a track to the configured playlist; False when no playlist is configured."""
        if not self.playlist_id:
            logger.error("Cannot add to playlist - Please provide a playlist ID in the config file")
            return False
        if await self.playlist_contains(track_id):
            raise DuplicateTrack(409, f"{track_id} is already in the playlist")
        await self._req(
            'POST',
            f"/playlists/{self.playlist_id}/tracks",
            payload={'uris': [track_uri(track_id)]},
        )
        logger.info("Added %s to playlist %s", track_id, self.playlist_id)
        return True

    async def skip_to_next(self) -> None:
        await self._req('POST', '/me/player/next')

    async def get_volume(self) -> int:
        data = await self._req('GET', '/me/player')
        device = (data or {}).get('device') if isinstance(data, dict) else None
        if not device or device.get('volume_percent') is None:
            return 0
        return int(device['volume_percent'])

    async def set_volume(self, volume: int) -> int:
        applied = clamp_volume(volume)
        await self._req('PUT', '/me/player/volume', params={'volume_percent': applied})
        return applied
