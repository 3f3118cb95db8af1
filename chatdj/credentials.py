"""
Spotify credential lifetime.

The store holds a single credential record, refreshes the access token once
it expires, and persists every new record to a JSON file. Refreshes are
serialized: callers that arrive while a refresh is running wait on the same
task, so the provider is asked for a new token once per expiry.
"""
from __future__ import annotations
import asyncio
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)

AUTHORIZE_URL = 'https://accounts.spotify.com/authorize'
TOKEN_URL = 'https://accounts.spotify.com/api/token'
SCOPES = [
    'user-read-currently-playing',
    'user-read-playback-state',
    'user-modify-playback-state',
    'playlist-read-private',
    'playlist-modify-public',
    'playlist-modify-private',
]


class AuthError(RuntimeError):
    """Credentials could not be obtained or refreshed; no player call can succeed."""


@dataclass
class Credential:
    access_token: str
    refresh_token: str
    expire_time: float

    @classmethod
    def empty(cls, now: float) -> 'Credential':
        return cls('', '', now)

    def to_json(self) -> dict:
        return {
            'accessToken': self.access_token,
            'refreshToken': self.refresh_token,
            'expireTime': self.expire_time,
        }

    @classmethod
    def from_json(cls, data: dict) -> 'Credential':
        return cls(
            access_token=str(data.get('accessToken') or ''),
            refresh_token=str(data.get('refreshToken') or ''),
            expire_time=float(data.get('expireTime') or 0),
        )


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int


class CredentialFile:
    """JSON file holding the one credential record."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[Credential]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable credential file %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            return None
        return Credential.from_json(data)

    def save(self, credential: Credential) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(credential.to_json(), f)
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise


class SpotifyIdentity:
    """Authorization-code and refresh-token exchanges against Spotify accounts."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, *, timeout: int = 10):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    def authorize_url(self, state: str = '') -> str:
        params = {
            'client_id': self.client_id,
            'response_type': 'code',
            'redirect_uri': self.redirect_uri,
            'scope': ' '.join(SCOPES),
        }
        if state:
            params['state'] = state
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def _token_request(self, data: dict) -> dict:
        try:
            response = requests.post(
                TOKEN_URL,
                data=data,
                auth=(self.client_id, self.client_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise AuthError(f"Spotify token request failed: {exc}") from exc
        except ValueError as exc:
            raise AuthError('Spotify token response was not valid JSON') from exc
        if not isinstance(payload, dict) or not payload.get('access_token'):
            raise AuthError(f"Spotify token response missing access_token: {payload}")
        return payload

    def exchange_code(self, code: str) -> TokenGrant:
        payload = self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.redirect_uri,
        })
        if not payload.get('refresh_token'):
            raise AuthError('Spotify authorization response missing refresh_token')
        return TokenGrant(
            access_token=payload['access_token'],
            refresh_token=payload['refresh_token'],
            expires_in=int(payload.get('expires_in', 3600)),
        )

    def refresh(self, refresh_token: str) -> TokenGrant:
        payload = self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })
        return TokenGrant(
            access_token=payload['access_token'],
            refresh_token=payload.get('refresh_token'),
            expires_in=int(payload.get('expires_in', 3600)),
        )


class CredentialStore:
    def __init__(
        self,
        identity: SpotifyIdentity,
        storage: CredentialFile,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.identity = identity
        self.storage = storage
        self._clock = clock
        self._credential = Credential.empty(clock())
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def access_token(self) -> str:
        return self._credential.access_token

    @property
    def has_refresh_token(self) -> bool:
        return bool(self._credential.refresh_token)

    def load(self) -> Credential:
        stored = self.storage.load()
        if stored is None:
            logger.info("No stored Spotify credentials at %s", self.storage.path)
            stored = Credential.empty(self._clock())
        else:
            logger.info("Spotify credentials found")
        self._credential = stored
        return stored

    def is_expired(self) -> bool:
        return self._clock() >= self._credential.expire_time

    async def persist(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.storage.save, self._credential)
        except OSError:
            logger.exception("Failed to write Spotify credentials to %s", self.storage.path)

    async def authorize_with_code(self, code: str) -> Credential:
        loop = asyncio.get_running_loop()
        grant = await loop.run_in_executor(None, self.identity.exchange_code, code)
        self._credential = Credential(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or '',
            expire_time=self._clock() + grant.expires_in,
        )
        await self.persist()
        logger.info("Spotify authorization complete")
        return self._credential

    async def ensure_fresh(self) -> None:
        if not self.is_expired():
            return
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh())
            self._refresh_task = task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._refresh_task is task:
                self._refresh_task = None

    async def _refresh(self) -> None:
        refresh_token = self._credential.refresh_token
        if not refresh_token:
            raise AuthError('No Spotify refresh token available; authorization required')
        logger.info("Spotify token expired, refreshing...")
        loop = asyncio.get_running_loop()
        grant = await loop.run_in_executor(None, self.identity.refresh, refresh_token)
        self._credential = Credential(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or refresh_token,
            expire_time=self._clock() + grant.expires_in,
        )
        await self.persist()
        logger.info("Spotify access token refreshed (expires in %ds)", grant.expires_in)
