from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

DEFAULT_MESSAGES = {
    'help': 'Commands: {queue} <song or Spotify link>, {current_song}, {get_queue}, {skip}, {set_volume} [0-100]',
    'queue_usage': (
        'Add a song by author title or with Spotify Track URL, e.g. '
        '"{prefix} Rick Astley - Never Gonna Give You Up" or '
        '"{prefix} https://open.spotify.com/track/4cOdK2wGLETKBW3PvgPWqT?si=34c1e97f523c44b1"'
    ),
    'subscribers_only': 'Sorry, song requests are only for subscribers.',
    'not_found': 'Unable to find song :(',
    'invalid_message': 'Fail (invalid message): Unable to parse track ID from message',
    'invalid_id': 'Fail (invalid ID): Link contains an invalid ID',
    'add_failed': 'Fail: Error occurred adding track',
    'already_queued': 'Fail (duplicate): {song} is already in the queue',
    'queue_added': 'Success: "{song}" added to queue',
    'queue_failed': 'Fail: {song} not added to queue',
    'playlist_added': 'Success: "{song}" added to playlist',
    'playlist_duplicate': 'Fail (duplicate): {song} already in the playlist',
    'playlist_failed': 'Fail: {song} not added to playlist',
    'current_song': 'Now playing: {song}',
    'nothing_playing': 'Nothing is playing right now',
    'current_song_failed': 'Fail: unable to get the current song',
    'queue_empty': 'The song queue is empty',
    'queue_entry': '{position}. {song} [{user}]',
    'skipped': 'Skipped to the next song',
    'skip_failed': 'Fail: unable to skip song',
    'volume_current': 'Current volume: {volume}%',
    'volume_set': 'Volume set to {volume}%',
    'volume_failed': 'Fail: unable to change the volume',
}

TRUE_VALUES = {'1', 'true', 'yes', 'on'}


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


def parse_allowed_users(raw: Optional[str]) -> List[str]:
    """Split a comma-separated allow-list into lower-cased logins."""
    if not raw:
        return []
    return [name.strip().lower() for name in raw.split(',') if name.strip()]


def load_messages(path: Optional[Path]) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    if not path:
        return cfg
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update({str(k): str(v) for k, v in data.items()})
    except FileNotFoundError:
        pass
    return cfg


@dataclass
class CommandPrefixes:
    help: str = '!songhelp'
    queue: str = '!queue'
    get_queue: str = '!songqueue'
    current_song: str = '!song'
    skip: str = '!skip'
    set_volume: str = '!volume'

    def as_dict(self) -> Dict[str, str]:
        return {
            'help': self.help,
            'queue': self.queue,
            'get_queue': self.get_queue,
            'current_song': self.current_song,
            'skip': self.skip,
            'set_volume': self.set_volume,
        }


@dataclass
class BotConfig:
    channel: Optional[str]
    bot_username: Optional[str] = None
    bot_user_id: Optional[str] = None
    twitch_client_id: Optional[str] = None
    twitch_client_secret: Optional[str] = None
    twitch_token: Optional[str] = None
    twitch_refresh_token: Optional[str] = None
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    playlist_id: Optional[str] = None
    chat_feedback: bool = True
    add_to_queue: bool = True
    add_to_playlist: bool = False
    subscribers_only: bool = False
    prefer_whisper: bool = True
    reconcile_interval_ms: int = 10_000
    prefixes: CommandPrefixes = field(default_factory=CommandPrefixes)
    skip_allowed_users: List[str] = field(default_factory=list)
    set_volume_allowed_users: List[str] = field(default_factory=list)
    host: str = 'http://localhost'
    auth_server_port: int = 8888
    hosted_port: Optional[int] = None
    auth_store_path: Path = Path('./spotify-auth-store.json')
    messages: Dict[str, str] = field(default_factory=lambda: DEFAULT_MESSAGES.copy())

    @classmethod
    def from_env(cls) -> 'BotConfig':
        defaults = CommandPrefixes()
        prefixes = CommandPrefixes(
            help=_env_str('COMMAND_HELP__PREFIX', defaults.help),
            queue=_env_str('COMMAND_QUEUE__PREFIX', defaults.queue),
            get_queue=_env_str('COMMAND_GET_QUEUE__PREFIX', defaults.get_queue),
            current_song=_env_str('COMMAND_CURRENT_SONG__PREFIX', defaults.current_song),
            skip=_env_str('COMMAND_SKIP_TO_NEXT__PREFIX', defaults.skip),
            set_volume=_env_str('COMMAND_SET_VOLUME__PREFIX', defaults.set_volume),
        )
        messages_path = _env_str('BOT_MESSAGES_PATH')
        hosted_port = os.getenv('PORT')
        return cls(
            channel=_env_str('TWITCH_CHANNEL'),
            bot_username=_env_str('BOT_USERNAME'),
            bot_user_id=_env_str('BOT_USER_ID'),
            twitch_client_id=_env_str('TWITCH_CLIENT_ID'),
            twitch_client_secret=_env_str('TWITCH_CLIENT_SECRET'),
            twitch_token=_env_str('TWITCH_TOKEN'),
            twitch_refresh_token=_env_str('TWITCH_REFRESH_TOKEN'),
            spotify_client_id=_env_str('SPOTIFY_CLIENT_ID'),
            spotify_client_secret=_env_str('SPOTIFY_CLIENT_SECRET'),
            playlist_id=_env_str('SPOTIFY_PLAYLIST_ID'),
            chat_feedback=_env_bool('CHAT_FEEDBACK', True),
            add_to_queue=_env_bool('ADD_TO_QUEUE', True),
            add_to_playlist=_env_bool('ADD_TO_PLAYLIST', False),
            subscribers_only=_env_bool('SUBSCRIBERS_ONLY', False),
            prefer_whisper=_env_bool('COMMAND_GET_QUEUE__PREFER_WHISPER', True),
            reconcile_interval_ms=_env_int('COMMAND_GET_QUEUE__REFRESH__COOLDOWN_MS', 10_000),
            prefixes=prefixes,
            skip_allowed_users=parse_allowed_users(os.getenv('COMMAND_SKIP_TO_NEXT__ALLOWED_USERS')),
            set_volume_allowed_users=parse_allowed_users(os.getenv('COMMAND_SET_VOLUME__ALLOWED_USERS')),
            host=(_env_str('HOST', 'http://localhost') or '').rstrip('/'),
            auth_server_port=_env_int('AUTH_SERVER_PORT', 8888),
            hosted_port=int(hosted_port) if hosted_port and hosted_port.isdigit() else None,
            auth_store_path=Path(_env_str('SPOTIFY_AUTH_STORE', './spotify-auth-store.json')),
            messages=load_messages(Path(messages_path) if messages_path else None),
        )

    @property
    def redirect_uri(self) -> str:
        # Behind a hosting proxy the public host already routes to the server.
        if self.hosted_port:
            return f"{self.host}/spotifyAuth"
        return f"{self.host}:{self.auth_server_port}/spotifyAuth"

    @property
    def listen_port(self) -> int:
        return self.hosted_port or self.auth_server_port

    def validate(self) -> List[str]:
        problems: List[str] = []
        if not self.channel:
            problems.append('TWITCH_CHANNEL is required')
        if not self.spotify_client_id or not self.spotify_client_secret:
            problems.append('SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET are required')
        if self.chat_feedback and not (self.twitch_token and self.bot_username):
            problems.append('Chat feedback enabled but there is no TWITCH_TOKEN or BOT_USERNAME in the config')
        missing_app = [
            name for name, value in (
                ('TWITCH_CLIENT_ID', self.twitch_client_id),
                ('TWITCH_CLIENT_SECRET', self.twitch_client_secret),
                ('BOT_USER_ID', self.bot_user_id),
            ) if not value
        ]
        if missing_app:
            problems.append(f"Missing Twitch app credentials: {', '.join(missing_app)}")
        if self.reconcile_interval_ms <= 0:
            problems.append('COMMAND_GET_QUEUE__REFRESH__COOLDOWN_MS must be greater than 0')
        if not self.add_to_queue and not self.add_to_playlist:
            problems.append('ADD_TO_QUEUE and ADD_TO_PLAYLIST are both disabled, song requests would go nowhere')
        return problems
