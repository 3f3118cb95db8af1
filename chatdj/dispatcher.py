from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .access import AccessPolicy
from .commands import (
    AddToQueue,
    Command,
    CommandParser,
    NoOp,
    SetVolume,
    ShowCurrentSong,
    ShowHelp,
    ShowQueue,
    SkipNext,
)
from .config import BotConfig
from .player import DuplicateTrack, FoundTrack, InvalidTrackId, PlayerError, PlayerNotFound
from .request_queue import RequestQueue

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    channel: str
    username: str
    text: str
    is_subscriber: bool = False
    is_self: bool = False


class ChatTransport:
    """Outbound side of the chat connection. Both calls may raise."""

    async def say(self, channel: str, text: str) -> None:
        raise NotImplementedError

    async def whisper(self, username: str, text: str) -> None:
        raise NotImplementedError


class Dispatcher:
    def __init__(
        self,
        config: BotConfig,
        player,
        queue: RequestQueue,
        transport: ChatTransport,
        *,
        parser: Optional[CommandParser] = None,
        policy: Optional[AccessPolicy] = None,
    ):
        self.config = config
        self.player = player
        self.queue = queue
        self.transport = transport
        self.messages: Dict[str, str] = config.messages
        self.parser = parser or CommandParser(config.prefixes.as_dict())
        self.policy = policy or AccessPolicy(
            bot_username=config.bot_username,
            subscribers_only=config.subscribers_only,
            skip_allowed_users=config.skip_allowed_users,
            set_volume_allowed_users=config.set_volume_allowed_users,
        )

    async def handle_message(self, msg: InboundMessage) -> None:
        if self.policy.is_self(msg.username, msg.is_self):
            return
        command = self.parser.parse(msg.text)
        if isinstance(command, NoOp):
            return
        if not self.policy.subscriber_gate(msg.is_subscriber):
            await self._say(msg.channel, self.messages['subscribers_only'])
            return
        if not self.policy.allow_list_gate(command, msg.username).allowed:
            return
        logger.info("%s: %s", msg.username, type(command).__name__)
        await self.execute(command, msg)

    async def execute(self, command: Command, msg: InboundMessage) -> None:
        if isinstance(command, AddToQueue):
            await self.handle_add(command, msg)
        elif isinstance(command, ShowHelp):
            await self.handle_help(command, msg)
        elif isinstance(command, ShowCurrentSong):
            await self.handle_current_song(msg)
        elif isinstance(command, ShowQueue):
            await self.handle_show_queue(msg)
        elif isinstance(command, SkipNext):
            await self.handle_skip(msg)
        elif isinstance(command, SetVolume):
            await self.handle_volume(command, msg)

    async def handle_help(self, command: ShowHelp, msg: InboundMessage) -> None:
        if command.topic == 'queue':
            text = self.messages['queue_usage'].format(prefix=self.config.prefixes.queue)
        else:
            text = self.messages['help'].format(**self.config.prefixes.as_dict())
        await self._say(msg.channel, text)

    async def handle_add(self, command: AddToQueue, msg: InboundMessage) -> None:
        if command.is_link:
            track = await self._track_from_link(command.track_id or '', msg)
        else:
            track = await self._track_from_query(command.query or '', msg)
        if track is not None:
            await self.enqueue(track, msg)

    async def _track_from_link(self, track_id: str, msg: InboundMessage) -> Optional[FoundTrack]:
        if not track_id:
            logger.error("Unable to parse track ID from message")
            await self._say(msg.channel, self.messages['invalid_message'])
            return None
        try:
            return await self.player.get_track(track_id)
        except InvalidTrackId:
            await self._say(msg.channel, self.messages['invalid_id'])
        except PlayerNotFound:
            logger.info("No track found for id %s", track_id)
            await self._say(msg.channel, self.messages['not_found'])
        except PlayerError as exc:
            logger.error("Error adding track %s: %s", track_id, exc)
            await self._say(msg.channel, self.messages['add_failed'])
        return None

    async def _track_from_query(self, query: str, msg: InboundMessage) -> Optional[FoundTrack]:
        try:
            results = await self.player.search(query, limit=1)
        except PlayerError as exc:
            logger.error("Search failed for '%s': %s", query, exc)
            await self._say(msg.channel, self.messages['add_failed'])
            return None
        if not results:
            logger.info("Command used but nothing found for query: '%s'", query)
            await self._say(msg.channel, self.messages['not_found'])
            return None
        return results[0]

    async def enqueue(self, track: FoundTrack, msg: InboundMessage) -> None:
        song = track.name
        try:
            accepted = await self.queue.try_enqueue(song, msg.username)
        except PlayerError as exc:
            logger.error("Could not check the current track before queueing %s: %s", song, exc)
            await self._say(msg.channel, self.messages['add_failed'])
            return
        if not accepted:
            await self._say(msg.channel, self.messages['already_queued'].format(song=song))
            return

        # A failed remote add leaves the local entry in place; see DESIGN.md.
        if self.config.add_to_queue:
            try:
                await self.player.add_to_queue(track.id)
                await self._say(msg.channel, self.messages['queue_added'].format(song=song))
            except PlayerNotFound:
                logger.error(
                    "Unable to add song to queue - Song may not exist or you may not have "
                    "the Spotify client open and active"
                )
                await self._say(msg.channel, self.messages['queue_failed'].format(song=song))
            except PlayerError as exc:
                logger.error("Unable to add song to queue - %s", exc)
                await self._say(msg.channel, self.messages['queue_failed'].format(song=song))

        if self.config.add_to_playlist:
            try:
                if await self.player.add_to_playlist(track.id):
                    await self._say(msg.channel, self.messages['playlist_added'].format(song=song))
            except DuplicateTrack:
                logger.info("%s is already in the playlist", song)
                await self._say(msg.channel, self.messages['playlist_duplicate'].format(song=song))
            except PlayerError as exc:
                logger.error("Unable to add song to playlist - %s", exc)
                await self._say(msg.channel, self.messages['playlist_failed'].format(song=song))

    async def handle_current_song(self, msg: InboundMessage) -> None:
        try:
            track = await self.player.get_current_track()
        except PlayerError as exc:
            logger.error("Error getting current track: %s", exc)
            await self._say(msg.channel, self.messages['current_song_failed'])
            return
        if track is None:
            await self._say(msg.channel, self.messages['nothing_playing'])
        else:
            await self._say(msg.channel, self.messages['current_song'].format(song=track.name))

    async def handle_show_queue(self, msg: InboundMessage) -> None:
        await self._respond_private(msg, self.queue.render())

    async def handle_skip(self, msg: InboundMessage) -> None:
        try:
            await self.player.skip_to_next()
        except PlayerError as exc:
            logger.error("Error skipping track: %s", exc)
            await self._say(msg.channel, self.messages['skip_failed'])
            return
        await self._say(msg.channel, self.messages['skipped'])

    async def handle_volume(self, command: SetVolume, msg: InboundMessage) -> None:
        try:
            if command.volume is None:
                volume = await self.player.get_volume()
                text = self.messages['volume_current'].format(volume=volume)
            else:
                volume = await self.player.set_volume(command.volume)
                text = self.messages['volume_set'].format(volume=volume)
        except PlayerError as exc:
            logger.error("Error handling volume command: %s", exc)
            text = self.messages['volume_failed']
        await self._say(msg.channel, text)

    # ---- responses ----
    async def _say(self, channel: str, text: str) -> None:
        if not self.config.chat_feedback:
            return
        try:
            await self.transport.say(channel, text)
        except Exception as exc:
            logger.warning("Failed to send message to %s: %s", channel, exc)

    def _can_whisper(self, username: str) -> bool:
        if not self.config.prefer_whisper:
            return False
        bot = (self.config.bot_username or '').lower()
        return not bot or username.lower() != bot

    async def _respond_private(self, msg: InboundMessage, lines: List[str]) -> None:
        if not self.config.chat_feedback:
            return
        pending = list(lines)
        if self._can_whisper(msg.username):
            try:
                while pending:
                    await self.transport.whisper(msg.username, pending[0])
                    pending.pop(0)
                return
            except Exception as exc:
                logger.warning("Whisper to %s failed, answering in chat: %s", msg.username, exc)
        for line in pending:
            await self._say(msg.channel, line)
