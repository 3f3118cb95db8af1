from __future__ import annotations
import asyncio
import logging
import os
import sys
from collections import OrderedDict
from typing import Callable, Optional

from twitchio import eventsub
from twitchio.ext import commands

from .auth_server import wait_for_code
from .config import BotConfig
from .credentials import AuthError, CredentialFile, CredentialStore, SpotifyIdentity
from .dispatcher import ChatTransport, Dispatcher, InboundMessage
from .player import SpotifyPlayer
from .request_queue import Reconciler, RequestQueue

logger = logging.getLogger(__name__)

# Recent chatters kept for whisper lookups.
CHATTER_CACHE_SIZE = 500


def _format_token(token: str) -> str:
    return token.removeprefix('oauth:') if token else token


# ---- bot ----
class ChatBot(commands.Bot, ChatTransport):
    def __init__(
        self,
        config: BotConfig,
        *,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ):
        if not config.twitch_token or not config.bot_user_id or not config.channel:
            raise RuntimeError('TWITCH_TOKEN, BOT_USER_ID and TWITCH_CHANNEL are required')
        super().__init__(
            client_id=config.twitch_client_id,
            client_secret=config.twitch_client_secret,
            bot_id=str(config.bot_user_id),
            prefix='!',
            fetch_client_user=False,
        )
        self.config = config
        self.dispatcher: Optional[Dispatcher] = None
        self.bot_user_id = str(config.bot_user_id)
        self._channel = config.channel.lower()
        self._broadcaster_id: Optional[str] = None
        self._user_token = _format_token(config.twitch_token)
        self._refresh_token = config.twitch_refresh_token or ''
        self._chatter_ids: OrderedDict[str, str] = OrderedDict()
        self._on_fatal = on_fatal

    async def load_tokens(self, path: Optional[str] = None) -> None:
        await super().add_token(self._user_token, self._refresh_token)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Twitch tokens come from the environment; only Spotify credentials are stored.
        return None

    async def setup_hook(self) -> None:
        users = await self.fetch_users(logins=[self._channel])
        if not users:
            raise RuntimeError(f"Twitch channel {self._channel} not found")
        self._broadcaster_id = str(users[0].id)
        payload = eventsub.ChatMessageSubscription(
            broadcaster_user_id=self._broadcaster_id,
            user_id=self.bot_user_id,
        )
        await self.subscribe_websocket(payload=payload, as_bot=True)

    async def event_ready(self) -> None:
        logger.info("Connected to %s's chat", self._channel)

    async def event_message(self, payload) -> None:
        chatter = payload.chatter
        chatter_id = str(getattr(chatter, 'id', '') or '')
        username = getattr(chatter, 'name', None) or ''
        if username and chatter_id:
            self._remember_chatter(username, chatter_id)
        msg = InboundMessage(
            channel=getattr(payload.broadcaster, 'name', None) or self._channel,
            username=username,
            text=payload.text or '',
            is_subscriber=bool(getattr(chatter, 'subscriber', False)),
            is_self=chatter_id == self.bot_user_id,
        )
        if self.dispatcher is None:
            return
        try:
            await self.dispatcher.handle_message(msg)
        except AuthError as exc:
            logger.critical("Spotify credentials are no longer valid: %s", exc)
            if self._on_fatal:
                self._on_fatal(exc)
        except Exception:
            logger.exception("Unhandled error processing message from %s", msg.username)

    def _remember_chatter(self, username: str, chatter_id: str) -> None:
        key = username.lower()
        self._chatter_ids[key] = chatter_id
        self._chatter_ids.move_to_end(key)
        while len(self._chatter_ids) > CHATTER_CACHE_SIZE:
            self._chatter_ids.popitem(last=False)

    # ---- ChatTransport ----
    async def say(self, channel: str, text: str) -> None:
        if not self._broadcaster_id:
            raise RuntimeError(f"Not connected to {channel}")
        partial = self.create_partialuser(self._broadcaster_id, self._channel)
        await partial.send_message(text, sender=self.bot_user_id, token_for=self.bot_user_id)

    async def whisper(self, username: str, text: str) -> None:
        user_id = self._chatter_ids.get(username.lower())
        if not user_id:
            users = await self.fetch_users(logins=[username.lower()])
            if not users:
                raise LookupError(f"Twitch user {username} not found")
            user_id = str(users[0].id)
            self._remember_chatter(username, user_id)
        sender = self.create_partialuser(self.bot_user_id, self.config.bot_username)
        await sender.send_whisper(to_user=user_id, message=text)


# ---- entry ----
async def authorize(store: CredentialStore, config: BotConfig) -> None:
    store.load()
    if store.has_refresh_token:
        await store.ensure_fresh()
        return
    logger.info("No credentials found, performing new authorization")
    auth_url = store.identity.authorize_url()
    logger.warning("Click or go to the following link and give this app permissions\n\n%s\n", auth_url)
    code = await wait_for_code(auth_url, port=config.listen_port)
    await store.authorize_with_code(code)


async def run(config: BotConfig) -> int:
    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error("Configuration error: %s", problem)
        return 1

    identity = SpotifyIdentity(config.spotify_client_id, config.spotify_client_secret, config.redirect_uri)
    store = CredentialStore(identity, CredentialFile(config.auth_store_path))
    logger.info("Authorizing with Spotify")
    try:
        await authorize(store, config)
    except (AuthError, RuntimeError) as exc:
        logger.error("Error authorizing with Spotify: %s", exc)
        return 1

    player = SpotifyPlayer(store, playlist_id=config.playlist_id)
    await player.start()
    queue = RequestQueue(
        player,
        empty_message=config.messages['queue_empty'],
        entry_template=config.messages['queue_entry'],
    )
    reconciler = Reconciler(queue, config.reconcile_interval_ms)

    fatal: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_fatal(exc: BaseException) -> None:
        if not fatal.done():
            fatal.set_exception(exc)

    bot = ChatBot(config, on_fatal=on_fatal)
    bot.dispatcher = Dispatcher(config, player, queue, bot)
    bot_task = asyncio.create_task(bot.start(with_adapter=False))
    reconcile_task = reconciler.start()
    try:
        done, _ = await asyncio.wait(
            {bot_task, reconcile_task, fatal},
            return_when=asyncio.FIRST_COMPLETED,
        )
        return _exit_status(done, bot_task)
    finally:
        await reconciler.stop()
        try:
            await bot.close()
        except Exception:
            logger.exception("Error while closing the chat connection")
        if not bot_task.done():
            bot_task.cancel()
        await asyncio.gather(bot_task, return_exceptions=True)
        await player.close()


def _exit_status(done, bot_task: asyncio.Future) -> int:
    status = 0
    for task in done:
        if task.cancelled():
            continue
        exc = task.exception()
        if isinstance(exc, AuthError):
            logger.critical("Error refreshing Spotify credentials: %s", exc)
            status = 1
        elif exc is not None:
            if task is bot_task:
                logger.error("Error connecting to Twitch - %s", exc)
            else:
                logger.error("Stopping after unexpected error: %s", exc)
            status = 1
    return status


def main() -> None:
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    sys.exit(asyncio.run(run(BotConfig.from_env())))


if __name__ == '__main__':
    main()
