import asyncio
import sys
import unittest
from collections import OrderedDict
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import chatdj.bot_app as bot_app
from chatdj.config import BotConfig
from chatdj.credentials import AuthError
from chatdj.dispatcher import InboundMessage


def _bare_bot() -> bot_app.ChatBot:
    bot = bot_app.ChatBot.__new__(bot_app.ChatBot)
    bot.config = BotConfig(channel='djchannel', bot_username='djbot', bot_user_id='42')
    bot.bot_user_id = '42'
    bot._channel = 'djchannel'
    bot._broadcaster_id = '1000'
    bot._chatter_ids = OrderedDict()
    bot._on_fatal = MagicMock()
    bot.dispatcher = MagicMock()
    bot.dispatcher.handle_message = AsyncMock()
    return bot


def _payload(name: str, chatter_id: str, text: str, subscriber: bool = False):
    return SimpleNamespace(
        chatter=SimpleNamespace(name=name, id=chatter_id, subscriber=subscriber),
        broadcaster=SimpleNamespace(name='djchannel', id='1000'),
        text=text,
    )


class ChatBotTests(unittest.IsolatedAsyncioTestCase):
    async def test_event_message_builds_inbound_message(self) -> None:
        bot = _bare_bot()
        await bot.event_message(_payload('viewer', '7', ' !queue song ', subscriber=True))
        bot.dispatcher.handle_message.assert_awaited_once_with(
            InboundMessage(
                channel='djchannel',
                username='viewer',
                text=' !queue song ',
                is_subscriber=True,
                is_self=False,
            )
        )
        self.assertEqual(bot._chatter_ids, {'viewer': '7'})

    async def test_own_messages_are_flagged(self) -> None:
        bot = _bare_bot()
        await bot.event_message(_payload('djbot', '42', '!skip'))
        msg = bot.dispatcher.handle_message.await_args.args[0]
        self.assertTrue(msg.is_self)

    async def test_auth_error_is_fatal(self) -> None:
        bot = _bare_bot()
        error = AuthError('revoked')
        bot.dispatcher.handle_message.side_effect = error
        await bot.event_message(_payload('viewer', '7', '!skip'))
        bot._on_fatal.assert_called_once_with(error)

    async def test_unexpected_errors_are_logged(self) -> None:
        bot = _bare_bot()
        bot.dispatcher.handle_message.side_effect = ValueError('boom')
        with self.assertLogs('chatdj.bot_app', level='ERROR'):
            await bot.event_message(_payload('viewer', '7', '!skip'))
        bot._on_fatal.assert_not_called()

    async def test_say_sends_as_bot(self) -> None:
        bot = _bare_bot()
        partial = MagicMock()
        partial.send_message = AsyncMock()
        bot.create_partialuser = MagicMock(return_value=partial)
        await bot.say('djchannel', 'hello')
        bot.create_partialuser.assert_called_once_with('1000', 'djchannel')
        partial.send_message.assert_awaited_once_with('hello', sender='42', token_for='42')

    async def test_whisper_uses_known_chatter_id(self) -> None:
        bot = _bare_bot()
        bot._chatter_ids = OrderedDict(viewer='7')
        sender = MagicMock()
        sender.send_whisper = AsyncMock()
        bot.create_partialuser = MagicMock(return_value=sender)
        bot.fetch_users = AsyncMock()
        await bot.whisper('Viewer', 'queue line')
        bot.fetch_users.assert_not_awaited()
        sender.send_whisper.assert_awaited_once_with(to_user='7', message='queue line')

    async def test_chatter_cache_is_bounded(self) -> None:
        bot = _bare_bot()
        with patch.object(bot_app, 'CHATTER_CACHE_SIZE', 3):
            for n in range(5):
                await bot.event_message(_payload(f'viewer{n}', str(n), 'hello'))
            # Chatting again keeps viewer2 over the newer viewer3.
            await bot.event_message(_payload('viewer2', '2', 'hello again'))
            await bot.event_message(_payload('viewer5', '5', 'hi'))
        self.assertEqual(list(bot._chatter_ids), ['viewer4', 'viewer2', 'viewer5'])

    async def test_whisper_looks_up_evicted_user_once(self) -> None:
        bot = _bare_bot()
        sender = MagicMock()
        sender.send_whisper = AsyncMock()
        bot.create_partialuser = MagicMock(return_value=sender)
        bot.fetch_users = AsyncMock(return_value=[SimpleNamespace(id=99)])
        await bot.whisper('Viewer', 'line 1')
        await bot.whisper('viewer', 'line 2')
        bot.fetch_users.assert_awaited_once_with(logins=['viewer'])
        sender.send_whisper.assert_awaited_with(to_user='99', message='line 2')

    async def test_whisper_to_unknown_user_fails(self) -> None:
        bot = _bare_bot()
        bot.fetch_users = AsyncMock(return_value=[])
        with self.assertRaises(LookupError):
            await bot.whisper('ghost', 'hi')


class RunTests(unittest.IsolatedAsyncioTestCase):
    async def test_invalid_config_exits_non_zero(self) -> None:
        with self.assertLogs('chatdj.bot_app', level='ERROR'):
            status = await bot_app.run(BotConfig(channel=None))
        self.assertEqual(status, 1)

    async def test_authorization_failure_exits_non_zero(self) -> None:
        config = BotConfig(
            channel='djchannel',
            bot_username='djbot',
            bot_user_id='42',
            twitch_client_id='c',
            twitch_client_secret='s',
            twitch_token='t',
            spotify_client_id='sc',
            spotify_client_secret='ss',
        )
        with patch.object(bot_app, 'authorize', AsyncMock(side_effect=AuthError('invalid_grant'))):
            with self.assertLogs('chatdj.bot_app', level='ERROR'):
                status = await bot_app.run(config)
        self.assertEqual(status, 1)

    async def test_exit_status_for_fatal_auth_error(self) -> None:
        loop = asyncio.get_running_loop()
        fatal = loop.create_future()
        fatal.set_exception(AuthError('revoked'))
        bot_task = loop.create_future()
        with self.assertLogs('chatdj.bot_app', level='CRITICAL'):
            self.assertEqual(bot_app._exit_status({fatal}, bot_task), 1)
        bot_task.cancel()

    async def test_exit_status_clean_shutdown(self) -> None:
        bot_task = asyncio.get_running_loop().create_future()
        bot_task.set_result(None)
        self.assertEqual(bot_app._exit_status({bot_task}, bot_task), 0)


if __name__ == "__main__":
    unittest.main()
