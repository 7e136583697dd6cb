import asyncio

import aiohttp
import pytest

from pricewatch.bot.commands import CommandRouter
from pricewatch.bot.poller import PollerConfig, TelegramPoller, parse_update
from pricewatch.notify.telegram import TelegramConfig
from storage.alerts_repo import RedisAlertRepository
from storage.users_repo import RedisUserRepository
from tests.helpers.fake_redis import FakeRedis
from tests.helpers.fakes import FakeFetcher


def _update(update_id, text, user=7):
    return {
        "update_id": update_id,
        "message": {"text": text, "chat": {"id": user}, "from": {"id": user, "username": "neo"}},
    }


class _FakeClient:
    def __init__(self, batches):
        self.cfg = TelegramConfig(bot_token="t")
        self.batches = list(batches)   # list | Exception
        self.offsets = []
        self.sent = []

    async def get_updates(self, offset=None):
        self.offsets.append(offset)
        if not self.batches:
            await asyncio.sleep(3600)
        item = self.batches.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def send_message(self, chat_id, text, parse_mode=None):
        self.sent.append((chat_id, text))


class _EchoRouter:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.seen = []

    async def handle(self, msg):
        self.seen.append(msg.text)
        if msg.text == self.fail_on:
            raise RuntimeError("handler bug")
        return f"echo {msg.text}"


def test_parse_update_ignores_non_text():
    assert parse_update({"update_id": 1, "edited_message": {}}) is None
    assert parse_update({"update_id": 1, "message": {"chat": {"id": 1}, "from": {"id": 1}}}) is None
    msg = parse_update(_update(3, "/start", user=99))
    assert (msg.chat_id, msg.user_key, msg.text, msg.username) == (99, 99, "/start", "neo")


@pytest.mark.asyncio
async def test_dispatches_replies_and_advances_offset():
    client = _FakeClient([[_update(10, "/help"), _update(11, "/alerts")], [_update(12, "hi")]])
    poller = TelegramPoller(client, _EchoRouter())

    await poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()

    assert client.sent == [(7, "echo /help"), (7, "echo /alerts"), (7, "echo hi")]
    assert client.offsets[:3] == [None, 12, 13]
    assert poller.handled == 3


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_the_loop():
    client = _FakeClient([[_update(1, "boom"), _update(2, "ok")]])
    poller = TelegramPoller(client, _EchoRouter(fail_on="boom"))

    await poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()

    assert client.sent == [(7, "echo ok")]
    assert client.offsets[-1] == 3


@pytest.mark.asyncio
async def test_poll_errors_back_off_then_recover():
    client = _FakeClient([aiohttp.ClientConnectionError("down"), [_update(5, "x")]])
    poller = TelegramPoller(client, _EchoRouter(), PollerConfig(initial_backoff_s=0.01, max_backoff_s=0.02))

    await poller.start()
    await asyncio.sleep(0.1)
    assert poller.running
    await poller.stop()

    assert client.sent == [(7, "echo x")]
    assert poller.last_ok_at is not None
    assert not poller.running


@pytest.mark.asyncio
async def test_not_found_reply_for_underscored_query_is_sent_escaped():
    r = FakeRedis()
    router = CommandRouter(users=RedisUserRepository(r), alerts=RedisAlertRepository(r), coins=FakeFetcher())
    client = _FakeClient([[_update(1, "/prices my_coin")]])
    poller = TelegramPoller(client, router)

    await poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()

    [(chat_id, text)] = client.sent
    assert chat_id == 7
    assert '"my\\_coin" not found' in text
