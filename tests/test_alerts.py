import asyncio
import sys

import aiohttp

sys.path.insert(0, '.')

from api.alerts import AlertNotifier


class FakeResponse:
    def __init__(self, status):
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, status=200, error=None):
        self.status = status
        self.error = error
        self.posts = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def post(self, url, json=None, timeout=None):
        if self.error is not None:
            raise self.error
        self.posts.append((url, json, timeout))
        return FakeResponse(self.status)


def _notifier(session):
    cfg = {'telegram_bot_token': 'TOKEN', 'telegram_chat_id': '42'}
    return AlertNotifier(cfg, session_factory=lambda: session)


def test_unresolved_placeholders_disable_alerts():
    notifier = AlertNotifier({'telegram_bot_token': '${TELEGRAM_BOT_TOKEN}', 'telegram_chat_id': '42'})
    assert not notifier.enabled
    assert asyncio.run(notifier.send('hello')) is False


def test_send_posts_to_telegram():
    session = FakeSession()
    assert asyncio.run(_notifier(session).send('hello')) is True
    url, payload, timeout = session.posts[0]
    assert url == 'https://api.telegram.org/botTOKEN/sendMessage'
    assert payload == {'chat_id': '42', 'text': 'hello', 'parse_mode': 'HTML'}
    assert timeout.total == 5


def test_non_200_response_is_a_failure():
    assert asyncio.run(_notifier(FakeSession(status=502)).send('hello')) is False


def test_client_errors_are_contained():
    session = FakeSession(error=aiohttp.ClientConnectionError('refused'))
    assert asyncio.run(_notifier(session).send('hello')) is False


def test_sell_alert_reports_profit():
    session = FakeSession()
    asyncio.run(_notifier(session).sell_filled_alert('abc', 10.0, 1.04, entry_price=1.0))
    text = session.posts[0][1]['text']
    assert 'SELL FILLED' in text
    assert 'P/L: +4.00%' in text


def test_buy_and_trailing_alerts_format_numbers():
    session = FakeSession()
    notifier = _notifier(session)

    async def run():
        await notifier.buy_filled_alert('abc', 19.9, 1.0, 19.9)
        await notifier.trailing_alert(1.04, 1.0967, price=1.1)

    asyncio.run(run())
    buy, trail = (post[1]['text'] for post in session.posts)
    assert 'Size: 19.9' in buy and 'Total: 19.90' in buy
    assert 'Stop moved 1.04 → 1.0967' in trail
    assert 'Price: 1.1000' in trail
