import asyncio
import unittest

from core.broadcast import Broadcast
from core.conversation import ConversationState, ConversationStore
from core.ratelimit import RateLimiter
from core.relay import MessageRelay
from core.sweeper import ExpirySweeper
from core.workflows import ExtensionWorkflow, Profile, RegistrationWorkflow

from fakes import FakeClock, FakeGateway, FakePanel

DAY = 24 * 3600


class TestExpirySweeper(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.conversations = ConversationStore()
        gateway = FakeGateway()
        panel = FakePanel()
        self.registrations = RegistrationWorkflow(self.conversations, gateway, panel, (900,), self.clock)
        self.extensions = ExtensionWorkflow(gateway, panel, (900,), self.clock)
        self.relay = MessageRelay(self.conversations, gateway, (900,), self.clock)
        self.limiter = RateLimiter(10, 60, clock=self.clock)
        self.broadcasts = Broadcast(self.conversations, gateway, panel, self.clock)
        self.sweeper = ExpirySweeper(
            self.registrations, self.extensions, self.relay, self.limiter, ttl=DAY, interval=3600,
            broadcasts=self.broadcasts,
        )

    async def test_sweep_removes_only_stale_entries(self) -> None:
        self.registrations.begin(1, Profile(chat_id=1))
        self.relay.begin_admin_message(900, 1, 'one')
        self.broadcasts.begin(901)
        self.limiter.admit(1)
        self.clock.advance(2 * 3600)
        self.registrations.begin(2, Profile(chat_id=2))
        self.clock.advance(23 * 3600)

        removed = self.sweeper.sweep_once()

        self.assertEqual(removed['registrations'], 1)
        self.assertEqual(removed['relays'], 1)
        self.assertEqual(removed['rate_limits'], 1)
        self.assertEqual(removed['broadcasts'], 1)
        self.assertIsNone(self.conversations.get_state(901))
        self.assertIsNone(self.registrations.get(1))
        self.assertIsNotNone(self.registrations.get(2))
        self.assertIsNone(self.conversations.get_state(900))
        self.assertIs(self.conversations.get_state(2), ConversationState.AWAITING_EMAIL)

    async def test_pending_requests_expire_too(self) -> None:
        self.registrations.begin(1, Profile(chat_id=1))
        self.registrations.submit_email(1, 'alice')
        await self.registrations.submit_duration(1, 30)
        self.clock.advance(DAY + 1)

        self.assertEqual(self.sweeper.sweep_once()['registrations'], 1)
        self.assertEqual(len(self.registrations), 0)

    async def test_start_and_stop(self) -> None:
        sweeper = ExpirySweeper(
            self.registrations, self.extensions, self.relay, self.limiter, ttl=DAY, interval=0.01,
        )
        sweeper.start()
        self.assertTrue(sweeper.running)
        await asyncio.sleep(0.05)
        await asyncio.wait_for(sweeper.stop(timeout=1.0), timeout=2.0)
        self.assertFalse(sweeper.running)

    async def test_loop_survives_a_failing_sweep(self) -> None:
        calls = []

        def broken(ttl: float) -> int:
            calls.append(ttl)
            raise RuntimeError('boom')

        self.relay.expire = broken
        sweeper = ExpirySweeper(
            self.registrations, self.extensions, self.relay, self.limiter, ttl=DAY, interval=0.01,
        )
        with self.assertLogs('xui_bot.sweeper', level='ERROR'):
            sweeper.start()
            await asyncio.sleep(0.05)
            await sweeper.stop(timeout=1.0)
        self.assertGreaterEqual(len(calls), 2)

    async def test_stop_without_start_is_noop(self) -> None:
        await self.sweeper.stop()
        self.assertFalse(self.sweeper.running)


if __name__ == '__main__':
    unittest.main()
