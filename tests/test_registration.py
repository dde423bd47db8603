import asyncio
import unittest

import views
from core.conversation import ConversationState, ConversationStore
from core.errors import DuplicateRequest, ExternalCallFailed, NotFound, ValidationFailed
from core.workflows import Profile, RegistrationWorkflow, RequestStatus, validate_email

from fakes import FakeClock, FakeGateway, FakePanel

ADMINS = (900, 901)
USER = 42


class TestValidateEmail(unittest.TestCase):
    def test_length_bounds(self) -> None:
        with self.assertRaises(ValidationFailed):
            validate_email('ab')
        self.assertEqual(validate_email('abc'), 'abc')
        self.assertEqual(validate_email('a' * 32), 'a' * 32)
        with self.assertRaises(ValidationFailed):
            validate_email('a' * 33)

    def test_trims_and_rejects_blank(self) -> None:
        self.assertEqual(validate_email('  carol  '), 'carol')
        with self.assertRaises(ValidationFailed):
            validate_email('   ')

    def test_menu_labels_are_refused(self) -> None:
        with self.assertRaises(ValidationFailed):
            validate_email(views.BTN_REGISTER)
        with self.assertRaises(ValidationFailed):
            validate_email('Settings')
        self.assertEqual(validate_email('backup'), 'backup')


class TestRegistrationWorkflow(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.conversations = ConversationStore()
        self.gateway = FakeGateway()
        self.panel = FakePanel()
        self.wf = RegistrationWorkflow(self.conversations, self.gateway, self.panel, ADMINS, self.clock)

    def _begin(self):
        return self.wf.begin(USER, Profile(chat_id=USER, display_name='Alice', transport_username='alice_tg'))

    async def _pending(self, email: str = 'alice', days: int = 30):
        self._begin()
        self.wf.submit_email(USER, email)
        return await self.wf.submit_duration(USER, days)

    def test_begin_sets_awaiting_email(self) -> None:
        req = self._begin()
        self.assertIs(req.status, RequestStatus.INPUT_EMAIL)
        self.assertIs(self.conversations.get_state(USER), ConversationState.AWAITING_EMAIL)

    def test_short_email_keeps_state_then_valid_email_advances(self) -> None:
        self._begin()
        with self.assertRaises(ValidationFailed):
            self.wf.submit_email(USER, 'ab')
        self.assertIs(self.wf.get(USER).status, RequestStatus.INPUT_EMAIL)
        self.assertIs(self.conversations.get_state(USER), ConversationState.AWAITING_EMAIL)

        req = self.wf.submit_email(USER, 'abc')
        self.assertIs(req.status, RequestStatus.INPUT_DURATION)
        self.assertEqual(req.desired_email, 'abc')
        self.assertIs(self.conversations.get_state(USER), ConversationState.AWAITING_DURATION)

    def test_submit_email_without_request(self) -> None:
        with self.assertRaises(NotFound):
            self.wf.submit_email(USER, 'alice')

    async def test_submit_duration_fans_out_to_every_admin(self) -> None:
        req = await self._pending()

        self.assertIs(req.status, RequestStatus.PENDING)
        self.assertIsNone(self.conversations.get_state(USER))
        self.assertEqual(sorted(m['chat_id'] for m in self.gateway.sent), list(ADMINS))
        for msg in self.gateway.sent:
            self.assertEqual(msg['keyboard'], views.registration_decision_keyboard(USER))
            self.assertIn('alice', msg['text'])

    async def test_begin_while_pending_is_refused(self) -> None:
        await self._pending()
        with self.assertRaises(DuplicateRequest):
            self._begin()
        self.assertIs(self.wf.get(USER).status, RequestStatus.PENDING)

    async def test_begin_again_before_pending_restarts(self) -> None:
        self._begin()
        self.wf.submit_email(USER, 'first')
        req = self._begin()
        self.assertEqual(req.desired_email, '')
        self.assertIs(req.status, RequestStatus.INPUT_EMAIL)

    async def test_approve_creates_client_and_delivers_link(self) -> None:
        await self._pending('alice', 90)

        req = await self.wf.decide(USER, ADMINS[0], approve=True)

        self.assertIs(req.status, RequestStatus.APPROVED)
        self.assertEqual(self.panel.create_calls, [('alice', 90, USER)])
        self.assertIsNone(self.wf.get(USER))
        user_msgs = self.gateway.sent_to(USER)
        self.assertEqual(len(user_msgs), 1)
        self.assertIn('https://sub.example/alice', user_msgs[0]['text'])

    async def test_reject_notifies_user_and_drops_request(self) -> None:
        await self._pending()

        req = await self.wf.decide(USER, ADMINS[1], approve=False)

        self.assertIs(req.status, RequestStatus.REJECTED)
        self.assertEqual(self.panel.create_calls, [])
        self.assertIsNone(self.wf.get(USER))
        self.assertIn('rejected', self.gateway.sent_to(USER)[0]['text'])

    async def test_concurrent_decisions_reach_the_panel_once(self) -> None:
        await self._pending()
        self.panel.delay = 0.05

        results = await asyncio.gather(
            self.wf.decide(USER, ADMINS[0], approve=True),
            self.wf.decide(USER, ADMINS[1], approve=True),
            return_exceptions=True,
        )

        self.assertEqual(len(self.panel.create_calls), 1)
        self.assertEqual(sum(isinstance(r, NotFound) for r in results), 1)
        self.assertEqual(sum(getattr(r, 'status', None) is RequestStatus.APPROVED for r in results), 1)

    async def test_approve_and_reject_race_has_one_winner(self) -> None:
        await self._pending()
        self.panel.delay = 0.05

        results = await asyncio.gather(
            self.wf.decide(USER, ADMINS[0], approve=True),
            self.wf.decide(USER, ADMINS[1], approve=False),
            return_exceptions=True,
        )

        self.assertEqual(sum(isinstance(r, NotFound) for r in results), 1)

    async def test_panel_failure_leaves_request_pending(self) -> None:
        await self._pending()
        self.panel.create_result = (False, 'duplicate email')

        with self.assertRaises(ExternalCallFailed):
            await self.wf.decide(USER, ADMINS[0], approve=True)
        self.assertIs(self.wf.get(USER).status, RequestStatus.PENDING)

        self.panel.create_result = (True, None)
        req = await self.wf.decide(USER, ADMINS[0], approve=True)
        self.assertIs(req.status, RequestStatus.APPROVED)
        self.assertEqual(len(self.panel.create_calls), 2)

    async def test_begin_during_approval_is_refused(self) -> None:
        await self._pending()
        self.panel.delay = 0.05

        task = asyncio.ensure_future(self.wf.decide(USER, ADMINS[0], approve=True))
        await asyncio.sleep(0.01)
        with self.assertRaises(DuplicateRequest):
            self._begin()
        await task

    async def test_decide_without_request_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            await self.wf.decide(USER, ADMINS[0], approve=True)

    async def test_duration_twice_is_duplicate(self) -> None:
        await self._pending()
        with self.assertRaises(DuplicateRequest):
            await self.wf.submit_duration(USER, 30)
        self.assertEqual(len(self.gateway.sent), len(ADMINS))

    async def test_user_cannot_start_over_before_hearing_the_outcome(self) -> None:
        for approve in (True, False):
            with self.subTest(approve=approve):
                await self._pending()
                seen = []
                send = self.gateway.send_text

                async def send_and_begin(chat_id, text, keyboard=None):
                    if chat_id == USER:
                        try:
                            self._begin()
                        except DuplicateRequest:
                            seen.append('refused')
                        else:
                            seen.append('started')
                    return await send(chat_id, text, keyboard)

                self.gateway.send_text = send_and_begin
                try:
                    await self.wf.decide(USER, ADMINS[0], approve=approve)
                finally:
                    self.gateway.send_text = send

                self.assertEqual(seen, ['refused'])
                self.assertIsNone(self.wf.get(USER))

    async def test_user_locks_are_not_retained(self) -> None:
        await self._pending()
        await self.wf.decide(USER, ADMINS[0], approve=True)
        self.assertEqual(len(self.wf._lock_for), 0)

        for user_id in range(100, 200):
            self.wf.begin(user_id, Profile(chat_id=user_id))
        self.clock.advance(25 * 3600)
        self.assertEqual(self.wf.expire(24 * 3600), 100)
        self.assertEqual(len(self.wf._lock_for), 0)

    def test_expire_uses_created_at(self) -> None:
        self._begin()
        self.clock.advance(23 * 3600)
        self.assertEqual(self.wf.expire(24 * 3600), 0)
        self.clock.advance(2 * 3600)
        self.assertEqual(self.wf.expire(24 * 3600), 1)
        self.assertIsNone(self.wf.get(USER))
        self.assertIsNone(self.conversations.get_state(USER))


if __name__ == '__main__':
    unittest.main()
