import unittest

from core.conversation import ConversationState, ConversationStore
from core.errors import InvalidTransition


class TestConversationStore(unittest.TestCase):
    def test_set_get_clear(self) -> None:
        store = ConversationStore()
        self.assertIsNone(store.get_state(5))

        store.set_state(5, ConversationState.AWAITING_EMAIL)
        self.assertIs(store.get_state(5), ConversationState.AWAITING_EMAIL)

        store.clear(5)
        self.assertIsNone(store.get_state(5))
        store.clear(5)
        self.assertEqual(len(store), 0)

    def test_new_flow_overwrites_previous_tag(self) -> None:
        store = ConversationStore()
        store.set_state(5, ConversationState.AWAITING_EMAIL)
        store.set_state(5, ConversationState.AWAITING_USER_MESSAGE)
        self.assertIs(store.get_state(5), ConversationState.AWAITING_USER_MESSAGE)

    def test_duration_only_follows_email(self) -> None:
        store = ConversationStore()
        with self.assertRaises(InvalidTransition):
            store.set_state(5, ConversationState.AWAITING_DURATION)

        store.set_state(5, ConversationState.AWAITING_EMAIL)
        store.set_state(5, ConversationState.AWAITING_DURATION)
        self.assertIs(store.get_state(5), ConversationState.AWAITING_DURATION)

    def test_none_is_not_a_settable_tag(self) -> None:
        with self.assertRaises(InvalidTransition):
            ConversationStore().set_state(5, ConversationState.NONE)

    def test_clear_if_only_clears_matching_tag(self) -> None:
        store = ConversationStore()
        store.set_state(5, ConversationState.AWAITING_NEW_EMAIL)

        self.assertFalse(store.clear_if(5, ConversationState.AWAITING_ADMIN_MESSAGE))
        self.assertIs(store.get_state(5), ConversationState.AWAITING_NEW_EMAIL)

        self.assertTrue(store.clear_if(5, ConversationState.AWAITING_NEW_EMAIL))
        self.assertIsNone(store.get_state(5))

    def test_chats_are_independent(self) -> None:
        store = ConversationStore()
        store.set_state(1, ConversationState.AWAITING_EMAIL)
        store.set_state(2, ConversationState.AWAITING_ADMIN_MESSAGE)
        store.clear(1)
        self.assertIs(store.get_state(2), ConversationState.AWAITING_ADMIN_MESSAGE)


if __name__ == '__main__':
    unittest.main()
