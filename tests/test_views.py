import unittest

import views

from fakes import make_record

DAY_MS = views.DAY_MS


class TestViews(unittest.TestCase):
    def test_fmt_bytes(self) -> None:
        self.assertEqual(views.fmt_bytes(0), '0 B')
        self.assertEqual(views.fmt_bytes(512), '512 B')
        self.assertEqual(views.fmt_bytes(1536), '1.50 KB')
        self.assertEqual(views.fmt_bytes(5 * 1024 ** 3), '5.00 GB')

    def test_time_left(self) -> None:
        self.assertEqual(views.time_left(0, 10), (0, 0))
        self.assertEqual(views.time_left(5, 10), (0, 0))
        self.assertEqual(views.time_left(2 * DAY_MS + 3 * 3600 * 1000, 0), (2, 3))

    def test_status_emoji(self) -> None:
        now = 100 * DAY_MS
        self.assertEqual(views.status_emoji(make_record(expiry_ms=now - 1), now), '⛔')
        self.assertEqual(views.status_emoji(make_record(enabled=False, expiry_ms=now + 1), now), '🔴')
        self.assertEqual(views.status_emoji(make_record(expiry_ms=0), now), '💎')
        self.assertEqual(views.status_emoji(make_record(expiry_ms=now + 1), now), '🟢')

    def test_duration_keyboard_shows_prices(self) -> None:
        kb = views.duration_keyboard(views.CB_REG_DURATION, {30: 150, 90: 0})
        self.assertEqual(kb[0], [('30 days - 150', 'reg_duration_30')])
        self.assertEqual(kb[1], [('90 days', 'reg_duration_90')])
        self.assertEqual(len(kb), 4)

    def test_client_card_keyboard(self) -> None:
        rows = views.client_card_keyboard(make_record(listing_id=3, position=2, tg_id=0))
        data = [d for row in rows for _, d in row]
        self.assertEqual(data, ['toggle_3_2', 'delete_3_2', 'back_to_clients'])

        rows = views.client_card_keyboard(make_record(listing_id=3, position=2, tg_id=9))
        self.assertIn('msg_3_2', [d for row in rows for _, d in row])

    def test_callback_data_fits_telegram_limit(self) -> None:
        data = views.extension_decision_keyboard(9_999_999_999, 365, 'deadbeef')[0][0][1]
        self.assertLessEqual(len(data.encode()), 64)

    def test_registration_prompt_escapes_html(self) -> None:
        class Req:
            user_id = 1
            display_name = '<Eve>'
            transport_username = ''
            desired_email = 'a&b'
            duration_days = 30
            created_at = 0

        text = views.registration_prompt(Req())
        self.assertIn('&lt;Eve&gt;', text)
        self.assertIn('a&amp;b', text)

    def test_client_list(self) -> None:
        records = [make_record('a', position=0, expiry_ms=0), make_record('b', position=1, expiry_ms=0)]
        kb = views.client_list_keyboard(records, {'a': 1024 ** 3})
        self.assertEqual(kb[0], [('💎 a ∞', 'client_1_0')])
        self.assertEqual(views.client_list_text(0), '👥 No clients on the panel yet.')

    def test_expiry_warning(self) -> None:
        now = 100 * DAY_MS
        urgent = views.expiry_warning('a<b', now + 5 * 3600 * 1000, now)
        self.assertIn('expires soon', urgent)
        self.assertIn('a&lt;b', urgent)
        self.assertIn('0 d 5 h', urgent)
        self.assertIn('about to expire', views.expiry_warning('a', now + 2 * DAY_MS, now))

    def test_status_text(self) -> None:
        now = 100 * DAY_MS
        records = [
            make_record('a', expiry_ms=now + DAY_MS),
            make_record('b', expiry_ms=now - 1),
            make_record('c', expiry_ms=0),
        ]
        server = {'cpu': 3, 'mem': {'current': 1024 ** 3, 'total': 2 * 1024 ** 3}, 'uptime': 3720,
                  'xray': {'state': 'running', 'version': '1.8.4'}}
        text = views.status_text(server, records, registrations=2, conversations=1, now_ms=now)
        self.assertIn('1.00 GB / 2.00 GB', text)
        self.assertIn('Uptime: 1h 2m', text)
        self.assertIn('Xray: running (1.8.4)', text)
        self.assertIn('🟢 Active: 1', text)
        self.assertIn('⛔ Expired: 1', text)
        self.assertIn('💎 Unlimited: 1', text)
        self.assertIn('Registrations in progress: 2', text)

        down = views.status_text(None, None, 0, 0, server_err='timeout', clients_err='timeout')
        self.assertIn('Unavailable: timeout', down)
        self.assertIn('<b>Clients</b>: ❌ timeout', down)

    def test_new_labels_are_menu_labels(self) -> None:
        self.assertTrue(views.is_menu_label(views.BTN_BROADCAST))
        self.assertTrue(views.is_menu_label('status'))
        self.assertIn([views.BTN_BROADCAST, views.BTN_HELP], views.admin_menu_rows())


if __name__ == '__main__':
    unittest.main()
