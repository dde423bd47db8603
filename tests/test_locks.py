import threading
import time
import unittest

from core.locks import KeyedLock


class TestKeyedLock(unittest.TestCase):
    def test_entry_is_dropped_after_use(self) -> None:
        keyed = KeyedLock()
        with keyed('a'):
            with keyed('b'):
                self.assertEqual(len(keyed), 2)
        self.assertEqual(len(keyed), 0)

    def test_entry_is_dropped_when_body_raises(self) -> None:
        keyed = KeyedLock()
        with self.assertRaises(ValueError):
            with keyed('a'):
                raise ValueError('boom')
        self.assertEqual(len(keyed), 0)

    def test_same_key_is_exclusive_while_waiters_exist(self) -> None:
        keyed = KeyedLock()
        inside = []
        overlaps = []

        def work() -> None:
            for _ in range(50):
                with keyed('k'):
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(1)
                    time.sleep(0.0005)
                    inside.pop()

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(overlaps, [])
        self.assertEqual(len(keyed), 0)

    def test_many_keys_do_not_accumulate(self) -> None:
        keyed = KeyedLock()
        for user_id in range(1000):
            with keyed(user_id):
                pass
        self.assertEqual(len(keyed), 0)


if __name__ == '__main__':
    unittest.main()
