import threading
import unittest
from dataclasses import replace

from core.client_cache import CachedClientRecord, ClientRecordCache, set_enabled

from fakes import make_record


class TestCachedClientRecord(unittest.TestCase):
    def test_with_enabled_copies_the_document(self) -> None:
        doc = {
            'id': 'u-1', 'email': 'bob', 'enable': True, 'expiryTime': 1.7e12,
            'totalGB': 0, 'tgId': 9, 'subId': 'sub', 'flow': 'xtls-rprx-vision',
            'customPanelField': {'nested': [1, 2]},
        }
        record = CachedClientRecord.from_panel(3, 1, doc, 'vless')

        out = record.with_enabled(False)

        self.assertFalse(out.enabled)
        self.assertFalse(out.raw['enable'])
        self.assertEqual(out.raw['customPanelField'], {'nested': [1, 2]})
        self.assertEqual(out.expiry_ms, 1_700_000_000_000)
        self.assertTrue(record.enabled)
        self.assertTrue(doc['enable'])
        out.raw['customPanelField']['nested'].append(3)
        self.assertEqual(doc['customPanelField'], {'nested': [1, 2]})

    def test_client_key_by_protocol(self) -> None:
        doc = {'id': 'u-1', 'password': 'pw', 'email': 'e'}
        self.assertEqual(CachedClientRecord.from_panel(1, 0, doc, 'vmess').client_key, 'u-1')
        self.assertEqual(CachedClientRecord.from_panel(1, 0, doc, 'trojan').client_key, 'pw')
        self.assertEqual(CachedClientRecord.from_panel(1, 0, doc, 'shadowsocks').client_key, 'e')

    def test_string_flags_are_decoded(self) -> None:
        record = CachedClientRecord.from_panel(1, 0, {'email': 'x', 'enable': 'false', 'tgId': '12'})
        self.assertFalse(record.enabled)
        self.assertEqual(record.tg_id, 12)
        self.assertTrue(record.unlimited_expiry)


class TestClientRecordCache(unittest.TestCase):
    def test_store_load_patch(self) -> None:
        cache = ClientRecordCache()
        record = make_record('alice', listing_id=2, position=4)
        cache.store(record.key, record)

        self.assertEqual(cache.load((2, 4)), record)
        self.assertIsNone(cache.load((2, 5)))

        patched = cache.patch((2, 4), set_enabled(False))
        self.assertFalse(patched.enabled)
        self.assertFalse(cache.load((2, 4)).enabled)
        self.assertEqual(cache.load((2, 4)).raw['flow'], 'xtls-rprx-vision')

    def test_patch_of_missing_key_is_none(self) -> None:
        self.assertIsNone(ClientRecordCache().patch((1, 1), set_enabled(True)))

    def test_listing_replaces_wholesale(self) -> None:
        cache = ClientRecordCache()
        cache.store_listing([make_record('a', position=0), make_record('b', position=1)])
        cache.store_listing([make_record('c', position=0)])
        self.assertEqual(cache.load((1, 0)).email, 'c')
        self.assertEqual(cache.load((1, 1)).email, 'b')
        self.assertEqual(len(cache), 2)

    def test_concurrent_patches_are_not_lost(self) -> None:
        cache = ClientRecordCache()
        record = make_record('alice', expiry_ms=0)
        cache.store(record.key, record)

        def bump() -> None:
            for _ in range(200):
                cache.patch(record.key, lambda r: replace(r, expiry_ms=r.expiry_ms + 1))

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(cache.load(record.key).expiry_ms, 800)


if __name__ == '__main__':
    unittest.main()
