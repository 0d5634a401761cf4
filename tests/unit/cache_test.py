from ddt import ddt, data, unpack
import json
from mockito import when, mock, unstub, verify
import os
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import get_type_hints, IO, Optional
from unittest import TestCase

from netcache.cache import Cache, FileCache, HttpAwareCache, PendingEntry
from netcache.model import CacheMetaData
from netcache.util import Tee


ENTRY_PATH = Path('9', '8', 'c', 'e', '0', 'b4f1e97102727131a3807371ff3494db4343c7ca41027ad7271a47af279')


def _insert(cache: Cache, meta_data: CacheMetaData, body: bytes) -> bool:
    pending = cache.prepare(meta_data)
    pending.write(body)
    return cache.insert(pending)


@ddt
class TestFileCache(TestCase):
    def setUp(self):
        self.__temporary_directory = TemporaryDirectory()
        self.directory = Path(self.__temporary_directory.name)

    def tearDown(self):
        self.__temporary_directory.cleanup()

    def _write_entry_file(self, contents: str) -> Path:
        entry_path = self.directory / 'entries' / ENTRY_PATH
        entry_path.parent.mkdir(parents=True, exist_ok=True)
        with open(entry_path, 'w') as f:
            f.write(contents)
        return entry_path

    def _write_body_file(self, contents: bytes) -> None:
        body_path = self.directory / 'bodies' / 'path' / 'to' / 'body'
        body_path.parent.mkdir(parents=True, exist_ok=True)
        with open(body_path, 'wb') as f:
            f.write(contents)

    @data(
        (
            # When the entry file is for the requested URL, return its body and metadata.
            json.dumps({
                'meta_data': {
                    'url': 'http://google.ca',
                    'status': 200,
                    'reason': 'OK',
                    'headers': {
                        'ETag': 'gibberish',
                    },
                    'last_modified': None,
                    'expiration_date': 1234.0,
                    'save_to_disk': True,
                },
                'body': str(Path('path', 'to', 'body')),
            }),
            CacheMetaData(
                url='http://google.ca',
                status=200,
                reason='OK',
                headers={
                    'ETag': 'gibberish',
                },
                expiration_date=1234.0,
            ),
        ),

        (
            # When no entry file exists for the URL consider it a cache miss.
            None,
            None,
        ),

        (
            # When the entry file belongs to another URL, consider it a cache miss.
            json.dumps({
                'meta_data': {
                    'url': 'http://google.com',
                },
                'body': str(Path('path', 'to', 'body')),
            }),
            None,
        ),
    )
    @unpack
    def test_data(self, entry_contents: Optional[str], expected_meta_data: Optional[CacheMetaData]):
        expected_body_contents = b'some contents'
        self._write_body_file(expected_body_contents)
        if entry_contents is not None:
            self._write_entry_file(entry_contents)

        cache = FileCache(self.directory, 5)
        meta_data = cache.meta_data('http://google.ca')
        body = cache.data('http://google.ca')

        self.assertEqual(expected_meta_data, meta_data)
        if expected_meta_data is None:
            self.assertIs(None, body)
        else:
            # Need to check file contents, not file descriptors.
            self.assertEqual(expected_body_contents, body.read())

    @data(
        'this is not json',
        json.dumps({'body': 'path'}),
        json.dumps({'meta_data': {'no_url': True}, 'body': 'path'}),
    )
    def test_corrupt_entries_are_deleted(self, entry_contents: str):
        entry_path = self._write_entry_file(entry_contents)

        cache = FileCache(self.directory, 5)

        self.assertIs(None, cache.data('http://google.ca'))
        self.assertFalse(entry_path.exists(), 'A corrupt entry file should be deleted')

    def test_entry_without_body_is_a_miss(self):
        entry_path = self._write_entry_file(json.dumps({
            'meta_data': {'url': 'http://google.ca'},
            'body': str(Path('path', 'to', 'nowhere')),
        }))

        cache = FileCache(self.directory, 5)

        self.assertIs(None, cache.data('http://google.ca'))
        self.assertFalse(entry_path.exists())

    def test_insert(self):
        meta_data = CacheMetaData(url='http://google.ca', status=200, reason='OK',
                                  headers={'Vary': 'Accept', 'ETag': 'gibberish'})

        cache = FileCache(self.directory, 5)
        self.assertTrue(_insert(cache, meta_data, b'some contents'))

        expected_path = self.directory / 'entries' / ENTRY_PATH
        self.assertTrue(expected_path.exists(), 'The cache should create the file for the cache entry')
        with open(expected_path, 'r') as f:
            entry_contents = json.load(f)

        # The body path is deliberately not predictable.
        del entry_contents['body']
        self.assertEqual({
            'meta_data': {
                'url': 'http://google.ca',
                'status': 200,
                'reason': 'OK',
                'headers': {'Vary': 'Accept', 'ETag': 'gibberish'},
                'last_modified': None,
                'expiration_date': None,
                'save_to_disk': True,
            },
        }, entry_contents)

        self.assertEqual(b'some contents', cache.data('http://google.ca').read())
        self.assertEqual([], list((self.directory / 'prepared').iterdir()),
                         'The temporary body should have been moved into place')

    def test_insert_replaces_the_previous_entry(self):
        cache = FileCache(self.directory, 5)
        _insert(cache, CacheMetaData(url='http://google.ca'), b'old')
        _insert(cache, CacheMetaData(url='http://google.ca', reason='Still OK'), b'new')

        self.assertEqual(b'new', cache.data('http://google.ca').read())
        self.assertEqual('Still OK', cache.meta_data('http://google.ca').reason)
        bodies = [path for path in (self.directory / 'bodies').rglob('*') if path.is_file()]
        self.assertEqual(1, len(bodies), 'The old body should be deleted')

    def test_nothing_is_visible_before_insert(self):
        cache = FileCache(self.directory, 5)
        pending = cache.prepare(CacheMetaData(url='http://google.ca'))
        pending.write(b'some contents')

        self.assertIs(None, cache.data('http://google.ca'))

    def test_insert_refuses_a_foreign_pending_entry(self):
        cache = FileCache(self.directory, 5)
        other = FileCache(self.directory / 'other', 5)
        pending = other.prepare(CacheMetaData(url='http://google.ca'))

        self.assertFalse(cache.insert(pending))
        self.assertTrue(pending.closed)

    def test_insert_twice_is_refused(self):
        cache = FileCache(self.directory, 5)
        pending = cache.prepare(CacheMetaData(url='http://google.ca'))
        pending.write(b'x')

        self.assertTrue(cache.insert(pending))
        self.assertFalse(cache.insert(pending))

    def test_prepare_refuses_what_must_not_be_stored(self):
        cache = FileCache(self.directory, 5)

        self.assertIs(None, cache.prepare(CacheMetaData(url='http://google.ca', save_to_disk=False)))

    def test_update_meta_data(self):
        cache = FileCache(self.directory, 5)
        _insert(cache, CacheMetaData(url='http://google.ca', expiration_date=1.0), b'some contents')

        self.assertTrue(cache.update_meta_data(CacheMetaData(url='http://google.ca', expiration_date=2.0)))

        self.assertEqual(2.0, cache.meta_data('http://google.ca').expiration_date)
        self.assertEqual(b'some contents', cache.data('http://google.ca').read())

    def test_update_meta_data_without_entry(self):
        cache = FileCache(self.directory, 5)

        self.assertFalse(cache.update_meta_data(CacheMetaData(url='http://google.ca')))
        self.assertIs(None, cache.meta_data('http://google.ca'))

    def test_remove(self):
        cache = FileCache(self.directory, 5)
        _insert(cache, CacheMetaData(url='http://google.ca'), b'some contents')

        self.assertTrue(cache.remove('http://google.ca'))

        self.assertIs(None, cache.data('http://google.ca'))
        self.assertEqual(0, cache.cache_size())
        self.assertFalse(cache.remove('http://google.ca'), 'Nothing is left to remove')

    def test_remove_leaves_unfinished_insertions_alone(self):
        cache = FileCache(self.directory, 5)
        _insert(cache, CacheMetaData(url='http://google.ca'), b'old')
        pending = cache.prepare(CacheMetaData(url='http://google.ca'))
        pending.write(b'new')

        cache.remove('http://google.ca')
        pending.write(b' and more')

        self.assertTrue(cache.insert(pending))
        self.assertEqual(b'new and more', cache.data('http://google.ca').read())

    def test_clear_invalidates_unfinished_insertions(self):
        cache = FileCache(self.directory, 5)
        pending = cache.prepare(CacheMetaData(url='http://google.ca'))
        pending.write(b'some contents')

        cache.clear()

        self.assertFalse(cache.insert(pending))
        self.assertIs(None, cache.data('http://google.ca'))
        self.assertTrue(pending.closed)

    def test_clear(self):
        cache = FileCache(self.directory, 5)
        _insert(cache, CacheMetaData(url='http://google.ca'), b'a')
        _insert(cache, CacheMetaData(url='http://google.com'), b'b')
        cache.prepare(CacheMetaData(url='http://google.fr'))

        cache.clear()

        self.assertEqual(0, cache.cache_size())
        self.assertIs(None, cache.data('http://google.ca'))
        self.assertIs(None, cache.data('http://google.com'))
        self.assertFalse((self.directory / 'prepared').exists())

    def test_cache_size(self):
        cache = FileCache(self.directory, 5)
        self.assertEqual(0, cache.cache_size())

        _insert(cache, CacheMetaData(url='http://google.ca'), b'x' * 1000)

        self.assertGreater(cache.cache_size(), 1000)

    def test_nothing_is_created_until_the_first_insert(self):
        directory = self.directory / 'not' / 'yet'

        cache = FileCache(directory, 5)

        self.assertFalse(directory.exists())
        self.assertIs(None, cache.data('http://google.ca'))
        self.assertEqual(0, cache.cache_size())

    def test_expire_removes_least_recently_used_entries(self):
        urls = ['http://a.example', 'http://b.example', 'http://c.example']
        cache = FileCache(self.directory, 5)
        for index, url in enumerate(urls):
            _insert(cache, CacheMetaData(url=url), b'x' * 1000)
            entry_path = self.directory / 'entries' / cache._get_path(url)
            os.utime(entry_path, (1000 * (index + 1), 1000 * (index + 1)))

        bounded = FileCache(self.directory, 5, maximum_size=cache.cache_size() - 1)
        size = bounded.expire()

        self.assertIs(None, bounded.data(urls[0]), 'The oldest entry should be expired')
        self.assertIsNot(None, bounded.data(urls[1]))
        self.assertIsNot(None, bounded.data(urls[2]))
        self.assertEqual(bounded.cache_size(), size)

    def test_expire_without_maximum(self):
        cache = FileCache(self.directory, 5)
        _insert(cache, CacheMetaData(url='http://google.ca'), b'x' * 1000)

        self.assertEqual(cache.cache_size(), cache.expire())
        self.assertIsNot(None, cache.data('http://google.ca'))


class TestPendingEntry(TestCase):
    def test_discard_deletes_the_file(self):
        with TemporaryDirectory() as directory:
            cache = FileCache(Path(directory), 5)
            pending = cache.prepare(CacheMetaData(url='http://google.ca'))
            self.assertIsInstance(pending, PendingEntry)
            pending.write(b'partial')

            pending.discard()

            self.assertTrue(pending.closed)
            self.assertFalse(pending.path.exists())
            # Discarding twice is harmless.
            pending.discard()


@ddt
class TestHttpAwareCache(TestCase):
    def setUp(self):
        self.__wrapped = mock(Cache)
        self.__sut = HttpAwareCache(self.__wrapped)

    def tearDown(self):
        unstub()

    @data(
        (
            # When the decorated cache does not have an element, neither does the HTTP-aware cache.
            None,
            None,
        ),
        (
            # When the cached entry is a 5xx error, it does not qualify for caching by HTTP rules.
            CacheMetaData(url='http://google.ca', status=500, reason='Internal Server Error'),
            None,
        ),
        (
            # When the cached entry is a 404, it does not qualify either.
            CacheMetaData(url='http://google.ca', status=404, reason='Not Found'),
            None,
        ),
        (
            CacheMetaData(url='http://google.ca', status=200, reason='OK'),
            CacheMetaData(url='http://google.ca', status=200, reason='OK'),
        ),
        (
            CacheMetaData(url='http://google.ca', status=203, reason='OK'),
            CacheMetaData(url='http://google.ca', status=203, reason='OK'),
        ),
        (
            CacheMetaData(url='http://google.ca', status=300, reason='Multiple Choices'),
            CacheMetaData(url='http://google.ca', status=300, reason='Multiple Choices'),
        ),
        (
            CacheMetaData(url='http://google.ca', status=301, reason='Moved Permanently'),
            CacheMetaData(url='http://google.ca', status=301, reason='Moved Permanently'),
        ),
    )
    @unpack
    def test_meta_data(self, decorated_result: Optional[CacheMetaData], expected: Optional[CacheMetaData]):
        # region Set up
        when(self.__wrapped).meta_data('http://google.ca').thenReturn(decorated_result)
        # endregion

        # region Exercise
        meta_data = self.__sut.meta_data('http://google.ca')
        # endregion

        # region Verify
        self.assertEqual(expected, meta_data)
        # endregion

    @data(
        # When the status code is 200, the response can be cached.
        (CacheMetaData(url='http://google.ca', status=200), True),
        # When the status code is 500, the response is not cached.
        (CacheMetaData(url='http://google.ca', status=500), False),
        # When the status code is 302, the response is not cached.
        (CacheMetaData(url='http://google.ca', status=302), False),
        # When the response must not be stored, it is not cached.
        (CacheMetaData(url='http://google.ca', status=200, save_to_disk=False), False),
    )
    @unpack
    def test_prepare(self, meta_data: CacheMetaData, expected_to_be_cached: bool):
        # region set up
        pending = mock(PendingEntry)
        when(self.__wrapped).prepare(meta_data).thenReturn(pending)
        # endregion

        result = self.__sut.prepare(meta_data)

        self.assertIs(pending if expected_to_be_cached else None, result)
        verify(self.__wrapped, 1 if expected_to_be_cached else 0).prepare(meta_data)

    def test_update_meta_data_removes_what_may_no_longer_be_stored(self):
        meta_data = CacheMetaData(url='http://google.ca', save_to_disk=False)
        when(self.__wrapped).remove('http://google.ca').thenReturn(True)

        self.assertFalse(self.__sut.update_meta_data(meta_data))

        verify(self.__wrapped).remove('http://google.ca')
        verify(self.__wrapped, 0).update_meta_data(meta_data)

    def test_update_meta_data(self):
        meta_data = CacheMetaData(url='http://google.ca')
        when(self.__wrapped).update_meta_data(meta_data).thenReturn(True)

        self.assertTrue(self.__sut.update_meta_data(meta_data))

    def test_remove(self):
        # region set up
        when(self.__wrapped).remove('http://google.ca').thenReturn(True)
        # endregion

        self.assertTrue(self.__sut.remove('http://google.ca'))

        verify(self.__wrapped).remove('http://google.ca')

    def test_passes_through(self):
        pending = mock(PendingEntry)
        when(self.__wrapped).cache_size().thenReturn(42)
        when(self.__wrapped).data('http://google.ca').thenReturn(None)
        when(self.__wrapped).insert(pending).thenReturn(True)
        when(self.__wrapped).clear().thenReturn(None)

        self.assertEqual(42, self.__sut.cache_size())
        self.assertIs(None, self.__sut.data('http://google.ca'))
        self.assertTrue(self.__sut.insert(pending))
        self.__sut.clear()

        verify(self.__wrapped).clear()


@ddt
class TestAnnotations(TestCase):
    @data(
        (Cache.data, 'return', Optional[IO[bytes]]),
        (FileCache.data, 'return', Optional[IO[bytes]]),
        (HttpAwareCache.data, 'return', Optional[IO[bytes]]),
        (PendingEntry.__init__, 'file', IO[bytes]),
        (Tee.__init__, 'reader', IO[bytes]),
    )
    @unpack
    def test_stream_annotations_resolve(self, function, name, expected):
        self.assertEqual(expected, get_type_hints(function)[name])
