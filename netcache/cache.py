from abc import ABC, abstractmethod
from dataclasses import dataclass
import hashlib
from io import BytesIO
import json
import logging
import os
from pathlib import Path
import shutil
import tempfile
import threading
from typing import Callable, IO, List, Optional
from .util import clamp, DataclassJSONDecoder, DataclassJSONEncoder
from .model import CacheMetaData


logger = logging.getLogger(__name__)

# Bodies up to this size are read into memory so that the file can be replaced or deleted while the caller still reads.
MAXIMUM_BUFFERED_BODY = 1024 * 1024


class Cache(ABC):
    """
    An abstraction of a network cache keyed by URL.

    A network cache has a relatively narrow scope: to remember a response body and its metadata such that they can be
    recalled later for the same URL. Note that this deliberately precludes certain responsibilities such as deciding
    when a response is stale. The transport decides when to use an entry, and also when to replace it.

    Storage failures are never raised. They come back as a failed result (`None` or `False`).
    """

    @abstractmethod
    def cache_size(self) -> int:
        """
        @return
          The number of bytes the cache currently occupies.
        """

    @abstractmethod
    def data(self, url: str) -> Optional[IO[bytes]]:
        """
        Retrieve the cached body for `url`.

        @param url
          The URL to look up in the cache.
        @return
          A readable stream of the body, or `None` if there is no valid entry.
        """

    @abstractmethod
    def meta_data(self, url: str) -> Optional[CacheMetaData]:
        """
        Retrieve the metadata stored for `url` without touching its body.
        """

    @abstractmethod
    def update_meta_data(self, meta_data: CacheMetaData) -> bool:
        """
        Replace the metadata of an existing entry, keeping its body.

        @return
          `True` if an entry for `meta_data.url` existed and was updated.
        """

    @abstractmethod
    def prepare(self, meta_data: CacheMetaData) -> Optional['PendingEntry']:
        """
        Begin inserting a response.

        The caller writes the body into the returned handle and then hands it back to `insert()`. Nothing is visible
        to readers until then.

        @return
          A writable handle, or `None` if the response should not or could not be cached.
        """

    @abstractmethod
    def insert(self, pending: 'PendingEntry') -> bool:
        """
        Finish an insertion started with `prepare()`. Any prior entry for the same URL is replaced.
        """

    @abstractmethod
    def remove(self, url: str) -> bool:
        """
        Delete the entry for `url`. Insertions still being written are not affected.

        @return
          Whether an entry existed.
        """

    @abstractmethod
    def clear(self) -> None:
        """
        Delete every entry.
        """

    def close(self):
        """
        Close any resources associated with the cache.
        """


class HttpAwareCache(Cache):
    """
    Augments a cache with HTTP-specific knowledge.

    Some examples are:
    - Only cache sensible responses (e.g., 200, 203, 300, 301 are used in cachecontrol).
    - Respecting `Cache-Control: no-store`, which arrives here as `save_to_disk = False`.
    """

    def __init__(self, implementation: Cache) -> None:
        self.__impl = implementation

    def cache_size(self) -> int:
        return self.__impl.cache_size()

    def data(self, url: str) -> Optional[IO[bytes]]:
        logger.info('Delegating cache lookup to decorated cache.')
        return self.__impl.data(url)

    def meta_data(self, url: str) -> Optional[CacheMetaData]:
        logger.info('Delegating metadata lookup to decorated cache.')
        meta_data = self.__impl.meta_data(url)
        if meta_data is None:
            logger.info('Decorated cache did not find a matching cache entry.')
            return None

        if not self._is_cachable_status_code(meta_data.status):
            logger.info('Status code {} is not cachable'.format(meta_data.status))
            return None

        logger.info('Cache entry passed all HTTP checks. Returning metadata from cache.')
        return meta_data

    def update_meta_data(self, meta_data: CacheMetaData) -> bool:
        if not meta_data.save_to_disk:
            logger.info('Response may no longer be stored. Removing the cache entry instead of updating it.')
            self.__impl.remove(meta_data.url)
            return False
        return self.__impl.update_meta_data(meta_data)

    def prepare(self, meta_data: CacheMetaData) -> Optional['PendingEntry']:
        if not self._is_cachable_status_code(meta_data.status):
            logger.info('Refusing to create cache entry. Status code {} is not cachable.'.format(meta_data.status))
            return None
        if not meta_data.save_to_disk:
            logger.info('Refusing to create cache entry. The response must not be stored.')
            return None

        logger.info('Delegating cache entry creation to decorated cache.')
        return self.__impl.prepare(meta_data)

    def insert(self, pending: 'PendingEntry') -> bool:
        return self.__impl.insert(pending)

    def remove(self, url: str) -> bool:
        logger.info('Delegating cache entry deletion to decorated cache.')
        return self.__impl.remove(url)

    def clear(self) -> None:
        self.__impl.clear()

    def close(self):
        self.__impl.close()

    def _is_cachable_status_code(self, status: int) -> bool:
        return status in (200, 203, 300, 301,)


class PendingEntry:
    """
    A response body on its way into the cache.

    Write the body into it, then give it back to the cache that created it.
    """

    def __init__(self, meta_data: CacheMetaData, file: IO[bytes]) -> None:
        self.meta_data = meta_data
        self.__file = file

    @property
    def path(self) -> Path:
        return Path(self.__file.name)

    @property
    def closed(self) -> bool:
        return self.__file.closed

    def write(self, data: bytes) -> int:
        return self.__file.write(data)

    def flush(self) -> None:
        self.__file.flush()

    def close(self) -> None:
        self.__file.close()

    def discard(self) -> None:
        self.close()
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


@dataclass
class FileCacheEntryModel:
    meta_data: CacheMetaData
    body: str
    """
    Path of the body file, relative to the body directory.
    """

    def __post_init__(self):
        if isinstance(self.meta_data, dict):
            self.meta_data = CacheMetaData(**self.meta_data)


class CorruptEntry(Exception):
    def __init__(self, entry_path: Path):
        super().__init__()
        self.__entry_path = entry_path

    @property
    def entry_path(self) -> Path:
        return self.__entry_path


class FileCache(Cache):
    """
    A cache that keeps each entry as two files: a JSON entry file named after a hash of the URL, and a body file with
    a random name that the entry points at.

    This class is not thread-safe. Share it through `ThreadSafeDiskCache`.
    """

    def __init__(self, directory: Path, cache_directory_levels: int = 5, maximum_size: Optional[int] = None) -> None:
        """
        Initialize the file cache.

        Nothing is created on disk until the first insertion.

        @param directory
          The path to the root directory of the cache.
        @param cache_directory_levels
          The number of subdirectory levels to use in the cache directory. This
          will be clamped to be between 0 and 20, respectively.
        @param maximum_size
          Once the cache grows beyond this many bytes, the least recently used
          entries are expired. `None` means unbounded.
        """
        directory = Path(directory)
        self.__directory = directory
        self.__entry_directory = directory / 'entries'
        self.__body_directory = directory / 'bodies'
        self.__prepared_directory = directory / 'prepared'
        self.__cache_directory_levels = clamp(cache_directory_levels, 0, 20)
        self.__maximum_size = maximum_size

    @property
    def directory(self) -> Path:
        return self.__directory

    @property
    def maximum_size(self) -> Optional[int]:
        return self.__maximum_size

    def _get_path(self, uri: str) -> Path:
        hashed = hashlib.sha256(uri.encode('utf-8')).hexdigest()
        return self._split_path(hashed)

    def _split_path(self, path: str) -> Path:
        subdirectories = (list(path[:self.__cache_directory_levels])
                          + [path[self.__cache_directory_levels:]])
        subdirectory = Path(*subdirectories)
        return subdirectory

    def _entry_path(self, url: str) -> Path:
        return self.__entry_directory / self._get_path(url)

    def _load_entry(self, url: str) -> FileCacheEntryModel:
        """
        Read a cache entry from a file.

        @param url
            The URL for which a matching cache entry is desired.
        @return
            The decoded contents of the entry file.
        @throws FileNotFoundError
            If there is no entry for `url`.
        @throws CorruptEntry
            If the entry file could not be parsed, or it belongs to another URL.
        """
        entry_path = self._entry_path(url)
        try:
            with open(entry_path, 'r') as f:
                entry = json.load(f, cls=DataclassJSONDecoder, class_type=FileCacheEntryModel)
        except (KeyError, TypeError, ValueError):
            raise CorruptEntry(entry_path)
        if entry.meta_data.url != url:
            raise CorruptEntry(entry_path)
        return entry

    def _write_entry(self, url: str, entry: FileCacheEntryModel) -> None:
        entry_path = self._entry_path(url)
        entry_path.parent.mkdir(parents=True, exist_ok=True)
        # Write next to the target and rename so that readers never see half an entry.
        temp_path = entry_path.with_name(entry_path.name + '.tmp')
        with open(temp_path, 'w') as f:
            json.dump(entry, f, cls=DataclassJSONEncoder)
        os.replace(temp_path, entry_path)

    def _delete_paths(self, paths: List[Path]) -> None:
        for path in paths:
            try:
                logger.info('Deleting {}'.format(path))
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError:
                logger.exception('Unexpected error occurred while deleting {}'.format(path))

    def _discard_corrupt(self, entry_path: Path) -> None:
        logger.warning('Found a corrupt cache entry. Deleting the entry file.')
        self._delete_paths([entry_path])

    def _files(self, directory: Path) -> List[Path]:
        if not directory.exists():
            return []
        return [path for path in directory.rglob('*') if path.is_file()]

    def cache_size(self) -> int:
        size = 0
        for path in self._files(self.__entry_directory) + self._files(self.__body_directory):
            try:
                size += path.stat().st_size
            except FileNotFoundError:
                pass
        return size

    def data(self, url: str) -> Optional[IO[bytes]]:
        try:
            logger.info('Looking at the file system for a cache entry matching {}.'.format(url))
            entry = self._load_entry(url)
        except CorruptEntry as e:
            self._discard_corrupt(e.entry_path)
            return None
        except FileNotFoundError:
            logger.info('No matching cache entry found.')
            return None
        except OSError:
            logger.exception('Could not read the cache entry for {}'.format(url))
            return None

        body_path = self.__body_directory / entry.body
        try:
            # Expiry goes by the entry file's mtime.
            os.utime(self._entry_path(url))
        except OSError:
            logger.warning('Could not mark the cache entry for {} as recently used.'.format(url))
        try:
            if body_path.stat().st_size <= MAXIMUM_BUFFERED_BODY:
                with open(body_path, 'rb') as f:
                    return BytesIO(f.read())
            return open(body_path, 'rb')
        except FileNotFoundError:
            # An entry without its body is as good as corrupt.
            self._discard_corrupt(self._entry_path(url))
            return None
        except OSError:
            logger.exception('Could not open the cached body for {}'.format(url))
            return None

    def meta_data(self, url: str) -> Optional[CacheMetaData]:
        try:
            return self._load_entry(url).meta_data
        except CorruptEntry as e:
            self._discard_corrupt(e.entry_path)
            return None
        except FileNotFoundError:
            return None
        except OSError:
            logger.exception('Could not read the cache entry for {}'.format(url))
            return None

    def update_meta_data(self, meta_data: CacheMetaData) -> bool:
        try:
            entry = self._load_entry(meta_data.url)
        except CorruptEntry as e:
            self._discard_corrupt(e.entry_path)
            return False
        except FileNotFoundError:
            logger.info('No cache entry to update for {}.'.format(meta_data.url))
            return False
        except OSError:
            logger.exception('Could not read the cache entry for {}'.format(meta_data.url))
            return False

        try:
            logger.info('Rewriting the entry file for {} with new metadata.'.format(meta_data.url))
            self._write_entry(meta_data.url, FileCacheEntryModel(meta_data=meta_data, body=entry.body))
            return True
        except OSError:
            logger.exception('Could not update the cache entry for {}'.format(meta_data.url))
            return False

    def prepare(self, meta_data: CacheMetaData) -> Optional[PendingEntry]:
        if not meta_data.save_to_disk:
            return None
        try:
            self.__prepared_directory.mkdir(parents=True, exist_ok=True)
            temp_body_file = tempfile.NamedTemporaryFile(mode='wb', dir=self.__prepared_directory, delete=False)
        except OSError:
            logger.exception('Could not create a temporary body file in {}'.format(self.__prepared_directory))
            return None
        return PendingEntry(meta_data, temp_body_file)

    def insert(self, pending: PendingEntry) -> bool:
        if pending.path.parent != self.__prepared_directory or not pending.path.exists():
            logger.warning('Refusing to insert a body this cache did not prepare, or that was already inserted or cleared.')
            pending.close()
            return False
        pending.close()

        url = pending.meta_data.url
        logger.info('Building randomized path to the body file.')
        # We use a randomized body path as the entry can point to it anyways.
        body = self._split_path(os.urandom(32).hex())
        body_path = self.__body_directory / body
        try:
            old_paths = self._paths_for(url)

            logger.info('Moving temporary body file into permanent location')
            body_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(pending.path), str(body_path))

            logger.info('Creating entry file that points to the permanent body file')
            self._write_entry(url, FileCacheEntryModel(meta_data=pending.meta_data, body=str(body)))
        except OSError:
            logger.exception('Could not store the response for {}'.format(url))
            pending.discard()
            self._delete_paths([body_path])
            return False

        # The entry file was overwritten in place. Only the old body is left over.
        self._delete_paths(old_paths[1:])
        self.expire()
        return True

    def _paths_for(self, url: str) -> List[Path]:
        """
        The files making up the entry for `url`, if any.
        """
        try:
            entry = self._load_entry(url)
            return [self._entry_path(url), self.__body_directory / entry.body]
        except CorruptEntry as e:
            return [e.entry_path]
        except FileNotFoundError:
            return []

    def remove(self, url: str) -> bool:
        try:
            logger.info('Looking at the file system for a cache entry matching the URL so that we can delete both the entry and the associated body.')
            paths_to_delete = self._paths_for(url)
        except OSError:
            logger.exception('Could not read the cache entry for {}'.format(url))
            return False

        if not paths_to_delete:
            logger.info('No matching cache entry found. Nothing to delete.')
            return False

        self._delete_paths(paths_to_delete)
        return True

    def clear(self) -> None:
        for directory in (self.__entry_directory, self.__body_directory, self.__prepared_directory):
            if directory.exists():
                logger.info('Deleting {}'.format(directory))
                try:
                    shutil.rmtree(directory)
                except OSError:
                    logger.exception('Unexpected error occurred while deleting {}'.format(directory))

    def expire(self) -> int:
        """
        Delete the least recently used entries until the cache is comfortably below its maximum size.

        @return
          The size of the cache afterwards.
        """
        size = self.cache_size()
        if self.__maximum_size is None or size <= self.__maximum_size:
            return size

        goal = self.__maximum_size * 9 // 10
        logger.info('Cache is {} bytes, above the maximum of {}. Expiring entries.'.format(size, self.__maximum_size))

        entries = []
        for entry_path in self._files(self.__entry_directory):
            if entry_path.suffix == '.tmp':
                continue
            try:
                with open(entry_path, 'r') as f:
                    entry = json.load(f, cls=DataclassJSONDecoder, class_type=FileCacheEntryModel)
                body_path = self.__body_directory / entry.body
                entries.append((entry_path.stat().st_mtime, entry_path, body_path))
            except (KeyError, TypeError, ValueError):
                self._discard_corrupt(entry_path)
            except OSError:
                logger.exception('Could not inspect {}'.format(entry_path))

        for _, entry_path, body_path in sorted(entries, key=lambda item: item[0]):
            if size <= goal:
                break
            for path in (entry_path, body_path):
                try:
                    size -= path.stat().st_size
                except OSError:
                    pass
            self._delete_paths([entry_path, body_path])
        return size


class SharedDiskCache:
    """
    Owns the one disk cache that a process (or a test) uses, and the lock that serializes every access to it.

    The underlying cache is created lazily, by whichever `ThreadSafeDiskCache` is constructed first. Every other
    wrapper reuses it.
    """

    def __init__(self, directory: Path, maximum_size: Optional[int] = None,
                 factory: Optional[Callable[[Path, Optional[int]], Cache]] = None) -> None:
        self.directory = Path(directory)
        self.maximum_size = maximum_size
        self.lock = threading.Lock()
        self.__factory = factory or (lambda directory, maximum_size: FileCache(directory, maximum_size=maximum_size))
        self.__cache: Optional[Cache] = None

    @property
    def is_open(self) -> bool:
        return self.__cache is not None

    def open(self) -> Cache:
        """
        Return the underlying cache, creating it on first use. The caller must hold `lock`.
        """
        if self.__cache is None:
            logger.info('Creating the shared disk cache in {}'.format(self.directory))
            self.__cache = self.__factory(self.directory, self.maximum_size)
        return self.__cache

    @classmethod
    def instance(cls, directory: Path, maximum_size: Optional[int] = None) -> 'SharedDiskCache':
        """
        The process-wide shared cache. The first caller decides where it lives.
        """
        global _process_cache
        with _process_cache_lock:
            if _process_cache is None:
                _process_cache = cls(directory, maximum_size)
            elif Path(directory) != _process_cache.directory:
                logger.warning('The process-wide cache already lives in {}. Ignoring {}'.format(
                    _process_cache.directory, directory))
            return _process_cache


_process_cache: Optional[SharedDiskCache] = None
_process_cache_lock = threading.Lock()


class ThreadSafeDiskCache(Cache):
    """
    A handle on a `SharedDiskCache`.

    Every operation holds the shared lock for its full duration, so operations never overlap, not even across
    different handles. Bodies are written into a `PendingEntry` outside the lock; only `prepare()` and `insert()`
    take it.
    """

    def __init__(self, shared: SharedDiskCache) -> None:
        self.__shared = shared
        with shared.lock:
            self.__cache = shared.open()

    @property
    def shared(self) -> SharedDiskCache:
        return self.__shared

    def cache_size(self) -> int:
        with self.__shared.lock:
            return self.__cache.cache_size()

    def data(self, url: str) -> Optional[IO[bytes]]:
        with self.__shared.lock:
            return self.__cache.data(url)

    def meta_data(self, url: str) -> Optional[CacheMetaData]:
        with self.__shared.lock:
            return self.__cache.meta_data(url)

    def update_meta_data(self, meta_data: CacheMetaData) -> bool:
        with self.__shared.lock:
            return self.__cache.update_meta_data(meta_data)

    def prepare(self, meta_data: CacheMetaData) -> Optional[PendingEntry]:
        with self.__shared.lock:
            return self.__cache.prepare(meta_data)

    def insert(self, pending: PendingEntry) -> bool:
        with self.__shared.lock:
            return self.__cache.insert(pending)

    def remove(self, url: str) -> bool:
        with self.__shared.lock:
            return self.__cache.remove(url)

    def clear(self) -> None:
        with self.__shared.lock:
            self.__cache.clear()

    def close(self):
        # The shared cache lives as long as the process. Other handles may still be using it.
        pass
