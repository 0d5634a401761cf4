import asyncio
import logging
from typing import Optional

from .cache import HttpAwareCache, SharedDiskCache, ThreadSafeDiskCache
from .config import NetworkSettings
from .model import CacheMetaData, Operation, Request
from .network import NetworkAccessManager, NetworkTimeouts, RedirectFollower


logger = logging.getLogger(__name__)


class NetworkClient:
    """
    What application code talks to: fetch a request, following redirects and subject to the configured timeout,
    through the shared disk cache.
    """

    def __init__(self, settings: NetworkSettings, loop: asyncio.AbstractEventLoop,
                 shared_cache: Optional[SharedDiskCache] = None) -> None:
        """
        @param shared_cache
          The disk cache to share. Defaults to the process-wide one in `settings.cache_directory`.
        """
        if shared_cache is None:
            shared_cache = SharedDiskCache.instance(settings.cache_directory, settings.maximum_cache_size)

        self.settings = settings
        self.__disk_cache = ThreadSafeDiskCache(shared_cache)
        self.timeouts = NetworkTimeouts(settings.timeout, loop)
        self.manager = NetworkAccessManager(loop,
                                            HttpAwareCache(self.__disk_cache),
                                            settings.application_name,
                                            settings.application_version,
                                            timeouts=self.timeouts,
                                            max_workers=settings.max_workers,
                                            transfer_timeout=settings.timeout)

    def fetch(self, request: Request) -> RedirectFollower:
        """
        Start `request`. The returned handle emits `finished` once, for the response at the end of the redirects.
        """
        operation = Operation.for_method(request.method)
        logger.info('Fetching {} {}'.format(request.method.upper(), request.url))
        return RedirectFollower(self.manager.create_request(operation, request), self.settings.max_redirects)

    def cache_size(self) -> int:
        return self.__disk_cache.cache_size()

    def cached_meta_data(self, url: str) -> Optional[CacheMetaData]:
        return self.__disk_cache.meta_data(url)

    def remove(self, url: str) -> bool:
        return self.__disk_cache.remove(url)

    def clear_cache(self) -> None:
        logger.info('Clearing the network cache.')
        self.__disk_cache.clear()

    def close(self) -> None:
        self.manager.close()


def create(settings: NetworkSettings, loop: Optional[asyncio.AbstractEventLoop] = None) -> NetworkClient:
    """
    Create a client on `loop`, or on the running loop when called from a coroutine.
    """
    if loop is None:
        loop = asyncio.get_running_loop()
    return NetworkClient(settings, loop)
