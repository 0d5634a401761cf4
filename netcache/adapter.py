import logging
import time
from typing import Callable, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers

from .cache import Cache
from .model import CacheLoadControl, CacheMetaData
from .util import Tee


logger = logging.getLogger(__name__)


class ContentNotFound(requests.RequestException):
    """
    The request may only be answered from the cache, and the cache has nothing for it.
    """


class CachingHTTPAdapter(HTTPAdapter):
    """
    A transport adapter that answers `GET` requests from a `Cache` where their `cache_load_control` allows it, and
    stores what it fetches from the network.

    The load control travels on the prepared request as a `cache_load_control` attribute. A request without one is
    treated as `PREFER_NETWORK`.
    """

    def __init__(self, cache: Cache, *args, clock: Callable[[], float] = time.time, **kw) -> None:
        super().__init__(*args, **kw)
        self.cache = cache
        self.clock = clock

    def send(self, request: requests.PreparedRequest, **kw) -> requests.Response:
        """
        Send a request, from the cache if we may and can, and cache the response if we need to and can.
        """
        control = getattr(request, 'cache_load_control', CacheLoadControl.PREFER_NETWORK)

        if not self._is_cachable_method(request.method):
            logger.info('Method {} bypasses the cache.'.format(request.method))
            return super().send(request, **kw)

        if control is CacheLoadControl.ALWAYS_NETWORK:
            logger.info('Request must go to the network. Not consulting the cache.')
            return self._store(request, super().send(request, **kw))

        meta_data = self.cache.meta_data(request.url)
        if meta_data is not None:
            if control is not CacheLoadControl.PREFER_NETWORK or meta_data.is_fresh(self.clock()):
                response = self._from_cache(request, meta_data)
                if response is not None:
                    return response
            elif meta_data.has_validators:
                return self._revalidate(request, meta_data, **kw)

        if control is CacheLoadControl.ALWAYS_CACHE:
            logger.info('Request may only use the cache, which has nothing for {}.'.format(request.url))
            raise ContentNotFound('No cached response for {}'.format(request.url), request=request)

        logger.info('No usable cache entry. Sending the request.')
        return self._store(request, super().send(request, **kw))

    def _revalidate(self, request: requests.PreparedRequest, meta_data: CacheMetaData, **kw) -> requests.Response:
        logger.info('Cache entry for {} is stale. Revalidating it.'.format(request.url))
        conditional = request.copy()
        if meta_data.etag is not None:
            conditional.headers['If-None-Match'] = meta_data.etag
        if meta_data.last_modified_header is not None:
            conditional.headers['If-Modified-Since'] = meta_data.last_modified_header

        response = super().send(conditional, **kw)
        response.request = request
        if response.status_code != 304:
            logger.info('Server sent a new response. Replacing the cache entry.')
            return self._store(request, response)

        logger.info('Server confirmed the cache entry is still valid.')
        response.close()
        refreshed = meta_data.refreshed(response.headers, self.clock())
        self.cache.update_meta_data(refreshed)
        cached = self._from_cache(request, refreshed)
        if cached is not None:
            return cached

        logger.warning('Cache entry for {} disappeared during revalidation. Fetching it again.'.format(request.url))
        return self._store(request, super().send(request, **kw))

    def _store(self, request: requests.PreparedRequest, response: requests.Response) -> requests.Response:
        response.from_cache = False
        meta_data = CacheMetaData.from_response(request.url, response.status_code, response.reason,
                                                response.headers, self.clock())
        pending = self.cache.prepare(meta_data)
        if pending is None:
            return response

        logger.info('Tee the response body so we can write to the cache as it is read.')
        # The way we are using `Tee` here means that we will only cache a body that is fully read. This avoids waiting
        # on the full download - say, if the user wants to interrupt the download - while also ensuring we don't write
        # partial state to the cache.
        raw = response.raw
        if hasattr(raw, 'decode_content'):
            # The cached body is stored decoded, and its metadata has no Content-Encoding.
            raw.decode_content = True
        response.raw = Tee(raw,
                           pending,
                           on_complete=lambda: self.cache.insert(pending),
                           on_discard=pending.discard)
        return response

    def _from_cache(self, request: requests.PreparedRequest, meta_data: CacheMetaData) -> Optional[requests.Response]:
        body = self.cache.data(request.url)
        if body is None:
            return None

        logger.info('Answering {} from the cache.'.format(request.url))
        result = requests.Response()
        result.status_code = meta_data.status
        result.reason = meta_data.reason
        result.headers = CaseInsensitiveDict(meta_data.headers)
        result.encoding = get_encoding_from_headers(result.headers)
        result.raw = body
        result.url = request.url
        result.request = request
        result.connection = self
        result.from_cache = True
        return result

    def _is_cachable_method(self, method: str) -> bool:
        # TODO We could cache HEAD as well, even return a HEAD based on a GET.
        return method in {'GET'}

    def close(self):
        self.cache.close()
        super().close()
