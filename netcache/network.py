import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
import itertools
import logging
from functools import partial
from typing import Dict, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import requests
from requests.structures import CaseInsensitiveDict

from .adapter import CachingHTTPAdapter
from .cache import Cache
from .model import CacheLoadControl, Operation, Request
from .reply import NetworkError, Reply
from .util import Signal


logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = 'application/x-www-form-urlencoded'


def decorate_request(request: Request, application_name: str, application_version: str) -> Request:
    """
    Apply the policy every outbound request is subject to.

    - `User-Agent` is always "<name> <version>", whatever it was before.
    - A `POST` without a content type is sent as a form.
    - Requests left at the transport default of `PREFER_NETWORK` prefer the cache instead. Any other choice the
      caller made is kept.

    The given request is not modified.
    """
    headers = CaseInsensitiveDict(request.headers)
    headers['User-Agent'] = '{} {}'.format(application_name, application_version)

    if request.method.upper() == 'POST' and 'Content-Type' not in headers:
        headers['Content-Type'] = FORM_CONTENT_TYPE

    cache_load_control = request.cache_load_control
    if cache_load_control is CacheLoadControl.PREFER_NETWORK:
        cache_load_control = CacheLoadControl.PREFER_CACHE

    return replace(request, headers=headers, cache_load_control=cache_load_control)


class NonRedirectingSession(requests.Session):
    """
    A session that leaves every redirect, and the body of the redirect response, to the caller.
    """

    def get_redirect_target(self, resp):
        return None


class NetworkAccessManager:
    """
    Creates replies for requests.

    Each request is decorated, then sent on a worker thread through a session whose adapters go through `cache`.
    The session never follows redirects itself; wrap a reply in a `RedirectFollower` for that.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, cache: Cache, application_name: str,
                 application_version: str, timeouts: Optional['NetworkTimeouts'] = None, max_workers: int = 6,
                 transfer_timeout: Optional[float] = None) -> None:
        """
        @param loop
          The event loop on which replies deliver their signals.
        @param cache
          Installed as the cache of the transport.
        @param timeouts
          If given, every reply this manager creates is handed to it.
        @param transfer_timeout
          Socket-level timeout for the worker threads, so that a stalled transfer does not hold on to a worker
          forever after its reply was aborted.
        """
        self.loop = loop
        self.cache = cache
        self.application_name = application_name
        self.application_version = application_version
        self.timeouts = timeouts
        self.transfer_timeout = transfer_timeout

        self.__executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='netcache')
        self.__session = NonRedirectingSession()
        adapter = CachingHTTPAdapter(cache)
        self.__session.mount('http://', adapter)
        self.__session.mount('https://', adapter)

    @property
    def session(self) -> requests.Session:
        return self.__session

    def create_request(self, operation: Operation, request: Request, body: Optional[bytes] = None) -> Reply:
        if body is not None:
            request = replace(request, body=body)
        method = request.method.upper() if operation is Operation.CUSTOM else operation.value
        request = decorate_request(replace(request, method=method),
                                   self.application_name,
                                   self.application_version)

        reply = Reply(self, operation, request, self.loop)
        logger.info('Starting {!r}'.format(reply))
        reply.start(self.__executor, self.__session, self.transfer_timeout)
        if self.timeouts is not None:
            self.timeouts.add_reply(reply)
        return reply

    def head(self, request: Request) -> Reply:
        return self.create_request(Operation.HEAD, request)

    def get(self, request: Request) -> Reply:
        return self.create_request(Operation.GET, request)

    def post(self, request: Request, body: Optional[bytes] = None) -> Reply:
        return self.create_request(Operation.POST, request, body)

    def put(self, request: Request, body: Optional[bytes] = None) -> Reply:
        return self.create_request(Operation.PUT, request, body)

    def delete_resource(self, request: Request) -> Reply:
        return self.create_request(Operation.DELETE, request)

    def send_custom_request(self, request: Request, verb: str, body: Optional[bytes] = None) -> Reply:
        return self.create_request(Operation.CUSTOM, replace(request, method=verb), body)

    def close(self, wait: bool = False) -> None:
        """
        Stop accepting work and release the session. Transfers already running are allowed to finish, and with
        `wait` this blocks until they have.
        """
        self.__executor.shutdown(wait=wait)
        self.__session.close()


class NetworkTimeouts:
    """
    Aborts replies that take longer than `timeout` seconds.

    A reply is tracked from `add_reply()` until it finishes or is destroyed, whichever happens first.
    """

    def __init__(self, timeout: float, loop: asyncio.AbstractEventLoop) -> None:
        self.timeout = timeout
        self.__loop = loop
        self.__ids = itertools.count(1)
        self.__timers: Dict[Reply, int] = {}
        self.__replies: Dict[int, Tuple[Reply, asyncio.TimerHandle]] = {}

    def __len__(self) -> int:
        return len(self.__timers)

    def is_tracking(self, reply: Reply) -> bool:
        return reply in self.__timers

    def add_reply(self, reply: Reply) -> None:
        if reply in self.__timers:
            return

        reply.destroyed.connect(partial(self._reply_finished, reply))
        reply.finished.connect(partial(self._reply_finished, reply))

        timer_id = next(self.__ids)
        handle = self.__loop.call_later(self.timeout, self._timer_event, timer_id)
        self.__timers[reply] = timer_id
        self.__replies[timer_id] = (reply, handle)

    def _reply_finished(self, reply: Reply) -> None:
        timer_id = self.__timers.pop(reply, None)
        if timer_id is None:
            return
        _, handle = self.__replies.pop(timer_id)
        handle.cancel()

    def _timer_event(self, timer_id: int) -> None:
        entry = self.__replies.get(timer_id)
        if entry is None:
            return
        reply, _ = entry
        logger.warning('{!r} did not finish within {} seconds. Aborting it.'.format(reply, self.timeout))
        reply.abort()
        # Aborting a reply that already finished emits nothing, so make sure it is forgotten.
        self._reply_finished(reply)


def resolve_redirect(base_url: str, target: str) -> Optional[str]:
    """
    Resolve a `Location` against the URL that sent it.

    @return
      An absolute http(s) URL, or `None` if `target` cannot be made into one.
    """
    try:
        resolved = urljoin(base_url, target.strip())
        parts = urlsplit(resolved)
    except (AttributeError, ValueError):
        return None
    if parts.scheme not in ('http', 'https') or not parts.hostname:
        return None
    return resolved


class RedirectFollower:
    """
    Presents a chain of redirects as a single reply.

    `ready_read`, `error`, `download_progress` and `upload_progress` are forwarded from whichever reply is current.
    `finished` is emitted once, when a response is not a redirect or when `max_redirects` redirects have been
    followed. In the latter case `reply` is still a redirect, and it is up to the caller to notice.

    Each hop is a `GET` of the previous request with its URL replaced. Replies that have been superseded are
    released with `delete_later()`.
    """

    def __init__(self, first_reply: Reply, max_redirects: int) -> None:
        self.ready_read = Signal()
        self.error = Signal()
        self.download_progress = Signal()
        self.upload_progress = Signal()
        self.finished = Signal()

        self.__current_reply = first_reply
        self.__redirects_remaining = max_redirects
        self.__hops = 0
        self.__resolved = False
        self._connect_reply(first_reply)

    @property
    def reply(self) -> Reply:
        return self.__current_reply

    @property
    def hops(self) -> int:
        return self.__hops

    @property
    def redirects_remaining(self) -> int:
        return self.__redirects_remaining

    @property
    def is_resolved(self) -> bool:
        return self.__resolved

    def abort(self) -> None:
        self.__current_reply.abort()

    def _connect_reply(self, reply: Reply) -> None:
        reply.ready_read.connect(self.ready_read.emit)
        reply.error.connect(self.error.emit)
        reply.download_progress.connect(self.download_progress.emit)
        reply.upload_progress.connect(self.upload_progress.emit)
        reply.finished.connect(self._reply_finished)

    def _disconnect_reply(self, reply: Reply) -> None:
        reply.ready_read.disconnect(self.ready_read.emit)
        reply.error.disconnect(self.error.emit)
        reply.download_progress.disconnect(self.download_progress.emit)
        reply.upload_progress.disconnect(self.upload_progress.emit)
        reply.finished.disconnect(self._reply_finished)

    def _reply_finished(self) -> None:
        if self.__resolved:
            return
        reply = self.__current_reply

        target = reply.redirect_target
        if target is not None and reply.error_code is not NetworkError.NO_ERROR:
            # An aborted or failed redirect ends the chain like any other failure.
            logger.info('Not following the redirect from {}. The reply failed with {}.'.format(reply.url,
                                                                                          reply.error_code))
        elif target is not None:
            next_url = resolve_redirect(reply.url, target)
            if next_url is None:
                logger.warning('Ignoring unusable redirect target {!r} from {}'.format(target, reply.url))
            elif self.__redirects_remaining == 0:
                logger.info('Not following the redirect from {}. No redirects remaining.'.format(reply.url))
            else:
                self.__redirects_remaining -= 1
                self.__hops += 1
                logger.info('Following redirect from {} to {}'.format(reply.url, next_url))

                self._disconnect_reply(reply)
                reply.delete_later()
                self.__current_reply = reply.manager.get(replace(reply.request, url=next_url, body=None))
                self._connect_reply(self.__current_reply)
                return

        self.__resolved = True
        self.finished.emit()
