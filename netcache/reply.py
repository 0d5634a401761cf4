"""
The handle for one physical request in flight.

The transfer itself runs on an executor thread. Everything it observes is posted to the event loop that owns the
reply, so signals are only ever emitted on that loop's thread.
"""

import asyncio
from concurrent.futures import Executor
from enum import Enum
import logging
import threading
from typing import Optional, TYPE_CHECKING

import requests
from requests.sessions import REDIRECT_STATI
from requests.structures import CaseInsensitiveDict

from .adapter import ContentNotFound
from .model import Operation, Request
from .util import Signal

if TYPE_CHECKING:
    from .network import NetworkAccessManager


logger = logging.getLogger(__name__)

CHUNK_SIZE = 16 * 1024


class NetworkError(Enum):
    NO_ERROR = 0
    CONNECTION_REFUSED = 1
    TIMEOUT = 4
    OPERATION_CANCELED = 5
    SSL_HANDSHAKE_FAILED = 6
    CONTENT_ACCESS_DENIED = 201
    CONTENT_NOT_FOUND = 203
    AUTHENTICATION_REQUIRED = 204
    UNKNOWN_CONTENT_ERROR = 299
    PROTOCOL_FAILURE = 399
    INTERNAL_SERVER_ERROR = 401
    UNKNOWN_SERVER_ERROR = 499
    UNKNOWN_NETWORK_ERROR = 99


def error_for_status(status: int) -> NetworkError:
    if status < 400:
        return NetworkError.NO_ERROR
    if status == 401:
        return NetworkError.AUTHENTICATION_REQUIRED
    if status == 403:
        return NetworkError.CONTENT_ACCESS_DENIED
    if status in (404, 410):
        return NetworkError.CONTENT_NOT_FOUND
    if status < 500:
        return NetworkError.UNKNOWN_CONTENT_ERROR
    if status == 500:
        return NetworkError.INTERNAL_SERVER_ERROR
    return NetworkError.UNKNOWN_SERVER_ERROR


def error_for_exception(error: Exception) -> NetworkError:
    # Order matters: SSLError and ConnectTimeout are also ConnectionErrors.
    if isinstance(error, ContentNotFound):
        return NetworkError.CONTENT_NOT_FOUND
    if isinstance(error, requests.exceptions.SSLError):
        return NetworkError.SSL_HANDSHAKE_FAILED
    if isinstance(error, requests.exceptions.Timeout):
        return NetworkError.TIMEOUT
    if isinstance(error, requests.exceptions.ConnectionError):
        return NetworkError.CONNECTION_REFUSED
    if isinstance(error, (requests.exceptions.InvalidURL,
                          requests.exceptions.MissingSchema,
                          requests.exceptions.InvalidSchema,
                          requests.exceptions.ChunkedEncodingError,
                          requests.exceptions.ContentDecodingError)):
        return NetworkError.PROTOCOL_FAILURE
    return NetworkError.UNKNOWN_NETWORK_ERROR


class Reply:
    """
    One request and its response, observed through signals:

    - `ready_read()`: more of the body can be read with `read_all()`.
    - `download_progress(received, total)`: `total` is -1 when unknown.
    - `upload_progress(sent, total)`
    - `error(NetworkError)`: emitted at most once, right before `finished`.
    - `finished()`: emitted exactly once, unless the reply is destroyed first.
    - `destroyed()`: emitted by `delete_later()`. Nothing is emitted afterwards.
    """

    def __init__(self, manager: 'NetworkAccessManager', operation: Operation, request: Request,
                 loop: asyncio.AbstractEventLoop) -> None:
        self.ready_read = Signal()
        self.download_progress = Signal()
        self.upload_progress = Signal()
        self.error = Signal()
        self.finished = Signal()
        self.destroyed = Signal()

        self.__manager = manager
        self.__operation = operation
        self.__request = request
        self.__loop = loop

        self.__buffer = bytearray()
        self.__status_code: Optional[int] = None
        self.__reason = ''
        self.__headers = CaseInsensitiveDict()
        self.__from_cache = False
        self.__error_code = NetworkError.NO_ERROR
        self.__error_string = ''

        self.__finished = False
        self.__destroyed = False
        self.__cancelled = threading.Event()

    def __repr__(self) -> str:
        return '<Reply {} {}>'.format(self.__request.method, self.__request.url)

    # region Properties

    @property
    def manager(self) -> 'NetworkAccessManager':
        return self.__manager

    @property
    def operation(self) -> Operation:
        return self.__operation

    @property
    def request(self) -> Request:
        return self.__request

    @property
    def url(self) -> str:
        return self.__request.url

    @property
    def status_code(self) -> Optional[int]:
        return self.__status_code

    @property
    def reason(self) -> str:
        return self.__reason

    @property
    def headers(self) -> CaseInsensitiveDict:
        return self.__headers

    @property
    def redirect_target(self) -> Optional[str]:
        """
        The unresolved `Location` of a redirect response, or `None` if this is not a redirect.
        """
        if self.__status_code in REDIRECT_STATI:
            return self.__headers.get('Location') or None
        return None

    @property
    def from_cache(self) -> bool:
        return self.__from_cache

    @property
    def error_code(self) -> NetworkError:
        return self.__error_code

    @property
    def error_string(self) -> str:
        return self.__error_string

    @property
    def is_finished(self) -> bool:
        return self.__finished

    @property
    def is_destroyed(self) -> bool:
        return self.__destroyed

    # endregion

    def bytes_available(self) -> int:
        return len(self.__buffer)

    def read_all(self) -> bytes:
        """
        Return and consume everything received so far.
        """
        data = bytes(self.__buffer)
        self.__buffer.clear()
        return data

    def start(self, executor: Executor, session: requests.Session, timeout: Optional[float] = None) -> None:
        executor.submit(self._run, session, timeout)

    def abort(self) -> None:
        """
        Give up on the request. It fails with `OPERATION_CANCELED` right away.
        """
        if self.__finished:
            return
        logger.info('Aborting {!r}'.format(self))
        self.__cancelled.set()
        self._fail(NetworkError.OPERATION_CANCELED, 'Operation canceled')

    def delete_later(self) -> None:
        """
        Destroy the reply on the next iteration of its event loop.
        """
        self.__loop.call_soon(self._destroy)

    def _destroy(self) -> None:
        if self.__destroyed:
            return
        self.__destroyed = True
        self.__cancelled.set()
        # No completion is reported for a destroyed reply.
        self.__finished = True
        self.destroyed.emit()
        for signal in (self.ready_read, self.download_progress, self.upload_progress, self.error, self.finished,
                       self.destroyed):
            signal.disconnect()

    # region Worker thread

    def _post(self, callback, *args) -> None:
        try:
            self.__loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.warning('Event loop closed while {!r} was in flight. Stopping.'.format(self))
            self.__cancelled.set()

    def _run(self, session: requests.Session, timeout: Optional[float]) -> None:
        request = self.__request
        if self.__cancelled.is_set():
            return
        try:
            prepared = session.prepare_request(requests.Request(method=request.method,
                                                                url=request.url,
                                                                headers=dict(request.headers),
                                                                data=request.body))
            prepared.cache_load_control = request.cache_load_control
            response = session.send(prepared, stream=True, allow_redirects=False, timeout=timeout)
        except requests.RequestException as e:
            logger.info('Request {!r} failed: {}'.format(self, e))
            self._post(self._fail, error_for_exception(e), str(e))
            return
        except Exception as e:
            logger.exception('Unexpected error while sending {!r}'.format(self))
            self._post(self._fail, NetworkError.UNKNOWN_NETWORK_ERROR, str(e))
            return

        try:
            if self.__cancelled.is_set():
                return
            if request.body:
                self._post(self._on_upload_progress, len(request.body), len(request.body))
            self._post(self._on_response, response.status_code, response.reason, CaseInsensitiveDict(response.headers),
                       getattr(response, 'from_cache', False))

            total = -1
            if 'Content-Length' in response.headers and 'Content-Encoding' not in response.headers:
                try:
                    total = int(response.headers['Content-Length'])
                except ValueError:
                    pass

            received = 0
            for chunk in response.iter_content(CHUNK_SIZE):
                if self.__cancelled.is_set():
                    return
                received += len(chunk)
                self._post(self._on_data, chunk, received, total)
            self._post(self._on_complete)
        except requests.RequestException as e:
            logger.info('Transfer of {!r} failed: {}'.format(self, e))
            self._post(self._fail, error_for_exception(e), str(e))
        except Exception as e:
            logger.exception('Unexpected error while receiving {!r}'.format(self))
            self._post(self._fail, NetworkError.UNKNOWN_NETWORK_ERROR, str(e))
        finally:
            response.close()
            # Response.close() leaves the stream of a fully read body open.
            response.raw.close()

    # endregion

    # region Event loop thread

    def _on_upload_progress(self, sent: int, total: int) -> None:
        if not self.__finished:
            self.upload_progress.emit(sent, total)

    def _on_response(self, status_code: int, reason: str, headers: CaseInsensitiveDict, from_cache: bool) -> None:
        if self.__finished:
            return
        self.__status_code = status_code
        self.__reason = reason
        self.__headers = headers
        self.__from_cache = from_cache

    def _on_data(self, chunk: bytes, received: int, total: int) -> None:
        if self.__finished:
            return
        self.__buffer.extend(chunk)
        self.ready_read.emit()
        # A slot above may have aborted us.
        if not self.__finished:
            self.download_progress.emit(received, total)

    def _on_complete(self) -> None:
        if self.__finished:
            return
        error = error_for_status(self.__status_code or 0)
        if error is not NetworkError.NO_ERROR:
            self._fail(error, '{} {}'.format(self.__status_code, self.__reason))
            return
        self._finish()

    def _fail(self, error: NetworkError, message: str) -> None:
        if self.__finished:
            return
        self.__error_code = error
        self.__error_string = message
        self.error.emit(error)
        self._finish()

    def _finish(self) -> None:
        if self.__finished:
            return
        self.__finished = True
        self.finished.emit()

    # endregion
