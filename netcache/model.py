"""
Defines the types passed between the network layer and its cache.

These types are as simple as possible in order to most conveniently consume and
produce instances of them.
"""

from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from enum import Enum
import time
from typing import Dict, Mapping, Optional

from requests.structures import CaseInsensitiveDict


class CacheLoadControl(Enum):
    """
    How a request may use the cache.

    `PREFER_NETWORK` is what the transport assumes when nobody said otherwise.
    """

    ALWAYS_NETWORK = 0
    PREFER_NETWORK = 1
    PREFER_CACHE = 2
    ALWAYS_CACHE = 3


class Operation(Enum):
    HEAD = 'HEAD'
    GET = 'GET'
    PUT = 'PUT'
    POST = 'POST'
    DELETE = 'DELETE'
    CUSTOM = 'CUSTOM'
    """
    Any other verb. The request's own method is sent as is.
    """

    @classmethod
    def for_method(cls, method: str) -> 'Operation':
        try:
            operation = cls(method.upper())
        except ValueError:
            return cls.CUSTOM
        return operation


@dataclass
class Request:
    """
    Represents an outbound request before it is handed to the transport.
    """

    url: str
    """
    The absolute URL of the resource being requested.
    """

    method: str = 'GET'
    """
    The HTTP method of the request. E.g., "GET".
    """

    headers: Mapping[str, str] = field(default_factory=CaseInsensitiveDict)
    """
    Headers to send. Lookups are case-insensitive.
    """

    cache_load_control: CacheLoadControl = CacheLoadControl.PREFER_NETWORK
    """
    How the transport may satisfy the request from the cache.
    """

    body: Optional[bytes] = field(default=None, compare=False)
    """
    The payload, if any.
    """

    def __post_init__(self):
        if not isinstance(self.headers, CaseInsensitiveDict):
            self.headers = CaseInsensitiveDict(self.headers)


def _parse_http_date(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError, IndexError):
        return None


def _parse_cache_control(value: Optional[str]) -> Dict[str, Optional[str]]:
    directives = {}
    for directive in (value or '').split(','):
        directive = directive.strip()
        if not directive:
            continue
        name, _, argument = directive.partition('=')
        directives[name.strip().lower()] = argument.strip().strip('"') or None
    return directives


@dataclass
class CacheMetaData:
    """
    Everything the cache remembers about a response apart from its body.

    Timestamps are seconds since the epoch so that the metadata can be stored
    as plain JSON.
    """

    url: str
    status: int = 200
    reason: str = 'OK'
    headers: Dict[str, str] = field(default_factory=dict)
    last_modified: Optional[float] = None
    expiration_date: Optional[float] = None
    save_to_disk: bool = True

    def __post_init__(self):
        # Kept as a plain dict so that it serializes as JSON.
        self.headers = dict(self.headers)

    def is_fresh(self, now: Optional[float] = None) -> bool:
        if self.expiration_date is None:
            return False
        return (time.time() if now is None else now) < self.expiration_date

    @property
    def etag(self) -> Optional[str]:
        return CaseInsensitiveDict(self.headers).get('ETag')

    @property
    def last_modified_header(self) -> Optional[str]:
        return CaseInsensitiveDict(self.headers).get('Last-Modified')

    @property
    def has_validators(self) -> bool:
        return self.etag is not None or self.last_modified_header is not None

    @classmethod
    def from_response(cls, url: str, status: int, reason: str, headers: Mapping[str, str],
                      now: Optional[float] = None) -> 'CacheMetaData':
        """
        Build metadata for a response received from the network.

        `Cache-Control: max-age` takes precedence over `Expires`. A `no-cache`
        response is stored already stale so it is always revalidated, and a
        `no-store` response is not stored at all.
        """
        now = time.time() if now is None else now
        headers = CaseInsensitiveDict(headers)
        directives = _parse_cache_control(headers.get('Cache-Control'))

        expiration_date = None
        if 'no-cache' in directives:
            expiration_date = now
        elif directives.get('max-age') is not None:
            try:
                expiration_date = now + int(directives['max-age'])
            except ValueError:
                expiration_date = now
        elif 'Expires' in headers:
            # An unparsable Expires means "already expired".
            expiration_date = _parse_http_date(headers['Expires']) or now

        # The body is stored decoded.
        stored_headers = {key: value for key, value in headers.items()
                          if key.lower() not in ('content-encoding', 'content-length', 'transfer-encoding')}

        return cls(url=url,
                   status=status,
                   reason=reason,
                   headers=stored_headers,
                   last_modified=_parse_http_date(headers.get('Last-Modified')),
                   expiration_date=expiration_date,
                   save_to_disk='no-store' not in directives)

    def refreshed(self, headers: Mapping[str, str], now: Optional[float] = None) -> 'CacheMetaData':
        """
        Merge the headers of a `304 Not Modified` into this metadata.
        """
        merged = CaseInsensitiveDict(self.headers)
        merged.update(headers)
        refreshed = CacheMetaData.from_response(self.url, self.status, self.reason, merged, now)
        if refreshed.expiration_date is None:
            refreshed.expiration_date = self.expiration_date
        return refreshed
