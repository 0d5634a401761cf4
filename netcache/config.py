from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import platformdirs


def default_cache_directory(application_name: str) -> Path:
    """
    Where the network cache of `application_name` lives unless configured otherwise.

    Uses platformdirs for cross-platform XDG/macOS/Windows compliance.
    """
    return Path(platformdirs.user_cache_dir(application_name)) / 'networkcache'


@dataclass
class NetworkSettings:
    """
    Everything the network layer needs to be told. All of it is fixed once a client is created.
    """

    application_name: str
    application_version: str = ''

    cache_directory: Optional[Path] = None
    """
    Defaults to `default_cache_directory(application_name)`.
    """

    timeout: float = 30.0
    """
    Seconds a request may take before it is aborted.
    """

    max_redirects: int = 5
    """
    How many redirects one fetch follows before it hands the redirect itself to the caller.
    """

    maximum_cache_size: Optional[int] = 50 * 1024 * 1024
    max_workers: int = 6

    def __post_init__(self):
        if self.cache_directory is None:
            self.cache_directory = default_cache_directory(self.application_name)
        else:
            self.cache_directory = Path(self.cache_directory)
        if self.timeout <= 0:
            raise ValueError('timeout must be positive, not {}'.format(self.timeout))
        if self.max_redirects < 0:
            raise ValueError('max_redirects must not be negative, not {}'.format(self.max_redirects))

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> 'NetworkSettings':
        """
        Build settings from e.g. a parsed configuration file. Unknown keys are ignored.
        """
        names = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in values.items() if key in names})
