import dataclasses
from io import RawIOBase, UnsupportedOperation
import json
import logging
from typing import Callable, IO, List, Optional, Type


logger = logging.getLogger(__name__)


def clamp(value, min, max):
    return sorted((min, value, max))[1]


class DataclassJSONEncoder(json.JSONEncoder):
    def default(self, o):
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        return super().default(o)


class DataclassJSONDecoder(json.JSONDecoder):
    def __init__(self, class_type: Type, **kwargs) -> None:
        super().__init__(**kwargs)
        self.__class_type = class_type

    def decode(self, s):
        result = super().decode(s)
        return self.__class_type(**result)


class Signal:
    """
    A list of callbacks that are invoked, in connection order, on `emit()`.

    Signals are not thread-safe. They are connected and emitted on the thread
    that runs the owning event loop.
    """

    def __init__(self) -> None:
        self.__slots: List[Callable] = []

    def connect(self, slot: Callable) -> None:
        self.__slots.append(slot)

    def disconnect(self, slot: Optional[Callable] = None) -> None:
        """
        Disconnect `slot`, or every slot if none is given.
        """
        if slot is None:
            self.__slots.clear()
        elif slot in self.__slots:
            self.__slots.remove(slot)

    def emit(self, *args) -> None:
        # Slots may connect or disconnect while we iterate.
        for slot in list(self.__slots):
            slot(*args)

    def __len__(self) -> int:
        return len(self.__slots)


class Tee(RawIOBase):
    """
    Copies everything read from `reader` into `writer`.

    `on_complete` is called once the reader reports EOF. If the tee is closed
    before that, `on_discard` is called instead so that the partial copy can be
    thrown away.
    """

    def __init__(self, reader: IO[bytes], writer: IO[bytes], on_complete: Callable[[], None],
                 on_discard: Optional[Callable[[], None]] = None) -> None:
        self.__reader = reader
        self.__writer = writer
        self.__on_complete = on_complete
        self.__on_discard = on_discard
        self.__done = False

    def _write_chunk(self, chunk: bytes) -> bytes:
        if self.__done:
            return chunk
        if chunk:
            try:
                self.__writer.write(chunk)
            except OSError:
                # The reader is still good. Only the copy is lost.
                logger.exception('Could not copy the stream. Discarding the partial copy.')
                self.__done = True
                if self.__on_discard is not None:
                    self.__on_discard()
        else:
            # Indicates EOF was reached in the reader.
            self.__done = True
            self.__on_complete()
        return chunk

    @property
    def _original_response(self):
        # requests extracts cookies from this.
        return getattr(self.__reader, '_original_response', None)

    # region IOBase methods

    def close(self) -> None:
        if not self.__done:
            self.__done = True
            logger.info('Stream closed before EOF. Discarding the partial copy.')
            if self.__on_discard is not None:
                self.__on_discard()
        self.__reader.close()
        self.__writer.close()
        super().close()

    @property
    def closed(self) -> bool:
        return self.__reader.closed

    def fileno(self) -> int:
        raise OSError()

    def flush(self) -> None:
        if not self.__writer.closed:
            self.__writer.flush()

    def isatty(self) -> bool:
        return False

    def readable(self) -> bool:
        return True

    def readline(self, size=-1) -> bytes:
        return self._write_chunk(self.__reader.readline(size))

    def seekable(self) -> bool:
        return False

    def writable(self) -> bool:
        return False

    # endregion

    # region RawIOBase methods

    def read(self, size=-1):
        return self._write_chunk(self.__reader.read(size))

    def readall(self):
        chunks = []
        while True:
            chunk = self.read(64 * 1024)
            if not chunk:
                return b''.join(chunks)
            chunks.append(chunk)

    def readinto(self, buffer):
        # Just because I don't feel like figuring how to tee these.
        raise UnsupportedOperation()

    def write(self, b):
        raise UnsupportedOperation()

    # endregion
