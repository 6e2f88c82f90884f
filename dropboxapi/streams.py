"""
Upload sources for the content endpoints.

:class:`ContentStream` wraps whatever the caller hands to an upload method
(bytes, a string or a file-like object) and decides once, when it is
wrapped, whether the source can be rewound and whether it is a pipe whose
size cannot be known ahead of time.
"""

import io
import os
import stat


class ContentStream(object):
    """A readable upload source with ``seekable`` and ``pipe`` capability flags.

    Use :meth:`wrap` rather than the constructor.
    """

    def __init__(self, fileobj, seekable, pipe):
        self.fileobj = fileobj
        self.seekable = seekable
        self.pipe = pipe
        self._pending = b''
        self._position = fileobj.tell() if seekable else 0
        self.size = self._remaining() if seekable else None

    @classmethod
    def wrap(cls, contents):
        """Return a :class:`ContentStream` for ``contents``.

        Parameters
            contents
              ``bytes``, ``bytearray``, ``str`` (sent UTF-8 encoded), a binary
              file-like object, or an existing :class:`ContentStream` (returned
              unchanged). Text mode files raise ``TypeError``.
        """
        if isinstance(contents, ContentStream):
            return contents
        if isinstance(contents, str):
            contents = contents.encode('utf8')
        if isinstance(contents, (bytes, bytearray)):
            return cls(io.BytesIO(contents), seekable=True, pipe=False)
        if not hasattr(contents, 'read'):
            raise TypeError("expected bytes, str or a file-like object, got %r"
                            % (type(contents).__name__,))
        if isinstance(contents, io.TextIOBase):
            # Chunk sizes and offsets count bytes.
            raise TypeError("file-like objects must be opened in binary mode")

        seekable = _is_seekable(contents)
        pipe = _is_fifo(contents) or not seekable
        return cls(contents, seekable=seekable and not pipe, pipe=pipe)

    def _remaining(self):
        pos = self.fileobj.tell()
        end = self.fileobj.seek(0, io.SEEK_END)
        self.fileobj.seek(pos)
        return end - pos

    def tell(self):
        return self._position

    def seek(self, pos):
        if not self.seekable:
            raise io.UnsupportedOperation("stream is not seekable")
        self.fileobj.seek(pos)
        self._pending = b''
        self._position = pos

    def read(self, n=-1):
        """Read at most ``n`` bytes (everything when ``n`` is negative)."""
        data = self._pending
        self._pending = b''
        if n is None or n < 0:
            data += self.fileobj.read() or b''
        elif len(data) < n:
            data += self.fileobj.read(n - len(data)) or b''
        else:
            self._pending = data[n:]
            data = data[:n]
        self._position += len(data)
        return data

    def eof(self):
        """Whether all data has been read. Peeks one byte without losing it."""
        if self._pending:
            return False
        if self.seekable:
            pos = self.fileobj.tell()
            at_end = not self.fileobj.read(1)
            self.fileobj.seek(pos)
            return at_end
        self._pending = self.fileobj.read(1) or b''
        return not self._pending


def _is_seekable(fileobj):
    try:
        return bool(fileobj.seekable())
    except (AttributeError, ValueError, OSError):
        return False


def _is_fifo(fileobj):
    try:
        fd = fileobj.fileno()
    except (AttributeError, ValueError, OSError):
        return False
    return stat.S_ISFIFO(os.fstat(fd).st_mode)
