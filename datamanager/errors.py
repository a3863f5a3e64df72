from __future__ import annotations

from typing import Optional


class DataManagerError(Exception):
    pass


class DecodeError(DataManagerError):
    """A line that is not JSON or does not match any message variant."""

    def __init__(self, reason: str, line: Optional[bytes] = None, lineno: Optional[int] = None):
        self.reason = reason
        self.line = line
        self.lineno = lineno
        where = f"line {lineno}: " if lineno is not None else ""
        super().__init__(f"{where}{reason}")


class EncodeError(DataManagerError):
    pass


class TransportError(DataManagerError):
    pass
