from __future__ import annotations


class BridgeError(Exception):
    """Base class for errors raised by the bridge"""


class BackendError(BridgeError):
    """The upstream directory could not be reached or refused a request"""


class MalformedFilterError(BridgeError, ValueError):
    def __init__(self, filter_string: str):
        super().__init__(f"no cn= marker in filter {filter_string!r}")
        self.filter_string = filter_string
