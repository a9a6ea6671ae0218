import errno as _errno
import socket as _socket
import typing as _ty

ERR = "ERR"


class RequestError(Exception):
    """Failure of a request, described by a short ``code`` and a ``msg``."""

    def __init__(self, code: str, msg: str):
        super().__init__(code, msg)
        self.code = code
        self.msg = msg

    def __str__(self):
        return f"{self.code}: {self.msg}"

    def as_dict(self) -> _ty.Dict[str, str]:
        return {"code": self.code, "msg": self.msg}


class UrlMissingError(RequestError):
    def __init__(self):
        super().__init__(ERR, "URL MISSING")


class InvalidUrlError(RequestError):
    def __init__(self, url):
        super().__init__(ERR, f"INVALID URL: {url}")
        self.url = url


class HttpStatusError(RequestError):
    label = "HTTP ERROR"

    def __init__(self, status: int):
        super().__init__(ERR, f"{self.label}: {status}")
        self.status = status


class ClientStatusError(HttpStatusError):
    label = "CLIENT ERROR"


class ServerStatusError(HttpStatusError):
    label = "SERVER ERROR"


def status_error(status: int) -> _ty.Optional[HttpStatusError]:
    if 400 <= status < 500:
        return ClientStatusError(status)
    if status >= 500:
        return ServerStatusError(status)
    return None


class RequestTimeoutError(RequestError):
    def __init__(self):
        super().__init__(ERR, "timeout")


class TransportError(RequestError):
    """Connection level failure; ``msg`` names the failed operation."""

    @classmethod
    def from_os_error(cls, err: OSError, operation: str) -> "TransportError":
        if isinstance(err, _socket.gaierror):
            return cls("ENOTFOUND", "getaddrinfo")
        code = _errno.errorcode.get(err.errno or 0, ERR)
        return cls(code, operation)
