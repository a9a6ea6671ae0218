import attr as _attr
import enum as _enum
import json as _json
import logging as _logging
import re as _re
import types as _types
import typing as _ty
import urllib.parse as _urlparse
import urllib3 as _urllib3

from .errors import InvalidUrlError, UrlMissingError

DEFAULT_METHOD = "GET"
DEFAULT_MAX_REDIRECTS = 10
DEFAULT_TIMEOUT_MS = 10000

DEFAULT_PORTS = {"http": 80, "https": 443}

_SCHEME_RE = _re.compile(r"^https?://", _re.IGNORECASE)

# camelCase option names mapped to RequestConfig fields
_OPTION_ALIASES = {
    "contentType": "content_type",
    "followRedirect": "follow_redirect",
    "maxRedirects": "max_redirects",
    "rejectUnauthorized": "reject_unauthorized",
}


class HttpRequestMethod(_enum.Enum):
    GET = "GET"
    POST = "POST"
    DELETE = "DELETE"
    PUT = "PUT"
    PATCH = "PATCH"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


class ContentType(_enum.Enum):
    FORM = "FORM"
    JSON = "JSON"

    @classmethod
    def parse(cls, value) -> "ContentType":
        """Anything that is not JSON is sent as a form."""
        if isinstance(value, cls):
            return value
        if value is not None and str(value).upper() == cls.JSON.value:
            return cls.JSON
        return cls.FORM

    @property
    def mime_type(self) -> str:
        if self is ContentType.JSON:
            return "application/json"
        return "application/x-www-form-urlencoded"


def _normalize_method(method) -> str:
    if method is None:
        return DEFAULT_METHOD
    if isinstance(method, HttpRequestMethod):
        return method.value
    return str(method).upper()


def _freeze_headers(headers) -> _ty.Mapping[str, str]:
    return _types.MappingProxyType(
        {str(name): str(value) for name, value in dict(headers or {}).items()}
    )


def _clamp_redirects(value) -> int:
    return max(0, int(value))


@_attr.s(auto_attribs=True, frozen=True, slots=True)
class RequestConfig:
    url: _ty.Optional[str]
    method: str = _attr.ib(default=DEFAULT_METHOD, converter=_normalize_method)
    body: _ty.Optional[_ty.Mapping[str, _ty.Any]] = None
    content_type: ContentType = _attr.ib(
        default=ContentType.FORM, converter=ContentType.parse
    )
    headers: _ty.Mapping[str, str] = _attr.ib(
        factory=dict, converter=_freeze_headers
    )
    follow_redirect: bool = True
    max_redirects: int = _attr.ib(
        default=DEFAULT_MAX_REDIRECTS, converter=_clamp_redirects
    )
    timeout: int = _attr.ib(default=DEFAULT_TIMEOUT_MS, converter=int)
    reject_unauthorized: bool = True
    proxy: _ty.Optional[str] = None

    @classmethod
    def from_options(cls, options) -> "RequestConfig":
        """Build a normalized config from a mapping of request options.

        Both the camelCase option names (``maxRedirects``) and the field
        names (``max_redirects``) are accepted. Options left as ``None`` take
        their defaults, unknown options are ignored.
        """
        if isinstance(options, cls):
            return options.normalize()

        kwargs = {}
        for key, value in dict(options or {}).items():
            name = _OPTION_ALIASES.get(key, key)
            if name != "url" and value is None:
                continue
            kwargs[name] = value

        unknown = set(kwargs) - set(_attr.fields_dict(cls))
        if unknown:
            logger = _logging.getLogger(__name__)
            logger.debug(f"Ignoring unknown request options: {sorted(unknown)}")
            for name in unknown:
                del kwargs[name]

        kwargs.setdefault("url", None)
        return cls(**kwargs).normalize()

    @classmethod
    def create(
        cls,
        url,
        method=DEFAULT_METHOD,
        body=None,
        content_type=ContentType.FORM,
        **header_options,
    ) -> "RequestConfig":
        headers = _urllib3.make_headers(**header_options)
        return cls(url, method, body, content_type, headers).normalize()

    def normalize(self) -> "RequestConfig":
        if self.url is None:
            raise UrlMissingError()
        url = str(self.url)
        if not _SCHEME_RE.match(url):
            url = "http://" + url
        if url == self.url:
            return self
        return _attr.evolve(self, url=url)

    def redirect_to(self, location: str) -> "RequestConfig":
        """Config for the next hop. Absolute locations win, relative ones
        keep the current scheme, host and port."""
        return _attr.evolve(
            self,
            url=_urlparse.urljoin(self.url, location),
            max_redirects=self.max_redirects - 1,
        ).normalize()


@_attr.s(auto_attribs=True, frozen=True, slots=True)
class ResolvedCall:
    scheme: str
    hostname: str
    port: int
    path: str
    method: str
    headers: _ty.Mapping[str, str]
    payload: _ty.Optional[bytes] = None

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.hostname}:{self.port}{self.path}"


def _stringify(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def encode_query(body: _ty.Mapping[str, _ty.Any]) -> str:
    pairs = []
    for key, value in body.items():
        if isinstance(value, (list, tuple)):
            pairs.extend((key, _stringify(item)) for item in value)
        else:
            pairs.append((key, _stringify(value)))
    return _urlparse.urlencode(pairs)


def encode_json(body: _ty.Mapping[str, _ty.Any]) -> str:
    return _json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def encode_payload(body, content_type: ContentType) -> bytes:
    if content_type is ContentType.JSON:
        return encode_json(body).encode("utf-8")
    return encode_query(body).encode("utf-8")


def resolve_port(parsed) -> int:
    if parsed.port is not None:
        return parsed.port
    return DEFAULT_PORTS.get((parsed.scheme or "").lower(), 80)


def _has_header(headers, name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


def resolve_call(config: RequestConfig) -> ResolvedCall:
    try:
        parsed = _urllib3.util.parse_url(config.url)
    except _urllib3.exceptions.LocationParseError as err:
        raise InvalidUrlError(config.url) from err
    if not parsed.host:
        raise InvalidUrlError(config.url)

    path = parsed.request_uri
    headers = dict(config.headers)
    payload = None

    if parsed.auth and not _has_header(headers, "Authorization"):
        headers.update(_urllib3.make_headers(basic_auth=_urlparse.unquote(parsed.auth)))

    if config.body is not None:
        if config.method == HttpRequestMethod.GET.value:
            separator = "&" if "?" in path else "?"
            path += separator + encode_query(config.body)
        else:
            payload = encode_payload(config.body, config.content_type)
            headers["Content-Type"] = config.content_type.mime_type
            headers["Content-Length"] = str(len(payload))

    return ResolvedCall(
        scheme=(parsed.scheme or "http").lower(),
        hostname=parsed.host,
        port=resolve_port(parsed),
        path=path,
        method=config.method,
        headers=headers,
        payload=payload,
    )


def serialize_headers(raw_headers: _ty.Iterable[_ty.Tuple[str, str]]) -> str:
    """Serialize response headers to JSON text with lower-cased names."""
    collected: _ty.Dict[str, _ty.Any] = {}
    for name, value in raw_headers:
        name = name.lower()
        if name == "set-cookie":
            collected.setdefault(name, []).append(value)
        elif name in collected:
            collected[name] = f"{collected[name]}, {value}"
        else:
            collected[name] = value
    return _json.dumps(collected)


@_attr.s(auto_attribs=True, frozen=True, slots=True)
class RequestResult:
    status: int
    headers: str
    body: str
    url: _ty.Optional[str] = None
    redirects: int = 0

    def header_map(self) -> _ty.Dict[str, _ty.Any]:
        return _json.loads(self.headers)

    def json(self):
        return _json.loads(self.body)

    def as_dict(self) -> _ty.Dict[str, _ty.Any]:
        return {"status": self.status, "headers": self.headers, "body": self.body}
