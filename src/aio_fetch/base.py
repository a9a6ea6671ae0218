import asyncio
import typing as _ty

import aiohttp
import attr as _attr
import logging
import yarl

from .errors import (
    ERR,
    RequestError,
    RequestTimeoutError,
    TransportError,
    status_error,
)
from .http import RequestConfig, RequestResult, resolve_call, serialize_headers


def _create_session() -> aiohttp.ClientSession:
    # one connection per attempt, nothing kept alive between calls
    conn = aiohttp.TCPConnector(limit=0, force_close=True)
    return aiohttp.ClientSession(connector=conn)


def _client_timeout(timeout_ms) -> aiohttp.ClientTimeout:
    # idle timer: connecting and every read must finish within the window,
    # a zero timeout disables it
    seconds = timeout_ms / 1000 if timeout_ms else None
    return aiohttp.ClientTimeout(total=None, connect=seconds, sock_read=seconds)


def _should_follow(status: int, location, config: RequestConfig) -> bool:
    return (
        300 <= status < 400
        and bool(location)
        and config.follow_redirect
        and config.max_redirects > 0
    )


def _transport_error(err: aiohttp.ClientError) -> TransportError:
    if isinstance(err, aiohttp.ClientConnectorCertificateError):
        reason = getattr(err.certificate_error, "reason", None)
        return TransportError(reason or "CERTIFICATE_VERIFY_FAILED", "handshake")
    if isinstance(err, aiohttp.ClientConnectorDNSError):
        return TransportError("ENOTFOUND", "getaddrinfo")
    if isinstance(err, aiohttp.ClientConnectorError):
        return TransportError.from_os_error(err.os_error, "connect")
    if isinstance(err, aiohttp.ServerDisconnectedError):
        return TransportError("ECONNRESET", "read")
    if isinstance(err, aiohttp.ClientOSError):
        return TransportError.from_os_error(err, "read")
    return TransportError(ERR, str(err) or type(err).__name__)


def _decode_body(resp: aiohttp.ClientResponse, payload: bytes) -> str:
    try:
        return payload.decode(resp.charset or "utf-8", errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


async def _collect_body(resp: aiohttp.ClientResponse) -> str:
    chunks = []
    async for chunk in resp.content.iter_any():
        chunks.append(chunk)
    return _decode_body(resp, b"".join(chunks))


async def _perform_attempt(
    session: aiohttp.ClientSession, config: RequestConfig
) -> _ty.Union[RequestResult, RequestConfig]:
    """Run a single request attempt.

    Returns the result, or the config of the next hop when the response is
    a redirect that has to be followed. The response of a followed redirect,
    4xx or 5xx is closed without reading its body.
    """
    logger = logging.getLogger(__name__)
    call = resolve_call(config)
    logger.debug(f"{call.method} {call.url} (redirects left: {config.max_redirects})")

    try:
        async with session.request(
            call.method,
            yarl.URL(call.url, encoded=True),
            headers=dict(call.headers),
            data=call.payload,
            timeout=_client_timeout(config.timeout),
            allow_redirects=False,
            ssl=bool(config.reject_unauthorized),
            proxy=config.proxy,
        ) as resp:
            st = resp.status
            location = resp.headers.get(aiohttp.hdrs.LOCATION)

            if _should_follow(st, location, config):
                resp.close()
                return config.redirect_to(location)

            error = status_error(st)
            if error is not None:
                resp.close()
                raise error

            body = await _collect_body(resp)
            return RequestResult(
                status=st,
                headers=serialize_headers(resp.headers.items()),
                body=body,
                url=config.url,
            )
    except asyncio.TimeoutError as err:
        logger.debug(f"{call.method} {call.url} timed out after {config.timeout}ms")
        raise RequestTimeoutError() from err
    except aiohttp.ClientError as err:
        raise _transport_error(err) from err


async def request(options) -> RequestResult:
    """Perform a request described by ``options`` and return its result.

    ``options`` is a mapping of request options or a ``RequestConfig``.
    Redirects are followed up to ``max_redirects`` times, each hop reusing
    the method, body and headers of the original request. Every failure is
    raised as a ``RequestError``.
    """
    logger = logging.getLogger(__name__)
    config = RequestConfig.from_options(options)
    hops = 0

    async with _create_session() as session:
        while True:
            outcome = await _perform_attempt(session, config)
            if isinstance(outcome, RequestResult):
                return _attr.evolve(outcome, redirects=hops)
            logger.debug(f"Redirect {config.url} -> {outcome.url}")
            config = outcome
            hops += 1


async def perform_requests(
    requests: _ty.Sequence[_ty.Any],
    response_callback: _ty.Optional[_ty.Callable[[RequestResult], _ty.Any]] = None,
    concurrency: int = 1,
) -> _ty.List[_ty.Any]:
    """Run independent requests with at most ``concurrency`` in flight.

    The returned list is aligned with ``requests``: each slot holds the
    result (passed through ``response_callback`` when given) or the
    ``RequestError`` that request failed with. Falsy entries are skipped and
    leave ``None``. Any other exception, including one raised by the
    callback, cancels the requests still running and is re-raised.
    """
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()
    sem = asyncio.BoundedSemaphore(concurrency)
    results: _ty.List[_ty.Any] = [None] * len(requests)

    async def _request_task(t_id, options):
        try:
            async with sem:
                response = await request(options)
        except RequestError as err:
            logger.error(f"Request #{t_id} failed: {err}", exc_info=err)
            results[t_id] = err
            return

        # the callback runs in the default executor so it may block
        if response_callback:
            response = await loop.run_in_executor(None, response_callback, response)
        results[t_id] = response

    tasks = [
        asyncio.create_task(_request_task(i, options))
        for i, options in enumerate(requests)
        if options
    ]

    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    return results
