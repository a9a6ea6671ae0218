import asyncio
import socket

import pytest
from aiohttp import web


async def _redirect(request: web.Request) -> web.Response:
    remaining = int(request.match_info["n"])
    if remaining > 0:
        raise web.HTTPFound(f"/redirect/{remaining - 1}")
    return web.Response(text="done")


async def _absolute_redirect(request: web.Request) -> web.Response:
    raise web.HTTPFound(str(request.url.with_path("/echo").with_query(None)))


async def _echo(request: web.Request) -> web.Response:
    raw = await request.read()
    return web.json_response(
        {
            "method": request.method,
            "path": request.path,
            "query": request.query_string,
            "content_type": request.headers.get("Content-Type"),
            "content_length": request.headers.get("Content-Length"),
            "authorization": request.headers.get("Authorization"),
            "x_token": request.headers.get("X-Token"),
            "x_num": request.headers.get("X-Num"),
            "raw": raw.decode("utf-8"),
        },
        headers={"X-Custom": "1"},
    )


async def _chunked(request: web.Request) -> web.StreamResponse:
    resp = web.StreamResponse()
    resp.content_type = "text/plain"
    resp.enable_chunked_encoding()
    await resp.prepare(request)
    await resp.write(b"ab")
    await resp.write(b"cd")
    await resp.write_eof()
    return resp


SLOW_PEER_CLOSED = web.AppKey("slow_peer_closed", list)


async def _slow(request: web.Request) -> web.Response:
    closed = request.app[SLOW_PEER_CLOSED]
    try:
        await asyncio.sleep(0.5)
    except asyncio.CancelledError:
        closed.append(True)
        raise
    transport = request.transport
    closed.append(transport is None or transport.is_closing())
    return web.Response(text="late")


async def _redirect_to_echo(request: web.Request) -> web.Response:
    raise web.HTTPFound("/echo")


async def _broken(request: web.Request) -> web.Response:
    raise web.HTTPInternalServerError()


async def _forbidden(request: web.Request) -> web.Response:
    raise web.HTTPForbidden()


async def _stalled_error(request: web.Request) -> web.StreamResponse:
    # sends a 404 whose body trickles in for about two seconds
    resp = web.StreamResponse(status=404)
    await resp.prepare(request)
    for _ in range(40):
        await resp.write(b"x" * 1024)
        await asyncio.sleep(0.05)
    await resp.write_eof()
    return resp


async def _not_modified(request: web.Request) -> web.Response:
    return web.Response(status=304)


@pytest.fixture
def app() -> web.Application:
    application = web.Application()
    application.router.add_get("/redirect/{n}", _redirect)
    application.router.add_route("*", "/redirect-to-echo", _redirect_to_echo)
    application.router.add_get("/absolute-redirect", _absolute_redirect)
    application.router.add_route("*", "/echo", _echo)
    application.router.add_get("/chunked", _chunked)
    application.router.add_get("/slow", _slow)
    application.router.add_get("/broken", _broken)
    application.router.add_get("/forbidden", _forbidden)
    application.router.add_get("/not-modified", _not_modified)
    application.router.add_get("/stalled-error", _stalled_error)
    application[SLOW_PEER_CLOSED] = []
    return application


@pytest.fixture
async def server(aiohttp_server, app):
    return await aiohttp_server(app)


@pytest.fixture
def slow_peer_closed(server) -> list:
    """Per /slow call, whether the client had dropped the connection."""
    return server.app[SLOW_PEER_CLOSED]


@pytest.fixture
def base_url(server) -> str:
    return f"http://127.0.0.1:{server.port}"


@pytest.fixture
def closed_port() -> int:
    """A local port nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
