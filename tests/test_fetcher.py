import asyncio
import gzip
import zlib

import brotli
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from errors import DecodeFailure, ForbiddenAddress, ForbiddenHost, HttpStatus, Timeout, TooLarge, TooManyRedirects
from fetcher import SafeFetcher, decode_text, decompress_body

RSS = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<rss version="2.0"><channel><title>Café Radio</title></channel></rss>'
)

BIG_CHUNK = b"x" * 65536
BIG_CHUNKS = 160  # 10 MiB


async def feed(request):
    return web.Response(body=RSS.encode("utf-8"), content_type="application/rss+xml")


async def redirect(request):
    remaining = int(request.match_info["n"])
    if remaining == 0:
        return await feed(request)
    raise web.HTTPFound(f"/redirect/{remaining - 1}")


async def redirect_private(request):
    raise web.HTTPFound("http://10.0.0.5/feed")


async def big_stream(request):
    response = web.StreamResponse()
    await response.prepare(request)
    try:
        for _ in range(BIG_CHUNKS):
            await response.write(BIG_CHUNK)
    except ConnectionResetError:
        pass
    return response


async def big_declared(request):
    return web.Response(body=b"x" * 200_000)


async def slow(request):
    await asyncio.sleep(2)
    return await feed(request)


async def gzipped(request):
    return web.Response(body=gzip.compress(RSS.encode("utf-8")), headers={"Content-Encoding": "gzip"})


async def deflated(request):
    return web.Response(body=zlib.compress(RSS.encode("utf-8")), headers={"Content-Encoding": "deflate"})


async def brotli_encoded(request):
    return web.Response(body=brotli.compress(RSS.encode("utf-8")), headers={"Content-Encoding": "br"})


async def bad_gzip(request):
    return web.Response(body=b"definitely not gzip", headers={"Content-Encoding": "gzip"})


async def gzip_bomb(request):
    return web.Response(body=gzip.compress(b"\0" * 2_000_000), headers={"Content-Encoding": "gzip"})


@pytest_asyncio.fixture
async def feed_server():
    app = web.Application()
    app.router.add_get("/feed", feed)
    app.router.add_get("/redirect/{n}", redirect)
    app.router.add_get("/to-private", redirect_private)
    app.router.add_get("/big", big_stream)
    app.router.add_get("/big-declared", big_declared)
    app.router.add_get("/slow", slow)
    app.router.add_get("/gzip", gzipped)
    app.router.add_get("/deflate", deflated)
    app.router.add_get("/br", brotli_encoded)
    app.router.add_get("/bad-gzip", bad_gzip)
    app.router.add_get("/gzip-bomb", gzip_bomb)
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


def url_for(server, path):
    return str(server.make_url(path))


@pytest.mark.asyncio
async def test_fetch_plain_feed(feed_server, allow_loopback):
    text = await SafeFetcher().fetch(url_for(feed_server, "/feed"))
    assert "Café Radio" in text


@pytest.mark.asyncio
async def test_three_redirects_succeed(feed_server, allow_loopback):
    fetcher = SafeFetcher(max_redirects=3)
    result = await fetcher.fetch_raw(url_for(feed_server, "/redirect/3"))
    assert result.url.endswith("/redirect/0")


@pytest.mark.asyncio
async def test_four_redirects_fail(feed_server, allow_loopback):
    fetcher = SafeFetcher(max_redirects=3)
    with pytest.raises(TooManyRedirects):
        await fetcher.fetch(url_for(feed_server, "/redirect/4"))


@pytest.mark.asyncio
async def test_redirect_to_private_host_rejected(feed_server, allow_loopback):
    with pytest.raises(ForbiddenHost):
        await SafeFetcher().fetch(url_for(feed_server, "/to-private"))


@pytest.mark.asyncio
async def test_byte_cap_aborts_stream_early(feed_server, allow_loopback):
    fetcher = SafeFetcher(max_bytes=100_000, chunk_size=16_384)
    with pytest.raises(TooLarge) as excinfo:
        await fetcher.fetch(url_for(feed_server, "/big"))

    assert excinfo.value.bytes_read > 100_000
    assert excinfo.value.bytes_read < len(BIG_CHUNK) * BIG_CHUNKS // 10


@pytest.mark.asyncio
async def test_declared_length_over_cap_rejected(feed_server, allow_loopback):
    fetcher = SafeFetcher(max_bytes=100_000)
    with pytest.raises(TooLarge) as excinfo:
        await fetcher.fetch(url_for(feed_server, "/big-declared"))
    assert excinfo.value.bytes_read == 0


@pytest.mark.asyncio
async def test_timeout(feed_server, allow_loopback):
    fetcher = SafeFetcher(timeout=0.2)
    with pytest.raises(Timeout):
        await fetcher.fetch(url_for(feed_server, "/slow"))


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/gzip", "/deflate", "/br"])
async def test_compressed_bodies_decoded(feed_server, allow_loopback, path):
    text = await SafeFetcher().fetch(url_for(feed_server, path))
    assert "Café Radio" in text


@pytest.mark.asyncio
async def test_corrupt_gzip_is_decode_failure(feed_server, allow_loopback):
    with pytest.raises(DecodeFailure):
        await SafeFetcher().fetch(url_for(feed_server, "/bad-gzip"))


@pytest.mark.asyncio
async def test_decompressed_size_is_capped(feed_server, allow_loopback):
    fetcher = SafeFetcher(max_decoded_bytes=100_000)
    with pytest.raises(TooLarge) as excinfo:
        await fetcher.fetch(url_for(feed_server, "/gzip-bomb"))
    assert excinfo.value.limit == 100_000


@pytest.mark.asyncio
async def test_http_error_status(feed_server, allow_loopback):
    with pytest.raises(HttpStatus) as excinfo:
        await SafeFetcher().fetch(url_for(feed_server, "/missing"))
    assert excinfo.value.code == 404


@pytest.mark.asyncio
async def test_hostname_connects_to_pinned_address(feed_server, allow_loopback, fake_dns):
    fake_dns["feeds.test"] = ["127.0.0.1"]
    text = await SafeFetcher().fetch(f"http://feeds.test:{feed_server.port}/feed")
    assert "Café Radio" in text


@pytest.mark.asyncio
async def test_internationalized_hostname_is_pinned(feed_server, allow_loopback, fake_dns):
    fake_dns["xn--bcher-kva.test"] = ["127.0.0.1"]
    text = await SafeFetcher().fetch(f"http://bücher.test:{feed_server.port}/feed")
    assert "Café Radio" in text


@pytest.mark.asyncio
async def test_hostname_resolving_privately_is_rejected(fake_dns):
    fake_dns["intranet.test"] = ["10.1.2.3"]
    with pytest.raises(ForbiddenAddress):
        await SafeFetcher().fetch("http://intranet.test/feed")


def test_decompress_raw_deflate():
    compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
    raw = compressor.compress(b"<rss/>") + compressor.flush()
    assert decompress_body(raw, "deflate") == b"<rss/>"


def test_unknown_encoding_passes_through():
    assert decompress_body(b"<rss/>", "x-unknown") == b"<rss/>"


def test_decode_text_prefers_xml_declaration():
    data = '<?xml version="1.0" encoding="ISO-8859-1"?><rss>café</rss>'.encode("latin-1")
    assert "café" in decode_text(data, "text/xml; charset=utf-8")


def test_decode_text_uses_http_charset_then_utf8():
    assert decode_text("café".encode("cp1252"), "text/xml; charset=windows-1252") == "café"
    assert decode_text(b"\xef\xbb\xbf<rss/>") == "<rss/>"
    assert decode_text(b"<rss>\xff</rss>") == "<rss>\ufffd</rss>"


@pytest.mark.parametrize("encoding,compress", [
    ("gzip", gzip.compress),
    ("deflate", zlib.compress),
    ("br", brotli.compress),
])
def test_decompress_stops_at_decoded_cap(encoding, compress):
    body = compress(b"\0" * 1_000_000)
    with pytest.raises(TooLarge) as excinfo:
        decompress_body(body, encoding, max_bytes=50_000)
    assert excinfo.value.bytes_read < 1_000_000
    assert decompress_body(body, encoding, max_bytes=1_000_000) == b"\0" * 1_000_000


def test_decompress_gzip_members_and_padding():
    body = gzip.compress(b"<rss>") + gzip.compress(b"</rss>") + b"\0\0\0"
    assert decompress_body(body, "gzip") == b"<rss></rss>"


@pytest.mark.parametrize("encoding,compress,error", [
    ("gzip", gzip.compress, zlib.error),
    ("br", brotli.compress, brotli.error),
])
def test_decompress_truncated_stream(encoding, compress, error):
    body = compress(b"<rss>" + b"episode " * 500 + b"</rss>")
    with pytest.raises(error):
        decompress_body(body[: len(body) // 2], encoding)
