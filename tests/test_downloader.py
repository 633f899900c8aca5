import pytest
import requests
from requests.structures import CaseInsensitiveDict

from downloader import (
    DownloadError,
    PlaylistDownloader,
    PlaylistTooLargeError,
)


class _DummyResponse:
    def __init__(self, body=b"", headers=None, status_code=200):
        self._body = body
        self.headers = CaseInsensitiveDict(headers or {})
        self.status_code = status_code
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self._body), chunk_size):
            yield self._body[start : start + chunk_size]

    def close(self):
        self.closed = True


class _DummyHTTPClient:
    def __init__(self, response=None, error=None):
        self._response = response
        self._error = error
        self.calls = []

    def get(self, url, headers, timeout, stream):
        self.calls.append({"url": url, "headers": headers, "timeout": timeout, "stream": stream})
        if self._error is not None:
            raise self._error
        return self._response


def test_download_returns_text_and_passthrough_headers():
    response = _DummyResponse(
        body="#EXTM3U\n#EXTINF:-1,Café\nhttp://example.com/a\n".encode("utf-8"),
        headers={
            "Content-Type": "audio/x-mpegurl",
            "Cache-Control": "no-cache",
            "Content-Disposition": 'attachment; filename="list.m3u"',
            "Set-Cookie": "session=secret",
            "Server": "nginx",
        },
    )
    http_client = _DummyHTTPClient(response)
    downloader = PlaylistDownloader(timeout=5, user_agent="tests/1.0", http_client=http_client)

    result = downloader.download("http://example.com/list.m3u")

    assert result.data == "#EXTM3U\n#EXTINF:-1,Café\nhttp://example.com/a\n"
    assert result.headers == {
        "content-type": "audio/x-mpegurl",
        "cache-control": "no-cache",
        "content-disposition": 'attachment; filename="list.m3u"',
    }
    assert http_client.calls == [
        {
            "url": "http://example.com/list.m3u",
            "headers": {"User-Agent": "tests/1.0"},
            "timeout": 5,
            "stream": True,
        }
    ]
    assert response.closed is True


def test_download_honours_declared_charset():
    response = _DummyResponse(
        body="#EXTINF:-1,Télé\n".encode("latin-1"),
        headers={"Content-Type": "text/plain; charset=ISO-8859-1"},
    )
    downloader = PlaylistDownloader(http_client=_DummyHTTPClient(response))

    assert downloader.download("http://example.com/a").data == "#EXTINF:-1,Télé\n"


def test_download_falls_back_to_utf8_for_unknown_charset():
    response = _DummyResponse(
        body="#EXTM3U\n".encode("utf-8"),
        headers={"Content-Type": "text/plain; charset=not-a-codec"},
    )
    downloader = PlaylistDownloader(http_client=_DummyHTTPClient(response))

    assert downloader.download("http://example.com/a").data == "#EXTM3U\n"


@pytest.mark.parametrize(
    "content_type",
    [None, "audio/x-mpegurl", "audio/x-mpegurl; charset=UTF-8", "text/plain; charset=utf8"],
)
def test_download_drops_utf8_byte_order_mark(content_type):
    headers = {"Content-Type": content_type} if content_type else {}
    response = _DummyResponse(body=b"\xef\xbb\xbf#EXTM3U\nhttp://a\n", headers=headers)
    downloader = PlaylistDownloader(http_client=_DummyHTTPClient(response))

    assert downloader.download("http://example.com/a").data == "#EXTM3U\nhttp://a\n"


def test_connection_errors_raise_download_error():
    http_client = _DummyHTTPClient(error=requests.ConnectionError("refused"))
    downloader = PlaylistDownloader(http_client=http_client)

    with pytest.raises(DownloadError) as excinfo:
        downloader.download("http://example.com/a")

    assert "http://example.com/a" in str(excinfo.value)


def test_http_error_status_raises_download_error():
    response = _DummyResponse(status_code=503)
    downloader = PlaylistDownloader(http_client=_DummyHTTPClient(response))

    with pytest.raises(DownloadError):
        downloader.download("http://example.com/a")
    assert response.closed is True


def test_announced_length_over_limit_is_rejected():
    response = _DummyResponse(body=b"#EXTM3U\n", headers={"Content-Length": "2048"})
    downloader = PlaylistDownloader(max_bytes=1024, http_client=_DummyHTTPClient(response))

    with pytest.raises(PlaylistTooLargeError):
        downloader.download("http://example.com/a")


def test_streamed_body_over_limit_is_rejected():
    response = _DummyResponse(body=b"x" * 200_000)
    downloader = PlaylistDownloader(max_bytes=100_000, http_client=_DummyHTTPClient(response))

    with pytest.raises(PlaylistTooLargeError):
        downloader.download("http://example.com/a")


def test_body_at_limit_is_accepted():
    response = _DummyResponse(body=b"a" * 1024, headers={"Content-Length": "1024"})
    downloader = PlaylistDownloader(max_bytes=1024, http_client=_DummyHTTPClient(response))

    assert len(downloader.download("http://example.com/a").data) == 1024


def test_too_large_is_a_download_error():
    assert issubclass(PlaylistTooLargeError, DownloadError)
