import itertools
from types import SimpleNamespace

import pytest
import requests

from yuedu.core import network
from yuedu.core.config import EngineConfig
from yuedu.core.models import UrlRequest
from yuedu.core.network import build_session, fetch_text
from yuedu.core.utils import absolute_url, encode_uri_component


class _Session:
    """记录请求参数, 返回预置响应"""

    def __init__(self, body: bytes, content_type: str = "text/html", response_class=requests.Response):
        self.body = body
        self.content_type = content_type
        self.response_class = response_class
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        resp = self.response_class()
        resp.status_code = 200
        resp.url = url
        resp._content = self.body
        resp._content_consumed = True
        resp.headers["Content-Type"] = self.content_type
        resp.encoding = requests.utils.get_encoding_from_headers(resp.headers)
        return resp


def test_fetch_post_form_body():
    session = _Session(b"ok")
    request = UrlRequest(url="http://x.test/s", method="POST", body="q=1", headers={"User-Agent": "UA"})
    assert fetch_text(request, session=session, timeout=5) == "ok"

    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert kwargs["data"] == b"q=1"
    assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
    assert kwargs["timeout"] == 5


def test_fetch_json_body_keeps_explicit_content_type():
    session = _Session(b"{}")
    request = UrlRequest(url="http://x.test/api", method="POST", body='{"a":1}',
                         headers={"content-type": "text/plain"})
    fetch_text(request, session=session)
    headers = session.calls[0][2]["headers"]
    assert headers == {"content-type": "text/plain"}


def test_fetch_charset_override():
    session = _Session("龙".encode("gbk"), "text/html; charset=utf-8")
    request = UrlRequest(url="http://x.test/", charset="gbk")
    assert fetch_text(request, session=session) == "龙"


def test_build_session_proxy_and_headers():
    session = build_session(user_agent="UA", proxy="http://127.0.0.1:7890")
    assert session.headers["User-Agent"] == "UA"
    assert session.proxies == {"http": "http://127.0.0.1:7890", "https": "http://127.0.0.1:7890"}


def test_config_from_env(monkeypatch):
    for var in ("HTTPS_PROXY", "HTTP_PROXY", "https_proxy", "http_proxy"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("YUEDU_TIMEOUT", "5")
    monkeypatch.setenv("YUEDU_MAX_TOC_PAGES", "3")
    monkeypatch.setenv("YUEDU_VERIFY_SSL", "yes")
    monkeypatch.setenv("HTTP_PROXY", "http://proxy.test:8080")

    config = EngineConfig.from_env()
    assert config.timeout == 5.0
    assert config.max_toc_pages == 3
    assert config.verify_ssl
    assert config.proxy == "http://proxy.test:8080"
    assert config.max_content_pages == EngineConfig().max_content_pages


def test_absolute_url():
    assert absolute_url("http://x.test/a/b.html", "c.html") == "http://x.test/a/c.html"
    assert absolute_url("http://x.test/a/", "/c") == "http://x.test/c"
    assert absolute_url("http://x.test/", "//cdn.test/i.png") == "https://cdn.test/i.png"
    assert absolute_url("http://x.test/", "http://y.test/") == "http://y.test/"
    assert absolute_url("http://x.test/", "") == ""
    once = absolute_url("http://x.test/a/", "b")
    assert absolute_url("http://x.test/a/", once) == once


def test_encode_uri_component():
    assert encode_uri_component("a b&c") == "a%20b%26c"
    assert encode_uri_component("龙", "gbk") == "%C1%FA"


class _TricklingResponse(requests.Response):
    """每次只吐一个字节的响应"""

    def iter_content(self, chunk_size=1, decode_unicode=False):
        for b in self._content:
            yield bytes([b])


def test_fetch_requests_streaming():
    session = _Session(b"ok")
    fetch_text(UrlRequest(url="http://x.test/"), session=session)
    assert session.calls[0][2]["stream"] is True


def test_fetch_total_deadline(monkeypatch):
    clock = itertools.count(0, 4)
    monkeypatch.setattr(network, "time", SimpleNamespace(monotonic=lambda: next(clock)))
    session = _Session(b"abcdef", response_class=_TricklingResponse)

    with pytest.raises(requests.Timeout):
        fetch_text(UrlRequest(url="http://x.test/"), session=session, timeout=10)


def test_fetch_within_deadline(monkeypatch):
    clock = itertools.count(0, 1)
    monkeypatch.setattr(network, "time", SimpleNamespace(monotonic=lambda: next(clock)))
    session = _Session(b"abc", response_class=_TricklingResponse)
    assert fetch_text(UrlRequest(url="http://x.test/"), session=session, timeout=10) == "abc"


def test_encode_falls_back_to_utf8_for_unencodable():
    assert encode_uri_component("龙😀", "gbk") == "%C1%FA%F0%9F%98%80"
    assert encode_uri_component("龙", "no-such-charset") == "%E9%BE%99"
