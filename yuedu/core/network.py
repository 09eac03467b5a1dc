"""
网络基础设施 — Session 构建、TLS 容错、请求发送

所有流水线阶段通过 fetch_text() 发请求,
避免每个阶段重复处理超时 / 代理 / 编码。
"""

import logging
import ssl
import time
from typing import Optional

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .models import UrlRequest

# 禁用 SSL 未验证警告
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)


DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


# ══════════════════════════════════════════════════════════════
# TLS 适配器 — 解决部分书源服务器 SSL 握手失败
# ══════════════════════════════════════════════════════════════

class _TLSAdapter(HTTPAdapter):
    """自定义 TLS 适配器, 降低安全级别以兼容非标 SSL 服务器"""

    def init_poolmanager(self, *args, **kwargs):
        ctx = ssl.create_default_context()
        ctx.set_ciphers("DEFAULT:@SECLEVEL=1")
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        kwargs["ssl_context"] = ctx
        return super().init_poolmanager(*args, **kwargs)


# ══════════════════════════════════════════════════════════════
# Session 构建
# ══════════════════════════════════════════════════════════════

def build_session(
    *,
    user_agent: str = DEFAULT_UA,
    proxy: Optional[str] = None,
    use_tls_adapter: bool = True,
    max_retries: int = 0,
) -> requests.Session:
    """
    构建带 TLS 容错、代理和可选重试的 Session

    Args:
        user_agent: 默认 User-Agent 头 (请求自带的头会覆盖它)
        proxy: 代理地址, None 表示直连
        use_tls_adapter: 是否使用自定义 TLS 适配器
        max_retries: 连接层重试次数, 0 表示不重试
    """
    session = requests.Session()

    if use_tls_adapter:
        retry = Retry(total=max_retries, backoff_factor=1,
                      status_forcelist=[502, 503, 504])
        adapter = _TLSAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

    session.headers.update({"User-Agent": user_agent, "Accept": DEFAULT_ACCEPT})

    if proxy:
        session.proxies = {"http": proxy, "https": proxy}

    return session


def _guess_body_type(body: str) -> str:
    stripped = body.lstrip()
    if stripped.startswith(("{", "[")):
        return "application/json"
    return "application/x-www-form-urlencoded"


def _decode(resp: requests.Response, charset: Optional[str]) -> str:
    """按 书源指定编码 > 响应头编码 > 内容探测 的顺序解码"""
    if charset:
        resp.encoding = charset
    elif not resp.encoding or resp.encoding.lower() == "iso-8859-1":
        # requests 对没有 charset 的 text/* 默认 ISO-8859-1, 中文站点基本都会乱码
        resp.encoding = resp.apparent_encoding or "utf-8"
    return resp.text


READ_CHUNK_SIZE = 64 * 1024


def _read_body(resp: requests.Response, deadline: float, timeout: float) -> bytes:
    """
    流式读取响应体, 超过整体期限抛 requests.Timeout

    requests 的 timeout 只限制单次连接和单次读取, 服务器一点点地吐数据时
    总耗时不受它约束。
    """
    chunks = []
    for chunk in resp.iter_content(chunk_size=READ_CHUNK_SIZE):
        if time.monotonic() > deadline:
            raise requests.Timeout(f"响应读取超过 {timeout:g} 秒: {resp.url}")
        chunks.append(chunk)
    return b"".join(chunks)


def fetch_text(
    request: UrlRequest,
    *,
    timeout: float = 30.0,
    session: Optional[requests.Session] = None,
    verify: bool = False,
    **session_kwargs,
) -> str:
    """
    发送一次请求并以文本形式返回响应体

    HTML / XML / JSON 一律按文本返回, 由规则模式决定如何解析。
    超时、DNS 失败、非 2xx 都以 requests 异常的形式抛出, 由调用方兜底。

    Args:
        request: URL 模板展开后的请求
        timeout: 超时秒数, 同时作为整个请求 (含读取响应体) 的总期限
        session: 复用的 Session, None 则按 session_kwargs 新建
        verify: 是否校验 SSL 证书
    """
    own_session = session is None
    if own_session:
        session = build_session(**session_kwargs)

    headers = dict(request.headers)
    data = None
    if request.body:
        data = request.body.encode(request.charset or "utf-8")
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = _guess_body_type(request.body)

    deadline = time.monotonic() + timeout
    try:
        resp = session.request(
            request.method,
            request.url,
            data=data,
            headers=headers or None,
            timeout=timeout,
            verify=verify,
            stream=True,
        )
        try:
            resp.raise_for_status()
            resp._content = _read_body(resp, deadline, timeout)
            resp._content_consumed = True
            return _decode(resp, request.charset)
        finally:
            resp.close()
    finally:
        if own_session:
            session.close()
