"""
通用工具函数 — URL 处理、JS 风格的正则替换
"""

import re
from typing import Optional, Pattern, Union
from urllib.parse import quote, urljoin


# ══════════════════════════════════════════════════════════════
# URL 处理
# ══════════════════════════════════════════════════════════════

_ABSOLUTE_RE = re.compile(r"^https?://", re.IGNORECASE)

# encodeURIComponent 不转义的字符
_URI_COMPONENT_SAFE = "-_.!~*'()"
# encodeURI 额外保留的 URL 保留字符
_URI_SAFE = _URI_COMPONENT_SAFE + ";,/?:@&=+$#"


def is_absolute_url(url: str) -> bool:
    return bool(_ABSOLUTE_RE.match(url))


def absolute_url(base_url: str, url: Optional[str]) -> str:
    """
    相对 URL 转绝对 URL

    - 协议相对地址 (//host/path) 统一补成 https:
    - 已经是 http(s) 的地址原样返回, 因此 f(f(x)) == f(x)
    - 解析失败返回原字符串, 从不抛异常
    """
    if not url:
        return ""
    url = url.strip()
    if url.startswith("//"):
        return "https:" + url
    if is_absolute_url(url) or not base_url:
        return url
    try:
        return urljoin(base_url, url)
    except ValueError:
        return url


def _encode(text: str, charset: Optional[str]) -> Union[str, bytes]:
    """
    按书源字符集编码; 该字符集表示不了的字符退回 UTF-8,
    未知字符集整体按 UTF-8 处理
    """
    if not charset:
        return text
    try:
        return text.encode(charset)
    except LookupError:
        return text.encode("utf-8")
    except UnicodeEncodeError:
        data = bytearray()
        for ch in text:
            try:
                data += ch.encode(charset)
            except UnicodeEncodeError:
                data += ch.encode("utf-8", "surrogatepass")
        return bytes(data)


def encode_uri_component(text: str, charset: Optional[str] = None) -> str:
    """等价于 JS encodeURIComponent, 可指定编码 (如 gbk)"""
    data = _encode(text, charset)
    return quote(data, safe=_URI_COMPONENT_SAFE)


def encode_uri(text: str, charset: Optional[str] = None) -> str:
    """等价于 JS encodeURI"""
    data = _encode(text, charset)
    return quote(data, safe=_URI_SAFE)


# ══════════════════════════════════════════════════════════════
# JS / Java 风格的正则替换
# ══════════════════════════════════════════════════════════════

# 书源里的替换串沿用 $1 / $& / $<name> 写法, 不是 Python 的 \1
_REPLACEMENT_TOKEN = re.compile(r"\$(\$|&|\d{1,2}|<[^>]*>)")


def expand_replacement(match: "re.Match", replacement: str) -> str:
    """按 JS 规则展开替换串中的 $ 引用"""
    def sub(m):
        token = m.group(1)
        if token == "$":
            return "$"
        if token == "&":
            return match.group(0)
        if token.startswith("<"):
            try:
                return match.group(token[1:-1]) or ""
            except IndexError:
                return m.group(0)
        n = int(token)
        if 0 < n <= len(match.groups()):
            return match.group(n) or ""
        return m.group(0)

    return _REPLACEMENT_TOKEN.sub(sub, replacement)


def js_sub(
    pattern: Union[str, Pattern],
    replacement: str,
    text: str,
    count: int = 0,
    flags: int = 0,
) -> str:
    """
    正则替换 (默认全局), 替换串使用 $n 语法

    编译失败抛 re.error, 由调用方决定如何降级。
    """
    regex = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern, flags)
    return regex.sub(lambda m: expand_replacement(m, replacement or ""), text, count=count)
