"""
正文净化 — HTML 转纯文本、书源自带的 replaceRegex
"""

import logging
import re

from .utils import js_sub

logger = logging.getLogger(__name__)


_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_P_OPEN_RE = re.compile(r"<p(?:\s[^>]*)?>", re.IGNORECASE)
_P_CLOSE_RE = re.compile(r"</p>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n{3,}")

# 替换顺序固定: &amp; 最后处理, 避免 &amp;lt; 被二次反转义
_ENTITIES = (
    ("&nbsp;", " "),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),
)


def clean_html_content(raw: str) -> str:
    """
    章节 HTML → 纯文本

    顺序: <br> 换行 → 去掉 <p>/</p> → 去掉其余标签 → 反转义实体
    → 3 个以上连续换行压成 2 个 → 去首尾空白

    >>> clean_html_content("<p>Hello</p><br><p>World</p>")
    'Hello\\nWorld'
    """
    if not raw:
        return ""
    text = _BR_RE.sub("\n", raw)
    text = _P_OPEN_RE.sub("", text)
    text = _P_CLOSE_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


def apply_replace_regex(content: str, replace_regex: str) -> str:
    """
    应用书源正文规则的 replaceRegex

    格式: "pattern@@replacement##pattern2@@replacement2",
    每一对做一次全局正则替换; 写错的正则单独跳过, 不影响其它替换。
    """
    if not content or not replace_regex:
        return content
    for pair in replace_regex.split("##"):
        pattern, _, replacement = pair.partition("@@")
        if not pattern:
            continue
        try:
            content = js_sub(pattern, replacement, content)
        except re.error as e:
            logger.warning(f"[Content] 替换规则无效, 已跳过: {pattern!r} ({e})")
    return content
