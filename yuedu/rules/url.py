"""
URL 模板展开 — 书源的 searchUrl / exploreUrl → 具体请求

支持的写法:
  http://x.com/s?q={{key}}&p={{page}}            变量替换
  ${key} ${page} searchKey searchPage            其它常见写法
  /list_<1,20>.html                              旧式分页: 起始值 + (page - 1)
  /search,{"method":"POST","body":"q={{key}}"}   legado 选项对象 (method/body/headers/charset)
  /search@q={{key}}                              @ 之后是 POST 请求体
  {{(page - 1) * 20}}                            其余 {{ }} 按脚本求值
  @js: / <js>...</js>                            整个模板由脚本生成

这里只生成 UrlRequest, 不发请求。
"""

import json
import logging
import re
from typing import Dict, List, Optional, Union

from yuedu.core.models import ExploreKind, UrlRequest
from yuedu.core.network import DEFAULT_UA
from yuedu.core.utils import absolute_url, encode_uri_component
from .script import ScriptContext, evaluate, render_template, value_to_string

logger = logging.getLogger(__name__)

HeaderSpec = Union[str, Dict[str, str], None]

_PAGE_RANGE_RE = re.compile(r"<(\d+),(\d+)>")
_INLINE_SCRIPT_RE = re.compile(r"\{\{(.*?)\}\}", re.S)


# ══════════════════════════════════════════════════════════════
# 请求头
# ══════════════════════════════════════════════════════════════

def parse_headers(header: HeaderSpec) -> Dict[str, str]:
    """书源的 header 字段 (JSON 字符串或 dict) → dict, 无效时返回空 dict"""
    if not header:
        return {}
    if isinstance(header, dict):
        return {str(k): str(v) for k, v in header.items()}
    try:
        data = json.loads(header)
    except ValueError:
        logger.debug(f"[Url] header 不是合法 JSON, 已忽略: {header[:60]!r}")
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


def _merge_headers(user_agent: str, *layers: Dict[str, str]) -> Dict[str, str]:
    """按 默认 < 书源 header < 模板内联 的顺序合并, 键名不区分大小写"""
    merged: Dict[str, str] = {"User-Agent": user_agent}
    for layer in layers:
        for key, value in layer.items():
            for existing in list(merged):
                if existing.lower() == key.lower():
                    del merged[existing]
            merged[key] = value
    return merged


# ══════════════════════════════════════════════════════════════
# 选项拆分
# ══════════════════════════════════════════════════════════════

def _split_options(template: str):
    """
    拆出 legado 选项对象: url,{...}

    Returns:
        (url 部分, 选项 dict 或 None); 选项不是合法 JSON 时视为没有选项。
    """
    idx = template.find(",{")
    if idx < 0:
        return template, None
    try:
        options = json.loads(template[idx + 1:])
    except ValueError:
        logger.debug(f"[Url] URL 选项不是合法 JSON, 已忽略: {template[idx + 1:][:60]!r}")
        return template[:idx], None
    if not isinstance(options, dict):
        return template[:idx], None
    return template[:idx], options


def _option_body(options: dict) -> Optional[str]:
    body = options.get("body")
    if body is None or body == "":
        return None
    if isinstance(body, (dict, list)):
        return json.dumps(body, ensure_ascii=False)
    return str(body)


# ══════════════════════════════════════════════════════════════
# 变量替换
# ══════════════════════════════════════════════════════════════

def replace_variables(text: str, key: str, page: int, charset: Optional[str] = None) -> str:
    """
    替换关键词 / 页码占位符

    关键词按 encodeURIComponent 编码 (可指定字符集, 比如 gbk 站点)。
    替换顺序固定: {{key}} {{searchKey}} {{page}} {{searchPage}} ${key} ${page}
    searchKey searchPage <start,end>
    """
    encoded = encode_uri_component(key or "", charset)
    page_str = str(page)
    text = re.sub(r"\{\{key\}\}", lambda _: encoded, text, flags=re.IGNORECASE)
    text = re.sub(r"\{\{searchKey\}\}", lambda _: encoded, text, flags=re.IGNORECASE)
    text = re.sub(r"\{\{page\}\}", page_str, text, flags=re.IGNORECASE)
    text = re.sub(r"\{\{searchPage\}\}", page_str, text, flags=re.IGNORECASE)
    text = re.sub(r"\$\{key\}", lambda _: encoded, text, flags=re.IGNORECASE)
    text = re.sub(r"\$\{page\}", page_str, text, flags=re.IGNORECASE)
    text = text.replace("searchKey", encoded)
    text = text.replace("searchPage", page_str)
    return _PAGE_RANGE_RE.sub(lambda m: str(int(m.group(1)) + page - 1), text)


def _render_scripts(text: str, context: ScriptContext) -> str:
    """变量替换后仍残留的 {{ }} 按脚本求值"""
    if "{{" not in text:
        return text
    return _INLINE_SCRIPT_RE.sub(
        lambda m: value_to_string(evaluate(m.group(1), context)), text)


# ══════════════════════════════════════════════════════════════
# 对外接口
# ══════════════════════════════════════════════════════════════

def expand_url(
    template: str,
    base_url: str = "",
    key: str = "",
    page: int = 1,
    header: HeaderSpec = None,
    *,
    user_agent: str = DEFAULT_UA,
    context: Optional[ScriptContext] = None,
) -> UrlRequest:
    """
    展开 URL 模板

    Args:
        template: 书源的 searchUrl / exploreUrl 等
        base_url: 书源 URL, 用于解析相对地址
        key: 搜索关键词 (非搜索模板传空串)
        page: 页码, 从 1 开始
        header: 书源的 header 字段
        user_agent: 默认 User-Agent
        context: 脚本上下文 (book / source 等), key / page 会被覆盖
    """
    page = page if page and page > 0 else 1
    context = ScriptContext(
        result=None,
        base_url=base_url,
        book=context.book if context else None,
        chapter=context.chapter if context else None,
        source=context.source if context else None,
        page=page,
        key=key or "",
    )

    template = (template or "").strip()
    if template.startswith("@js:") or "<js>" in template:
        template = render_template(template, context).strip()

    url, options = _split_options(template)
    method = "GET"
    body = None
    charset = None
    inline_headers: Dict[str, str] = {}

    if options is not None:
        charset = options.get("charset") or None
        if str(options.get("method", "")).upper() == "POST":
            method = "POST"
        body = _option_body(options)
        inline_headers = parse_headers(options.get("headers"))
    elif "@" in url:
        url, _, body = url.partition("@")
        method = "POST"

    url = _render_scripts(replace_variables(url, key, page, charset), context)
    if body is not None:
        body = _render_scripts(replace_variables(body, key, page, charset), context)

    if base_url and not url.startswith("http"):
        url = absolute_url(base_url, url)

    return UrlRequest(
        url=url.strip(),
        method=method,
        body=body,
        headers=_merge_headers(user_agent, parse_headers(header), inline_headers),
        charset=charset,
    )


def build_request(
    url: str,
    base_url: str = "",
    header: HeaderSpec = None,
    *,
    user_agent: str = DEFAULT_UA,
) -> UrlRequest:
    """
    规则提取出来的地址 (bookUrl / tocUrl / 章节地址) → 请求

    这类地址可以带 legado 选项对象, 但不做变量替换, 也不把 @ 当作请求体。
    """
    url, options = _split_options((url or "").strip())
    method = "GET"
    body = None
    charset = None
    inline_headers: Dict[str, str] = {}
    if options is not None:
        charset = options.get("charset") or None
        if str(options.get("method", "")).upper() == "POST":
            method = "POST"
        body = _option_body(options)
        inline_headers = parse_headers(options.get("headers"))
    return UrlRequest(
        url=absolute_url(base_url, url),
        method=method,
        body=body,
        headers=_merge_headers(user_agent, parse_headers(header), inline_headers),
        charset=charset,
    )


def parse_explore_kinds(explore_url: Optional[str]) -> List[ExploreKind]:
    """
    解析发现页分类

    两种写法:
      - JSON 数组: [{"title": "玄幻", "url": "/xuanhuan/{{page}}"}, ...]
      - 文本: 每项 name::url, 项之间用换行或 && 分隔;
        没有 :: 的项视为分组标题, 跳过
    """
    if not explore_url or not explore_url.strip():
        return []
    text = explore_url.strip()

    if text.startswith("["):
        try:
            items = json.loads(text)
        except ValueError:
            logger.debug("[Explore] 分类 JSON 解析失败, 按文本格式处理")
        else:
            kinds = []
            for item in items if isinstance(items, list) else []:
                if not isinstance(item, dict):
                    continue
                name = str(item.get("title") or item.get("name") or "").strip()
                url = str(item.get("url") or "").strip()
                if name and url:
                    kinds.append(ExploreKind(name=name, url=url))
            return kinds

    kinds = []
    for entry in re.split(r"\n|&&", text):
        name, sep, url = entry.partition("::")
        if sep and name.strip() and url.strip():
            kinds.append(ExploreKind(name=name.strip(), url=url.strip()))
    return kinds
