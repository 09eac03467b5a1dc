"""
选择器求值 — 基于 lxml + cssselect

- parse_document: 原始 HTML → lxml 元素树 (完整页面或片段)
- select: CSS 选择, 默认模式下支持 legado 的 @ 分步写法
- extract: 按取值后缀 (text / html / ownText / href / 属性名) 取字符串
- ElementView: 给脚本沙箱用的只读元素包装
"""

import html
import logging
import re
from functools import lru_cache
from typing import List, Optional

import lxml.html
from cssselect import HTMLTranslator, SelectorError
from lxml import etree

from yuedu.core.utils import absolute_url

logger = logging.getLogger(__name__)

_translator = HTMLTranslator()

_FULL_DOCUMENT_RE = re.compile(r"<(?:!doctype|html[\s>]|body[\s>]|head[\s>])", re.IGNORECASE)

# 片段统一包一层, 这样片段自身的根元素也能被选中
FRAGMENT_ROOT = "yuedu-fragment"


# ══════════════════════════════════════════════════════════════
# 文档解析
# ══════════════════════════════════════════════════════════════

def parse_document(content: str) -> Optional[lxml.html.HtmlElement]:
    """
    解析 HTML, 失败返回 None

    完整页面用 document_fromstring, 片段 (比如列表里的一项) 包进
    <yuedu-fragment> 根节点, 保证片段本身也在后代范围内。
    """
    if not content or not content.strip():
        return None
    try:
        return _parse(content)
    except ValueError:
        # 带 <?xml encoding=...?> 声明的字符串 lxml 不接受, 转成字节再试
        try:
            return _parse(content.encode("utf-8"))
        except (etree.ParserError, ValueError) as e:
            logger.debug(f"[Rule] 文档解析失败: {e}")
            return None
    except etree.ParserError as e:
        logger.debug(f"[Rule] 文档解析失败: {e}")
        return None


def _parse(content):
    head = content[:2048] if isinstance(content, str) else content[:2048].decode("utf-8", "ignore")
    if _FULL_DOCUMENT_RE.search(head):
        return lxml.html.document_fromstring(content)
    return lxml.html.fragment_fromstring(content, create_parent=FRAGMENT_ROOT)


def top_level_elements(root: lxml.html.HtmlElement) -> List[lxml.html.HtmlElement]:
    """片段返回包装层下的元素, 完整页面返回 <html> 本身"""
    if root.tag == FRAGMENT_ROOT:
        return [child for child in root if isinstance(child.tag, str)]
    return [root]


# ══════════════════════════════════════════════════════════════
# CSS 选择
# ══════════════════════════════════════════════════════════════

@lru_cache(maxsize=512)
def _css_to_xpath(css: str) -> str:
    # descendant:: 而不是 lxml 默认的 descendant-or-self::, 包装根节点不会被匹配到
    return _translator.css_to_xpath(css, prefix="descendant::")


def css_select(element, css: str) -> list:
    """CSS 选择, 语法错误抛 cssselect.SelectorError"""
    return element.xpath(_css_to_xpath(css))


_LEGADO_STEP_RE = re.compile(r"^(?:(class|tag|id|text)\.([^.]+)|(children))(?:\.(-?\d+))?$")
_INDEXED_STEP_RE = re.compile(r"^(.+?)\.(-?\d+)$")


def _select_step(elements: list, step: str) -> list:
    """执行一个 legado 默认模式的步骤"""
    index = None
    m = _LEGADO_STEP_RE.match(step)
    if m:
        kind, name, children, idx = m.groups()
        index = int(idx) if idx is not None else None
        if children:
            found = [child for el in elements for child in el if isinstance(child.tag, str)]
        elif kind == "text":
            found = [
                node for el in elements
                for node in el.xpath("descendant::*[contains(text(), $t)]", t=name)
            ]
        else:
            # class.a b 表示同时带 a、b 两个 class
            css = {"class": "." + ".".join(name.split()), "tag": name, "id": "#" + name}[kind]
            found = [node for el in elements for node in css_select(el, css)]
    else:
        m = _INDEXED_STEP_RE.match(step)
        if m:
            step, index = m.group(1), int(m.group(2))
        found = [node for el in elements for node in css_select(el, step)]

    found = _unique(found)
    if index is not None:
        try:
            return [found[index]]
        except IndexError:
            return []
    return found


def _unique(elements: list) -> list:
    seen = set()
    result = []
    for el in elements:
        if id(el) not in seen:
            seen.add(id(el))
            result.append(el)
    return result


def select(root, selector: str, legado_steps: bool = True) -> list:
    """
    选择元素, 按文档顺序返回

    Args:
        root: parse_document 的结果
        selector: CSS 选择器; legado_steps 为真时按 @ 拆成多个步骤依次执行
        legado_steps: 默认模式为真, @css: 模式为假
    """
    if root is None or not selector:
        return []
    if not legado_steps:
        return css_select(root, selector)
    elements = [root]
    for step in selector.split("@"):
        step = step.strip()
        if not step:
            continue
        elements = _select_step(elements, step)
        if not elements:
            break
    return elements


# ══════════════════════════════════════════════════════════════
# 取值
# ══════════════════════════════════════════════════════════════

def outer_html(element) -> str:
    return lxml.html.tostring(element, encoding="unicode", with_tail=False)


def inner_html(element) -> str:
    parts = [html.escape(element.text, quote=False)] if element.text else []
    parts.extend(lxml.html.tostring(child, encoding="unicode") for child in element)
    return "".join(parts)


def own_text_nodes(element) -> List[str]:
    """只取元素自己的文本节点, 不含子元素里的文字"""
    nodes = [element.text] if element.text else []
    nodes.extend(child.tail for child in element if child.tail)
    return nodes


def extract(element, suffix: Optional[str], base_url: str = "") -> str:
    """按取值后缀从元素取字符串, 取不到返回空串"""
    if isinstance(element, str):
        return element.strip()
    if suffix is None or suffix == "text":
        return element.text_content().strip()
    if suffix == "textNodes":
        return "\n".join(t.strip() for t in own_text_nodes(element) if t.strip())
    if suffix == "ownText":
        return "".join(own_text_nodes(element)).strip()
    if suffix in ("html", "innerHtml"):
        return inner_html(element)
    if suffix in ("outerHtml", "all"):
        return outer_html(element)
    value = element.get(suffix) or ""
    if suffix in ("href", "src") and value:
        return absolute_url(base_url, value)
    return value.strip()


# ══════════════════════════════════════════════════════════════
# 脚本用的元素包装
# ══════════════════════════════════════════════════════════════

class ElementView:
    """
    只读元素视图, 脚本里 all(selector) 返回它的列表

    只有 METHODS 里的方法能被脚本调用。
    """

    METHODS = ("text", "html", "outerHtml", "ownText", "attr", "find")

    def __init__(self, element, base_url: str = ""):
        self._element = element
        self._base_url = base_url

    def text(self) -> str:
        return extract(self._element, "text")

    def html(self) -> str:
        return inner_html(self._element)

    def outerHtml(self) -> str:
        return outer_html(self._element)

    def ownText(self) -> str:
        return extract(self._element, "ownText")

    def attr(self, name: str) -> str:
        return extract(self._element, name, self._base_url)

    def find(self, selector: str) -> List["ElementView"]:
        try:
            found = css_select(self._element, selector)
        except SelectorError as e:
            logger.debug(f"[JS] 选择器无效: {selector!r} ({e})")
            return []
        return [ElementView(el, self._base_url) for el in found]

    def __repr__(self):
        return f"ElementView(<{self._element.tag}>)"
