"""
规则执行上下文 — 持有一份文档 (HTML 或 JSON) 和它的基础 URL

    analyzer = Analyzer(html, base_url="https://example.com/search")
    for item in analyzer.get_elements(".book-item"):
        child = analyzer.child(item)
        name = child.get_string(".title@text")
        url = child.get_string(".title@href")

单条规则出错 (选择器写错、正则写错、JSON 解析失败、脚本异常) 只会让
该字段取到空值, 不会中断其它字段的提取。
"""

import json
import logging
import re
from dataclasses import replace
from typing import Any, List, Optional

from cssselect import SelectorError
from lxml import etree

from yuedu.core.utils import absolute_url, js_sub
from .expression import RuleMode, parse_rule, split_combinators
from .jsonpath import JsonPathError, query, query_strings, to_text
from .script import (
    ScriptContext,
    ScriptError,
    evaluate,
    render_template,
    to_js_string,
    to_string_list,
    value_to_string,
)
from .selector import (
    ElementView,
    css_select,
    extract,
    outer_html,
    parse_document,
    select,
    top_level_elements,
)

logger = logging.getLogger(__name__)

# 单条规则求值时会被捕获、降级为空结果的异常
RULE_ERRORS = (
    re.error,
    SelectorError,
    etree.XPathError,
    JsonPathError,
    ScriptError,
    ValueError,
    TypeError,
)

# 规则链: prefix<js>code</js>rest 或 prefix@js:code
_SCRIPT_CHAIN_RE = re.compile(r"<js>(.*?)</js>|@js:(.*)", re.S)

# 以 @href / @src 结尾的 XPath, 取到的链接要转成绝对地址
_XPATH_LINK_RE = re.compile(r"@(?:href|src)\s*$")

_NOT_PARSED = object()


class Analyzer:
    """
    单个文档的规则执行器

    每次抓取各自创建, 不在线程之间共享。列表项通过 child() 生成嵌套实例,
    嵌套层数超过 MAX_DEPTH 时子实例不再持有内容。
    """

    MAX_DEPTH = 8
    MAX_EVAL_DEPTH = 16

    def __init__(
        self,
        content: Any,
        base_url: str = "",
        depth: int = 0,
        context: Optional[ScriptContext] = None,
    ):
        if content is None:
            content = ""
        elif not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)
        self.content: str = content
        self.base_url = base_url or ""
        self.depth = depth
        self.context = context or ScriptContext(base_url=self.base_url)
        self._document = _NOT_PARSED
        self._json = _NOT_PARSED
        self._eval_depth = 0

    # ══════════════════════════════════════════════════════════════
    # 惰性解析
    # ══════════════════════════════════════════════════════════════

    @property
    def document(self):
        """lxml 文档, 解析失败为 None"""
        if self._document is _NOT_PARSED:
            self._document = parse_document(self.content)
        return self._document

    @property
    def json_data(self):
        """JSON 数据, 内容不是 JSON 时为 None"""
        if self._json is _NOT_PARSED:
            try:
                self._json = json.loads(self.content)
            except ValueError:
                self._json = None
        return self._json

    # ══════════════════════════════════════════════════════════════
    # 公开接口
    # ══════════════════════════════════════════════════════════════

    def get_string(self, rule: Optional[str]) -> str:
        """取字符串, 多个结果用换行拼接; 没有结果返回空串"""
        if not rule:
            return ""
        return "\n".join(self.get_string_list(rule)).strip()

    def get_string_list(self, rule: Optional[str]) -> List[str]:
        """取字符串列表, 空白项会被去掉"""
        if not rule or not rule.strip():
            return []
        if self._eval_depth >= self.MAX_EVAL_DEPTH:
            logger.warning(f"[Rule] 规则嵌套求值过深, 已放弃: {rule[:60]!r}")
            return []
        self._eval_depth += 1
        try:
            return self._string_list(rule.strip())
        finally:
            self._eval_depth -= 1

    def get_elements(self, rule: Optional[str]) -> List[str]:
        """
        取元素列表, 每个元素序列化成字符串, 供 child() 构造嵌套实例

        HTML 元素序列化为 outerHTML, JSON 数组元素序列化为 JSON 文本。
        """
        if not rule or not rule.strip():
            return []
        try:
            return self._elements(rule.strip())
        except RULE_ERRORS as e:
            logger.debug(f"[Rule] 列表规则执行失败: {rule[:60]!r} ({e})")
            return []

    def get_absolute_url(self, url: Optional[str]) -> str:
        return absolute_url(self.base_url, url)

    def child(self, fragment: str) -> "Analyzer":
        """为列表项创建嵌套实例, 共享基础 URL 和脚本上下文"""
        if self.depth + 1 > self.MAX_DEPTH:
            logger.warning(f"[Rule] 嵌套层数超过 {self.MAX_DEPTH}, 忽略该片段")
            fragment = ""
        return Analyzer(fragment, self.base_url, self.depth + 1, self.context)

    # ══════════════════════════════════════════════════════════════
    # 字符串规则
    # ══════════════════════════════════════════════════════════════

    def _string_list(self, rule: str) -> List[str]:
        op, parts = split_combinators(rule)
        if op == "||":
            for part in parts:
                values = self._string_list(part)
                if values:
                    return values
            return []
        if op == "&&":
            values = []
            for part in parts:
                values.extend(self._string_list(part))
            return values
        try:
            values = self._single(parts[0])
        except RULE_ERRORS as e:
            logger.debug(f"[Rule] 规则执行失败: {rule[:60]!r} ({e})")
            return []
        return [v for v in values if v and v.strip()]

    def _single(self, rule: str) -> List[str]:
        if _SCRIPT_CHAIN_RE.search(rule):
            return self._script_chain(rule)

        expr = parse_rule(rule)
        if expr.mode == RuleMode.JS:
            resolved = self._resolve_inline(expr.selector)
            if resolved is not None:
                return [resolved]
            return to_string_list(self._run_script(expr.selector, self.content))
        if "{{" in rule:
            return [render_template(rule, self._script_context(self.content), self.content,
                                    self._script_extras(), resolve=self._resolve_inline)]

        if expr.mode in (RuleMode.DEFAULT, RuleMode.CSS):
            values = self._css_strings(expr.selector, expr.suffix, expr.mode == RuleMode.DEFAULT)
        elif expr.mode == RuleMode.XPATH:
            values = self._xpath_strings(expr.selector)
        elif expr.mode == RuleMode.JSON:
            data = self.json_data
            values = query_strings(data, expr.selector) if data is not None else []
        else:
            values = [m.group(0) for m in re.finditer(expr.selector, self.content)]

        if expr.replace_regex:
            values = [js_sub(expr.replace_regex, expr.replacement, v) for v in values]
        return values

    def _css_strings(self, selector: str, suffix: Optional[str], legado_steps: bool) -> List[str]:
        doc = self.document
        if not selector:
            if suffix is None:
                return [self.content]
            if doc is None:
                return []
            elements = top_level_elements(doc)
        else:
            elements = select(doc, selector, legado_steps=legado_steps)
        return [extract(el, suffix, self.base_url) for el in elements]

    def _xpath_strings(self, selector: str) -> List[str]:
        doc = self.document
        if doc is None:
            return []
        try:
            found = doc.xpath(selector)
        except etree.XPathError:
            # 不是合法 XPath 时按 CSS 近似处理
            return [extract(el, None, self.base_url) for el in select(doc, selector, legado_steps=False)]
        if not isinstance(found, list):
            found = [found]
        is_link = bool(_XPATH_LINK_RE.search(selector))
        values = []
        for item in found:
            if isinstance(item, str):
                values.append(absolute_url(self.base_url, item) if is_link else item.strip())
            elif isinstance(item, bool):
                values.append("true" if item else "false")
            elif isinstance(item, float):
                values.append(to_text(item))
            else:
                values.append(extract(item, None, self.base_url))
        return values

    # ══════════════════════════════════════════════════════════════
    # 列表规则
    # ══════════════════════════════════════════════════════════════

    def _elements(self, rule: str) -> List[str]:
        op, parts = split_combinators(rule)
        if op == "||":
            for part in parts:
                found = self.get_elements(part)
                if found:
                    return found
            return []
        if op == "&&":
            found = []
            for part in parts:
                found.extend(self.get_elements(part))
            return found

        rule = parts[0]
        if _SCRIPT_CHAIN_RE.search(rule):
            return self._script_items(self._script_chain_value(rule))

        expr = parse_rule(rule)
        if expr.mode == RuleMode.JS:
            return self._script_items(self._run_script(expr.selector, self.content))

        if expr.mode == RuleMode.JSON:
            data = self.json_data
            if data is None:
                return []
            values = query(data, expr.selector)
            if len(values) == 1 and isinstance(values[0], list):
                values = values[0]
            return [to_text(v) for v in values]

        if expr.mode == RuleMode.REGEX:
            return [m.group(0) for m in re.finditer(expr.selector, self.content)]

        doc = self.document
        if doc is None:
            return []

        if expr.mode == RuleMode.XPATH:
            try:
                found = doc.xpath(expr.selector)
            except etree.XPathError:
                found = select(doc, expr.selector, legado_steps=False)
            if not isinstance(found, list):
                return []
            return [item.strip() if isinstance(item, str) else outer_html(item) for item in found]

        if not expr.selector and not expr.suffix:
            elements = top_level_elements(doc)
        elif expr.mode == RuleMode.DEFAULT:
            # 列表规则没有取值后缀, 最后一个 @ 之后也是选择步骤
            steps = "@".join(s for s in (expr.selector, expr.suffix) if s)
            elements = select(doc, steps)
        else:
            elements = select(doc, expr.selector, legado_steps=False)
            if expr.suffix:
                elements = [n for el in elements for n in css_select(el, expr.suffix)]
        return [outer_html(el) for el in elements]

    @staticmethod
    def _script_items(value: Any) -> List[str]:
        if value is None:
            return []
        items = value if isinstance(value, list) else [value]
        result = []
        for item in items:
            if item is None:
                continue
            if isinstance(item, ElementView):
                result.append(item.outerHtml())
            elif isinstance(item, (dict, list)):
                result.append(json.dumps(item, ensure_ascii=False))
            else:
                result.append(to_js_string(item))
        return result

    # ══════════════════════════════════════════════════════════════
    # 脚本
    # ══════════════════════════════════════════════════════════════

    def _script_context(self, result: Any) -> ScriptContext:
        return replace(self.context, base_url=self.base_url, result=result)

    def _script_extras(self) -> dict:
        return {
            "getString": self.get_string,
            "getStringList": self.get_string_list,
            "getElements": self.get_elements,
        }

    def _run_script(self, code: str, result: Any) -> Any:
        return evaluate(code, self._script_context(result), self.content, self._script_extras())

    def _script_chain_value(self, rule: str) -> Any:
        """
        执行 规则 → 脚本 → 规则 ... 的链

        每段脚本拿到的 result 是前一段的结果 (第一段为原始内容),
        脚本之后的规则在前一段结果上重新解析执行。
        """
        result: Any = None
        pos = 0
        for m in _SCRIPT_CHAIN_RE.finditer(rule):
            before = rule[pos:m.start()].strip()
            if before:
                result = self._apply_on(result, before)
            code = m.group(1) if m.group(1) is not None else m.group(2)
            result = self._run_script(code, self.content if result is None else result)
            pos = m.end()
        after = rule[pos:].strip()
        if after:
            result = self._apply_on(result, after)
        return result

    def _script_chain(self, rule: str) -> List[str]:
        return to_string_list(self._script_chain_value(rule))

    def _apply_on(self, previous: Any, rule: str) -> Any:
        """在前一段结果上执行规则; 只有一个结果时交给下一段的是字符串"""
        if previous is None:
            values = self._string_list(rule)
        else:
            values = self.child(value_to_string(previous)).get_string_list(rule)
        return values[0] if len(values) == 1 else values

    def _resolve_inline(self, inner: str) -> Optional[str]:
        """{{ }} 里写的是规则而不是脚本时 ({{$.id}} / {{@css:a@href}} / {{//a/@href}}), 按规则求值"""
        inner = inner.strip()
        if inner.startswith(("$.", "$[", "@css:", "@json:", "@xpath:", "@XPath:")):
            return self.get_string(inner)
        if inner.startswith("//"):
            return self.get_string("@xpath:" + inner)
        return None
