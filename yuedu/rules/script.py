"""
内嵌脚本 — 书源规则中的 @js: / <js>...</js> / {{ ... }} 片段

不嵌入通用脚本引擎, 而是实现一个很小的 JS 子集解释器:
  - 字面量: 数字 / 字符串 / 模板字符串 / 正则 / 数组 / 对象 / true false null undefined
  - 运算: + - * / %  比较  == != === !==  && || ??  !  三元
  - 语句: var/let/const、对变量赋值 (= +=)、if/else、return、{ } 代码块
  - 单表达式箭头函数: x => ..., (a, b) => ...
  - 字符串 / 数组 / 元素包装上的白名单方法

沙箱里只有上下文数据 (result, baseUrl, book, chapter, source, page, key)
和文档查询助手, 没有网络、文件和宿主对象。脚本出错时记录日志并返回 None,
不会把异常抛给流水线。
"""

import base64
import hashlib
import json
import logging
import math
import random
import re
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote

from yuedu.core.utils import absolute_url, encode_uri, encode_uri_component, expand_replacement
from .selector import ElementView, css_select, extract, inner_html, parse_document

logger = logging.getLogger(__name__)

MAX_SOURCE_LENGTH = 64 * 1024
MAX_CALL_DEPTH = 64
MAX_STRING_LENGTH = 4 * 1024 * 1024
MAX_ARRAY_LENGTH = 100_000
MAX_STEPS = 100_000


class ScriptError(Exception):
    """脚本语法或运行错误"""


@dataclass
class ScriptContext:
    """脚本可见的上下文数据 (只放普通数据, 不放宿主对象)"""
    result: Any = None
    base_url: str = ""
    book: Optional[dict] = None
    chapter: Optional[dict] = None
    source: Optional[dict] = None
    page: int = 1
    key: str = ""


# ══════════════════════════════════════════════════════════════
# 词法分析
# ══════════════════════════════════════════════════════════════

_WS_RE = re.compile(r"\s+|//[^\n]*|/\*.*?\*/", re.S)
_NUM_RE = re.compile(r"0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_NAME_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_STR_RE = re.compile(r"\"(?:[^\"\\\n]|\\.)*\"|'(?:[^'\\\n]|\\.)*'|`(?:[^`\\]|\\.)*`", re.S)
_OP_RE = re.compile(r"===|!==|=>|==|!=|<=|>=|&&|\|\||\?\?|\+=|-=|[-+*%<>!?:.,;()\[\]{}=]")
_REGEX_RE = re.compile(r"/((?:[^/\\\[\n]|\\.|\[(?:[^\]\\\n]|\\.)*\])+)/([a-z]*)")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}
_ESCAPE_RE = re.compile(r"\\(u\{[0-9a-fA-F]+\}|u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|.)", re.S)

KEYWORDS = {"var", "let", "const", "return", "if", "else", "true", "false",
            "null", "undefined", "typeof", "function", "while", "for", "new"}


def _unescape(body: str) -> str:
    def sub(m):
        esc = m.group(1)
        if esc.startswith("u{"):
            return chr(int(esc[2:-1], 16))
        if esc[0] in "ux" and len(esc) > 1:
            return chr(int(esc[1:], 16))
        return _ESCAPES.get(esc, esc)
    return _ESCAPE_RE.sub(sub, body)


def _tokenize(code: str) -> List[tuple]:
    tokens: List[tuple] = []
    pos = 0
    n = len(code)
    while pos < n:
        m = _WS_RE.match(code, pos)
        if m:
            pos = m.end()
            continue
        ch = code[pos]
        if ch == "/":
            # 前一个记号不是值时, / 开头的是正则字面量而不是除号
            prev = tokens[-1] if tokens else None
            value_end = prev and (
                prev[0] in ("num", "str", "tmpl", "regex")
                or (prev[0] == "name" and prev[1] not in KEYWORDS - {"true", "false", "null", "undefined"})
                or (prev[0] == "op" and prev[1] in (")", "]"))
            )
            if not value_end:
                m = _REGEX_RE.match(code, pos)
                if m:
                    tokens.append(("regex", (m.group(1), m.group(2)), pos))
                    pos = m.end()
                    continue
            tokens.append(("op", "/", pos))
            pos += 1
            continue
        m = _NUM_RE.match(code, pos)
        if m and (ch.isdigit() or (ch == "." and pos + 1 < n and code[pos + 1].isdigit())):
            text = m.group(0)
            value = int(text, 16) if text[:2].lower() == "0x" else (
                float(text) if any(c in text for c in ".eE") else int(text))
            tokens.append(("num", value, pos))
            pos = m.end()
            continue
        m = _NAME_RE.match(code, pos)
        if m:
            tokens.append(("name", m.group(0), pos))
            pos = m.end()
            continue
        m = _STR_RE.match(code, pos)
        if m:
            raw = m.group(0)
            kind = "tmpl" if raw[0] == "`" else "str"
            tokens.append((kind, raw[1:-1] if kind == "tmpl" else _unescape(raw[1:-1]), pos))
            pos = m.end()
            continue
        m = _OP_RE.match(code, pos)
        if m:
            tokens.append(("op", m.group(0), pos))
            pos = m.end()
            continue
        raise ScriptError(f"无法识别的字符 {ch!r} (位置 {pos})")
    tokens.append(("eof", None, n))
    return tokens


# ══════════════════════════════════════════════════════════════
# 语法分析 — AST 全部用元组表示
# ══════════════════════════════════════════════════════════════

_BINARY_LEVELS = [
    ("||", "??"),
    ("&&",),
    ("==", "!=", "===", "!=="),
    ("<", ">", "<=", ">="),
    ("+", "-"),
    ("*", "/", "%"),
]


class _Parser:

    def __init__(self, code: str):
        self.tokens = _tokenize(code)
        self.pos = 0

    # ── 记号工具 ──

    def peek(self, offset: int = 0) -> tuple:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def next(self) -> tuple:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def at(self, kind: str, value=None, offset: int = 0) -> bool:
        tok = self.peek(offset)
        return tok[0] == kind and (value is None or tok[1] == value)

    def accept(self, kind: str, value=None) -> bool:
        if self.at(kind, value):
            self.pos += 1
            return True
        return False

    def expect(self, kind: str, value=None) -> tuple:
        if not self.at(kind, value):
            tok = self.peek()
            raise ScriptError(f"语法错误: 期望 {value or kind}, 实际是 {tok[1]!r} (位置 {tok[2]})")
        return self.next()

    # ── 语句 ──

    def program(self) -> tuple:
        body = []
        while not self.at("eof"):
            body.append(self.statement())
        return ("program", tuple(body))

    def statement(self) -> tuple:
        if self.accept("op", ";"):
            return ("empty",)
        if self.at("op", "{"):
            return self.block()
        if self.at("name") and self.peek()[1] in ("var", "let", "const"):
            self.next()
            decls = []
            while True:
                name = self.expect("name")[1]
                init = self.expression() if self.accept("op", "=") else ("lit", None)
                decls.append(("var", name, init))
                if not self.accept("op", ","):
                    break
            self._end_statement()
            return decls[0] if len(decls) == 1 else ("block", tuple(decls), False)
        if self.accept("name", "return"):
            value = ("lit", None)
            if not (self.at("op", ";") or self.at("op", "}") or self.at("eof")):
                value = self.expression()
            self._end_statement()
            return ("return", value)
        if self.accept("name", "if"):
            self.expect("op", "(")
            test = self.expression()
            self.expect("op", ")")
            then = self.statement()
            other = self.statement() if self.accept("name", "else") else ("empty",)
            return ("if", test, then, other)
        if self.at("name") and self.peek()[1] in ("function", "while", "for", "new"):
            raise ScriptError(f"不支持的语法: {self.peek()[1]}")
        expr = self.expression()
        self._end_statement()
        return ("expr", expr)

    def block(self) -> tuple:
        self.expect("op", "{")
        body = []
        while not self.accept("op", "}"):
            if self.at("eof"):
                raise ScriptError("语法错误: 代码块未闭合")
            body.append(self.statement())
        return ("block", tuple(body), True)

    def _end_statement(self):
        self.accept("op", ";")

    # ── 表达式 ──

    def expression(self) -> tuple:
        return self.assignment()

    def assignment(self) -> tuple:
        if self.at("name") and self.peek(1)[0] == "op" and self.peek(1)[1] in ("=", "+=", "-="):
            name = self.next()[1]
            op = self.next()[1]
            return ("assign", name, op, self.assignment())
        if self._arrow_ahead():
            return self.arrow()
        return self.conditional()

    def _arrow_ahead(self) -> bool:
        if self.at("name") and self.at("op", "=>", 1):
            return True
        if not self.at("op", "("):
            return False
        depth = 0
        i = self.pos
        while i < len(self.tokens):
            kind, value, _ = self.tokens[i]
            if kind == "op" and value == "(":
                depth += 1
            elif kind == "op" and value == ")":
                depth -= 1
                if depth == 0:
                    nxt = self.tokens[i + 1] if i + 1 < len(self.tokens) else None
                    return bool(nxt and nxt[0] == "op" and nxt[1] == "=>")
            elif kind == "eof":
                return False
            i += 1
        return False

    def arrow(self) -> tuple:
        params = []
        if self.at("name"):
            params.append(self.next()[1])
        else:
            self.expect("op", "(")
            while not self.accept("op", ")"):
                params.append(self.expect("name")[1])
                self.accept("op", ",")
        self.expect("op", "=>")
        body = self.block() if self.at("op", "{") else ("return", self.assignment())
        return ("arrow", tuple(params), body)

    def conditional(self) -> tuple:
        test = self.binary(0)
        if self.accept("op", "?"):
            then = self.assignment()
            self.expect("op", ":")
            other = self.assignment()
            return ("cond", test, then, other)
        return test

    def binary(self, level: int) -> tuple:
        if level == len(_BINARY_LEVELS):
            return self.unary()
        ops = _BINARY_LEVELS[level]
        left = self.binary(level + 1)
        while self.peek()[0] == "op" and self.peek()[1] in ops:
            op = self.next()[1]
            right = self.binary(level + 1)
            kind = "logical" if op in ("&&", "||", "??") else "binary"
            left = (kind, op, left, right)
        return left

    def unary(self) -> tuple:
        if self.at("op") and self.peek()[1] in ("!", "-", "+"):
            op = self.next()[1]
            return ("unary", op, self.unary())
        if self.accept("name", "typeof"):
            return ("unary", "typeof", self.unary())
        return self.postfix()

    def postfix(self) -> tuple:
        node = self.primary()
        while True:
            if self.accept("op", "."):
                node = ("member", node, self.expect("name")[1])
            elif self.accept("op", "["):
                index = self.expression()
                self.expect("op", "]")
                node = ("index", node, index)
            elif self.accept("op", "("):
                args = []
                while not self.accept("op", ")"):
                    args.append(self.assignment())
                    if not self.accept("op", ","):
                        self.expect("op", ")")
                        break
                node = ("call", node, tuple(args))
            else:
                return node

    def primary(self) -> tuple:
        kind, value, pos = self.next()
        if kind == "num":
            return ("lit", value)
        if kind == "str":
            return ("lit", value)
        if kind == "tmpl":
            return self._template(value)
        if kind == "regex":
            return ("regex", value[0], value[1])
        if kind == "name":
            if value == "true":
                return ("lit", True)
            if value == "false":
                return ("lit", False)
            if value in ("null", "undefined"):
                return ("lit", None)
            if value in KEYWORDS:
                raise ScriptError(f"语法错误: 意外的关键字 {value} (位置 {pos})")
            return ("name", value)
        if kind == "op" and value == "(":
            expr = self.expression()
            self.expect("op", ")")
            return expr
        if kind == "op" and value == "[":
            items = []
            while not self.accept("op", "]"):
                items.append(self.assignment())
                if not self.accept("op", ","):
                    self.expect("op", "]")
                    break
            return ("array", tuple(items))
        if kind == "op" and value == "{":
            pairs = []
            while not self.accept("op", "}"):
                key_kind, key, _ = self.next()
                if key_kind not in ("name", "str", "num"):
                    raise ScriptError(f"语法错误: 对象键无效 {key!r}")
                key = str(key)
                value_node = self.assignment() if self.accept("op", ":") else ("name", key)
                pairs.append((key, value_node))
                if not self.accept("op", ","):
                    self.expect("op", "}")
                    break
            return ("object", tuple(pairs))
        raise ScriptError(f"语法错误: 意外的 {value!r} (位置 {pos})")

    def _template(self, raw: str) -> tuple:
        parts = []
        pos = 0
        while True:
            start = raw.find("${", pos)
            if start < 0:
                parts.append(("lit", _unescape(raw[pos:])))
                break
            parts.append(("lit", _unescape(raw[pos:start])))
            end = raw.find("}", start)
            if end < 0:
                raise ScriptError("语法错误: 模板字符串未闭合")
            parts.append(_Parser(raw[start + 2:end]).expression())
            pos = end + 1
        return ("tmpl", tuple(parts))


@lru_cache(maxsize=256)
def parse(code: str) -> tuple:
    """把脚本解析成 AST, 语法错误抛 ScriptError"""
    if len(code) > MAX_SOURCE_LENGTH:
        raise ScriptError("脚本过长")
    return _Parser(code).program()


# ══════════════════════════════════════════════════════════════
# JS 值语义
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RegexValue:
    source: str
    flags: str = ""

    def compile(self):
        flags = 0
        if "i" in self.flags:
            flags |= re.IGNORECASE
        if "m" in self.flags:
            flags |= re.MULTILINE
        if "s" in self.flags:
            flags |= re.DOTALL
        return re.compile(self.source, flags)

    @property
    def is_global(self) -> bool:
        return "g" in self.flags


def to_js_string(value: Any) -> str:
    """按 JS 的 String(x) 规则转字符串"""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer() and abs(value) < 2 ** 53:
            return str(int(value))
        return repr(value)
    if isinstance(value, list):
        return ",".join("" if v is None else to_js_string(v) for v in value)
    if isinstance(value, dict):
        return "[object Object]"
    if isinstance(value, ElementView):
        return value.text()
    if isinstance(value, RegexValue):
        return f"/{value.source}/{value.flags}"
    if callable(value):
        return "function"
    return str(value)


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(text, 16) if text[:2].lower() == "0x" else (
                int(text) if re.fullmatch(r"[+-]?\d+", text) else float(text))
        except ValueError:
            return math.nan
    return math.nan


def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def _normalize_number(value):
    if isinstance(value, float) and value.is_integer() and abs(value) < 2 ** 53:
        return int(value)
    return value


def _type_of(value: Any) -> str:
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if callable(value) and not isinstance(value, ElementView):
        return "function"
    return "object"


def _loose_equals(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, (int, float, bool)) or isinstance(b, (int, float, bool)):
        if isinstance(a, (str, int, float, bool)) and isinstance(b, (str, int, float, bool)):
            return to_number(a) == to_number(b)
    return a == b


def _strict_equals(a: Any, b: Any) -> bool:
    if _type_of(a) != _type_of(b):
        return False
    return a == b


def _check_length(text: str) -> str:
    if len(text) > MAX_STRING_LENGTH:
        raise ScriptError("字符串过长")
    return text


def _check_array(items: list) -> list:
    if len(items) > MAX_ARRAY_LENGTH:
        raise ScriptError("数组过长")
    return items


# ══════════════════════════════════════════════════════════════
# 白名单方法
# ══════════════════════════════════════════════════════════════

def _as_regex(pattern: Any, global_default: bool = False):
    if isinstance(pattern, RegexValue):
        return pattern.compile(), pattern.is_global
    return re.compile(re.escape(to_js_string(pattern))), global_default


def _replacer(replacement: Any) -> Callable:
    if callable(replacement):
        return lambda m: to_js_string(replacement(m.group(0), *[g or "" for g in m.groups()]))
    text = to_js_string(replacement)
    return lambda m: expand_replacement(m, text)


def _str_replace(s: str, pattern: Any, replacement: Any = "", replace_all: bool = False) -> str:
    regex, is_global = _as_regex(pattern, replace_all)
    return _check_length(regex.sub(_replacer(replacement), s, count=0 if is_global else 1))


def _str_split(s: str, sep: Any = None, limit: Any = None) -> list:
    if sep is None:
        parts = [s]
    elif isinstance(sep, RegexValue):
        parts = sep.compile().split(s)
    elif sep == "":
        parts = list(s)
    else:
        parts = s.split(to_js_string(sep))
    if limit is not None:
        parts = parts[:int(to_number(limit))]
    return _check_array(parts)


def _str_match(s: str, pattern: Any = None):
    regex = pattern.compile() if isinstance(pattern, RegexValue) else re.compile(to_js_string(pattern))
    if isinstance(pattern, RegexValue) and pattern.is_global:
        found = [m.group(0) for m in regex.finditer(s)]
        return found or None
    m = regex.search(s)
    if not m:
        return None
    return [m.group(0)] + [g if g is not None else None for g in m.groups()]


def _clamp(index: Any, length: int) -> int:
    i = int(to_number(index))
    if i < 0:
        i = max(length + i, 0)
    return min(i, length)


def _substring(s: str, start: Any = 0, end: Any = None) -> str:
    length = len(s)
    a = min(max(int(to_number(start)), 0), length)
    b = length if end is None else min(max(int(to_number(end)), 0), length)
    if a > b:
        a, b = b, a
    return s[a:b]


def _slice(seq, start: Any = 0, end: Any = None):
    length = len(seq)
    a = _clamp(start, length)
    b = length if end is None else _clamp(end, length)
    return seq[a:b]


def _index_of(seq, item, start: Any = 0) -> int:
    try:
        return seq.index(item, int(to_number(start)))
    except ValueError:
        return -1


def _repeat(s: str, count: Any) -> str:
    n = int(to_number(count))
    if n < 0 or len(s) * n > MAX_STRING_LENGTH:
        raise ScriptError("repeat 次数无效")
    return s * n


def _pad(s: str, length: Any, fill: Any = " ", left: bool = True) -> str:
    n = int(to_number(length))
    fill = to_js_string(fill) or " "
    if n <= len(s):
        return s
    padding = (fill * n)[:n - len(s)]
    return padding + s if left else s + padding


STRING_METHODS: Dict[str, Callable] = {
    "replace": lambda s, p, r="": _str_replace(s, p, r),
    "replaceAll": lambda s, p, r="": _str_replace(s, p, r, replace_all=True),
    "split": _str_split,
    "match": _str_match,
    "search": lambda s, p: (lambda m: m.start() if m else -1)(_as_regex(p)[0].search(s)),
    "trim": lambda s: s.strip(),
    "trimStart": lambda s: s.lstrip(),
    "trimEnd": lambda s: s.rstrip(),
    "toUpperCase": lambda s: s.upper(),
    "toLowerCase": lambda s: s.lower(),
    "substring": _substring,
    "substr": lambda s, a=0, n=None: _slice(s, a, None if n is None else _clamp(a, len(s)) + int(to_number(n))),
    "slice": _slice,
    "indexOf": lambda s, sub, start=0: s.find(to_js_string(sub), int(to_number(start))),
    "lastIndexOf": lambda s, sub: s.rfind(to_js_string(sub)),
    "includes": lambda s, sub: to_js_string(sub) in s,
    "startsWith": lambda s, sub: s.startswith(to_js_string(sub)),
    "endsWith": lambda s, sub: s.endswith(to_js_string(sub)),
    "charAt": lambda s, i=0: _slice(s, i, int(to_number(i)) + 1) if int(to_number(i)) >= 0 else "",
    "charCodeAt": lambda s, i=0: ord(s[int(to_number(i))]) if 0 <= int(to_number(i)) < len(s) else math.nan,
    "padStart": lambda s, n, f=" ": _pad(s, n, f, left=True),
    "padEnd": lambda s, n, f=" ": _pad(s, n, f, left=False),
    "repeat": _repeat,
    "concat": lambda s, *more: _check_length(s + "".join(to_js_string(m) for m in more)),
    "toString": lambda s: s,
}


def _array_reverse(arr: list) -> list:
    arr.reverse()
    return arr


def _array_push(arr: list, *items) -> int:
    arr.extend(items)
    _check_array(arr)
    return len(arr)


def _array_for_each(arr: list, fn) -> None:
    for i, v in enumerate(arr):
        fn(v, i)


ARRAY_METHODS: Dict[str, Callable] = {
    "join": lambda a, sep=",": _check_length(
        to_js_string(sep).join("" if v is None else to_js_string(v) for v in a)),
    "indexOf": _index_of,
    "includes": lambda a, item: item in a,
    "slice": _slice,
    "concat": lambda a, *more: _check_array(a + [x for m in more for x in (m if isinstance(m, list) else [m])]),
    "reverse": _array_reverse,
    "push": _array_push,
    "pop": lambda a: a.pop() if a else None,
    "shift": lambda a: a.pop(0) if a else None,
    "map": lambda a, fn: _check_array([fn(v, i) for i, v in enumerate(a)]),
    "filter": lambda a, fn: _check_array([v for i, v in enumerate(a) if truthy(fn(v, i))]),
    "forEach": _array_for_each,
    "find": lambda a, fn: next((v for i, v in enumerate(a) if truthy(fn(v, i))), None),
    "some": lambda a, fn: any(truthy(fn(v, i)) for i, v in enumerate(a)),
    "every": lambda a, fn: all(truthy(fn(v, i)) for i, v in enumerate(a)),
    "toString": lambda a: to_js_string(a),
}


NUMBER_METHODS: Dict[str, Callable] = {
    "toFixed": lambda x, d=0: f"{x:.{int(to_number(d))}f}",
    "toString": lambda x, radix=10: to_js_string(x) if int(to_number(radix)) == 10 else (
        format(int(x), {2: "b", 8: "o", 16: "x"}.get(int(to_number(radix)), "d"))),
}


class _BoundMethod:
    """脚本里取到的方法引用, 调用时才真正执行"""

    def __init__(self, table: Dict[str, Callable], target: Any, name: str):
        self.table = table
        self.target = target
        self.name = name

    def __call__(self, *args):
        return self.table[self.name](self.target, *args)


# ══════════════════════════════════════════════════════════════
# 求值
# ══════════════════════════════════════════════════════════════

class _Return(Exception):
    def __init__(self, value):
        super().__init__()
        self.value = value


class _Scope:

    def __init__(self, variables: Dict[str, Any], parent: Optional["_Scope"] = None):
        self.vars = variables
        self.parent = parent

    def lookup(self, name: str) -> Any:
        scope = self
        while scope is not None:
            if name in scope.vars:
                return scope.vars[name]
            scope = scope.parent
        raise ScriptError(f"{name} is not defined")

    def assign(self, name: str, value: Any):
        scope = self
        while scope is not None:
            if name in scope.vars:
                scope.vars[name] = value
                return
            scope = scope.parent
        self.vars[name] = value


class ArrowFunction:

    def __init__(self, interpreter: "_Interpreter", params: tuple, body: tuple, scope: _Scope):
        self.interpreter = interpreter
        self.params = params
        self.body = body
        self.scope = scope

    def __call__(self, *args):
        interp = self.interpreter
        interp.depth += 1
        saved = interp.last_value
        if interp.depth > MAX_CALL_DEPTH:
            raise ScriptError("调用层数过深")
        try:
            local = _Scope({p: (args[i] if i < len(args) else None)
                            for i, p in enumerate(self.params)}, self.scope)
            try:
                interp.exec(self.body, local)
            except _Return as ret:
                return ret.value
            return None
        finally:
            interp.depth -= 1
            interp.last_value = saved


class _Interpreter:

    def __init__(self):
        self.depth = 0
        self.steps = 0
        self.last_value: Any = None

    def _tick(self):
        self.steps += 1
        if self.steps > MAX_STEPS:
            raise ScriptError("脚本执行步数超过上限")

    # ── 语句 ──

    def run(self, program: tuple, scope: _Scope) -> Any:
        try:
            for stmt in program[1]:
                self.exec(stmt, scope)
        except _Return as ret:
            return ret.value
        return self.last_value

    def exec(self, node: tuple, scope: _Scope):
        self._tick()
        kind = node[0]
        if kind == "expr":
            self.last_value = self.eval(node[1], scope)
        elif kind == "var":
            scope.vars[node[1]] = self.eval(node[2], scope)
        elif kind == "return":
            raise _Return(self.eval(node[1], scope))
        elif kind == "if":
            branch = node[2] if truthy(self.eval(node[1], scope)) else node[3]
            self.exec(branch, scope)
        elif kind == "block":
            for stmt in node[1]:
                self.exec(stmt, scope)
        elif kind != "empty":
            raise ScriptError(f"未知语句 {kind}")

    # ── 表达式 ──

    def eval(self, node: tuple, scope: _Scope) -> Any:
        self._tick()
        kind = node[0]
        if kind == "lit":
            return node[1]
        if kind == "name":
            return scope.lookup(node[1])
        if kind == "tmpl":
            return _check_length("".join(to_js_string(self.eval(p, scope)) for p in node[1]))
        if kind == "regex":
            return RegexValue(node[1], node[2])
        if kind == "array":
            return [self.eval(item, scope) for item in node[1]]
        if kind == "object":
            return {key: self.eval(value, scope) for key, value in node[1]}
        if kind == "member":
            return self.get_member(self.eval(node[1], scope), node[2])
        if kind == "index":
            return self.get_index(self.eval(node[1], scope), self.eval(node[2], scope))
        if kind == "call":
            return self.call(node, scope)
        if kind == "unary":
            return self.unary(node[1], self.eval(node[2], scope))
        if kind == "binary":
            return self.binary(node[1], self.eval(node[2], scope), self.eval(node[3], scope))
        if kind == "logical":
            left = self.eval(node[2], scope)
            op = node[1]
            if op == "&&":
                return self.eval(node[3], scope) if truthy(left) else left
            if op == "||":
                return left if truthy(left) else self.eval(node[3], scope)
            return left if left is not None else self.eval(node[3], scope)
        if kind == "cond":
            return self.eval(node[2] if truthy(self.eval(node[1], scope)) else node[3], scope)
        if kind == "assign":
            value = self.eval(node[3], scope)
            if node[2] != "=":
                current = scope.lookup(node[1])
                value = self.binary(node[2][0], current, value)
            scope.assign(node[1], value)
            return value
        if kind == "arrow":
            return ArrowFunction(self, node[1], node[2], scope)
        raise ScriptError(f"未知表达式 {kind}")

    def call(self, node: tuple, scope: _Scope) -> Any:
        fn = self.eval(node[1], scope)
        args = [self.eval(arg, scope) for arg in node[2]]
        if not callable(fn) or isinstance(fn, ElementView):
            raise ScriptError(f"{to_js_string(fn)} is not a function")
        return fn(*args)

    @staticmethod
    def get_member(obj: Any, name: str) -> Any:
        if obj is None:
            raise ScriptError(f"Cannot read properties of null (reading '{name}')")
        if isinstance(obj, str):
            if name == "length":
                return len(obj)
            if name in STRING_METHODS:
                return _BoundMethod(STRING_METHODS, obj, name)
        elif isinstance(obj, list):
            if name == "length":
                return len(obj)
            if name in ARRAY_METHODS:
                return _BoundMethod(ARRAY_METHODS, obj, name)
        elif isinstance(obj, dict):
            return obj.get(name)
        elif isinstance(obj, ElementView):
            if name in ElementView.METHODS:
                return getattr(obj, name)
        elif isinstance(obj, RegexValue):
            if name == "test":
                return lambda s: obj.compile().search(to_js_string(s)) is not None
            if name in ("source", "flags"):
                return getattr(obj, name)
        elif isinstance(obj, (int, float)) and not isinstance(obj, bool):
            if name in NUMBER_METHODS:
                return _BoundMethod(NUMBER_METHODS, obj, name)
        return None

    def get_index(self, obj: Any, key: Any) -> Any:
        if isinstance(obj, (list, str)) and isinstance(key, (int, float)) and not isinstance(key, bool):
            i = int(key)
            return obj[i] if 0 <= i < len(obj) else None
        if isinstance(obj, dict):
            return obj.get(to_js_string(key))
        return self.get_member(obj, to_js_string(key))

    @staticmethod
    def unary(op: str, value: Any) -> Any:
        if op == "!":
            return not truthy(value)
        if op == "-":
            return _normalize_number(-to_number(value))
        if op == "+":
            return to_number(value)
        return _type_of(value)

    @staticmethod
    def binary(op: str, a: Any, b: Any) -> Any:
        if op == "+":
            if isinstance(a, (str, list, dict)) or isinstance(b, (str, list, dict)):
                return _check_length(to_js_string(a) + to_js_string(b))
            return to_number(a) + to_number(b)
        if op in ("-", "*", "/", "%"):
            x, y = to_number(a), to_number(b)
            if op == "-":
                return x - y
            if op == "*":
                return x * y
            if op == "/":
                if y == 0:
                    return math.nan if x == 0 or math.isnan(x) else math.copysign(math.inf, x)
                return _normalize_number(x / y)
            if y == 0:
                return math.nan
            return _normalize_number(math.fmod(x, y))
        if op == "==":
            return _loose_equals(a, b)
        if op == "!=":
            return not _loose_equals(a, b)
        if op == "===":
            return _strict_equals(a, b)
        if op == "!==":
            return not _strict_equals(a, b)
        if isinstance(a, str) and isinstance(b, str):
            x, y = a, b
        else:
            x, y = to_number(a), to_number(b)
            if math.isnan(x) or math.isnan(y):
                return False
        return {"<": x < y, ">": x > y, "<=": x <= y, ">=": x >= y}[op]


# ══════════════════════════════════════════════════════════════
# 沙箱助手函数
# ══════════════════════════════════════════════════════════════

def _parse_int(value: Any, radix: Any = 10):
    text = to_js_string(value).strip()
    base = int(to_number(radix)) or 10
    if base == 16 and text[:2].lower() == "0x":
        text = text[2:]
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"[:base]
    m = re.match(r"[+-]?[" + re.escape(digits) + r"]+", text, re.IGNORECASE)
    return int(m.group(0), base) if m else math.nan


def _parse_float(value: Any):
    m = re.match(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", to_js_string(value))
    return _normalize_number(float(m.group(0))) if m else math.nan


def _time_format(timestamp: Any, fmt: str = "yyyy-MM-dd") -> str:
    date = datetime.fromtimestamp(to_number(timestamp) / 1000)
    return (fmt.replace("yyyy", f"{date.year:04d}")
               .replace("MM", f"{date.month:02d}")
               .replace("dd", f"{date.day:02d}")
               .replace("HH", f"{date.hour:02d}")
               .replace("mm", f"{date.minute:02d}")
               .replace("ss", f"{date.second:02d}"))


def _base64_decode(text: Any, charset: str = "utf-8") -> str:
    raw = to_js_string(text).strip()
    raw += "=" * (-len(raw) % 4)
    return base64.b64decode(raw).decode(charset, errors="replace")


def _regex_match(text: Any, pattern: Any, group: Any = 0) -> str:
    regex = pattern.compile() if isinstance(pattern, RegexValue) else re.compile(to_js_string(pattern))
    m = regex.search(to_js_string(text))
    if not m:
        return ""
    try:
        return m.group(int(to_number(group))) or ""
    except IndexError:
        return ""


def _regex_replace(text: Any, pattern: Any, replacement: Any = "") -> str:
    if not isinstance(pattern, RegexValue):
        pattern = RegexValue(to_js_string(pattern), "g")
    return _str_replace(to_js_string(text), RegexValue(pattern.source, pattern.flags + "g"), replacement)


def _log(*args) -> None:
    logger.info("[JS] " + " ".join(to_js_string(a) for a in args))


def _json_stringify(value: Any, *_ignored) -> str:
    def default(obj):
        if isinstance(obj, ElementView):
            return obj.text()
        return to_js_string(obj)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=default)


_GLOBALS: Dict[str, Any] = {
    "parseInt": _parse_int,
    "parseFloat": _parse_float,
    "String": lambda v="": to_js_string(v),
    "Number": lambda v=0: to_number(v),
    "Boolean": lambda v=None: truthy(v),
    "isNaN": lambda v: math.isnan(to_number(v)),
    "encodeURIComponent": lambda s: encode_uri_component(to_js_string(s)),
    "decodeURIComponent": lambda s: unquote(to_js_string(s)),
    "encodeURI": lambda s: encode_uri(to_js_string(s)),
    "decodeURI": lambda s: unquote(to_js_string(s)),
    "NaN": math.nan,
    "Infinity": math.inf,
    "Math": {
        "floor": lambda x: math.floor(to_number(x)),
        "ceil": lambda x: math.ceil(to_number(x)),
        "round": lambda x: math.floor(to_number(x) + 0.5),
        "abs": lambda x: abs(to_number(x)),
        "max": lambda *xs: max(to_number(x) for x in xs) if xs else -math.inf,
        "min": lambda *xs: min(to_number(x) for x in xs) if xs else math.inf,
        "pow": lambda x, y: _normalize_number(math.pow(to_number(x), to_number(y))),
        "random": random.random,
        "PI": math.pi,
    },
    "JSON": {
        "parse": lambda s: json.loads(to_js_string(s)),
        "stringify": _json_stringify,
    },
}


class _Helpers:
    """绑定到当前文档的查询助手, 文档在第一次用到时才解析"""

    def __init__(self, content: str, base_url: str):
        self._content = content or ""
        self._base_url = base_url
        self._doc = None
        self._parsed = False

    @property
    def doc(self):
        if not self._parsed:
            self._doc = parse_document(self._content)
            self._parsed = True
        return self._doc

    def _select(self, selector: str) -> list:
        if self.doc is None:
            return []
        return css_select(self.doc, to_js_string(selector))

    def text(self, selector: str) -> str:
        return "".join(el.text_content() for el in self._select(selector)).strip()

    def html(self, selector: str) -> str:
        found = self._select(selector)
        return inner_html(found[0]) if found else ""

    def attr(self, selector: str, name: str) -> str:
        found = self._select(selector)
        return extract(found[0], to_js_string(name), self._base_url) if found else ""

    def all(self, selector: str) -> List[ElementView]:
        return [ElementView(el, self._base_url) for el in self._select(selector)]

    def abs_url(self, url: str) -> str:
        return absolute_url(self._base_url, to_js_string(url)) if url else ""

    def functions(self) -> Dict[str, Callable]:
        return {
            "text": self.text,
            "html": self.html,
            "attr": self.attr,
            "all": self.all,
            "absUrl": self.abs_url,
            "encodeUri": lambda s, charset=None: encode_uri_component(to_js_string(s), charset),
            "decodeUri": lambda s: unquote(to_js_string(s)),
            "base64Encode": lambda s: base64.b64encode(to_js_string(s).encode("utf-8")).decode("ascii"),
            "base64Decode": _base64_decode,
            "md5Encode": lambda s: hashlib.md5(to_js_string(s).encode("utf-8")).hexdigest(),
            "md5Encode16": lambda s: hashlib.md5(to_js_string(s).encode("utf-8")).hexdigest()[8:24],
            "timeFormat": _time_format,
            "match": _regex_match,
            "replace": _regex_replace,
            "log": _log,
        }


def _build_scope(context: ScriptContext, content: str, extra: Optional[Dict[str, Callable]]) -> _Scope:
    helpers = _Helpers(content, context.base_url).functions()
    java = dict(helpers)
    java["encodeURI"] = java["encodeUri"]
    if extra:
        java.update(extra)
    variables: Dict[str, Any] = dict(_GLOBALS)
    variables.update(helpers)
    variables.update({
        "java": java,
        "result": context.result,
        "baseUrl": context.base_url,
        "book": context.book,
        "chapter": context.chapter,
        "source": context.source,
        "page": context.page,
        "key": context.key,
    })
    return _Scope(variables)


# ══════════════════════════════════════════════════════════════
# 对外接口
# ══════════════════════════════════════════════════════════════

def run(
    code: str,
    context: Optional[ScriptContext] = None,
    content: str = "",
    extra: Optional[Dict[str, Callable]] = None,
) -> Any:
    """
    执行脚本并返回结果, 出错抛 ScriptError

    结果为 return 的值, 没有 return 时为最后一条表达式语句的值。
    """
    context = context or ScriptContext()
    program = parse(code.strip())
    scope = _build_scope(context, content, extra)
    try:
        return _Interpreter().run(program, scope)
    except ScriptError:
        raise
    except RecursionError as e:
        raise ScriptError("脚本嵌套过深") from e
    except (TypeError, ValueError, IndexError, KeyError, AttributeError, OverflowError, re.error) as e:
        raise ScriptError(str(e)) from e


def evaluate(
    code: str,
    context: Optional[ScriptContext] = None,
    content: str = "",
    extra: Optional[Dict[str, Callable]] = None,
) -> Any:
    """执行脚本, 任何错误都只记录日志并返回 None"""
    try:
        return run(code, context, content, extra)
    except Exception as e:
        logger.warning(f"[JS] 执行失败: {e} | {code[:80]!r}")
        return None


def has_script(rule: Optional[str]) -> bool:
    """规则里是否含有脚本 (@js: / <js> / {{ }} 三种写法都要检查)"""
    if not rule:
        return False
    return "@js:" in rule or "<js>" in rule or "{{" in rule


_JS_BLOCK_RE = re.compile(r"<js>(.*?)</js>", re.S)
_INLINE_RE = re.compile(r"\{\{(.*?)\}\}", re.S)


def render_template(
    template: str,
    context: Optional[ScriptContext] = None,
    content: str = "",
    extra: Optional[Dict[str, Callable]] = None,
    resolve: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    把模板里的脚本片段替换成执行结果

    - 整体以 @js: 开头: 整段是脚本, 返回其结果
    - <js>...</js> 与 {{ ... }}: 原地替换为结果字符串 (None 替换为空串)
    - resolve: 对 {{ }} 内容的优先解析器, 返回非 None 时不再当作脚本执行
      (分析器用它来处理 {{$.id}} 这类内嵌规则)
    """
    if not template:
        return ""
    context = context or ScriptContext()
    stripped = template.strip()
    if stripped.startswith("@js:"):
        return value_to_string(evaluate(stripped[4:], context, content, extra))

    def run_block(m):
        return value_to_string(evaluate(m.group(1), context, content, extra))

    def run_inline(m):
        inner = m.group(1).strip()
        if resolve is not None:
            resolved = resolve(inner)
            if resolved is not None:
                return resolved
        return value_to_string(evaluate(inner, context, content, extra))

    text = _JS_BLOCK_RE.sub(run_block, template)
    return _INLINE_RE.sub(run_inline, text)


def value_to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(to_string_list(value))
    return to_js_string(value)


def to_string_list(value: Any) -> List[str]:
    """脚本结果转字符串列表, None 为空列表"""
    if value is None:
        return []
    if isinstance(value, list):
        return [to_js_string(v) for v in value if v is not None]
    return [to_js_string(value)]
