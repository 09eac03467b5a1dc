"""
规则表达式解析 — 把一条规则字符串拆成 模式 / 选择器 / 取值后缀 / 正则替换

支持的写法:
  .book-item@text            默认模式 (CSS, 兼容 legado 的 class./tag./id. 步骤)
  @css:.title@href           CSS 模式
  @XPath://div[@id='x']/a    XPath 模式
  @json:$.data[*].title      JSON 模式 (以 $. 开头也算)
  {{ js 表达式 }}            脚本模式 (整条规则被 {{ }} 包住)
  ##正则                      对原始内容做正则匹配
  .t@text##foo##bar          取值后再做全局正则替换
  a||b   a&&b                组合规则: 或 (取第一个非空) / 与 (结果拼接)
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Tuple


class RuleMode:
    DEFAULT = "Default"
    CSS = "Css"
    XPATH = "XPath"
    JSON = "Json"
    REGEX = "Regex"
    JS = "Js"


# 不带 @ 时也按取值后缀处理的关键字
BARE_SUFFIXES = frozenset({
    "text", "textNodes", "ownText", "html", "innerHtml", "outerHtml", "all", "href", "src",
})


@dataclass(frozen=True)
class RuleExpression:
    """单条规则 (已去掉组合符) 的解析结果"""
    mode: str
    selector: str
    suffix: Optional[str] = None          # text / html / ownText / href / src / 任意属性名
    replace_regex: Optional[str] = None
    replacement: str = ""


# ══════════════════════════════════════════════════════════════
# 组合符拆分
# ══════════════════════════════════════════════════════════════

def _find_operators(rule: str) -> Tuple[List[int], List[int]]:
    """
    找出顶层的 || 和 && 位置

    以下区间不参与拆分:
      - {{ ... }} 与 <js> ... </js> 内部 (脚本里的 || && 是运算符)
      - 第一个 ## 之后的全部内容 (正则替换段里的 | & 是正则语法)
      - @js: 之后的全部内容 (整段都是脚本)
    """
    ors: List[int] = []
    ands: List[int] = []
    i = 0
    n = len(rule)
    while i < n:
        if rule.startswith("{{", i):
            end = rule.find("}}", i + 2)
            if end < 0:
                break
            i = end + 2
            continue
        if rule.startswith("<js>", i):
            end = rule.find("</js>", i + 4)
            if end < 0:
                break
            i = end + 5
            continue
        if rule.startswith("##", i) or rule.startswith("@js:", i):
            break
        if rule.startswith("||", i):
            ors.append(i)
            i += 2
            continue
        if rule.startswith("&&", i):
            ands.append(i)
            i += 2
            continue
        i += 1
    return ors, ands


def _split_at(rule: str, positions: List[int]) -> List[str]:
    parts = []
    start = 0
    for pos in positions:
        parts.append(rule[start:pos].strip())
        start = pos + 2
    parts.append(rule[start:].strip())
    return [p for p in parts if p]


def split_combinators(rule: str) -> Tuple[Optional[str], List[str]]:
    """
    拆分顶层组合符

    Returns:
        (运算符, 子规则列表); 运算符为 "||"、"&&" 或 None。
        || 优先级低于 &&: "a&&b||c" 拆成 ["a&&b", "c"], 子规则再递归拆分。
    """
    stripped = rule.strip()
    if stripped.startswith("@js:"):
        return None, [stripped]
    ors, ands = _find_operators(stripped)
    if ors:
        return "||", _split_at(stripped, ors)
    if ands:
        return "&&", _split_at(stripped, ands)
    return None, [stripped]


# ══════════════════════════════════════════════════════════════
# 单条规则解析
# ══════════════════════════════════════════════════════════════

def _is_wrapped_script(rule: str) -> bool:
    return (
        rule.startswith("{{") and rule.endswith("}}")
        and "{{" not in rule[2:-2] and "}}" not in rule[2:-2]
    )


@lru_cache(maxsize=1024)
def parse_rule(rule: str) -> RuleExpression:
    """
    解析单条规则 (调用前应先用 split_combinators 拆掉组合符)

    解析结果只和字符串有关, 因此可以放心缓存。
    """
    rule = rule.strip()

    if rule.startswith("@js:"):
        return RuleExpression(RuleMode.JS, rule[4:].strip())
    if _is_wrapped_script(rule):
        return RuleExpression(RuleMode.JS, rule[2:-2].strip())

    mode = RuleMode.DEFAULT
    lowered = rule[:7].lower()
    if lowered.startswith("@css:"):
        mode, rule = RuleMode.CSS, rule[5:]
    elif lowered.startswith("@xpath:"):
        mode, rule = RuleMode.XPATH, rule[7:]
    elif lowered.startswith("@json:"):
        mode, rule = RuleMode.JSON, rule[6:]
    elif rule.startswith("$.") or rule.startswith("$["):
        mode = RuleMode.JSON

    # 正则替换段
    replace_regex = None
    replacement = ""
    hash_at = rule.find("##")
    if hash_at >= 0:
        base, tail = rule[:hash_at], rule[hash_at + 2:].split("##")
        if mode == RuleMode.DEFAULT and not base.strip() and len(tail) == 1:
            return RuleExpression(RuleMode.REGEX, tail[0])
        rule = base
        replace_regex = tail[0]
        replacement = tail[1] if len(tail) > 1 else ""

    # 取值后缀: 最后一个 @ 之后 (XPath / JSON 自带 @ 语法, 不拆)
    suffix = None
    if mode in (RuleMode.DEFAULT, RuleMode.CSS):
        at = rule.rfind("@")
        if at >= 0:
            suffix = rule[at + 1:].strip() or None
            rule = rule[:at]
        elif mode == RuleMode.DEFAULT and rule.strip() in BARE_SUFFIXES:
            # 列表项里直接写 text / href, 取当前元素自身的值
            suffix, rule = rule.strip(), ""

    return RuleExpression(
        mode=mode,
        selector=rule.strip(),
        suffix=suffix,
        replace_regex=replace_regex or None,
        replacement=replacement,
    )
