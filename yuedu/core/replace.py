"""
全局替换规则 — 与书源无关, 阅读器在拿到正文后统一执行

正文规则自带的 replaceRegex 见 content.py, 这里是用户维护的那一套。
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .utils import js_sub

logger = logging.getLogger(__name__)


@dataclass
class ReplaceRule:
    """一条替换规则"""
    pattern: str
    replacement: str = ""
    name: str = ""
    id: str = ""
    group: Optional[str] = None
    scope: Optional[str] = None     # 书名或书源 URL, 为空表示全局生效
    is_enabled: bool = True
    is_regex: bool = False
    order: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "ReplaceRule":
        """兼容 legado 导出的替换规则 JSON"""
        return cls(
            pattern=str(data.get("pattern") or ""),
            replacement=str(data.get("replacement") or ""),
            name=str(data.get("name") or ""),
            id=str(data.get("id") or ""),
            group=data.get("group"),
            scope=data.get("scope"),
            is_enabled=data.get("isEnabled", True) is not False,
            is_regex=data.get("isRegex", False) is True,
            order=int(data.get("order", data.get("sortOrder", 0)) or 0),
        )

    def applies_to(self, scope_keys: Iterable[str]) -> bool:
        if not self.scope:
            return True
        return any(key and key in self.scope for key in scope_keys)


def apply_replace_rules(
    content: str,
    rules: List[ReplaceRule],
    scope_keys: Iterable[str] = (),
) -> str:
    """
    按 order 依次执行启用的替换规则

    Args:
        content: 净化后的正文
        rules: 替换规则列表
        scope_keys: 当前书名 / 书源 URL, 用于匹配规则的 scope

    单条规则出错 (正则写错) 只跳过该条。
    """
    scope_keys = list(scope_keys)
    for rule in sorted(rules, key=lambda r: r.order):
        if not rule.is_enabled or not rule.pattern or not rule.applies_to(scope_keys):
            continue
        if rule.is_regex:
            try:
                content = js_sub(rule.pattern, rule.replacement, content)
            except re.error as e:
                logger.warning(f"[Replace] 规则 {rule.name or rule.pattern!r} 无效: {e}")
        else:
            content = content.replace(rule.pattern, rule.replacement)
    return content
