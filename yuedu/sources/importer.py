"""
书源导入 — legado 书源 JSON → BookSource

支持单个对象或数组; 字段名同时接受本项目的名字和 legado 的名字
(bookSourceUrl / bookSourceName / bookSourceGroup ...)。
单条书源格式错误只跳过该条, 不影响整批导入。
"""

import json
import logging
import time
from typing import Any, List, Optional, Union

from yuedu.core.models import RULE_GROUP_TYPES, BookSource, RuleGroup

logger = logging.getLogger(__name__)


class SourceFormatError(ValueError):
    """单条书源格式错误"""


# BookSource 字段 → 可接受的 JSON 键 (按优先级)
_ALIASES = {
    "name": ("bookSourceName", "name"),
    "url": ("bookSourceUrl", "url"),
    "group": ("bookSourceGroup", "group"),
    "comment": ("bookSourceComment", "comment"),
    "enabled": ("enabled",),
    "enabled_explore": ("enabledExplore", "enabled_explore"),
    "weight": ("weight",),
    "custom_order": ("customOrder", "custom_order"),
    "last_update_time": ("lastUpdateTime", "last_update_time"),
    "respond_time": ("respondTime", "respond_time"),
    "header": ("header",),
    "search_url": ("searchUrl", "search_url"),
    "explore_url": ("exploreUrl", "explore_url"),
}

_RULE_ALIASES = {
    "rule_search": ("ruleSearch", "rule_search"),
    "rule_explore": ("ruleExplore", "rule_explore", "ruleFind"),
    "rule_book_info": ("ruleBookInfo", "rule_book_info"),
    "rule_toc": ("ruleToc", "rule_toc"),
    "rule_content": ("ruleContent", "rule_content", "ruleBookContent"),
}


def _pick(data: dict, keys) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _to_int(value: Any, field_name: str, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        raise SourceFormatError(f"{field_name} 不是整数: {value!r}")


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _rule_group(cls, value: Any, field_name: str) -> Optional[RuleGroup]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        # 有些导出工具把规则组存成 JSON 字符串
        try:
            value = json.loads(value)
        except ValueError:
            raise SourceFormatError(f"{field_name} 不是合法 JSON")
    if not isinstance(value, dict):
        raise SourceFormatError(f"{field_name} 应为对象, 实际是 {type(value).__name__}")
    return cls.from_dict(value)


def source_from_dict(data: Any) -> BookSource:
    """
    单个书源对象 → BookSource

    id 缺省时用 bookSourceUrl; 两者都没有时抛 SourceFormatError。
    """
    if not isinstance(data, dict):
        raise SourceFormatError(f"书源应为对象, 实际是 {type(data).__name__}")

    url = _to_text(_pick(data, _ALIASES["url"]))
    source_id = _to_text(data.get("id")) or url
    if not source_id:
        raise SourceFormatError("缺少 id / bookSourceUrl")

    header = data.get("header")
    if isinstance(header, dict):
        header = json.dumps(header, ensure_ascii=False)

    source = BookSource(
        id=source_id,
        name=_to_text(_pick(data, _ALIASES["name"])) or source_id,
        url=url or "",
        group=_to_text(_pick(data, _ALIASES["group"])),
        comment=_to_text(_pick(data, _ALIASES["comment"])),
        enabled=_pick(data, _ALIASES["enabled"]) is not False,
        enabled_explore=_pick(data, _ALIASES["enabled_explore"]) is not False,
        weight=_to_int(_pick(data, _ALIASES["weight"]), "weight"),
        custom_order=_to_int(_pick(data, _ALIASES["custom_order"]), "customOrder"),
        last_update_time=_to_int(_pick(data, _ALIASES["last_update_time"]), "lastUpdateTime",
                                 default=int(time.time() * 1000)),
        respond_time=_to_int(_pick(data, _ALIASES["respond_time"]), "respondTime"),
        header=_to_text(header),
        search_url=_to_text(_pick(data, _ALIASES["search_url"])),
        explore_url=_to_text(_pick(data, _ALIASES["explore_url"])),
    )
    for attr, keys in _RULE_ALIASES.items():
        setattr(source, attr, _rule_group(RULE_GROUP_TYPES[attr], _pick(data, keys), keys[0]))
    return source


def parse_book_sources(payload: Union[str, bytes, list, dict]) -> List[BookSource]:
    """
    解析书源 JSON (字符串、单个对象或数组)

    整体不是合法 JSON 时返回空列表; 单条出错记录原因后跳过。
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            logger.warning(f"[Import] 书源 JSON 解析失败: {e}")
            return []

    entries = payload if isinstance(payload, list) else [payload]
    sources = []
    for i, entry in enumerate(entries):
        try:
            sources.append(source_from_dict(entry))
        except SourceFormatError as e:
            name = entry.get("bookSourceName") if isinstance(entry, dict) else None
            logger.warning(f"[Import] 跳过第 {i + 1} 个书源 {name or ''}: {e}")
    return sources
