"""
JSONPath 取值, 基于 jsonpath-ng (扩展语法)

书源里常见的写法:
  $.a.b          取字段
  $.a[0]         下标
  $.a[*].b       通配, 对后续路径逐个展开
  $['a']         括号取字段
  $..b           递归查找
"""

import json
from functools import lru_cache
from typing import Any, List

from jsonpath_ng.exceptions import JSONPathError
from jsonpath_ng.ext import parse as jsonpath_parse


class JsonPathError(ValueError):
    pass


@lru_cache(maxsize=512)
def _compile(path: str):
    try:
        return jsonpath_parse(path)
    except JSONPathError as e:
        raise JsonPathError(f"无法解析的 JSONPath: {path!r} ({e})") from e


def query(data: Any, path: str) -> List[Any]:
    """
    按路径取值, 返回匹配到的值列表 (找不到返回空列表)

    路径语法错误抛 JsonPathError。
    """
    path = path.strip()
    if not path:
        return []
    expr = _compile(path)
    try:
        matches = expr.find(data)
    except (TypeError, KeyError, IndexError, AttributeError) as e:
        raise JsonPathError(f"JSONPath 求值失败: {path!r} ({e})") from e
    return [m.value for m in matches if m.value is not None]


def to_text(value: Any) -> str:
    """JSON 值转字符串: 对象 / 数组序列化, 布尔值用 JSON 写法"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def query_strings(data: Any, path: str) -> List[str]:
    """取值并转成字符串列表; 结果是单个数组时按元素展开"""
    values = query(data, path)
    if len(values) == 1 and isinstance(values[0], list):
        values = values[0]
    return [to_text(v) for v in values if v is not None]
