"""
rules - 书源规则引擎

  expression  规则字符串 → 模式 / 选择器 / 取值后缀 / 正则替换
  selector    lxml + cssselect 的选择与取值
  jsonpath    基于 jsonpath-ng 的 JSONPath 取值
  script      内嵌脚本的小型解释器
  analyzer    单个文档的规则执行器
  url         URL 模板展开
"""

from .expression import RuleMode, RuleExpression, parse_rule, split_combinators
from .analyzer import Analyzer
from .script import ScriptContext, ScriptError, evaluate, has_script
from .url import expand_url, build_request, parse_explore_kinds

__all__ = [
    "RuleMode", "RuleExpression", "parse_rule", "split_combinators",
    "Analyzer",
    "ScriptContext", "ScriptError", "evaluate", "has_script",
    "expand_url", "build_request", "parse_explore_kinds",
]
