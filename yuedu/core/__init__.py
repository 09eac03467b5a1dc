"""
core - 核心基础设施模块

提供数据模型、配置、网络、正文净化、替换规则等公共组件,
被规则引擎、抓取流水线和 CLI 共享。

抓取流水线 ScrapeEngine 依赖规则引擎, 从 yuedu.core.engine 导入。
"""

from .models import (
    BookSource, SearchRule, ExploreRule, BookInfoRule, TocRule, ContentRule,
    UrlRequest, ScrapedBook, ScrapedChapter, ExploreKind,
)
from .config import EngineConfig
from .network import DEFAULT_UA, build_session, fetch_text
from .content import clean_html_content, apply_replace_regex
from .replace import ReplaceRule, apply_replace_rules
from .utils import absolute_url

__all__ = [
    "BookSource", "SearchRule", "ExploreRule", "BookInfoRule", "TocRule", "ContentRule",
    "UrlRequest", "ScrapedBook", "ScrapedChapter", "ExploreKind",
    "EngineConfig",
    "DEFAULT_UA", "build_session", "fetch_text",
    "clean_html_content", "apply_replace_regex",
    "ReplaceRule", "apply_replace_rules",
    "absolute_url",
]
