"""
统一数据模型 — 书源配置、规则组、抓取结果

书源 JSON 使用 legado 的 camelCase 字段名, Python 侧统一用 snake_case,
两者之间的映射集中在各 dataclass 的 FIELDS 表里。
"""

from dataclasses import dataclass, field
from typing import ClassVar, Dict, Optional


# ══════════════════════════════════════════════════════════════
# 规则组
# ══════════════════════════════════════════════════════════════

@dataclass
class RuleGroup:
    """
    规则组基类: 每个字段是一条规则表达式, None 表示该书源无法提取此字段

    子类通过 FIELDS 声明 python 字段名 → JSON 字段名 的映射。
    """

    FIELDS: ClassVar[Dict[str, str]] = {}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["RuleGroup"]:
        """从 JSON 对象构建, 未知字段忽略; 空对象返回 None"""
        if not data:
            return None
        values = {}
        for attr, key in cls.FIELDS.items():
            raw = data.get(key, data.get(attr))
            if raw is None or raw == "":
                continue
            values[attr] = raw if isinstance(raw, str) else str(raw)
        if not values:
            return None
        return cls(**values)

    def to_dict(self) -> dict:
        return {
            key: getattr(self, attr)
            for attr, key in self.FIELDS.items()
            if getattr(self, attr) is not None
        }


_BOOK_FIELDS = {
    "name": "name",
    "author": "author",
    "intro": "intro",
    "kind": "kind",
    "last_chapter": "lastChapter",
    "word_count": "wordCount",
    "cover_url": "coverUrl",
}


@dataclass
class SearchRule(RuleGroup):
    """搜索结果列表规则"""
    book_list: Optional[str] = None
    name: Optional[str] = None
    author: Optional[str] = None
    intro: Optional[str] = None
    kind: Optional[str] = None
    last_chapter: Optional[str] = None
    word_count: Optional[str] = None
    cover_url: Optional[str] = None
    book_url: Optional[str] = None

    FIELDS: ClassVar[Dict[str, str]] = {
        "book_list": "bookList", **_BOOK_FIELDS, "book_url": "bookUrl",
    }


@dataclass
class ExploreRule(SearchRule):
    """发现页规则 (字段同搜索)"""


@dataclass
class BookInfoRule(RuleGroup):
    """书籍详情页规则"""
    name: Optional[str] = None
    author: Optional[str] = None
    intro: Optional[str] = None
    kind: Optional[str] = None
    last_chapter: Optional[str] = None
    word_count: Optional[str] = None
    cover_url: Optional[str] = None
    toc_url: Optional[str] = None

    FIELDS: ClassVar[Dict[str, str]] = {**_BOOK_FIELDS, "toc_url": "tocUrl"}


@dataclass
class TocRule(RuleGroup):
    """目录规则"""
    chapter_list: Optional[str] = None
    chapter_name: Optional[str] = None
    chapter_url: Optional[str] = None
    next_toc_url: Optional[str] = None

    FIELDS: ClassVar[Dict[str, str]] = {
        "chapter_list": "chapterList",
        "chapter_name": "chapterName",
        "chapter_url": "chapterUrl",
        "next_toc_url": "nextTocUrl",
    }


@dataclass
class ContentRule(RuleGroup):
    """正文规则"""
    content: Optional[str] = None
    next_content_url: Optional[str] = None
    replace_regex: Optional[str] = None

    FIELDS: ClassVar[Dict[str, str]] = {
        "content": "content",
        "next_content_url": "nextContentUrl",
        "replace_regex": "replaceRegex",
    }


# ══════════════════════════════════════════════════════════════
# 书源
# ══════════════════════════════════════════════════════════════

@dataclass
class BookSource:
    """一个书源 (以 id 为键, id 通常就是书源 URL)"""
    id: str
    name: str
    url: str = ""
    group: Optional[str] = None
    comment: Optional[str] = None
    enabled: bool = True
    enabled_explore: bool = True
    weight: int = 0
    custom_order: int = 0
    last_update_time: int = 0
    respond_time: int = 0
    header: Optional[str] = None            # JSON 编码的自定义请求头
    search_url: Optional[str] = None
    explore_url: Optional[str] = None
    rule_search: Optional[SearchRule] = None
    rule_explore: Optional[ExploreRule] = None
    rule_book_info: Optional[BookInfoRule] = None
    rule_toc: Optional[TocRule] = None
    rule_content: Optional[ContentRule] = None

    @property
    def base_url(self) -> str:
        """解析相对链接用的基础 URL"""
        return self.url or self.id

    @property
    def searchable(self) -> bool:
        return bool(self.search_url and self.rule_search and self.rule_search.book_list)

    @property
    def explorable(self) -> bool:
        return bool(self.explore_url and self.rule_explore and self.rule_explore.book_list)

    def to_dict(self) -> dict:
        """导出为 legado 兼容的 JSON 对象"""
        data = {
            "id": self.id,
            "bookSourceName": self.name,
            "bookSourceUrl": self.url,
            "bookSourceGroup": self.group,
            "bookSourceComment": self.comment,
            "enabled": self.enabled,
            "enabledExplore": self.enabled_explore,
            "weight": self.weight,
            "customOrder": self.custom_order,
            "lastUpdateTime": self.last_update_time,
            "respondTime": self.respond_time,
            "header": self.header,
            "searchUrl": self.search_url,
            "exploreUrl": self.explore_url,
        }
        for attr, key in _RULE_GROUP_KEYS.items():
            group = getattr(self, attr)
            if group is not None:
                data[key] = group.to_dict()
        return {k: v for k, v in data.items() if v is not None}

    def __repr__(self):
        return f"BookSource('{self.name}', id='{self.id}', enabled={self.enabled})"


# python 属性名 → JSON 字段名
_RULE_GROUP_KEYS = {
    "rule_search": "ruleSearch",
    "rule_explore": "ruleExplore",
    "rule_book_info": "ruleBookInfo",
    "rule_toc": "ruleToc",
    "rule_content": "ruleContent",
}

RULE_GROUP_TYPES = {
    "rule_search": SearchRule,
    "rule_explore": ExploreRule,
    "rule_book_info": BookInfoRule,
    "rule_toc": TocRule,
    "rule_content": ContentRule,
}


# ══════════════════════════════════════════════════════════════
# 请求 / 抓取结果
# ══════════════════════════════════════════════════════════════

@dataclass
class UrlRequest:
    """URL 模板展开结果, 每次流水线调用生成一次"""
    url: str
    method: str = "GET"
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    charset: Optional[str] = None


@dataclass
class ScrapedBook:
    """从规则逐字段组装出的书籍记录 (至少需要 name 和 book_url)"""
    name: str = ""
    book_url: str = ""
    author: str = ""
    intro: str = ""
    kind: str = ""
    last_chapter: str = ""
    word_count: str = ""
    cover_url: str = ""
    toc_url: str = ""
    source_id: str = ""
    source_name: str = ""
    id: str = ""

    @property
    def is_valid(self) -> bool:
        return bool(self.name and self.book_url)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "author": self.author,
            "intro": self.intro,
            "kind": self.kind,
            "latestChapterTitle": self.last_chapter,
            "wordCount": self.word_count,
            "coverUrl": self.cover_url,
            "bookUrl": self.book_url,
            "tocUrl": self.toc_url,
            "sourceId": self.source_id,
            "sourceName": self.source_name,
        }

    def __repr__(self):
        return f"ScrapedBook('{self.name}', author='{self.author}', url='{self.book_url}')"


@dataclass
class ScrapedChapter:
    """目录中的一章 (至少需要 title 和 url)"""
    index: int
    title: str
    url: str
    book_id: str = ""
    id: str = ""

    @property
    def is_valid(self) -> bool:
        return bool(self.title and self.url)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "index": self.index,
            "title": self.title,
            "url": self.url,
        }

    def __repr__(self):
        return f"ScrapedChapter({self.index}, '{self.title}')"


@dataclass
class ExploreKind:
    """发现页分类 (name::url)"""
    name: str
    url: str


__all__ = [
    "RuleGroup", "SearchRule", "ExploreRule", "BookInfoRule", "TocRule", "ContentRule",
    "BookSource", "RULE_GROUP_TYPES",
    "UrlRequest", "ScrapedBook", "ScrapedChapter", "ExploreKind",
]
