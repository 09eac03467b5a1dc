"""
yuedu — legado 兼容的书源规则引擎与抓取流水线

    from yuedu import ScrapeEngine, SourceStore

    store = SourceStore()
    store.import_json(open("sources.json", encoding="utf-8").read())
    engine = ScrapeEngine()
    books = engine.search_all(store.enabled(), "诡秘之主")
"""

from .core import EngineConfig, BookSource, ScrapedBook, ScrapedChapter, ReplaceRule
from .core.engine import ScrapeEngine, ScrapeCallbacks
from .rules import Analyzer, expand_url
from .sources import SourceStore, parse_book_sources

__version__ = "1.0.0"

__all__ = [
    "EngineConfig", "BookSource", "ScrapedBook", "ScrapedChapter", "ReplaceRule",
    "ScrapeEngine", "ScrapeCallbacks",
    "Analyzer", "expand_url",
    "SourceStore", "parse_book_sources",
]
