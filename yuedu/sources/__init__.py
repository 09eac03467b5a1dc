"""
sources — 书源的导入、存储与导出

    store = SourceStore()
    count = store.import_json(text)     # 返回成功导入的条数
    for source in store.enabled():
        ...
"""

from .importer import SourceFormatError, parse_book_sources, source_from_dict
from .store import SourceStore

__all__ = [
    "SourceFormatError", "parse_book_sources", "source_from_dict",
    "SourceStore",
]
