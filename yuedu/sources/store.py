"""
书源仓库 — 内存中的书源集合 (以 id 为键)

排序规则: customOrder 升序, 再按 weight 降序。
所有方法都加锁, 可以直接作为 ScrapeEngine 的 on_respond_time 回调。
"""

import json
import logging
import re
import threading
import time
from typing import Dict, Iterable, List, Optional, Union

from yuedu.core.models import BookSource
from .importer import SourceFormatError, parse_book_sources, source_from_dict

logger = logging.getLogger(__name__)

_GROUP_SPLIT_RE = re.compile(r"[,;，；]")


def _sort_key(source: BookSource):
    return (source.custom_order, -source.weight)


def _groups_of(source: BookSource) -> List[str]:
    if not source.group:
        return []
    return [g.strip() for g in _GROUP_SPLIT_RE.split(source.group) if g.strip()]


class SourceStore:
    """书源集合"""

    def __init__(self, sources: Iterable[BookSource] = ()):
        self._lock = threading.Lock()
        self._sources: Dict[str, BookSource] = {}
        for source in sources:
            self._sources[source.id] = source

    # ── 写入 ──

    def add(self, source: BookSource) -> BookSource:
        """添加或替换 (按 id)"""
        with self._lock:
            self._sources[source.id] = source
        return source

    def import_sources(self, entries: Iterable[dict]) -> int:
        """逐条导入书源对象, 返回成功条数"""
        count = 0
        for entry in entries:
            try:
                self.add(source_from_dict(entry))
                count += 1
            except SourceFormatError as e:
                logger.warning(f"[Import] 跳过书源: {e}")
        return count

    def import_json(self, payload: Union[str, bytes, list, dict]) -> int:
        """导入书源 JSON, 返回成功条数"""
        count = 0
        for source in parse_book_sources(payload):
            self.add(source)
            count += 1
        logger.info(f"[Import] 导入 {count} 个书源")
        return count

    def toggle(self, source_id: str, enabled: bool) -> bool:
        """启用 / 禁用, 书源不存在返回 False"""
        with self._lock:
            source = self._sources.get(source_id)
            if source is None:
                return False
            source.enabled = enabled
            source.last_update_time = int(time.time() * 1000)
        return True

    def delete(self, source_id: str) -> bool:
        with self._lock:
            return self._sources.pop(source_id, None) is not None

    def delete_many(self, source_ids: Iterable[str]) -> int:
        return sum(1 for source_id in list(source_ids) if self.delete(source_id))

    def update_respond_time(self, source_id: str, respond_time: int):
        """记录响应耗时; 书源已被删除时忽略"""
        with self._lock:
            source = self._sources.get(source_id)
            if source is not None:
                source.respond_time = respond_time

    # ── 查询 ──

    def get(self, source_id: str) -> Optional[BookSource]:
        with self._lock:
            return self._sources.get(source_id)

    def all(self) -> List[BookSource]:
        with self._lock:
            return sorted(self._sources.values(), key=_sort_key)

    def enabled(self) -> List[BookSource]:
        return [s for s in self.all() if s.enabled]

    def groups(self) -> List[str]:
        """所有分组名 (一个书源可以用逗号写多个分组)"""
        names = set()
        for source in self.all():
            names.update(_groups_of(source))
        return sorted(names)

    def by_group(self, group: str) -> List[BookSource]:
        return [s for s in self.all() if group in _groups_of(s)]

    def export_json(self, sources: Optional[Iterable[BookSource]] = None) -> str:
        """导出为 legado 兼容的 JSON 数组"""
        items = list(sources) if sources is not None else self.all()
        return json.dumps([s.to_dict() for s in items], ensure_ascii=False, indent=2)

    def __len__(self):
        with self._lock:
            return len(self._sources)

    def __contains__(self, source_id):
        with self._lock:
            return source_id in self._sources
