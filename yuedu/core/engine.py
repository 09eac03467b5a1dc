"""
抓取流水线 — 搜索 → 详情 → 目录 → 正文 (另有发现页)

每个操作的流程相同:
  检查书源规则 → 展开 URL → 请求 → 用响应构造 Analyzer
  → 按规则组逐字段提取 → 校验记录 → 记录响应耗时 → 返回结果

公开操作从不抛异常, 失败时记录日志并返回 [] / None / ""。
多书源搜索 (search_all) 用线程池并发, 每个任务各自构造 Analyzer。
"""

import logging
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from yuedu.rules.analyzer import Analyzer
from yuedu.rules.script import ScriptContext, render_template
from yuedu.rules.url import build_request, expand_url, parse_explore_kinds
from .config import EngineConfig
from .content import apply_replace_regex, clean_html_content
from .models import BookSource, ExploreKind, ScrapedBook, ScrapedChapter, SearchRule, UrlRequest
from .network import fetch_text

logger = logging.getLogger(__name__)

Fetcher = Callable[[UrlRequest], str]


# ══════════════════════════════════════════════════════════════
# 回调接口
# ══════════════════════════════════════════════════════════════

@dataclass
class ScrapeCallbacks:
    """
    流水线回调

    on_respond_time: 每次网络往返后调用 (书源 id, 毫秒), 一般接到
                     SourceStore.update_respond_time
    on_search_result: search_all 中每个书源完成时调用 (书源, 结果)
    """
    on_respond_time: Callable[[str, int], None] = lambda source_id, ms: None
    on_search_result: Callable[[BookSource, List[ScrapedBook]], None] = lambda source, books: None


def _split_reverse(rule: str) -> Tuple[str, bool]:
    """列表规则以 - 开头表示结果倒序"""
    rule = rule.strip()
    if rule.startswith("-"):
        return rule[1:].strip(), True
    return rule, False


# ══════════════════════════════════════════════════════════════
# 流水线
# ══════════════════════════════════════════════════════════════

class ScrapeEngine:
    """
    书源抓取引擎

    不持有任何书源状态, 书源和书籍都作为参数显式传入,
    同一个实例可以被多个线程同时使用。

    Args:
        config: 引擎配置, None 使用默认值
        callbacks: 回调集合
        fetcher: 自定义请求函数 (UrlRequest → 响应文本), 测试时用来替换网络
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        callbacks: Optional[ScrapeCallbacks] = None,
        fetcher: Optional[Fetcher] = None,
    ):
        self.config = config or EngineConfig()
        self.cb = callbacks or ScrapeCallbacks()
        self._fetcher = fetcher or self._default_fetch

    # ── 网络 ──

    def _default_fetch(self, request: UrlRequest) -> str:
        cfg = self.config
        return fetch_text(
            request,
            timeout=cfg.timeout,
            verify=cfg.verify_ssl,
            user_agent=cfg.user_agent,
            proxy=cfg.proxy,
            max_retries=cfg.max_retries,
        )

    def _fetch(self, source: BookSource, request: UrlRequest) -> str:
        """发请求并记录响应耗时 (失败也记录)"""
        logger.debug(f"[Fetch] {request.method} {request.url}")
        start = time.monotonic()
        try:
            return self._fetcher(request)
        finally:
            elapsed = int((time.monotonic() - start) * 1000)
            source.respond_time = elapsed
            try:
                self.cb.on_respond_time(source.id, elapsed)
            except Exception as e:
                logger.warning(f"[Fetch] 记录响应时间失败: {e}")

    def _request(self, source: BookSource, url: str) -> UrlRequest:
        return build_request(url, source.base_url, source.header, user_agent=self.config.user_agent)

    @staticmethod
    def _context(
        source: BookSource,
        base_url: str,
        book: Optional[ScrapedBook] = None,
        chapter: Optional[ScrapedChapter] = None,
        page: int = 1,
        key: str = "",
    ) -> ScriptContext:
        return ScriptContext(
            base_url=base_url,
            book=book.to_dict() if book else None,
            chapter=chapter.to_dict() if chapter else None,
            source=source.to_dict(),
            page=page,
            key=key,
        )

    # ══════════════════════════════════════════════════════════════
    # 搜索 / 发现
    # ══════════════════════════════════════════════════════════════

    def search(self, source: BookSource, keyword: str, page: int = 1) -> List[ScrapedBook]:
        """按关键词搜索, 只保留同时有书名和书籍地址的结果"""
        if not source.searchable:
            logger.debug(f"[Search] {source.name}: 未配置 searchUrl / bookList, 跳过")
            return []
        try:
            context = self._context(source, source.base_url, page=page, key=keyword)
            request = expand_url(
                source.search_url, source.base_url, keyword, page, source.header,
                user_agent=self.config.user_agent, context=context,
            )
            body = self._fetch(source, request)
            analyzer = Analyzer(body, request.url, context=self._context(
                source, request.url, page=page, key=keyword))
            books = self._parse_book_list(source, analyzer, source.rule_search)
            logger.info(f"[Search] {source.name}: {len(books)} 条结果")
            return books
        except Exception as e:
            logger.warning(f"[Search] {source.name} 搜索失败: {e}")
            return []

    def get_explore_kinds(self, source: BookSource) -> List[ExploreKind]:
        """发现页分类列表; exploreUrl 可以是脚本"""
        if not source.explore_url:
            return []
        explore_url = source.explore_url.strip()
        try:
            if explore_url.startswith("@js:") or "<js>" in explore_url:
                explore_url = render_template(explore_url, self._context(source, source.base_url))
            return parse_explore_kinds(explore_url)
        except Exception as e:
            logger.warning(f"[Explore] {source.name} 分类解析失败: {e}")
            return []

    def explore(self, source: BookSource, url: Optional[str] = None, page: int = 1) -> List[ScrapedBook]:
        """
        发现页

        Args:
            url: 分类地址模板; None 时取第一个分类, 没有分类时把 exploreUrl 当作地址
            page: 页码
        """
        if not source.explorable:
            logger.debug(f"[Explore] {source.name}: 未配置 exploreUrl / bookList, 跳过")
            return []
        try:
            if url is None:
                kinds = self.get_explore_kinds(source)
                url = kinds[0].url if kinds else source.explore_url
            request = expand_url(
                url, source.base_url, "", page, source.header,
                user_agent=self.config.user_agent,
                context=self._context(source, source.base_url, page=page),
            )
            body = self._fetch(source, request)
            analyzer = Analyzer(body, request.url, context=self._context(source, request.url, page=page))
            books = self._parse_book_list(source, analyzer, source.rule_explore)
            logger.info(f"[Explore] {source.name}: {len(books)} 条结果")
            return books
        except Exception as e:
            logger.warning(f"[Explore] {source.name} 发现页加载失败: {e}")
            return []

    def _parse_book_list(self, source: BookSource, analyzer: Analyzer, rule: SearchRule) -> List[ScrapedBook]:
        list_rule, reverse = _split_reverse(rule.book_list)
        books = []
        for fragment in analyzer.get_elements(list_rule):
            child = analyzer.child(fragment)
            book = ScrapedBook(
                name=child.get_string(rule.name),
                author=child.get_string(rule.author),
                intro=child.get_string(rule.intro),
                kind=child.get_string(rule.kind),
                last_chapter=child.get_string(rule.last_chapter),
                word_count=child.get_string(rule.word_count),
                cover_url=child.get_absolute_url(child.get_string(rule.cover_url)),
                book_url=child.get_absolute_url(child.get_string(rule.book_url)),
                source_id=source.id,
                source_name=source.name,
            )
            if not book.is_valid:
                continue
            book.id = book.book_url
            books.append(book)
        if reverse:
            books.reverse()
        return books

    def search_all(self, sources: Iterable[BookSource], keyword: str) -> List[ScrapedBook]:
        """
        并发搜索多个书源

        只搜索启用且可搜索的书源; 结果按书源完成的先后合并,
        每个书源完成时触发 on_search_result。
        """
        targets = [s for s in sources if s.enabled and s.searchable]
        if not targets:
            return []

        results: List[ScrapedBook] = []
        workers = max(1, min(self.config.max_workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self.search, source, keyword): source for source in targets}
            for future in as_completed(futures):
                source = futures[future]
                books = future.result()
                results.extend(books)
                try:
                    self.cb.on_search_result(source, books)
                except Exception as e:
                    logger.warning(f"[Search] 结果回调失败: {e}")
        logger.info(f"[Search] {len(targets)} 个书源共 {len(results)} 条结果")
        return results

    # ══════════════════════════════════════════════════════════════
    # 详情
    # ══════════════════════════════════════════════════════════════

    def get_book_info(
        self,
        source: BookSource,
        book_url: str,
        book: Optional[ScrapedBook] = None,
    ) -> Optional[ScrapedBook]:
        """
        书籍详情

        Args:
            book_url: 详情页地址
            book: 搜索得到的记录, 详情页取不到的字段用它补上

        tocUrl 取不到时等于 book_url。
        """
        rule = source.rule_book_info
        if rule is None or not book_url:
            logger.debug(f"[BookInfo] {source.name}: 未配置 ruleBookInfo, 跳过")
            return None
        try:
            request = self._request(source, book_url)
            body = self._fetch(source, request)
            analyzer = Analyzer(body, request.url, context=self._context(source, request.url, book=book))

            info = ScrapedBook(
                name=analyzer.get_string(rule.name),
                author=analyzer.get_string(rule.author),
                intro=analyzer.get_string(rule.intro),
                kind=analyzer.get_string(rule.kind),
                last_chapter=analyzer.get_string(rule.last_chapter),
                word_count=analyzer.get_string(rule.word_count),
                cover_url=analyzer.get_absolute_url(analyzer.get_string(rule.cover_url)),
                book_url=book_url,
                toc_url=analyzer.get_absolute_url(analyzer.get_string(rule.toc_url)) or book_url,
                source_id=source.id,
                source_name=source.name,
                id=book.id if book and book.id else book_url,
            )
            if book is not None:
                for attr in ("name", "author", "intro", "kind", "last_chapter", "word_count", "cover_url"):
                    if not getattr(info, attr):
                        setattr(info, attr, getattr(book, attr))
            logger.info(f"[BookInfo] {source.name}: 《{info.name}》")
            return info
        except Exception as e:
            logger.warning(f"[BookInfo] {source.name} 详情加载失败: {e}")
            return None

    # ══════════════════════════════════════════════════════════════
    # 目录
    # ══════════════════════════════════════════════════════════════

    def get_toc(self, source: BookSource, book: ScrapedBook) -> List[ScrapedChapter]:
        """
        章节目录

        nextTocUrl 指向的后续页面会依次抓取 (已访问的地址跳过,
        最多 max_toc_pages 页)。后续页面失败时保留已取到的章节。
        章节序号在过滤无效项之后从 0 开始连续编号。
        """
        rule = source.rule_toc
        if rule is None or not rule.chapter_list:
            logger.debug(f"[Toc] {source.name}: 未配置 chapterList, 跳过")
            return []
        start_url = book.toc_url or book.book_url
        if not start_url:
            return []

        list_rule, reverse = _split_reverse(rule.chapter_list)
        entries: List[Tuple[str, str]] = []
        queue = deque([start_url])
        visited = set()
        pages = 0
        try:
            while queue and pages < self.config.max_toc_pages:
                url = queue.popleft()
                if url in visited:
                    continue
                visited.add(url)
                pages += 1
                try:
                    request = self._request(source, url)
                    body = self._fetch(source, request)
                except Exception as e:
                    if pages == 1:
                        raise
                    logger.warning(f"[Toc] {source.name} 第 {pages} 页加载失败, 停止翻页: {e}")
                    break

                analyzer = Analyzer(body, request.url, context=self._context(source, request.url, book=book))
                for fragment in analyzer.get_elements(list_rule):
                    child = analyzer.child(fragment)
                    entries.append((
                        child.get_string(rule.chapter_name),
                        child.get_absolute_url(child.get_string(rule.chapter_url)),
                    ))

                if rule.next_toc_url:
                    for next_url in analyzer.get_string_list(rule.next_toc_url):
                        next_url = analyzer.get_absolute_url(next_url.strip())
                        if next_url and next_url not in visited:
                            queue.append(next_url)
        except Exception as e:
            logger.warning(f"[Toc] {source.name} 目录加载失败: {e}")
            return []

        if reverse:
            entries.reverse()

        book_id = book.id or book.book_url
        chapters = []
        for title, url in entries:
            chapter = ScrapedChapter(index=len(chapters), title=title, url=url, book_id=book_id)
            if not chapter.is_valid:
                continue
            chapter.id = f"{book_id}_{chapter.index}"
            chapters.append(chapter)
        logger.info(f"[Toc] {source.name}: {len(chapters)} 章 ({pages} 页)")
        return chapters

    # ══════════════════════════════════════════════════════════════
    # 正文
    # ══════════════════════════════════════════════════════════════

    def get_chapter_content(
        self,
        source: BookSource,
        chapter: ScrapedChapter,
        next_chapter_url: Optional[str] = None,
    ) -> str:
        """
        章节正文 (纯文本)

        nextContentUrl 指向的分页会依次抓取并用换行拼接,
        遇到下一章的地址 (next_chapter_url) 时停止。
        拼接后做 HTML 净化, 再执行正文规则自带的 replaceRegex。
        """
        rule = source.rule_content
        if rule is None or not rule.content or not chapter.url:
            logger.debug(f"[Content] {source.name}: 未配置 content 规则, 跳过")
            return ""
        try:
            parts = []
            url = chapter.url
            visited = set()
            while url and url not in visited and len(visited) < self.config.max_content_pages:
                visited.add(url)
                request = self._request(source, url)
                body = self._fetch(source, request)
                analyzer = Analyzer(body, request.url, context=self._context(
                    source, request.url, chapter=chapter))
                parts.append(analyzer.get_string(rule.content))

                url = None
                if rule.next_content_url:
                    found = analyzer.get_string_list(rule.next_content_url)
                    candidate = analyzer.get_absolute_url(found[0].strip()) if found else ""
                    if candidate and candidate != next_chapter_url:
                        url = candidate

            content = clean_html_content("\n".join(p for p in parts if p))
            return apply_replace_regex(content, rule.replace_regex)
        except Exception as e:
            logger.warning(f"[Content] {source.name} 正文加载失败 ({chapter.title}): {e}")
            return ""
