#!/usr/bin/env python3
"""
书源调试工具 — 命令行接口

按 搜索 → 详情 → 目录 → 正文 的顺序走一遍书源, 每一步自动把上一步的
第一个结果交给下一步, 用来检查书源规则是否还能用。

用法:
    yuedu-debug sources.json "诡秘之主"
    yuedu-debug sources.json "诡秘之主" --source "https://www.example.com"
    yuedu-debug sources.json --book-url "https://www.example.com/book/1/"
    yuedu-debug sources.json --chapter-url "https://www.example.com/book/1/1.html"
"""

import argparse
import logging
import sys
from typing import Optional

from yuedu.core.config import EngineConfig
from yuedu.core.engine import ScrapeEngine
from yuedu.core.models import BookSource, ScrapedBook, ScrapedChapter
from yuedu.sources import SourceStore

PREVIEW_CHARS = 300


def _pick_source(store: SourceStore, key: Optional[str]) -> Optional[BookSource]:
    """按 id 或名称选书源; 没指定时取第一个启用的书源"""
    if key:
        source = store.get(key)
        if source:
            return source
        for source in store.all():
            if source.name == key:
                return source
        return None
    enabled = store.enabled()
    return enabled[0] if enabled else None


def _print_book(book: ScrapedBook):
    print(f"  书名: {book.name}")
    print(f"  作者: {book.author}")
    if book.kind:
        print(f"  分类: {book.kind}")
    if book.last_chapter:
        print(f"  最新: {book.last_chapter}")
    print(f"  地址: {book.book_url}")
    if book.toc_url:
        print(f"  目录: {book.toc_url}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="书源调试工具 (搜索 → 详情 → 目录 → 正文)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 用第一个启用的书源搜索
  yuedu-debug sources.json "诡秘之主"

  # 指定书源 (id 或名称)
  yuedu-debug sources.json "诡秘之主" --source "笔趣阁"

  # 从详情页开始
  yuedu-debug sources.json --book-url "https://www.example.com/book/1/"

  # 只看正文
  yuedu-debug sources.json --chapter-url "https://www.example.com/book/1/1.html"
        """,
    )
    parser.add_argument("sources", help="书源 JSON 文件")
    parser.add_argument("keyword", nargs="?", default=None, help="搜索关键词")
    parser.add_argument("--source", default=None, help="书源 id 或名称 (默认: 第一个启用的书源)")
    parser.add_argument("--book-url", default=None, help="跳过搜索, 直接从详情页开始")
    parser.add_argument("--chapter-url", default=None, help="只抓取这一章的正文")
    parser.add_argument("--timeout", type=float, default=None, help="请求超时秒数")
    parser.add_argument("--proxy", default=None, help="代理地址")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not (args.keyword or args.book_url or args.chapter_url):
        parser.error("需要关键词、--book-url 或 --chapter-url 之一")

    # ── 书源 ──
    store = SourceStore()
    try:
        with open(args.sources, "r", encoding="utf-8") as f:
            count = store.import_json(f.read())
    except OSError as e:
        print(f"[FAIL] 无法读取书源文件: {e}")
        return 1
    if count == 0:
        print("[FAIL] 书源文件里没有可用的书源")
        return 1

    source = _pick_source(store, args.source)
    if source is None:
        print(f"[FAIL] 找不到书源: {args.source or '(没有启用的书源)'}")
        return 1

    print("=" * 60)
    print(f"  书源调试  [{source.name}]  共导入 {count} 个书源")
    print("=" * 60)

    # ── 配置 ──
    config = EngineConfig.from_env()
    if args.timeout:
        config.timeout = args.timeout
    if args.proxy:
        config.proxy = args.proxy
        print(f"[*] 代理: {args.proxy}")

    engine = ScrapeEngine(config)

    # ── 只看正文 ──
    if args.chapter_url:
        chapter = ScrapedChapter(index=0, title=args.chapter_url, url=args.chapter_url)
        return _show_content(engine, source, chapter)

    # ── 搜索 ──
    book: Optional[ScrapedBook] = None
    if args.book_url:
        book_url = args.book_url
    else:
        print(f"\n[*] 搜索: {args.keyword}")
        books = engine.search(source, args.keyword)
        if not books:
            print("[FAIL] 没有搜索结果")
            return 1
        print(f"[OK] {len(books)} 条结果")
        for i, item in enumerate(books[:10], 1):
            print(f"  {i:2d}. {item.name}  {item.author}  {item.book_url}")
        book = books[0]
        book_url = book.book_url

    # ── 详情 ──
    print(f"\n[*] 详情: {book_url}")
    info = engine.get_book_info(source, book_url, book)
    if info is None:
        print("[!] 详情获取失败, 使用搜索结果继续")
        info = book or ScrapedBook(name=book_url, book_url=book_url, toc_url=book_url)
    else:
        print("[OK] 详情")
    _print_book(info)

    # ── 目录 ──
    print(f"\n[*] 目录: {info.toc_url or info.book_url}")
    chapters = engine.get_toc(source, info)
    if not chapters:
        print("[FAIL] 目录为空")
        return 1
    print(f"[OK] {len(chapters)} 章")
    for chapter in chapters[:5]:
        print(f"  {chapter.index:4d}. {chapter.title}")
    if len(chapters) > 5:
        print(f"  ...  {chapters[-1].index:4d}. {chapters[-1].title}")

    next_url = chapters[1].url if len(chapters) > 1 else None
    return _show_content(engine, source, chapters[0], next_url)


def _show_content(engine: ScrapeEngine, source: BookSource, chapter: ScrapedChapter,
                  next_chapter_url: Optional[str] = None) -> int:
    print(f"\n[*] 正文: {chapter.title}")
    content = engine.get_chapter_content(source, chapter, next_chapter_url)
    if not content:
        print("[FAIL] 正文为空")
        return 1
    print(f"[OK] {len(content)} 字")
    print("-" * 60)
    print(content[:PREVIEW_CHARS] + ("..." if len(content) > PREVIEW_CHARS else ""))
    print("-" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
