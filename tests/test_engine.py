import json

from yuedu.core.config import EngineConfig
from yuedu.core.engine import ScrapeCallbacks, ScrapeEngine
from yuedu.core.models import BookSource, ExploreRule, ScrapedBook, ScrapedChapter, SearchRule
from yuedu.sources import SourceStore

from .conftest import FakeFetcher

SEARCH_URL = "http://x.test/search?q=%E9%BE%99"

SEARCH_PAGE = """
<div class="item"><a class="title" href="/b/1">书一</a><span class="author">甲</span><img src="/c1.jpg"></div>
<div class="item"><a class="title" href="/b/2">书二</a><span class="author">乙</span></div>
<div class="item"><a class="title" href="http://y.test/b/3">书三</a></div>
<div class="item"><span class="author">无名</span></div>
<div class="item"><a class="title">没有地址</a></div>
"""

INFO_PAGE = """
<h1>书一</h1><p class="author">甲</p>
<div id="intro"> 一段简介 </div>
<a id="toc" href="/b/1/toc">目录</a>
"""

TOC_PAGE_1 = """
<div id="list"><a href="/c/1.html">第一章</a><a href="/c/2.html">第二章</a><a>没有地址</a></div>
<a id="next" href="/b/1/toc2">下一页</a>
"""

TOC_PAGE_2 = """
<div id="list"><a href="/c/3.html">第三章</a></div>
<a id="next" href="/b/1/toc">回到第一页</a>
"""

BOOK = ScrapedBook(
    name="书一",
    book_url="http://x.test/b/1",
    toc_url="http://x.test/b/1/toc",
    id="http://x.test/b/1",
)


def _engine(pages, **kwargs):
    fetcher = FakeFetcher(pages)
    return ScrapeEngine(fetcher=fetcher, **kwargs), fetcher


# ══════════════════════════════════════════════════════════════
# 搜索
# ══════════════════════════════════════════════════════════════

def test_search_extracts_valid_books(html_source):
    engine, fetcher = _engine({SEARCH_URL: SEARCH_PAGE})
    books = engine.search(html_source, "龙")

    assert fetcher.urls == [SEARCH_URL]
    assert [b.name for b in books] == ["书一", "书二", "书三"]
    assert [b.book_url for b in books] == [
        "http://x.test/b/1",
        "http://x.test/b/2",
        "http://y.test/b/3",
    ]
    first = books[0]
    assert first.author == "甲"
    assert first.cover_url == "http://x.test/c1.jpg"
    assert first.id == first.book_url
    assert first.source_id == "http://x.test"
    assert first.source_name == "测试书源"
    assert books[1].cover_url == ""


def test_search_reverse_list(html_source):
    html_source.rule_search.book_list = "-.item"
    engine, _ = _engine({SEARCH_URL: SEARCH_PAGE})
    assert [b.name for b in engine.search(html_source, "龙")] == ["书三", "书二", "书一"]


def test_search_without_rules_does_not_fetch(html_source):
    html_source.search_url = None
    engine, fetcher = _engine({SEARCH_URL: SEARCH_PAGE})
    assert engine.search(html_source, "龙") == []
    assert fetcher.requests == []


def test_search_network_failure_returns_empty(html_source):
    engine, _ = _engine({})
    assert engine.search(html_source, "龙") == []


def test_search_unreachable_host():
    source = BookSource(
        id="http://127.0.0.1:1",
        name="不可达",
        url="http://127.0.0.1:1",
        search_url="/search?q={{key}}",
        rule_search=SearchRule(book_list=".item", name="a@text", book_url="a@href"),
    )
    engine = ScrapeEngine(EngineConfig(timeout=2))
    assert engine.search(source, "abc") == []


def test_search_json_api():
    source = BookSource(
        id="http://api.test",
        name="API",
        url="http://api.test",
        search_url="/search?kw={{key}}",
        rule_search=SearchRule(
            book_list="$.data[*]",
            name="$.title",
            author="$.author",
            book_url="/book/{{$.id}}",
        ),
    )
    payload = json.dumps({"data": [
        {"id": 1, "title": "A", "author": "x"},
        {"id": 2, "title": "B"},
        {"id": 3},
    ]})
    engine, _ = _engine({"http://api.test/search?kw=abc": payload})
    books = engine.search(source, "abc")
    assert [(b.name, b.author, b.book_url) for b in books] == [
        ("A", "x", "http://api.test/book/1"),
        ("B", "", "http://api.test/book/2"),
    ]


def test_search_all(html_source):
    broken = BookSource(
        id="http://broken.test", name="坏书源", url="http://broken.test",
        search_url="/s?q={{key}}", rule_search=html_source.rule_search,
    )
    disabled = BookSource(
        id="http://off.test", name="禁用", url="http://off.test", enabled=False,
        search_url="/s?q={{key}}", rule_search=html_source.rule_search,
    )
    finished = []
    engine, fetcher = _engine(
        {SEARCH_URL: SEARCH_PAGE},
        callbacks=ScrapeCallbacks(on_search_result=lambda source, books: finished.append((source.id, len(books)))),
    )
    books = engine.search_all([html_source, broken, disabled], "龙")

    assert sorted(b.name for b in books) == ["书一", "书三", "书二"]
    assert sorted(finished) == [("http://broken.test", 0), ("http://x.test", 3)]
    assert "http://off.test/s?q=%E9%BE%99" not in fetcher.urls


def test_search_all_empty():
    engine, _ = _engine({})
    assert engine.search_all([], "龙") == []


def test_respond_time_recorded(html_source):
    store = SourceStore([html_source])
    html_source.respond_time = -1
    recorded = []

    def on_respond_time(source_id, ms):
        recorded.append(source_id)
        store.update_respond_time(source_id, ms)

    engine, _ = _engine({}, callbacks=ScrapeCallbacks(on_respond_time=on_respond_time))
    engine.search(html_source, "龙")

    assert recorded == ["http://x.test"]
    assert store.get("http://x.test").respond_time >= 0


# ══════════════════════════════════════════════════════════════
# 发现
# ══════════════════════════════════════════════════════════════

def _explore_source():
    return BookSource(
        id="http://x.test",
        name="发现",
        url="http://x.test",
        explore_url="玄幻::/xh/{{page}}.html\n都市::/ds/{{page}}.html",
        rule_explore=ExploreRule(book_list=".item", name=".title@text", book_url=".title@href"),
    )


def test_explore_kinds():
    engine, _ = _engine({})
    kinds = engine.get_explore_kinds(_explore_source())
    assert [k.name for k in kinds] == ["玄幻", "都市"]


def test_explore_script_kinds():
    source = _explore_source()
    source.explore_url = "@js:'玄幻::/xh/' + '&&' + '都市::/ds/'"
    engine, _ = _engine({})
    assert [k.url for k in engine.get_explore_kinds(source)] == ["/xh/", "/ds/"]


def test_explore_defaults_to_first_kind():
    engine, fetcher = _engine({"http://x.test/xh/1.html": SEARCH_PAGE})
    books = engine.explore(_explore_source())
    assert fetcher.urls == ["http://x.test/xh/1.html"]
    assert len(books) == 3


def test_explore_kind_and_page():
    engine, fetcher = _engine({"http://x.test/ds/2.html": SEARCH_PAGE})
    books = engine.explore(_explore_source(), "/ds/{{page}}.html", page=2)
    assert fetcher.urls == ["http://x.test/ds/2.html"]
    assert books[0].name == "书一"


def test_explore_without_rules(html_source):
    engine, fetcher = _engine({})
    assert engine.explore(html_source) == []
    assert engine.get_explore_kinds(html_source) == []
    assert fetcher.requests == []


# ══════════════════════════════════════════════════════════════
# 详情
# ══════════════════════════════════════════════════════════════

def test_book_info(html_source):
    engine, _ = _engine({"http://x.test/b/1": INFO_PAGE})
    info = engine.get_book_info(html_source, "http://x.test/b/1")

    assert info.name == "书一"
    assert info.author == "甲"
    assert info.intro == "一段简介"
    assert info.book_url == "http://x.test/b/1"
    assert info.toc_url == "http://x.test/b/1/toc"
    assert info.id == "http://x.test/b/1"


def test_book_info_fills_from_search_result(html_source):
    book = ScrapedBook(
        name="书二", author="乙", cover_url="http://x.test/c2.jpg",
        book_url="http://x.test/b/2", id="book-2",
    )
    engine, _ = _engine({"http://x.test/b/2": "<h1>书二 (完结)</h1>"})
    info = engine.get_book_info(html_source, book.book_url, book)

    assert info.name == "书二 (完结)"
    assert info.author == "乙"
    assert info.cover_url == "http://x.test/c2.jpg"
    assert info.toc_url == "http://x.test/b/2"
    assert info.id == "book-2"


def test_book_info_failure(html_source):
    engine, _ = _engine({})
    assert engine.get_book_info(html_source, "http://x.test/b/404") is None
    html_source.rule_book_info = None
    assert engine.get_book_info(html_source, "http://x.test/b/1") is None


# ══════════════════════════════════════════════════════════════
# 目录
# ══════════════════════════════════════════════════════════════

def test_toc_follows_next_pages(html_source):
    html_source.rule_toc.next_toc_url = "#next@href"
    engine, fetcher = _engine({
        "http://x.test/b/1/toc": TOC_PAGE_1,
        "http://x.test/b/1/toc2": TOC_PAGE_2,
    })
    chapters = engine.get_toc(html_source, BOOK)

    assert fetcher.urls == ["http://x.test/b/1/toc", "http://x.test/b/1/toc2"]
    assert [c.title for c in chapters] == ["第一章", "第二章", "第三章"]
    assert [c.index for c in chapters] == [0, 1, 2]
    assert chapters[2].url == "http://x.test/c/3.html"
    assert chapters[1].id == "http://x.test/b/1_1"
    assert chapters[1].book_id == "http://x.test/b/1"


def test_toc_page_limit(html_source):
    html_source.rule_toc.next_toc_url = "#next@href"
    engine, fetcher = _engine({
        "http://x.test/b/1/toc": TOC_PAGE_1,
        "http://x.test/b/1/toc2": TOC_PAGE_2,
    }, config=EngineConfig(max_toc_pages=1))
    assert len(engine.get_toc(html_source, BOOK)) == 2
    assert fetcher.urls == ["http://x.test/b/1/toc"]


def test_toc_keeps_chapters_when_later_page_fails(html_source):
    html_source.rule_toc.next_toc_url = "#next@href"
    engine, _ = _engine({"http://x.test/b/1/toc": TOC_PAGE_1})
    assert [c.title for c in engine.get_toc(html_source, BOOK)] == ["第一章", "第二章"]


def test_toc_first_page_failure(html_source):
    engine, _ = _engine({})
    assert engine.get_toc(html_source, BOOK) == []


def test_toc_reverse(html_source):
    html_source.rule_toc.chapter_list = "-#list a"
    engine, _ = _engine({"http://x.test/b/1/toc": TOC_PAGE_1})
    chapters = engine.get_toc(html_source, BOOK)
    assert [c.title for c in chapters] == ["第二章", "第一章"]
    assert chapters[0].index == 0


def test_toc_falls_back_to_book_url(html_source):
    engine, fetcher = _engine({"http://x.test/b/9": TOC_PAGE_1})
    book = ScrapedBook(name="书九", book_url="http://x.test/b/9")
    chapters = engine.get_toc(html_source, book)
    assert fetcher.urls == ["http://x.test/b/9"]
    assert chapters[0].book_id == "http://x.test/b/9"


# ══════════════════════════════════════════════════════════════
# 正文
# ══════════════════════════════════════════════════════════════

CHAPTER = ScrapedChapter(index=0, title="第一章", url="http://x.test/c/1.html")


def test_content_cleanup(html_source):
    page = '<div id="content"><p>Hello</p><br><p>World</p></div>'
    engine, _ = _engine({CHAPTER.url: page})
    assert engine.get_chapter_content(html_source, CHAPTER) == "Hello\nWorld"


def test_content_pages_stop_at_next_chapter(html_source):
    html_source.rule_content.next_content_url = "#next@href"
    html_source.rule_content.replace_regex = "广告@@"
    engine, fetcher = _engine({
        CHAPTER.url: '<div id="content"><p>第一段</p><p>第二段广告</p></div>'
                     '<a id="next" href="/c/1_2.html">下一页</a>',
        "http://x.test/c/1_2.html": '<div id="content"><p>第三段</p></div>'
                                    '<a id="next" href="/c/2.html">下一章</a>',
    })
    content = engine.get_chapter_content(html_source, CHAPTER, "http://x.test/c/2.html")

    assert content == "第一段第二段\n第三段"
    assert fetcher.urls == [CHAPTER.url, "http://x.test/c/1_2.html"]


def test_content_page_loop_is_bounded(html_source):
    html_source.rule_content.next_content_url = "#next@href"
    engine, fetcher = _engine({
        CHAPTER.url: '<div id="content">甲</div><a id="next" href="/c/1.html">本页</a>',
    })
    assert engine.get_chapter_content(html_source, CHAPTER) == "甲"
    assert fetcher.urls == [CHAPTER.url]


def test_content_failure(html_source):
    engine, _ = _engine({})
    assert engine.get_chapter_content(html_source, CHAPTER) == ""
    html_source.rule_content = None
    assert engine.get_chapter_content(html_source, CHAPTER) == ""
