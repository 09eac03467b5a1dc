import pytest
import requests

from yuedu.core.models import BookSource, ContentRule, SearchRule, TocRule, BookInfoRule


class FakeFetcher:
    """按 URL 返回预置页面; 未知 URL 按连接失败处理"""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if request.url not in self.pages:
            raise requests.ConnectionError(f"no route to {request.url}")
        return self.pages[request.url]

    @property
    def urls(self):
        return [r.url for r in self.requests]


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def html_source():
    return BookSource(
        id="http://x.test",
        name="测试书源",
        url="http://x.test",
        search_url="http://x.test/search?q={{key}}",
        rule_search=SearchRule(
            book_list=".item",
            name=".title@text",
            author=".author@text",
            book_url=".title@href",
            cover_url="img@src",
        ),
        rule_book_info=BookInfoRule(
            name="h1@text",
            author=".author@text",
            intro="#intro@text",
            toc_url="#toc@href",
        ),
        rule_toc=TocRule(
            chapter_list="#list a",
            chapter_name="text",
            chapter_url="href",
        ),
        rule_content=ContentRule(content="#content@html"),
    )
