import json

import pytest

from yuedu.core.models import BookSource
from yuedu.sources import SourceStore, parse_book_sources
from yuedu.sources.importer import SourceFormatError, source_from_dict


LEGADO_SOURCE = {
    "bookSourceUrl": "http://a.test",
    "bookSourceName": "A 站",
    "bookSourceGroup": "男频,精品",
    "weight": "3",
    "header": {"Referer": "http://a.test"},
    "searchUrl": "/s?q={{key}}",
    "ruleSearch": {"bookList": ".item", "name": ".t@text", "bookUrl": "a@href"},
    "ruleFind": {"bookList": ".x"},
    "ruleBookContent": {"content": "#c@html", "replaceRegex": "广告@@"},
    "unknownField": 1,
}


def test_import_legado_names():
    source = source_from_dict(LEGADO_SOURCE)
    assert source.id == "http://a.test"
    assert source.name == "A 站"
    assert source.weight == 3
    assert json.loads(source.header) == {"Referer": "http://a.test"}
    assert source.rule_search.book_list == ".item"
    assert source.rule_explore.book_list == ".x"
    assert source.rule_content.replace_regex == "广告@@"
    assert source.enabled
    assert source.searchable
    assert not source.explorable


def test_import_id_and_name_fallback():
    source = source_from_dict({"id": "custom", "bookSourceUrl": "http://a.test"})
    assert source.id == "custom"
    assert source.name == "custom"
    assert source.base_url == "http://a.test"


def test_rule_group_as_json_string():
    source = source_from_dict({"bookSourceUrl": "http://a.test", "ruleToc": '{"chapterList": "#list a"}'})
    assert source.rule_toc.chapter_list == "#list a"


def test_import_rejects_bad_entry():
    with pytest.raises(SourceFormatError):
        source_from_dict({"bookSourceName": "没有地址"})
    with pytest.raises(SourceFormatError):
        source_from_dict({"bookSourceUrl": "http://b.test", "weight": "heavy"})
    with pytest.raises(SourceFormatError):
        source_from_dict({"bookSourceUrl": "http://c.test", "ruleSearch": "not json"})


def test_parse_skips_bad_entries():
    payload = json.dumps([
        {"bookSourceName": "没有地址"},
        "not an object",
        {"bookSourceUrl": "http://b.test", "weight": "heavy"},
        LEGADO_SOURCE,
    ])
    sources = parse_book_sources(payload)
    assert [s.id for s in sources] == ["http://a.test"]


def test_parse_skips_non_finite_numbers():
    payload = (
        '[{"bookSourceUrl":"http://a.test"},'
        '{"bookSourceUrl":"http://b.test","weight":Infinity},'
        '{"bookSourceUrl":"http://c.test","customOrder":NaN}]'
    )
    assert [s.id for s in parse_book_sources(payload)] == ["http://a.test"]
    assert SourceStore().import_json(payload) == 1


def test_parse_single_object_and_bad_json():
    assert len(parse_book_sources(LEGADO_SOURCE)) == 1
    assert parse_book_sources("{not json") == []


def test_disabled_flag():
    source = source_from_dict({"bookSourceUrl": "http://a.test", "enabled": False})
    assert not source.enabled


def _store():
    return SourceStore([
        BookSource(id="a", name="a", custom_order=1, group="男频,精品"),
        BookSource(id="b", name="b", weight=1, group="精品；女频"),
        BookSource(id="c", name="c", weight=5, enabled=False),
    ])


def test_store_order():
    assert [s.id for s in _store().all()] == ["c", "b", "a"]


def test_store_enabled_and_toggle():
    store = _store()
    assert [s.id for s in store.enabled()] == ["b", "a"]
    assert store.toggle("c", True)
    assert [s.id for s in store.enabled()] == ["c", "b", "a"]
    assert not store.toggle("missing", True)


def test_store_groups():
    store = _store()
    assert store.groups() == sorted({"男频", "精品", "女频"})
    assert [s.id for s in store.by_group("精品")] == ["b", "a"]
    assert store.by_group("没有") == []


def test_store_delete():
    store = _store()
    assert store.delete("a")
    assert not store.delete("a")
    assert store.delete_many(["b", "c", "missing"]) == 2
    assert len(store) == 0


def test_store_import_replaces_by_id():
    store = SourceStore()
    assert store.import_json(json.dumps([LEGADO_SOURCE, LEGADO_SOURCE])) == 2
    assert len(store) == 1
    assert "http://a.test" in store
    assert store.import_sources([{"bookSourceUrl": "http://b.test"}, {"bad": 1}]) == 1
    assert len(store) == 2


def test_store_respond_time():
    store = _store()
    store.update_respond_time("a", 120)
    store.update_respond_time("missing", 50)
    assert store.get("a").respond_time == 120
    assert store.get("missing") is None


def test_export_round_trip():
    store = SourceStore()
    store.import_json(LEGADO_SOURCE)
    exported = json.loads(store.export_json())
    assert exported[0]["bookSourceName"] == "A 站"
    assert exported[0]["ruleExplore"] == {"bookList": ".x"}
    other = SourceStore()
    assert other.import_json(store.export_json()) == 1
    assert other.get("http://a.test").rule_search.name == ".t@text"
