import pytest

from yuedu.rules.jsonpath import JsonPathError, query, query_strings, to_text

DATA = {
    "code": 0,
    "ok": True,
    "data": {
        "list": [
            {"id": 1, "title": "A", "tags": ["玄幻", "完结"]},
            {"id": 2, "title": "B", "score": 9.0},
        ],
        "my-key": "x",
    },
}


def test_fields_and_index():
    assert query(DATA, "$.data.list[0].title") == ["A"]
    assert query(DATA, "$.data.list[1].id") == [2]
    assert query(DATA, "$.missing") == []


def test_wildcard_and_recursive():
    assert query(DATA, "$.data.list[*].title") == ["A", "B"]
    assert sorted(query(DATA, "$..id")) == [1, 2]


def test_bracket_field():
    assert query(DATA, "$['data']['my-key']") == ["x"]


def test_query_strings_expands_single_list():
    assert query_strings(DATA, "$.data.list[0].tags") == ["玄幻", "完结"]
    assert query_strings(DATA, "$.ok") == ["true"]
    assert query_strings(DATA, "$.data.list[1].score") == ["9"]


def test_to_text():
    assert to_text({"a": "中"}) == '{"a": "中"}'
    assert to_text(False) == "false"
    assert to_text(1.5) == "1.5"


def test_bad_path():
    with pytest.raises(JsonPathError):
        query(DATA, "$.data[")
