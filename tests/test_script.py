import pytest

from yuedu.rules.script import (
    ScriptContext,
    ScriptError,
    evaluate,
    has_script,
    render_template,
    run,
    to_string_list,
)


@pytest.mark.parametrize("code, expected", [
    ("1 + 2 * 3", 7),
    ("(1 + 2) * 3", 9),
    ("7 / 2", 3.5),
    ("6 / 3", 2),
    ("7 % 3", 1),
    ("'a' + 1", "a1"),
    ("1 == '1'", True),
    ("1 === '1'", False),
    ("null ?? 'x'", "x"),
    ("'' || 'y'", "y"),
    ("0 && 'z'", 0),
    ("!''", True),
    ("typeof 'a'", "string"),
    ("3 > 2 ? 'big' : 'small'", "big"),
    ("-'5'", -5),
])
def test_expressions(code, expected):
    assert run(code) == expected


def test_statements_and_return():
    code = """
    var a = 'x';
    let b = 2;
    a += 'y';
    if (b > 1) { a = a + b; } else { a = ''; }
    return a;
    """
    assert run(code) == "xy2"


def test_last_expression_is_result():
    assert run("var s = 'abc'; s.toUpperCase()") == "ABC"


def test_context_variables():
    context = ScriptContext(result="aaa", base_url="http://x.test/", page=3, key="龙",
                            book={"name": "书"})
    assert run("result.replace(/a/g, 'b')", context) == "bbb"
    assert run("result.replace('a', 'b')", context) == "baa"
    assert run("`${key}-${page}`", context) == "龙-3"
    assert run("book.name + baseUrl", context) == "书http://x.test/"


def test_string_methods():
    assert run("'abc'.split('').reverse().join('')") == "cba"
    assert run("' x '.trim().length") == 1
    assert run("'a,b,c'.split(',')[1]") == "b"
    assert run("'hello'.substring(1, 3)") == "el"
    assert run("'hello'.slice(-3)") == "llo"
    assert run("'ab12cd'.match(/\\d+/)[0]") == "12"
    assert run("'5'.padStart(3, '0')") == "005"
    assert run("'a-b'.replace(/(\\w)-(\\w)/, '$2-$1')") == "b-a"


def test_array_methods_and_arrows():
    assert run("[1, 2, 3].map(x => x * 2).join(',')") == "2,4,6"
    assert run("[1, 2, 3, 4].filter((x, i) => x % 2 == 0)") == [2, 4]
    assert run("['a', 'b'].indexOf('b')") == 1
    assert run("[3, 1].concat([2]).length") == 3


def test_globals():
    assert run("parseInt('12px')") == 12
    assert run("parseFloat('1.5em')") == 1.5
    assert run("Math.max(1, 5, 3)") == 5
    assert run("JSON.parse('{\"a\": 1}').a") == 1
    assert run("JSON.stringify({a: [1, 'x']})") == '{"a":[1,"x"]}'
    assert run("encodeURIComponent('a b&')") == "a%20b%26"
    assert run("String(1.5 * 2)") == "3"


def test_document_helpers():
    html = '<div class="t"> Hi </div><ul><li>a</li><li>b</li></ul><a href="/x">x</a>'
    context = ScriptContext(base_url="http://x.test/dir/")
    assert run("text('.t')", context, html) == "Hi"
    assert run("all('li').map(e => e.text()).join('|')", context, html) == "a|b"
    assert run("attr('a', 'href')", context, html) == "http://x.test/x"
    assert run("absUrl('y.html')", context, html) == "http://x.test/dir/y.html"


def test_encoding_helpers():
    assert run("base64Encode('hi')") == "aGk="
    assert run("base64Decode('aGk=')") == "hi"
    assert run("md5Encode('a')") == "0cc175b9c0f1b6a831c399e269772661"
    assert run("java.md5Encode16('a')") == "c0f1b6a831c399e2"
    assert run("timeFormat(86400000 * 400, 'yyyy')") == "1971"


def test_regex_helpers():
    assert run("match('第12章', /(\\d+)/, 1)") == "12"
    assert run("replace('a1b2', /\\d/, '')") == "ab"


def test_extra_functions_under_java():
    assert run("java.getString('x') + '!'", extra={"getString": lambda rule: rule.upper()}) == "X!"


def test_errors_raise_script_error():
    with pytest.raises(ScriptError):
        run("(")
    with pytest.raises(ScriptError):
        run("missing + 1")
    with pytest.raises(ScriptError):
        run("function f() {}")


def test_evaluate_swallows_errors():
    assert evaluate("missing.x") is None
    assert evaluate("'a'.repeat(-1)") is None


def test_sandbox_has_no_host_access():
    assert evaluate("require('os')") is None
    assert evaluate("__import__('os')") is None
    assert evaluate("''.constructor") is None
    assert evaluate("result.__class__", ScriptContext(result="x")) is None


def test_recursion_is_bounded():
    assert evaluate("var f = n => f(n + 1); f(0)") is None


def test_step_limit_stops_exponential_recursion():
    code = "var f = n => n > 0 ? f(n - 1) + f(n - 1) : 1; f(%d)"
    assert run(code % 5) == 32
    with pytest.raises(ScriptError, match="步数"):
        run(code % 40)
    assert evaluate(code % 22) is None


def test_array_growth_is_bounded():
    with pytest.raises(ScriptError, match="数组过长"):
        run("var g = a => a.length > 2000000 ? a.length : g(a.concat(a)); g([1])")
    with pytest.raises(ScriptError, match="数组过长"):
        run("'x'.repeat(200000).split('')")
    with pytest.raises(ScriptError, match="数组过长"):
        run("var a = 'x'.repeat(99999).split(''); a.push(1, 2)")
    assert run("[1, 2].concat([3]).map(x => x * 2).filter(x => x > 2).length") == 2


def test_has_script():
    assert has_script("@js:result")
    assert has_script("a<js>b</js>")
    assert has_script("http://x/{{page}}")
    assert not has_script(".title@text")
    assert not has_script(None)


def test_render_template():
    assert render_template("a<js>1+1</js>b{{2*3}}") == "a2b6"
    assert render_template("@js:'x' + page", ScriptContext(page=2)) == "x2"
    assert render_template("{{missing}}-ok") == "-ok"


def test_render_template_resolver():
    resolved = render_template("id={{$.id}}", resolve=lambda inner: "7" if inner == "$.id" else None)
    assert resolved == "id=7"


def test_to_string_list():
    assert to_string_list(None) == []
    assert to_string_list("a") == ["a"]
    assert to_string_list([1, None, "b"]) == ["1", "b"]
