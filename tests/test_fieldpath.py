import pytest

from rsr.fieldpath import MISSING, FieldPathError, extract, parse_field_path, resolve


@pytest.mark.parametrize(
    "expr,segments",
    [
        (".", ()),
        (".version", ("version",)),
        ("version", ("version",)),
        (".build.info[0].tag", ("build", "info", 0, "tag")),
        ('.["app.version"]', ("app.version",)),
        (".engineVersion", ("engineVersion",)),
    ],
)
def test_parse_field_path(expr, segments):
    assert parse_field_path(expr) == segments


@pytest.mark.parametrize("expr", ["", "  ", ".a..b", ".a[", ".a[x]", ".a b"])
def test_parse_field_path_rejects_garbage(expr):
    with pytest.raises(FieldPathError):
        parse_field_path(expr)


def test_resolve_missing_steps():
    doc = {"a": {"b": [1, 2]}}
    assert resolve(doc, ("a", "b", 1)) == 2
    assert resolve(doc, ("a", "b", 5)) is MISSING
    assert resolve(doc, ("a", "c")) is MISSING
    assert resolve(doc, ("a", "b", "x")) is MISSING
    assert resolve([1], ("a",)) is MISSING


def test_extract_renders_like_jq_raw_output():
    doc = {"version": "2.3.0", "build": 42, "ok": True, "ratio": 1.5, "meta": {"sha": "abc"}, "none": None, "empty": ""}
    assert extract(doc, ".version") == "2.3.0"
    assert extract(doc, ".build") == "42"
    assert extract(doc, ".ok") == "true"
    assert extract(doc, ".ratio") == "1.5"
    assert extract(doc, ".meta") == '{"sha":"abc"}'
    assert extract(doc, ".none") is None
    assert extract(doc, ".empty") is None
    assert extract(doc, ".absent") is None
    assert extract(doc, ".a[") is None
