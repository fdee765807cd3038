import pytest

from pipebricks.core.exceptions import TransformationError, ValidationError
from pipebricks.engine.transformations import (
    FUNCTIONS,
    apply_transformations,
    compile_transformation,
    compile_transformations,
)


def _run(expression, record):
    out = dict(record)
    compile_transformation(expression).apply(out)
    return out


def test_assignment_and_in_place_forms_chain_in_order():
    compiled = compile_transformations(["full = CONCAT(first, ' ', last)", "UPPER(full)"])

    outcome = apply_transformations([{"first": "ada", "last": "lovelace"}], compiled)

    assert outcome.errors == []
    assert outcome.records == [{"first": "ada", "last": "lovelace", "full": "ADA LOVELACE"}]


def test_in_place_form_targets_first_argument():
    compiled = compile_transformation("SUBSTRING(code, 2, 3)")
    assert compiled.target == "code"
    assert _run("SUBSTRING(code, 2, 3)", {"code": "abcdef"})["code"] == "bcd"


def test_arithmetic_precedence_and_unary_minus():
    assert _run("x = 1 + 2 * 3", {})["x"] == 7
    assert _run("x = (1 + 2) * 3", {})["x"] == 9
    assert _run("x = -(2 + 3)", {})["x"] == -5


def test_numeric_strings_are_treated_as_numbers():
    assert _run("total = price * qty", {"price": "2.5", "qty": 4})["total"] == 10.0


def test_plus_concatenates_non_numbers():
    assert _run("label = 'id-' + id", {"id": 7})["label"] == "id-7"


def test_division_by_zero_yields_zero():
    assert _run("ratio = a / b", {"a": 10, "b": 0})["ratio"] == 0.0
    assert _run("m = MOD(7, 0)", {})["m"] == 0


def test_field_references_bracketed_and_nested():
    record = {"unit price": 3, "address": {"city": "Paris"}}

    assert _run("double = [unit price] * 2", record)["double"] == 6
    assert _run("city = address.city", record)["city"] == "Paris"
    assert _run("zip = address.zip", record)["zip"] is None


@pytest.mark.parametrize(
    "expression,record,expected",
    [
        ("v = TRIM(v)", {"v": "  hi  "}, "hi"),
        ("v = LOWER(v)", {"v": "HeLLo"}, "hello"),
        ("v = REPLACE(v, '-', '')", {"v": "555-1234"}, "5551234"),
        ("v = REGEX_REPLACE(v, '[0-9]', '#')", {"v": "a1b2"}, "a#b#"),
        ("v = LEFT(v, 2)", {"v": "abcdef"}, "ab"),
        ("v = RIGHT(v, 2)", {"v": "abcdef"}, "ef"),
        ("v = LEN(v)", {"v": "abc"}, 3),
        ("v = PAD_LEFT(v, 5, '0')", {"v": "42"}, "00042"),
        ("v = SPLIT(v, '@', 2)", {"v": "ada@example.com"}, "example.com"),
        ("v = SPLIT(v, '@', 5)", {"v": "ada@example.com"}, None),
        ("v = TITLE_CASE(v)", {"v": "ada  lovelace"}, "Ada Lovelace"),
        ("v = SLUG(v)", {"v": "Héllo World!"}, "hello-world"),
        ("v = ROUND(v, 2)", {"v": 3.14159}, 3.14),
        ("v = CEIL(v)", {"v": "1.2"}, 2),
        ("v = FLOOR(v)", {"v": 1.8}, 1),
        ("v = ABS(v)", {"v": -4}, 4),
        ("v = TO_INT(v)", {"v": "12"}, 12),
        ("v = TO_FLOAT(v)", {"v": "1.5"}, 1.5),
        ("v = TO_STRING(v)", {"v": 5}, "5"),
        ("v = TO_BOOL(v)", {"v": "yes"}, True),
        ("v = FORMAT_DATE(v, '%d/%m/%Y')", {"v": "2024-03-01"}, "01/03/2024"),
        ("v = ADD_DAYS(v, 2)", {"v": "2024-01-30"}, "2024-02-01"),
        ("v = DATE_DIFF('2024-01-01', v)", {"v": "2024-01-31"}, 30),
        ("v = YEAR(v)", {"v": "2024-03-01T10:00:00Z"}, 2024),
        ("v = COALESCE(a, b, 'x')", {"a": None, "b": ""}, "x"),
        ("v = DEFAULT(a, 'n/a')", {"a": None}, "n/a"),
        ("v = NULLIF(a, 'N/A')", {"a": "N/A"}, None),
        ("v = MD5('abc')", {}, "900150983cd24fb0d6963f7d28e17f72"),
        ("v = BASE64_ENCODE('hi')", {}, "aGk="),
        ("v = BASE64_DECODE('aGk=')", {}, "hi"),
        ("v = URL_ENCODE('a b&c')", {}, "a%20b%26c"),
        ("v = URL_DECODE('a%20b')", {}, "a b"),
    ],
)
def test_builtin_functions(expression, record, expected):
    assert _run(expression, record)["v"] == expected


def test_string_functions_pass_null_through():
    assert _run("UPPER(v)", {"v": None})["v"] is None


def test_function_names_are_case_insensitive():
    assert _run("v = upper('a')", {})["v"] == "A"
    assert "UPPER" in FUNCTIONS


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "v = NOPE(x)",
        "v = UPPER(a, b)",
        "v = (1 + 2",
        "v = 1 2",
        "'just a literal'",
        "UPPER('literal')",
        "v = a $ b",
        "v = REGEX_REPLACE(v, '[', 'z')",
    ],
)
def test_invalid_expressions_fail_to_compile(expression):
    with pytest.raises(ValidationError):
        compile_transformation(expression)


def test_apply_raises_transformation_error_for_bad_value():
    compiled = compile_transformation("n = TO_INT(n)")

    with pytest.raises(TransformationError) as exc_info:
        compiled.apply({"n": "abc"})
    assert exc_info.value.expression == "n = TO_INT(n)"


def test_failing_records_are_skipped_and_reported():
    records = [{"n": "1"}, {"n": "abc"}, {"n": "3"}]

    outcome = apply_transformations(records, compile_transformations(["n = TO_INT(n)"]))

    assert outcome.records == [{"n": 1}, {"n": 3}]
    assert len(outcome.errors) == 1
    assert outcome.errors[0].index == 1
    assert outcome.errors[0].record == {"n": "abc"}
    assert "TO_INT" in outcome.errors[0].message
    # inputs are never mutated
    assert records[0] == {"n": "1"}


def test_invalid_pattern_from_a_record_skips_only_that_record():
    records = [{"name": "abc", "pat": "["}, {"name": "axa", "pat": "x"}]

    outcome = apply_transformations(records, compile_transformations(["out = REGEX_REPLACE(name, pat, 'z')"]))

    assert outcome.records == [{"name": "axa", "pat": "x", "out": "aza"}]
    assert len(outcome.errors) == 1
    assert outcome.errors[0].index == 0
