from __future__ import annotations
import pytest

from playbook_engine.errors import FormulaError
from playbook_engine.formula.dsl import (
    AggregateContext,
    compile_aggregate,
    compile_formula,
    substitute_identifiers,
    tokenize,
)


def _row():
    # one row as the derivation engine sees it
    return {
        "saldo_anterior": 100,
        "entrada": 20.5,
        "saida": "10,5",
        "contagem_fisica": 105,
        "tipo_lancamento": "Entrada",
        "meta": 0,
        "vazio": None,
        "Preço Unit": 3,
    }


def test_arithmetic_and_precedence():
    f = compile_formula("saldo_anterior + entrada - saida * 2")
    assert f.evaluate(_row()) == pytest.approx(100 + 20.5 - 21.0)
    assert compile_formula("(1 + 2) * 3").evaluate({}) == 9
    assert compile_formula("-entrada + 1").evaluate(_row()) == pytest.approx(-19.5)


def test_null_propagates_and_division_by_zero_is_null():
    assert compile_formula("vazio + 1").evaluate(_row()) is None
    assert compile_formula("saldo_anterior / meta").evaluate(_row()) is None
    assert compile_formula("saldo_anterior / NULLIF(meta, 0)").evaluate(_row()) is None
    assert compile_formula("COALESCE(vazio, 0) + 1").evaluate(_row()) == 1


def test_missing_identifier_reads_as_null():
    assert compile_formula("nao_existe * 2").evaluate(_row()) is None


def test_comparisons_and_case():
    f = compile_formula("CASE WHEN contagem_fisica - saldo_anterior != 0 THEN 1 ELSE 0 END")
    assert f.evaluate(_row()) == 1
    assert compile_formula("saida = '10,5'").evaluate(_row()) is True
    # numeric strings compare numerically against numbers
    assert compile_formula("saida > 10").evaluate(_row()) is True
    assert compile_formula("1 <> 2").evaluate({}) is True
    # a null condition falls through to ELSE
    assert compile_formula("CASE WHEN vazio > 1 THEN 'a' ELSE 'b' END").evaluate(_row()) == "b"
    assert compile_formula("CASE WHEN vazio > 1 THEN 'a' END").evaluate(_row()) is None


def test_keywords_are_case_insensitive():
    f = compile_formula("case when entrada > 1 and not saldo_anterior < 0 then 1 else 0 end")
    assert f.evaluate(_row()) == 1


def test_in_and_text_functions():
    f = compile_formula("CASE WHEN LOWER(tipo_lancamento) IN ('entrada', 'receita') THEN ABS(entrada) ELSE 0 END")
    assert f.evaluate(_row()) == 20.5
    assert compile_formula("tipo_lancamento NOT IN ('Saida')").evaluate(_row()) is True
    assert compile_formula("UPPER(tipo_lancamento)").evaluate(_row()) == "ENTRADA"
    assert compile_formula("ROUND(2.34567, 2)").evaluate({}) == 2.35


def test_quoted_identifiers_and_names():
    f = compile_formula("`Preço Unit` * 2")
    assert f.evaluate(_row()) == 6
    g = compile_formula("CASE WHEN x > y THEN z ELSE 0 END")
    assert g.names == ("x", "y", "z")


def test_is_text():
    assert compile_formula("LOWER(x)").is_text
    assert not compile_formula("x + 1").is_text


def test_string_escape():
    assert compile_formula("'it''s'").evaluate({}) == "it's"


@pytest.mark.parametrize("expr", [
    "__import__('os').system('ls')",
    "EVAL(x)",
    "x ; y",
    "x ** 2",
    "ABS(1, 2)",
    "CASE END",
    "(1 + 2",
    "'unterminated",
    "x +",
])
def test_rejects_unsafe_or_malformed(expr):
    with pytest.raises(FormulaError):
        compile_formula(expr)


def test_formula_error_is_a_value_error():
    with pytest.raises(ValueError):
        compile_formula("x ;")


def test_depth_and_token_limits():
    with pytest.raises(FormulaError):
        compile_formula("(" * 100 + "1" + ")" * 100)
    assert compile_formula("(" * 10 + "1" + ")" * 10).evaluate({}) == 1
    with pytest.raises(FormulaError):
        compile_formula("+".join(["1"] * 10), max_tokens=5)


def test_long_operator_chain_counts_toward_depth():
    assert compile_formula(" + ".join(["1"] * 30)).evaluate({}) == 30
    assert compile_formula(" * ".join(["2"] * 10)).evaluate({}) == 1024
    # left-nested chains are as deep as they are long
    for op in (" + ", " / ", " AND ", " OR "):
        with pytest.raises(FormulaError):
            compile_formula(op.join(["valor"] * 1000))


def test_non_numeric_operand_raises_at_evaluation():
    f = compile_formula("tipo_lancamento + 1")
    with pytest.raises(FormulaError):
        f.evaluate(_row())


def test_aggregate_expressions():
    ctx = AggregateContext({"x": [1, 2, None, "3"], "flag": [1, 0, 1, 0]}, row_count=4)
    assert compile_aggregate("SUM(x)").evaluate(ctx) == 6.0
    assert compile_aggregate("SUM(flag)/COUNT(*)").evaluate(ctx) == 0.5
    assert compile_aggregate("COUNT(x)").evaluate(ctx) == 3.0
    assert compile_aggregate("COUNT(*)").names == ()
    assert compile_aggregate("AVG(x)").names == ("x",)


def test_aggregate_rules():
    with pytest.raises(FormulaError):
        compile_aggregate("x + 1")
    with pytest.raises(FormulaError):
        compile_aggregate("SUM(x + 1)")
    # unknown aggregation names load fine and evaluate to 0
    f = compile_aggregate("PERCENTILE(x)")
    assert f.evaluate(AggregateContext({"x": [1, 2]}, 2)) == 0.0


def test_substitute_identifiers():
    out = substitute_identifiers(
        "saldo_anterior + entrada - ABS(saida)",
        {"saldo_anterior": "Saldo Inicial", "entrada": "entradas", "ABS": "nope"},
    )
    assert out == "`Saldo Inicial` + entradas - ABS(saida)"
    # string literals are untouched
    src = "CASE WHEN t = 'entrada' THEN entrada END"
    assert substitute_identifiers(src, {"entrada": "x"}) == "CASE WHEN t = 'entrada' THEN x END"


def test_tokenize_operators():
    typs = [t.typ for t in tokenize("a <> b")]
    assert typs == ["ID", "OP", "ID", "EOF"]
    assert tokenize("a <> b")[1].val == "!="
