from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import FormulaError
from .aggregates import AGGREGATION_NAMES, aggregate, to_number

# Compiled formulas take a context mapping (row values, or metric arrays for
# aggregate expressions) and return a scalar.
Evaluator = Callable[[Any], Any]

DEFAULT_MAX_TOKENS = 2048
DEFAULT_MAX_DEPTH = 64

# =============================================================================
# Tokenizer
# =============================================================================

class Token:
    __slots__ = ("typ", "val", "pos", "end")
    def __init__(self, typ: str, val: Any, pos: int, end: int) -> None:
        self.typ = typ
        self.val = val
        self.pos = pos
        self.end = end
    def __repr__(self) -> str:
        return f"Token({self.typ!r}, {self.val!r}, pos={self.pos})"

_WHITESPACE = set(" \t\r\n")
_IDENT_START = set("_abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")
_IDENT_CONT = _IDENT_START.union(set("0123456789"))
_DIGITS = set("0123456789")

_KEYWORDS = {
    "and": "AND", "or": "OR", "not": "NOT", "in": "IN",
    "case": "CASE", "when": "WHEN", "then": "THEN", "else": "ELSE", "end": "END",
}

_SINGLE = {"(": "LPAREN", ")": "RPAREN", ",": "COMMA",
           "+": "PLUS", "-": "MINUS", "*": "STAR", "/": "SLASH"}

def _read_while(s: str, i: int, pred) -> Tuple[str, int]:
    j = i
    n = len(s)
    while j < n and pred(s[j]):
        j += 1
    return s[i:j], j

def _read_string(s: str, i: int) -> Tuple[str, int]:
    quote = s[i]
    i += 1
    out: List[str] = []
    n = len(s)
    while i < n:
        ch = s[i]
        i += 1
        if ch == quote:
            # SQL-style doubled quote escapes itself
            if i < n and s[i] == quote:
                out.append(quote)
                i += 1
                continue
            return "".join(out), i
        out.append(ch)
    raise FormulaError("Unterminated string literal")

def _read_number(s: str, i: int) -> Tuple[float | int, int]:
    int_part, j = _read_while(s, i, lambda c: c in _DIGITS)
    n = len(s)
    if j < n and s[j] == ".":
        frac, k = _read_while(s, j + 1, lambda c: c in _DIGITS)
        if frac == "":
            raise FormulaError(f"Invalid number at {i}")
        return float(s[i:k]), k
    return int(int_part), j

def tokenize(expr: str, max_tokens: int = DEFAULT_MAX_TOKENS) -> List[Token]:
    s = expr or ""
    i = 0
    n = len(s)
    toks: List[Token] = []
    while i < n:
        if len(toks) > max_tokens:
            raise FormulaError(f"Formula exceeds {max_tokens} tokens")
        ch = s[i]
        if ch in _WHITESPACE:
            i += 1; continue

        if ch in _SINGLE:
            toks.append(Token(_SINGLE[ch], ch, i, i + 1)); i += 1; continue

        two = s[i:i+2]
        if two in ("==", "!=", "<>", "<=", ">="):
            toks.append(Token("OP", "!=" if two == "<>" else two, i, i + 2)); i += 2; continue
        if ch in "<>=":
            toks.append(Token("OP", "==" if ch == "=" else ch, i, i + 1)); i += 1; continue

        if ch in ("'", '"'):
            val, j = _read_string(s, i)
            toks.append(Token("STR", val, i, j)); i = j; continue

        # `quoted identifier` for column names with spaces or accents
        if ch == "`":
            j = s.find("`", i + 1)
            if j < 0:
                raise FormulaError(f"Unterminated quoted identifier at {i}")
            toks.append(Token("ID", s[i+1:j], i, j + 1)); i = j + 1; continue

        if ch in _DIGITS or (ch == "." and i + 1 < n and s[i+1] in _DIGITS):
            if ch == ".":
                frac, j = _read_while(s, i + 1, lambda c: c in _DIGITS)
                toks.append(Token("NUM", float("0." + frac), i, j)); i = j; continue
            val, j = _read_number(s, i)
            toks.append(Token("NUM", val, i, j)); i = j; continue

        if ch in _IDENT_START:
            raw, j = _read_while(s, i, lambda c: c in _IDENT_CONT)
            low = raw.lower()
            if low in _KEYWORDS:
                toks.append(Token(_KEYWORDS[low], low, i, j))
            elif low in ("true", "false"):
                toks.append(Token("BOOL", low == "true", i, j))
            elif low == "null":
                toks.append(Token("NONE", None, i, j))
            else:
                toks.append(Token("ID", raw, i, j))
            i = j; continue

        raise FormulaError(f"Unexpected character {ch!r} at position {i}")

    toks.append(Token("EOF", None, n, n))
    return toks

# =============================================================================
# Parser (recursive descent)
# =============================================================================

class Parser:
    def __init__(self, tokens: List[Token], max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self.toks = tokens
        self.i = 0
        self.depth = 0
        self.max_depth = max_depth

    def _peek(self) -> Token:
        return self.toks[self.i]

    def _eat(self, typ: Optional[str] = None) -> Token:
        t = self._peek()
        if typ and t.typ != typ:
            raise FormulaError(f"Expected {typ}, got {t.typ} at {t.pos}")
        self.i += 1
        return t

    def _descend(self) -> None:
        self.depth += 1
        if self.depth > self.max_depth:
            raise FormulaError(f"Formula nesting exceeds depth {self.max_depth}")

    def _ascend(self, levels: int) -> None:
        self.depth -= levels

    def parse(self):
        node = self._parse_or()
        if self._peek().typ != "EOF":
            raise FormulaError(f"Unexpected token {self._peek()}")
        return node

    # or_expr := and_expr ('OR' and_expr)*
    def _parse_or(self):
        self._descend()
        left = self._parse_and()
        chained = 0
        while self._peek().typ == "OR":
            self._eat("OR")
            self._descend(); chained += 1
            left = ("or", left, self._parse_and())
        self._ascend(chained + 1)
        return left

    # and_expr := not_expr ('AND' not_expr)*
    def _parse_and(self):
        left = self._parse_not()
        chained = 0
        while self._peek().typ == "AND":
            self._eat("AND")
            self._descend(); chained += 1
            left = ("and", left, self._parse_not())
        self._ascend(chained)
        return left

    # not_expr := 'NOT' not_expr | comparison
    def _parse_not(self):
        if self._peek().typ == "NOT":
            self._eat("NOT")
            self._descend()
            node = ("not", self._parse_not())
            self.depth -= 1
            return node
        return self._parse_comparison()

    # comparison := additive ( OP additive | [NOT] IN '(' expr, ... ')' )?
    def _parse_comparison(self):
        left = self._parse_additive()
        t = self._peek()
        if t.typ == "OP":
            op = self._eat("OP").val
            return ("cmp", op, left, self._parse_additive())
        negate = False
        if t.typ == "NOT" and self.toks[self.i + 1].typ == "IN":
            self._eat("NOT"); negate = True
        if self._peek().typ == "IN":
            self._eat("IN")
            self._eat("LPAREN")
            items = [self._parse_or()]
            while self._peek().typ == "COMMA":
                self._eat("COMMA")
                items.append(self._parse_or())
            self._eat("RPAREN")
            return ("in", negate, left, items)
        return left

    # additive := term (('+'|'-') term)*
    def _parse_additive(self):
        left = self._parse_term()
        chained = 0
        while self._peek().typ in ("PLUS", "MINUS"):
            op = self._eat().val
            self._descend(); chained += 1
            left = ("bin", op, left, self._parse_term())
        self._ascend(chained)
        return left

    # term := unary (('*'|'/') unary)*
    def _parse_term(self):
        left = self._parse_unary()
        chained = 0
        while self._peek().typ in ("STAR", "SLASH"):
            op = self._eat().val
            self._descend(); chained += 1
            left = ("bin", op, left, self._parse_unary())
        self._ascend(chained)
        return left

    # unary := ('-'|'+') unary | primary
    def _parse_unary(self):
        t = self._peek()
        if t.typ in ("MINUS", "PLUS"):
            self._eat()
            self._descend()
            inner = self._parse_unary()
            self.depth -= 1
            return ("neg", inner) if t.typ == "MINUS" else inner
        return self._parse_primary()

    # primary := literal | identifier | funcall | case | '(' expr ')'
    def _parse_primary(self):
        t = self._peek()
        if t.typ == "LPAREN":
            self._eat("LPAREN")
            node = self._parse_or()
            self._eat("RPAREN")
            return node
        if t.typ in ("STR", "NUM", "BOOL", "NONE"):
            self._eat(t.typ)
            return ("lit", t.val)
        if t.typ == "CASE":
            return self._parse_case()
        if t.typ == "ID":
            name = self._eat("ID").val
            if self._peek().typ == "LPAREN":
                self._eat("LPAREN")
                args: List[Any] = []
                if self._peek().typ == "STAR":
                    self._eat("STAR")
                    args.append(("star",))
                elif self._peek().typ != "RPAREN":
                    while True:
                        args.append(self._parse_or())
                        if self._peek().typ == "COMMA":
                            self._eat("COMMA"); continue
                        break
                self._eat("RPAREN")
                return ("call", name.upper(), args)
            return ("id", name)
        raise FormulaError(f"Unexpected token {t} in primary")

    # case := CASE (WHEN expr THEN expr)+ [ELSE expr] END
    def _parse_case(self):
        self._eat("CASE")
        branches: List[Tuple[Any, Any]] = []
        while self._peek().typ == "WHEN":
            self._eat("WHEN")
            cond = self._parse_or()
            self._eat("THEN")
            branches.append((cond, self._parse_or()))
        if not branches:
            raise FormulaError(f"CASE without WHEN at {self._peek().pos}")
        default = ("lit", None)
        if self._peek().typ == "ELSE":
            self._eat("ELSE")
            default = self._parse_or()
        self._eat("END")
        return ("case", branches, default)

# =============================================================================
# Safe evaluation helpers
# =============================================================================

def _num(x: Any) -> float:
    f = to_number(x)
    if f is None:
        raise FormulaError(f"Non-numeric operand: {x!r}")
    return f

def _arith(op: str, a: Any, b: Any) -> Any:
    # null propagates; division by zero is null
    if a is None or b is None:
        return None
    x, y = _num(a), _num(b)
    if op == "+": return x + y
    if op == "-": return x - y
    if op == "*": return x * y
    if op == "/":
        return None if y == 0 else x / y
    raise FormulaError(f"Unknown operator {op}")

def _coerce_pair(a: Any, b: Any) -> Tuple[Any, Any]:
    # compare numbers with numeric strings numerically
    if isinstance(a, str) != isinstance(b, str):
        fa, fb = to_number(a), to_number(b)
        if fa is not None and fb is not None:
            return fa, fb
    return a, b

def _compare(op: str, a: Any, b: Any) -> Any:
    a, b = _coerce_pair(a, b)
    if op == "==": return a == b
    if op == "!=": return a != b
    if a is None or b is None:
        return None
    try:
        if op == "<":  return a < b
        if op == "<=": return a <= b
        if op == ">":  return a > b
        if op == ">=": return a >= b
    except TypeError as e:
        raise FormulaError(f"Cannot compare {a!r} {op} {b!r}") from e
    raise FormulaError(f"Unknown comparator {op}")

def _fn_abs(x):
    return None if x is None else abs(_num(x))

def _fn_nullif(a, b):
    a2, b2 = _coerce_pair(a, b)
    return None if a2 == b2 else a

def _fn_lower(x):
    return None if x is None else str(x).lower()

def _fn_upper(x):
    return None if x is None else str(x).upper()

def _fn_coalesce(*args):
    for a in args:
        if a is not None:
            return a
    return None

def _fn_round(x, ndigits=0):
    if x is None:
        return None
    return round(_num(x), int(_num(ndigits)))

# =============================================================================
# Whitelisted safe functions
# =============================================================================

SAFE_FUNCS: Dict[str, Callable[..., Any]] = {
    "ABS": _fn_abs,
    "NULLIF": _fn_nullif,
    "LOWER": _fn_lower,
    "UPPER": _fn_upper,
    "COALESCE": _fn_coalesce,
    "ROUND": _fn_round,
}

_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    "ABS": (1, 1), "NULLIF": (2, 2), "LOWER": (1, 1), "UPPER": (1, 1),
    "COALESCE": (1, None), "ROUND": (1, 2),
}

TEXT_FUNCS = frozenset({"LOWER", "UPPER"})

# =============================================================================
# AST utilities & compiler
# =============================================================================

def collect_names(ast) -> List[str]:
    """Identifiers referenced by the AST, first-seen order."""
    out: List[str] = []
    def _walk(node) -> None:
        typ = node[0]
        if typ == "id":
            if node[1] not in out:
                out.append(node[1])
        elif typ in ("lit", "star"):
            return
        elif typ == "neg" or typ == "not":
            _walk(node[1])
        elif typ in ("and", "or"):
            _walk(node[1]); _walk(node[2])
        elif typ in ("bin", "cmp"):
            _walk(node[2]); _walk(node[3])
        elif typ == "in":
            _walk(node[2])
            for it in node[3]:
                _walk(it)
        elif typ == "call":
            for a in node[2]:
                _walk(a)
        elif typ == "case":
            for c, v in node[1]:
                _walk(c); _walk(v)
            _walk(node[2])
    _walk(ast)
    return out

def _compile(ast, aggregate_mode: bool) -> Evaluator:
    typ = ast[0]

    if typ == "lit":
        val = ast[1]
        return lambda ctx: val

    if typ == "id":
        if aggregate_mode:
            raise FormulaError(f"Bare identifier {ast[1]!r} outside an aggregation")
        name = ast[1]
        return lambda ctx: ctx.get(name)

    if typ == "star":
        raise FormulaError("'*' is only valid as an aggregation argument")

    if typ == "neg":
        f = _compile(ast[1], aggregate_mode)
        def _neg(ctx):
            v = f(ctx)
            return None if v is None else -_num(v)
        return _neg

    if typ == "bin":
        _, op, l, r = ast
        lf = _compile(l, aggregate_mode); rf = _compile(r, aggregate_mode)
        return lambda ctx: _arith(op, lf(ctx), rf(ctx))

    if typ == "cmp":
        _, op, l, r = ast
        lf = _compile(l, aggregate_mode); rf = _compile(r, aggregate_mode)
        return lambda ctx: _compare(op, lf(ctx), rf(ctx))

    if typ == "not":
        f = _compile(ast[1], aggregate_mode)
        return lambda ctx: not bool(f(ctx))

    if typ == "and":
        lf = _compile(ast[1], aggregate_mode); rf = _compile(ast[2], aggregate_mode)
        return lambda ctx: bool(lf(ctx)) and bool(rf(ctx))

    if typ == "or":
        lf = _compile(ast[1], aggregate_mode); rf = _compile(ast[2], aggregate_mode)
        return lambda ctx: bool(lf(ctx)) or bool(rf(ctx))

    if typ == "in":
        _, negate, l, items = ast
        lf = _compile(l, aggregate_mode)
        item_fns = [_compile(it, aggregate_mode) for it in items]
        def _in(ctx):
            v = lf(ctx)
            hit = any(_compare("==", v, g(ctx)) for g in item_fns)
            return (not hit) if negate else hit
        return _in

    if typ == "case":
        _, branches, default = ast
        compiled = [(_compile(c, aggregate_mode), _compile(v, aggregate_mode)) for c, v in branches]
        df = _compile(default, aggregate_mode)
        def _case(ctx):
            for cf, vf in compiled:
                if cf(ctx):
                    return vf(ctx)
            return df(ctx)
        return _case

    if typ == "call":
        _, name, args = ast
        if aggregate_mode and (name in AGGREGATION_NAMES or name not in SAFE_FUNCS):
            return _compile_aggregate_call(name, args)
        fn = SAFE_FUNCS.get(name)
        if fn is None:
            raise FormulaError(f"Unknown function: {name}")
        lo, hi = _ARITY[name]
        if len(args) < lo or (hi is not None and len(args) > hi):
            raise FormulaError(f"{name} takes {lo}{'' if hi == lo else '+'} argument(s), got {len(args)}")
        arg_fns = [_compile(a, aggregate_mode) for a in args]
        return lambda ctx: fn(*[g(ctx) for g in arg_fns])

    raise FormulaError(f"Unknown AST node: {ast!r}")

def _compile_aggregate_call(name: str, args: Sequence[Any]) -> Evaluator:
    if len(args) != 1 or args[0][0] not in ("id", "star"):
        raise FormulaError(f"{name}() takes a single column, metric or '*'")
    arg = args[0]
    if arg[0] == "star":
        return lambda ctx: aggregate(name, [1] * ctx.row_count)
    target = arg[1]
    return lambda ctx: aggregate(name, ctx.values(target))

# =============================================================================
# Public API
# =============================================================================

@dataclass(frozen=True)
class Formula:
    source: str
    ast: Any = field(repr=False)
    names: Tuple[str, ...]
    fn: Evaluator = field(repr=False, compare=False)

    def evaluate(self, ctx: Any) -> Any:
        return self.fn(ctx)

    @property
    def is_text(self) -> bool:
        """True when the outermost node is a text transform (LOWER/UPPER)."""
        return self.ast[0] == "call" and self.ast[1] in TEXT_FUNCS


@dataclass(frozen=True)
class AggregateContext:
    """Column/metric arrays for aggregate expressions such as SUM(x)/COUNT(*)."""
    arrays: Mapping[str, Sequence[Any]]
    row_count: int

    def values(self, name: str) -> Sequence[Any]:
        return self.arrays.get(name, ())


def parse(expr: str, *, max_tokens: int = DEFAULT_MAX_TOKENS, max_depth: int = DEFAULT_MAX_DEPTH):
    tokens = tokenize(expr, max_tokens=max_tokens)
    return Parser(tokens, max_depth=max_depth).parse()

def compile_formula(
    expr: str,
    *,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Formula:
    """
    Compile a row-level formula into a safe callable(row)->value.

    Grammar:
      - Arithmetic: + - * / with unary minus, parentheses
      - Comparisons: = == != <> < <= > >=
      - Logical: AND, OR, NOT; membership: x [NOT] IN (a, b, ...)
      - CASE WHEN cond THEN value [WHEN ...] [ELSE value] END
      - Literals: numbers, 'strings', TRUE/FALSE, NULL
      - Identifiers: bare names or `quoted names`, resolved from the row
      - Calls: ABS, NULLIF, LOWER, UPPER, COALESCE, ROUND only

    Nulls propagate through arithmetic and division by zero yields NULL.
    Token count and nesting depth are bounded; nothing is handed to the
    interpreter.
    """
    ast = parse(expr, max_tokens=max_tokens, max_depth=max_depth)
    return Formula(expr, ast, tuple(collect_names(ast)), _compile(ast, aggregate_mode=False))

def compile_aggregate(
    expr: str,
    *,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Formula:
    """Compile a section expression whose leaves are aggregation calls,
    evaluated against an AggregateContext. Unknown aggregation names are
    accepted here and resolve to 0 at evaluation time."""
    ast = parse(expr, max_tokens=max_tokens, max_depth=max_depth)
    return Formula(expr, ast, tuple(collect_names(ast)), _compile(ast, aggregate_mode=True))

def render_identifier(name: str) -> str:
    if name and name[0] in _IDENT_START and all(c in _IDENT_CONT for c in name) \
            and name.lower() not in _KEYWORDS and name.lower() not in ("true", "false", "null"):
        return name
    return f"`{name}`"

def substitute_identifiers(expr: str, mapping: Mapping[str, str]) -> str:
    """Rewrite identifier tokens per `mapping`, leaving literals and
    function names untouched."""
    toks = tokenize(expr)
    out: List[str] = []
    last = 0
    for k, t in enumerate(toks):
        if t.typ != "ID" or t.val not in mapping:
            continue
        if toks[k + 1].typ == "LPAREN":
            continue  # function name
        out.append(expr[last:t.pos])
        out.append(render_identifier(mapping[t.val]))
        last = t.end
    out.append(expr[last:])
    return "".join(out)
