"""Expression language shared by filter, mutate, summarise and friends.

Expressions are small strings such as ``"val > 15 and not is_na(site)"`` or
``"mean(depth, ignore_missing=true)"``. They are parsed once into a tuple AST,
checked against the table's columns, then evaluated column-at-a-time:

- every node evaluates to a list of length 1 (literals, aggregates) or of the
  table length (columns); length-1 results are recycled,
- NA propagates through arithmetic and comparisons, and ``and``/``or`` use
  three-valued logic,
- aggregates reduce a column to one value and honour ``ignore_missing``.
"""
from __future__ import annotations

import logging
import math
import re
import statistics
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from tidyverbs.errors import InvalidColumnReference, TidyUserError
from tidyverbs.util import NA, suggest_column, value_kind

logger = logging.getLogger(__name__)


# =========================
# Tokenizer + parser
# =========================

class _ExprTok:
    __slots__ = ("typ", "val", "pos")

    def __init__(self, typ: str, val: Any, pos: int):
        self.typ = typ
        self.val = val
        self.pos = pos


_re_ws = re.compile(r"\s+")
_re_ident = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*")
_re_number = re.compile(r"(?:\d+\.\d*|\d*\.\d+|\d+)(?:[eE][+-]?\d+)?")
KEYWORDS = {"and", "or", "not", "in", "true", "false", "null", "na"}

OPS_2 = {"==", "!=", ">=", "<="}
OPS_1 = {">", "<", "(", ")", "+", "-", "*", "/", "%", "^", ",", "="}
CMP_OPS = {"==", "!=", ">=", "<=", ">", "<"}


def _caret(src: str, pos: int) -> str:
    return f"At position {pos}: {src}\n" + (" " * (pos + len("At position : ") + len(str(pos)))) + "^"


def _expr_tokenize(src: str) -> List[_ExprTok]:
    out: List[_ExprTok] = []
    i = 0
    n = len(src)

    while i < n:
        m = _re_ws.match(src, i)
        if m:
            i = m.end()
            continue

        ch = src[i]
        if ch in ("'", '"', "`"):
            j = i + 1
            buf = []
            while j < n:
                c = src[j]
                if c == "\\" and j + 1 < n:
                    buf.append(src[j + 1])
                    j += 2
                    continue
                if c == ch:
                    out.append(_ExprTok("IDENT" if ch == "`" else "STR", "".join(buf), i))
                    i = j + 1
                    break
                buf.append(c)
                j += 1
            else:
                what = "quoted column name" if ch == "`" else "string literal"
                raise TidyUserError(
                    "E_EXPR_PARSE",
                    f"Unterminated {what} in expression.",
                    hint=src,
                )
            continue

        two = src[i: i + 2]
        if two in OPS_2:
            out.append(_ExprTok("OP", two, i))
            i += 2
            continue

        m = _re_number.match(src, i)
        if m:
            s = m.group(0)
            is_float = any(c in s for c in ".eE")
            out.append(_ExprTok("NUM", float(s) if is_float else int(s), i))
            i = m.end()
            continue

        if ch in OPS_1:
            out.append(_ExprTok("OP", ch, i))
            i += 1
            continue

        m = _re_ident.match(src, i)
        if m:
            s = m.group(0)
            low = s.lower()
            if low in KEYWORDS:
                out.append(_ExprTok("KW", low, i))
            else:
                out.append(_ExprTok("IDENT", s, i))
            i = m.end()
            continue

        raise TidyUserError(
            "E_EXPR_PARSE",
            f"Unexpected character {ch!r} in expression.",
            hint=_caret(src, i),
        )

    out.append(_ExprTok("EOF", None, n))
    return out


def _expr_parse(src: str) -> Any:
    toks = _expr_tokenize(src)
    k = 0

    def _peek(offset: int = 0) -> _ExprTok:
        return toks[min(k + offset, len(toks) - 1)]

    def _is(typ: str, val: Any = None, offset: int = 0) -> bool:
        t = _peek(offset)
        return t.typ == typ and (val is None or t.val == val)

    def _eat(expected_typ: str, expected_val: Optional[str] = None) -> _ExprTok:
        nonlocal k
        t = toks[k]
        if t.typ != expected_typ:
            found = "end of expression" if t.typ == "EOF" else repr(t.val)
            raise TidyUserError(
                "E_EXPR_PARSE",
                f"Expected {expected_val or expected_typ} but found {found}.",
                hint=_caret(src, t.pos),
            )
        if expected_val is not None and t.val != expected_val:
            raise TidyUserError(
                "E_EXPR_PARSE",
                f"Expected '{expected_val}' but found '{t.val}'.",
                hint=_caret(src, t.pos),
            )
        k += 1
        return t

    def parse_expr():
        return parse_or()

    def parse_or():
        node = parse_and()
        while _is("KW", "or"):
            _eat("KW", "or")
            node = ("or", node, parse_and())
        return node

    def parse_and():
        node = parse_not()
        while _is("KW", "and"):
            _eat("KW", "and")
            node = ("and", node, parse_not())
        return node

    def parse_not():
        if _is("KW", "not"):
            _eat("KW", "not")
            return ("not", parse_not())
        return parse_cmp()

    def parse_cmp():
        left = parse_add()
        if _peek().typ == "OP" and _peek().val in CMP_OPS:
            op_tok = _eat("OP")
            return ("cmp", op_tok.val, left, parse_add())
        if _is("KW", "in") or (_is("KW", "not") and _is("KW", "in", offset=1)):
            negate = False
            if _is("KW", "not"):
                _eat("KW", "not")
                negate = True
            _eat("KW", "in")
            _eat("OP", "(")
            items = [parse_expr()]
            while _is("OP", ","):
                _eat("OP", ",")
                items.append(parse_expr())
            _eat("OP", ")")
            return ("in", left, tuple(items), negate)
        return left

    def parse_add():
        node = parse_mul()
        while _peek().typ == "OP" and _peek().val in {"+", "-"}:
            op_tok = _eat("OP")
            node = ("bin", op_tok.val, node, parse_mul())
        return node

    def parse_mul():
        node = parse_unary()
        while _peek().typ == "OP" and _peek().val in {"*", "/", "%"}:
            op_tok = _eat("OP")
            node = ("bin", op_tok.val, node, parse_unary())
        return node

    def parse_unary():
        if _is("OP", "-"):
            _eat("OP", "-")
            return ("neg", parse_unary())
        if _is("OP", "+"):
            _eat("OP", "+")
            return parse_unary()
        return parse_power()

    def parse_power():
        base = parse_atom()
        if _is("OP", "^"):
            _eat("OP", "^")
            return ("bin", "^", base, parse_unary())
        return base

    def parse_call(name_tok: _ExprTok):
        _eat("OP", "(")
        args: List[Any] = []
        kwargs: Dict[str, Any] = {}
        if not _is("OP", ")"):
            while True:
                if _peek().typ in ("IDENT", "KW") and _is("OP", "=", offset=1):
                    key = _eat(_peek().typ).val
                    _eat("OP", "=")
                    if key in kwargs:
                        raise TidyUserError(
                            "E_EXPR_PARSE",
                            f"Keyword argument {key!r} given twice in call to {name_tok.val}().",
                            hint=src,
                        )
                    kwargs[key] = parse_expr()
                else:
                    if kwargs:
                        raise TidyUserError(
                            "E_EXPR_PARSE",
                            f"Positional argument after keyword argument in call to {name_tok.val}().",
                            hint=_caret(src, _peek().pos),
                        )
                    args.append(parse_expr())
                if _is("OP", ","):
                    _eat("OP", ",")
                    continue
                break
        _eat("OP", ")")
        return ("call", name_tok.val, tuple(args), tuple(kwargs.items()), name_tok.pos)

    def parse_atom():
        t = _peek()
        if t.typ == "OP" and t.val == "(":
            _eat("OP", "(")
            node = parse_expr()
            _eat("OP", ")")
            return node
        if t.typ == "IDENT":
            _eat("IDENT")
            if _is("OP", "(") and src[t.pos] != "`":
                return parse_call(t)
            return ("col", t.val, t.pos)
        if t.typ == "NUM":
            _eat("NUM")
            return ("lit", t.val)
        if t.typ == "STR":
            _eat("STR")
            return ("lit", t.val)
        if t.typ == "KW" and t.val in {"true", "false", "null", "na"}:
            _eat("KW")
            if t.val == "true":
                return ("lit", True)
            if t.val == "false":
                return ("lit", False)
            return ("lit", NA)
        found = "end of expression" if t.typ == "EOF" else repr(t.val)
        raise TidyUserError(
            "E_EXPR_PARSE",
            f"Unexpected {found} in expression.",
            hint=_caret(src, t.pos),
        )

    ast = parse_expr()
    _eat("EOF")
    return ast


def _walk(node: Any):
    yield node
    tag = node[0]
    if tag in ("and", "or"):
        yield from _walk(node[1])
        yield from _walk(node[2])
    elif tag in ("not", "neg"):
        yield from _walk(node[1])
    elif tag in ("cmp", "bin"):
        yield from _walk(node[2])
        yield from _walk(node[3])
    elif tag == "in":
        yield from _walk(node[1])
        for item in node[2]:
            yield from _walk(item)
    elif tag == "call":
        for a in node[2]:
            yield from _walk(a)
        for _, v in node[3]:
            yield from _walk(v)


_PLAIN_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


def quote_name(name: str) -> str:
    """Render a column name so the expression parser reads it back as a column."""
    if _PLAIN_NAME.match(name) and name.lower() not in KEYWORDS:
        return name
    return "`" + name.replace("\\", "\\\\").replace("`", "\\`") + "`"


@dataclass(frozen=True)
class Expr:
    """A parsed expression. Build with ``Expr.parse("a + 1")`` or pass strings to verbs."""

    source: str
    ast: Any

    @classmethod
    def parse(cls, source: str) -> "Expr":
        if not isinstance(source, str) or not source.strip():
            raise TidyUserError(
                "E_EXPR_PARSE",
                "Expression must be a non-empty string.",
                hint="Example: \"depth > 30 and site == 'A'\"",
            )
        return cls(source.strip(), _expr_parse(source))

    @classmethod
    def literal(cls, value: Any) -> "Expr":
        if value is None or value is NA:
            return cls("NA", ("lit", NA))
        if isinstance(value, bool):
            return cls("true" if value else "false", ("lit", value))
        if isinstance(value, (int, float)):
            return cls(repr(value), ("lit", value))
        if isinstance(value, str):
            return cls(repr(value), ("lit", value))
        raise TidyUserError(
            "E_EXPR_LITERAL",
            f"Cannot use {type(value).__name__} value {value!r} as an expression.",
            hint="Use an expression string, a number, a string, a boolean or None.",
        )

    def referenced_columns(self) -> List[str]:
        seen: Dict[str, None] = {}
        for node in _walk(self.ast):
            if node[0] == "col":
                seen.setdefault(node[1], None)
        return list(seen)

    def called_functions(self) -> List[Tuple[str, int, Tuple[str, ...]]]:
        return [(n[1], len(n[2]), tuple(k for k, _ in n[3])) for n in _walk(self.ast) if n[0] == "call"]

    def is_column(self) -> bool:
        return self.ast[0] == "col"

    def default_name(self) -> str:
        """Output column name for an unnamed expression: ``mean(v)`` -> ``mean_v``."""
        node = self.ast
        if node[0] == "col":
            return node[1]
        if node[0] == "call":
            if not node[2]:
                return node[1]
            if node[2][0][0] == "col":
                return f"{node[1]}_{node[2][0][1]}"
        return self.source

    def __str__(self) -> str:
        return self.source


ExprLike = Union[str, Expr, int, float, bool, None]


def as_expr(x: ExprLike) -> Expr:
    if isinstance(x, Expr):
        return x
    if isinstance(x, str):
        return Expr.parse(x)
    return Expr.literal(x)


def compile_expr(x: ExprLike, columns: Sequence[str], *, verb: str) -> Expr:
    """Parse `x` and check its column and function references against `columns`.

    Error codes carry the verb name, e.g. ``E_FILTER_PARSE`` or ``E_MUTATE_UNKNOWN_COL``.
    """
    prefix = verb.upper()
    try:
        expr = as_expr(x)
    except TidyUserError as e:
        if getattr(e, "code", None) == "E_EXPR_PARSE":
            raise TidyUserError(
                f"E_{prefix}_PARSE",
                getattr(e, "message", f"Invalid {verb} expression."),
                hint=getattr(e, "hint", None),
            ) from e
        raise

    colset = set(columns)
    for name in expr.referenced_columns():
        if name not in colset:
            raise InvalidColumnReference(
                f"E_{prefix}_UNKNOWN_COL",
                f"Unknown column {name!r} in {verb} expression {expr.source!r}.",
                hint=suggest_column(name, list(columns)),
            )

    for fname, nargs, kws in expr.called_functions():
        fn = FUNCTIONS.get(fname)
        if fn is None:
            raise TidyUserError(
                f"E_{prefix}_UNKNOWN_FUNC",
                f"Unknown function {fname!r} in {verb} expression.",
                hint=suggest_column(fname, sorted(FUNCTIONS), what="functions"),
            )
        lo, hi = fn.nargs
        if nargs < lo or (hi is not None and nargs > hi):
            want = f"{lo}" if lo == hi else (f"at least {lo}" if hi is None else f"{lo} to {hi}")
            raise TidyUserError(
                f"E_{prefix}_ARGS",
                f"{fname}() takes {want} positional argument(s), got {nargs}.",
                hint=fn.usage,
            )
        bad = [kw for kw in kws if kw not in fn.kwargs]
        if bad:
            raise TidyUserError(
                f"E_{prefix}_ARGS",
                f"{fname}() got unexpected keyword argument(s): {bad}.",
                hint=fn.usage,
            )
    return expr


# =========================
# Evaluation
# =========================

class _EvalContext:
    __slots__ = ("columns", "nrows", "verb", "strict")

    def __init__(self, columns: Mapping[str, Any], nrows: int, verb: str, strict: bool):
        self.columns = columns
        self.nrows = nrows
        self.verb = verb
        self.strict = strict

    def type_error(self, message: str, hint: Optional[str] = None) -> Any:
        """Raise in strict mode; otherwise the offending value becomes NA."""
        if self.strict:
            raise TidyUserError(
                f"E_{self.verb.upper()}_TYPE",
                message,
                hint=hint or "Check the column types; expressions do not convert between types.",
            )
        return NA


def _recycle(ctx: _EvalContext, *vecs: List[Any]) -> Tuple[int, List[List[Any]]]:
    n = 1
    for v in vecs:
        if len(v) != 1:
            if n != 1 and len(v) != n:
                raise TidyUserError(
                    f"E_{ctx.verb.upper()}_LENGTH",
                    f"Cannot combine values of length {n} and {len(v)}.",
                    hint="Only length-1 values (literals, aggregates) are recycled.",
                )
            n = len(v)
    return n, [v * n if len(v) == 1 and n != 1 else v for v in vecs]


def _is_num(v: Any) -> bool:
    return isinstance(v, (int, float))


def _is_bool(v: Any) -> bool:
    return isinstance(v, bool)


def _kind_eq(a: Any, b: Any) -> bool:
    return value_kind(a) == value_kind(b) and a == b


def _compare(ctx: _EvalContext, op: str, a: Any, b: Any) -> Any:
    if a is NA or b is NA:
        return NA
    if op == "==":
        return _kind_eq(a, b)
    if op == "!=":
        return not _kind_eq(a, b)
    ka, kb = value_kind(a), value_kind(b)
    if ka != kb or ka == "any":
        return ctx.type_error(
            f"Type mismatch in {ctx.verb} comparison: {a!r} {op} {b!r}.",
        )
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    if op == "<":
        return a < b
    return a <= b


def _arith(ctx: _EvalContext, op: str, a: Any, b: Any) -> Any:
    if a is NA or b is NA:
        return NA
    if _is_num(a) and _is_num(b):
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op == "/":
            return NA if b == 0 else a / b
        if op == "%":
            return NA if b == 0 else a % b
        if a < 0 and not float(b).is_integer():
            return NA
        try:
            return float(a) ** b
        except (OverflowError, ZeroDivisionError, ValueError):
            return NA
    if op == "+" and isinstance(a, str) and isinstance(b, str):
        return a + b
    if isinstance(a, (date, datetime)):
        if op in {"+", "-"} and _is_num(b) and not _is_bool(b):
            delta = timedelta(days=b)
            return a + delta if op == "+" else a - delta
        if op == "-" and isinstance(b, (date, datetime)):
            return (a - b).days
    return ctx.type_error(f"Type mismatch in {ctx.verb} operation: {a!r} {op} {b!r}.")


def _truth(ctx: _EvalContext, v: Any) -> Any:
    if v is NA or isinstance(v, bool):
        return v
    return ctx.type_error(
        f"Expected a boolean in {ctx.verb} expression, got {v!r}.",
        hint="Combine comparisons with and/or/not, e.g. \"a > 1 and b == 'x'\".",
    )


def _and(a: Any, b: Any) -> Any:
    if a is False or b is False:
        return False
    if a is NA or b is NA:
        return NA
    return True


def _or(a: Any, b: Any) -> Any:
    if a is True or b is True:
        return True
    if a is NA or b is NA:
        return NA
    return False


def _eval(node: Any, ctx: _EvalContext) -> List[Any]:
    tag = node[0]
    if tag == "lit":
        return [node[1]]
    if tag == "col":
        col = ctx.columns.get(node[1])
        if col is None:
            raise InvalidColumnReference(
                f"E_{ctx.verb.upper()}_UNKNOWN_COL",
                f"Unknown column {node[1]!r} in {ctx.verb} expression.",
                hint=suggest_column(node[1], list(ctx.columns)),
            )
        return list(col.values)
    if tag in ("and", "or"):
        _, (a, b) = _recycle(ctx, _eval(node[1], ctx), _eval(node[2], ctx))
        comb = _and if tag == "and" else _or
        return [comb(_truth(ctx, x), _truth(ctx, y)) for x, y in zip(a, b)]
    if tag == "not":
        out = []
        for v in _eval(node[1], ctx):
            t = _truth(ctx, v)
            out.append(NA if t is NA else (not t))
        return out
    if tag == "neg":
        out = []
        for v in _eval(node[1], ctx):
            if v is NA:
                out.append(NA)
            elif _is_num(v) and not _is_bool(v):
                out.append(-v)
            else:
                out.append(ctx.type_error(f"Cannot apply unary '-' to {v!r}."))
        return out
    if tag == "cmp":
        _, opx, left, right = node
        _, (a, b) = _recycle(ctx, _eval(left, ctx), _eval(right, ctx))
        return [_compare(ctx, opx, x, y) for x, y in zip(a, b)]
    if tag == "bin":
        _, opx, left, right = node
        _, (a, b) = _recycle(ctx, _eval(left, ctx), _eval(right, ctx))
        return [_arith(ctx, opx, x, y) for x, y in zip(a, b)]
    if tag == "in":
        _, left, items, negate = node
        _, vecs = _recycle(ctx, _eval(left, ctx), *[_eval(it, ctx) for it in items])
        out = []
        for row in zip(*vecs):
            v = row[0]
            if v is NA:
                out.append(NA)
                continue
            hit = any(_kind_eq(v, c) for c in row[1:])
            out.append((not hit) if negate else hit)
        return out
    if tag == "call":
        _, fname, args, kwargs, _pos = node
        fn = FUNCTIONS[fname]
        arg_vals = [_eval(a, ctx) for a in args]
        kw_vals: Dict[str, Any] = {}
        for key, sub in kwargs:
            v = _eval(sub, ctx)
            if len(v) != 1:
                raise TidyUserError(
                    f"E_{ctx.verb.upper()}_ARGS",
                    f"Keyword argument {key!r} of {fname}() must be a single value.",
                    hint=fn.usage,
                )
            kw_vals[key] = v[0]
        return fn.impl(ctx, arg_vals, kw_vals)
    raise TidyUserError(
        f"E_{ctx.verb.upper()}_UNSUPPORTED",
        f"Unsupported construct in {ctx.verb} expression.",
        hint="Use literals, column names, arithmetic, comparisons, and/or/not, in (...) and function calls.",
    )


def evaluate(
    expr: Expr,
    columns: Mapping[str, Any],
    nrows: int,
    *,
    verb: str = "expression",
    strict: bool = True,
) -> List[Any]:
    """Evaluate `expr` over `columns` (name -> Column). Returns a list of length 1 or `nrows`."""
    ctx = _EvalContext(columns, nrows, verb, strict)
    out = _eval(expr.ast, ctx)
    if len(out) not in (1, nrows):
        raise TidyUserError(
            f"E_{verb.upper()}_LENGTH",
            f"Expression {expr.source!r} produced {len(out)} values for {nrows} rows.",
            hint="Expressions must produce one value per row, or a single value.",
        )
    return out


# =========================
# Function registry
# =========================

@dataclass(frozen=True)
class ExprFunction:
    name: str
    kind: str  # "elementwise", "window" or "aggregate"
    impl: Callable[[_EvalContext, List[List[Any]], Dict[str, Any]], List[Any]]
    nargs: Tuple[int, Optional[int]]
    kwargs: Tuple[str, ...]
    usage: str


FUNCTIONS: Dict[str, ExprFunction] = {}


def register_function(
    name: str,
    *,
    kind: str = "elementwise",
    nargs: Tuple[int, Optional[int]] = (1, 1),
    kwargs: Tuple[str, ...] = (),
    usage: str = "",
) -> Callable[[Callable[..., List[Any]]], Callable[..., List[Any]]]:
    """Decorator to register an expression function under `name`."""

    def deco(impl: Callable[..., List[Any]]) -> Callable[..., List[Any]]:
        FUNCTIONS[name] = ExprFunction(name, kind, impl, nargs, tuple(kwargs), usage or f"{name}(...)")
        return impl

    return deco


def aggregate_names() -> List[str]:
    return sorted(n for n, f in FUNCTIONS.items() if f.kind == "aggregate")


def _unary(name: str, fn: Callable[[Any], Any], accepts: Callable[[Any], bool], what: str, usage: str) -> None:
    def impl(ctx: _EvalContext, args: List[List[Any]], kw: Dict[str, Any]) -> List[Any]:
        out = []
        for v in args[0]:
            if v is NA:
                out.append(NA)
            elif not accepts(v):
                out.append(ctx.type_error(f"{name}() expects {what}, got {v!r}."))
            else:
                out.append(fn(v))
        return out

    register_function(name, usage=usage)(impl)


def _numeric(v: Any) -> bool:
    return _is_num(v) and not _is_bool(v)


def _safe(fn: Callable[[float], float]) -> Callable[[Any], Any]:
    def inner(v: Any) -> Any:
        try:
            return fn(v)
        except (ValueError, OverflowError):
            return NA

    return inner


def _positive(fn: Callable[[float], float]) -> Callable[[Any], Any]:
    return lambda v: fn(v) if v > 0 else NA


_unary("abs", abs, _numeric, "a number", "abs(x)")
_unary("floor", math.floor, _numeric, "a number", "floor(x)")
_unary("ceil", math.ceil, _numeric, "a number", "ceil(x)")
_unary("sqrt", lambda v: math.sqrt(v) if v >= 0 else NA, _numeric, "a number", "sqrt(x)")
_unary("exp", _safe(math.exp), _numeric, "a number", "exp(x)")
_unary("log10", _positive(math.log10), _numeric, "a number", "log10(x)")
_unary("log2", _positive(math.log2), _numeric, "a number", "log2(x)")
_unary("upper", str.upper, lambda v: isinstance(v, str), "a string", "upper(x)")
_unary("lower", str.lower, lambda v: isinstance(v, str), "a string", "lower(x)")
_unary("trim", str.strip, lambda v: isinstance(v, str), "a string", "trim(x)")
_unary("nchar", len, lambda v: isinstance(v, str), "a string", "nchar(x)")
_unary("year", lambda v: v.year, lambda v: isinstance(v, (date, datetime)), "a date", "year(x)")
_unary("month", lambda v: v.month, lambda v: isinstance(v, (date, datetime)), "a date", "month(x)")
_unary("day", lambda v: v.day, lambda v: isinstance(v, (date, datetime)), "a date", "day(x)")


@register_function("log", nargs=(1, 2), usage="log(x) or log(x, base)")
def _fn_log(ctx, args, kw):
    n, vecs = _recycle(ctx, *args)
    out = []
    for row in zip(*vecs):
        if any(v is NA for v in row):
            out.append(NA)
        elif not all(_numeric(v) for v in row):
            out.append(ctx.type_error(f"log() expects numbers, got {row!r}."))
        elif row[0] <= 0 or (len(row) == 2 and (row[1] <= 0 or row[1] == 1)):
            out.append(NA)
        else:
            out.append(math.log(*row))
    return out


@register_function("round", nargs=(1, 2), kwargs=("digits",), usage="round(x, digits=0)")
def _fn_round(ctx, args, kw):
    digits = kw.get("digits", 0)
    if len(args) == 2:
        _, (xs, ds) = _recycle(ctx, *args)
    else:
        xs, ds = args[0], [digits] * len(args[0])
    out = []
    for v, d in zip(xs, ds):
        if v is NA or d is NA:
            out.append(NA)
        elif not _numeric(v) or not isinstance(d, int) or _is_bool(d):
            out.append(ctx.type_error(f"round() expects a number and integer digits, got {v!r}, {d!r}."))
        else:
            out.append(round(v, d) if d else float(round(v)) if isinstance(v, float) else v)
    return out


def _to_string(v: Any) -> str:
    if isinstance(v, bool):
        return "TRUE" if v else "FALSE"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    if isinstance(v, (date, datetime)):
        return v.isoformat()
    return str(v)


@register_function("as_string", usage="as_string(x)")
def _fn_as_string(ctx, args, kw):
    return [NA if v is NA else _to_string(v) for v in args[0]]


FUNCTIONS["str"] = FUNCTIONS["as_string"]


@register_function("as_numeric", usage="as_numeric(x)")
def _fn_as_numeric(ctx, args, kw):
    out = []
    failed = 0
    for v in args[0]:
        if v is NA:
            out.append(NA)
        elif _is_bool(v):
            out.append(int(v))
        elif _is_num(v):
            out.append(v)
        elif isinstance(v, str):
            s = v.strip()
            try:
                out.append(int(s))
            except ValueError:
                try:
                    out.append(float(s))
                except ValueError:
                    failed += 1
                    out.append(NA)
        else:
            out.append(ctx.type_error(f"as_numeric() cannot convert {v!r}."))
    if failed:
        logger.warning("as_numeric(): %d value(s) could not be parsed and became NA", failed)
    return out


@register_function("substr", nargs=(3, 3), usage="substr(x, start, stop)  (1-based, inclusive)")
def _fn_substr(ctx, args, kw):
    _, (xs, starts, stops) = _recycle(ctx, *args)
    out = []
    for s, a, b in zip(xs, starts, stops):
        if s is NA or a is NA or b is NA:
            out.append(NA)
        elif not isinstance(s, str) or not _numeric(a) or not _numeric(b):
            out.append(ctx.type_error(f"substr() expects a string and two positions, got {s!r}, {a!r}, {b!r}."))
        else:
            out.append(s[max(int(a), 1) - 1: max(int(b), 0)])
    return out


@register_function("paste", nargs=(1, None), kwargs=("sep",), usage="paste(a, b, ..., sep=' ')")
def _fn_paste(ctx, args, kw):
    sep = kw.get("sep", " ")
    if not isinstance(sep, str):
        return [ctx.type_error(f"paste() sep must be a string, got {sep!r}.")]
    _, vecs = _recycle(ctx, *args)
    return [
        NA if any(v is NA for v in row) else sep.join(_to_string(v) for v in row)
        for row in zip(*vecs)
    ]


def _string_test(name: str, test: Callable[[str, str], bool]) -> None:
    def impl(ctx, args, kw):
        _, (xs, ps) = _recycle(ctx, *args)
        out = []
        for s, p in zip(xs, ps):
            if s is NA or p is NA:
                out.append(NA)
            elif not isinstance(s, str) or not isinstance(p, str):
                out.append(ctx.type_error(f"{name}() expects strings, got {s!r}, {p!r}."))
            else:
                out.append(test(s, p))
        return out

    register_function(name, nargs=(2, 2), usage=f"{name}(x, pattern)")(impl)


_string_test("starts_with", str.startswith)
_string_test("ends_with", str.endswith)
_string_test("contains", lambda s, p: p in s)


@register_function("is_na", usage="is_na(x)")
def _fn_is_na(ctx, args, kw):
    return [v is NA for v in args[0]]


@register_function("coalesce", nargs=(1, None), usage="coalesce(a, b, ...)")
def _fn_coalesce(ctx, args, kw):
    _, vecs = _recycle(ctx, *args)
    return [next((v for v in row if v is not NA), NA) for row in zip(*vecs)]


@register_function("if_else", nargs=(3, 3), kwargs=("missing",), usage="if_else(condition, yes, no, missing=NA)")
def _fn_if_else(ctx, args, kw):
    missing = kw.get("missing", NA)
    _, (cond, yes, no) = _recycle(ctx, *args)
    out = []
    for c, y, n in zip(cond, yes, no):
        c = _truth(ctx, c)
        out.append(missing if c is NA else (y if c else n))
    return out


@register_function("between", nargs=(3, 3), usage="between(x, low, high)  (inclusive)")
def _fn_between(ctx, args, kw):
    _, (xs, lo, hi) = _recycle(ctx, *args)
    return [_and(_compare(ctx, ">=", x, a), _compare(ctx, "<=", x, b)) for x, a, b in zip(xs, lo, hi)]


# ---------- window functions ----------

@register_function("row_number", kind="window", nargs=(0, 0), usage="row_number()")
def _fn_row_number(ctx, args, kw):
    return list(range(1, ctx.nrows + 1))


def _shift(name: str, direction: int) -> None:
    def impl(ctx, args, kw):
        xs = args[0] if len(args[0]) == ctx.nrows else args[0] * ctx.nrows
        k = args[1][0] if len(args) > 1 else kw.get("n", 1)
        default = kw.get("default", NA)
        if not isinstance(k, int) or _is_bool(k) or k < 0:
            raise TidyUserError(
                f"E_{ctx.verb.upper()}_ARGS",
                f"{name}() offset must be a non-negative integer, got {k!r}.",
                hint=f"Example: {name}(x, 1)",
            )
        n = len(xs)
        out = []
        for i in range(n):
            j = i - k * direction
            out.append(xs[j] if 0 <= j < n else default)
        return out

    register_function(name, kind="window", nargs=(1, 2), kwargs=("n", "default"), usage=f"{name}(x, n=1, default=NA)")(impl)


_shift("lag", 1)
_shift("lead", -1)


def _cumulative(name: str, step: Callable[[Any, Any, int], Any]) -> None:
    def impl(ctx, args, kw):
        out = []
        acc: Any = None
        for i, v in enumerate(args[0]):
            if acc is NA or v is NA:
                acc = NA
            elif not _is_num(v):
                acc = ctx.type_error(f"{name}() expects numbers, got {v!r}.")
            else:
                acc = step(acc, v, i)
            out.append(acc)
        return out

    register_function(name, kind="window", usage=f"{name}(x)")(impl)


_cumulative("cumsum", lambda acc, v, i: v if acc is None else acc + v)
_cumulative("cummean", lambda acc, v, i: float(v) if acc is None else acc + (v - acc) / (i + 1))


# ---------- aggregates ----------

def _aggregate(
    name: str,
    reduce: Callable[[_EvalContext, List[Any]], Any],
    *,
    na_propagates: bool = True,
    usage: str = "",
) -> None:
    def impl(ctx, args, kw):
        ignore = kw.get("ignore_missing", False)
        if not isinstance(ignore, bool):
            raise TidyUserError(
                f"E_{ctx.verb.upper()}_ARGS",
                f"{name}() ignore_missing must be true or false, got {ignore!r}.",
                hint=f"Example: {name}(x, ignore_missing=true)",
            )
        xs = args[0] if len(args[0]) == ctx.nrows else args[0] * ctx.nrows
        if ignore:
            xs = [v for v in xs if v is not NA]
        elif na_propagates and any(v is NA for v in xs):
            return [NA]
        return [reduce(ctx, xs)]

    register_function(
        name,
        kind="aggregate",
        kwargs=("ignore_missing",),
        usage=usage or f"{name}(x, ignore_missing=false)",
    )(impl)


def _numbers(ctx: _EvalContext, name: str, xs: List[Any]) -> Optional[List[Any]]:
    for v in xs:
        if v is not NA and not _is_num(v):
            ctx.type_error(f"{name}() expects numeric or boolean values, got {v!r}.")
            return None
    return [int(v) if _is_bool(v) else v for v in xs]


def _with_numbers(name: str, fn: Callable[[List[Any]], Any]) -> Callable[[_EvalContext, List[Any]], Any]:
    def reduce(ctx: _EvalContext, xs: List[Any]) -> Any:
        nums = _numbers(ctx, name, xs)
        if nums is None:
            return NA
        return fn(nums)

    return reduce


def _ordered(name: str, pick: Callable[[List[Any]], Any]) -> Callable[[_EvalContext, List[Any]], Any]:
    def reduce(ctx: _EvalContext, xs: List[Any]) -> Any:
        if not xs:
            return NA
        kinds = {value_kind(v) for v in xs}
        if len(kinds) > 1 or kinds & {"any"}:
            return ctx.type_error(f"{name}() needs values of one comparable type, got {sorted(kinds)}.")
        return pick(xs)

    return reduce


_aggregate("sum", _with_numbers("sum", lambda xs: sum(xs)))
_aggregate("mean", _with_numbers("mean", lambda xs: (sum(xs) / len(xs)) if xs else NA))
_aggregate("median", _with_numbers("median", lambda xs: statistics.median(xs) if xs else NA))
_aggregate("sd", _with_numbers("sd", lambda xs: statistics.stdev(xs) if len(xs) > 1 else NA))
_aggregate("var", _with_numbers("var", lambda xs: statistics.variance(xs) if len(xs) > 1 else NA))
_aggregate("min", _ordered("min", min))
_aggregate("max", _ordered("max", max))
_aggregate("first", lambda ctx, xs: xs[0] if xs else NA, na_propagates=False)
_aggregate("last", lambda ctx, xs: xs[-1] if xs else NA, na_propagates=False)
_aggregate("count", lambda ctx, xs: sum(1 for v in xs if v is not NA), na_propagates=False,
           usage="count(x)  (number of non-missing values)")
_aggregate("n_distinct", lambda ctx, xs: len({(value_kind(v), v) for v in xs}), na_propagates=False)


def _logical(name: str, combine: Callable[[List[bool]], bool]) -> Callable[[_EvalContext, List[Any]], Any]:
    def reduce(ctx: _EvalContext, xs: List[Any]) -> Any:
        for v in xs:
            if not _is_bool(v):
                return ctx.type_error(f"{name}() expects booleans, got {v!r}.")
        return combine(xs)

    return reduce


_aggregate("any", _logical("any", any))
_aggregate("all", _logical("all", all))


@register_function("n", kind="aggregate", nargs=(0, 0), usage="n()  (number of rows)")
def _fn_n(ctx, args, kw):
    return [ctx.nrows]


def aggregate(fn: str, column: str, *, ignore_missing: bool = False) -> Expr:
    """Build an aggregate expression, e.g. ``aggregate("mean", "depth", ignore_missing=True)``."""
    f = FUNCTIONS.get(fn)
    if f is None or f.kind != "aggregate":
        raise TidyUserError(
            "E_AGGREGATE_FUNC",
            f"{fn!r} is not an aggregate function.",
            hint="Aggregates: " + ", ".join(aggregate_names()),
        )
    if fn == "n":
        return Expr.parse("n()")
    src = f"{fn}({quote_name(column)}"
    if ignore_missing:
        src += ", ignore_missing=true"
    return Expr.parse(src + ")")
