"""Condition expressions: compile once, evaluate against a value snapshot.

Grammar, loosest binding first::

    or      := and (("||" | "or") and)*
    and     := cmp (("&&" | "and") cmp)*
    cmp     := sum (("==" | "!=" | "<" | "<=" | ">" | ">=") sum)*
    sum     := term (("+" | "-") term)*
    term    := unary (("*" | "/" | "%") unary)*
    unary   := ("!" | "not" | "-") unary | atom
    atom    := NUMBER | "true" | "false" | NAME | "(" or ")"

A MISSING operand turns arithmetic, comparison and negation into MISSING
and counts as false inside && / ||, so `!(gear == 0)` with no gear value
is false. The final result is False whenever it is MISSING.
"""
import operator
import re
from typing import Callable, Dict, Iterable, List, Tuple

from core.errors import ProfileLoadError
from core.state import MISSING

COMPARISONS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_ARITHMETIC = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": operator.mod,
}

_KEYWORDS = {"and": "&&", "or": "||", "not": "!"}

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
      | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
      | (?P<op>&&|\|\||==|!=|<=|>=|[<>!+\-*/%()])
    )""",
    re.VERBOSE,
)

Env = Dict[str, object]
Node = Callable[[Env], object]


def truthy(value) -> bool:
    if value is MISSING:
        return False
    return bool(value)


def tokenize(source: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    source = source.rstrip()
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if not m or m.end() == pos:
            raise ProfileLoadError(f"unexpected character {source[pos:pos + 1]!r} at {pos} in {source!r}")
        pos = m.end()
        if m.group("number") is not None:
            tokens.append(("number", m.group("number")))
        elif m.group("name") is not None:
            word = m.group("name")
            if word in _KEYWORDS:
                tokens.append(("op", _KEYWORDS[word]))
            else:
                tokens.append(("name", word))
        else:
            tokens.append(("op", m.group("op")))
    return tokens


class _Parser:
    def __init__(self, source, names):
        self.source = source
        self.names = names
        self.tokens = tokenize(source)
        self.pos = 0
        self.used = set()

    def fail(self, message):
        raise ProfileLoadError(f"{message} in condition {self.source!r}")

    def peek(self):
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return (None, None)

    def take(self):
        tok = self.peek()
        self.pos += 1
        return tok

    def accept(self, *ops):
        kind, text = self.peek()
        if kind == "op" and text in ops:
            self.pos += 1
            return text
        return None

    def parse(self) -> Node:
        if not self.tokens:
            self.fail("empty expression")
        node = self.parse_or()
        if self.pos != len(self.tokens):
            self.fail(f"unexpected {self.peek()[1]!r}")
        return node

    def parse_or(self):
        left = self.parse_and()
        while self.accept("||"):
            right = self.parse_and()
            left = _or(left, right)
        return left

    def parse_and(self):
        left = self.parse_cmp()
        while self.accept("&&"):
            right = self.parse_cmp()
            left = _and(left, right)
        return left

    def parse_cmp(self):
        left = self.parse_sum()
        while True:
            op = self.accept(*COMPARISONS)
            if not op:
                return left
            left = _compare(COMPARISONS[op], left, self.parse_sum())

    def parse_sum(self):
        left = self.parse_term()
        while True:
            op = self.accept("+", "-")
            if not op:
                return left
            left = _arith(_ARITHMETIC[op], left, self.parse_term())

    def parse_term(self):
        left = self.parse_unary()
        while True:
            op = self.accept("*", "/", "%")
            if not op:
                return left
            left = _arith(_ARITHMETIC[op], left, self.parse_unary())

    def parse_unary(self):
        if self.accept("!"):
            return _not(self.parse_unary())
        if self.accept("-"):
            return _neg(self.parse_unary())
        return self.parse_atom()

    def parse_atom(self):
        kind, text = self.take()
        if kind == "number":
            value = float(text)
            return lambda env: value
        if kind == "name":
            if text == "true":
                return lambda env: True
            if text == "false":
                return lambda env: False
            if text not in self.names:
                self.fail(f"unknown variable {text!r}")
            self.used.add(text)
            return lambda env: env.get(text, MISSING)
        if kind == "op" and text == "(":
            node = self.parse_or()
            if not self.accept(")"):
                self.fail("missing ')'")
            return node
        if kind is None:
            self.fail("unexpected end of expression")
        self.fail(f"unexpected {text!r}")


def _or(left, right):
    return lambda env: truthy(left(env)) or truthy(right(env))


def _and(left, right):
    return lambda env: truthy(left(env)) and truthy(right(env))


def _not(inner):
    def node(env):
        v = inner(env)
        return MISSING if v is MISSING else not v
    return node


def _neg(inner):
    def node(env):
        v = inner(env)
        return MISSING if v is MISSING else -v
    return node


def _compare(fn, left, right):
    def node(env):
        a, b = left(env), right(env)
        if a is MISSING or b is MISSING:
            return MISSING
        try:
            return fn(a, b)
        except TypeError:
            return MISSING
    return node


def _arith(fn, left, right):
    def node(env):
        a, b = left(env), right(env)
        if a is MISSING or b is MISSING:
            return MISSING
        try:
            return fn(a, b)
        except (TypeError, ZeroDivisionError):
            return MISSING
    return node


class Expression:
    """A compiled condition string bound to a fixed set of variable names"""

    def __init__(self, source: str, names: Iterable[str]):
        self.source = source
        self.names = frozenset(names)
        parser = _Parser(source, self.names)
        self._root = parser.parse()
        self.used = frozenset(parser.used)

    def evaluate(self, env: Env) -> bool:
        """Evaluate against a snapshot of variable values. Never raises."""
        return truthy(self._root(env))

    def __repr__(self):
        return f"Expression({self.source!r})"


def compile_expression(source: str, names: Iterable[str]) -> Expression:
    """Compile source; syntax errors and unknown names raise ProfileLoadError"""
    return Expression(source, names)
