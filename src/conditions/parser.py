"""
Condition expression parser
Tokenizes and parses the restricted gate language into an expression tree
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

from .exceptions import ConditionError
from .expressions import BinaryOp, Expression, Literal, PropertyAccess, UnaryOp

KEYWORDS = {"and", "or", "not", "true", "false", "null"}

MAX_EXPRESSION_LENGTH = 1024
MAX_NESTING_DEPTH = 64

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("NUMBER", r"-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?"),
    ("STRING", r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\""),
    ("NAME", r"[A-Za-z_][A-Za-z0-9_\-]*"),
    ("OP", r"==|!=|<=|>=|<|>"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("DOT", r"\."),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))
_ESCAPE_RE = re.compile(r"\\(.)")
# Node keys may start with a digit, so segments after a dot are matched on their own
_SEGMENT_RE = re.compile(r"[A-Za-z0-9_\-]+")


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


def tokenize(expression: str) -> List[Token]:
    """Split an expression into tokens, rejecting any unknown character"""
    tokens: List[Token] = []
    position = 0
    while position < len(expression):
        if tokens and tokens[-1].kind == "DOT":
            segment = _SEGMENT_RE.match(expression, position)
            if segment is not None:
                tokens.append(Token("NAME", segment.group(), position))
                position = segment.end()
                continue

        match = _TOKEN_RE.match(expression, position)
        if match is None:
            raise ConditionError(
                f"unexpected character {expression[position]!r}",
                expression=expression,
                position=position
            )
        kind = match.lastgroup
        if kind != "WS":
            text = match.group()
            if kind == "NAME" and text in KEYWORDS:
                kind = "KEYWORD"
            tokens.append(Token(kind, text, position))
        position = match.end()

    tokens.append(Token("EOF", "", len(expression)))
    return tokens


class _Parser:
    """Recursive-descent parser; one instance per expression"""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, kind: str, text: Optional[str] = None) -> Optional[Token]:
        token = self.current
        if token.kind == kind and (text is None or token.text == text):
            return self._advance()
        return None

    def _error(self, message: str) -> ConditionError:
        return ConditionError(message, expression=self.expression, position=self.current.position)

    def _nest(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise self._error(f"expression nested too deeply (limit {MAX_NESTING_DEPTH})")

    def parse(self) -> Expression:
        if self.current.kind == "EOF":
            raise self._error("empty expression")
        expression = self._parse_or()
        if self.current.kind != "EOF":
            raise self._error(f"unexpected token {self.current.text!r}")
        return expression

    def _parse_or(self) -> Expression:
        left = self._parse_and()
        while self._accept("KEYWORD", "or"):
            left = BinaryOp("or", left, self._parse_and())
        return left

    def _parse_and(self) -> Expression:
        left = self._parse_not()
        while self._accept("KEYWORD", "and"):
            left = BinaryOp("and", left, self._parse_not())
        return left

    def _parse_not(self) -> Expression:
        if self._accept("KEYWORD", "not"):
            self._nest()
            operand = self._parse_not()
            self.depth -= 1
            return UnaryOp("not", operand)
        return self._parse_comparison()

    def _parse_comparison(self) -> Expression:
        left = self._parse_operand()
        token = self._accept("OP")
        if token is None:
            return left
        right = self._parse_operand()
        if self.current.kind == "OP":
            raise self._error("chained comparisons are not supported")
        return BinaryOp(token.text, left, right)

    def _parse_operand(self) -> Expression:
        token = self.current

        if self._accept("LPAREN"):
            self._nest()
            inner = self._parse_or()
            if not self._accept("RPAREN"):
                raise self._error("expected ')'")
            self.depth -= 1
            return inner

        if token.kind == "NUMBER":
            self._advance()
            text = token.text
            is_float = any(ch in text for ch in ".eE")
            return Literal(float(text) if is_float else int(text))

        if token.kind == "STRING":
            self._advance()
            return Literal(_ESCAPE_RE.sub(r"\1", token.text[1:-1]))

        if token.kind == "KEYWORD" and token.text in ("true", "false", "null"):
            self._advance()
            return Literal({"true": True, "false": False, "null": None}[token.text])

        if token.kind == "NAME":
            return self._parse_path()

        if token.kind == "EOF":
            raise self._error("unexpected end of expression")
        raise self._error(f"unexpected token {token.text!r}")

    def _parse_path(self) -> PropertyAccess:
        segments = [self._advance().text]
        while self._accept("DOT"):
            token = self.current
            if token.kind not in ("NAME", "KEYWORD"):
                raise self._error("expected property name after '.'")
            segments.append(self._advance().text)

        if self.current.kind == "LPAREN":
            raise self._error("function calls are not allowed")
        return PropertyAccess(tuple(segments))


def parse_condition(expression: str) -> Expression:
    """
    Parse a condition into an expression tree.

    Args:
        expression: Condition source, e.g. `metrics.validate.passed == true`

    Returns:
        Root of the parsed tree (cached per expression string)

    Raises:
        ConditionError: If the expression is malformed
    """
    if not isinstance(expression, str):
        raise ConditionError("condition must be a string", expression=repr(expression))
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ConditionError(
            f"expression longer than {MAX_EXPRESSION_LENGTH} characters",
            expression=expression[:40] + "...",
            position=MAX_EXPRESSION_LENGTH
        )
    return _parse_cached(expression)


@lru_cache(maxsize=512)
def _parse_cached(expression: str) -> Expression:
    return _Parser(expression).parse()
