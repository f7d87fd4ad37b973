"""
replbridge.codec.edn - Reader and printer for the EDN that prepl servers emit

A prepl server answers every evaluation event with one EDN map per line:
    {:tag :ret, :val "3", :ns "user", :ms 1, :form "(+ 1 2)"}
    {:tag :out, :val "hello\\n"}

Components:
- Keyword, Symbol, TaggedLiteral: EDN value types with no Python equivalent
- tokenize(): Converts EDN text to tokens with line/column positions
- Reader: Converts tokens to Python values
- read_one(): Reads exactly one value from a string
- pr_str(): Prints a read value back as EDN text
- format_throwable(): Renders a Throwable->map as readable text

Value mapping:
    nil -> None, true/false -> bool, "s" -> str, \\c -> str
    42 / 42N -> int, 1.5 / 1.5M -> float, 1/3 -> Fraction
    (...) -> tuple, [...] -> list, {...} -> dict, #{...} -> frozenset
"""

import math
import re
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Optional

from replbridge.errors import MalformedMessage

# =============================================================================
# Value Types
# =============================================================================


@dataclass(frozen=True)
class Keyword:
    """An EDN keyword such as :tag. Compares and hashes by name."""

    name: str

    def __repr__(self):
        return f":{self.name}"

    def __str__(self):
        return f":{self.name}"


@dataclass(frozen=True)
class Symbol:
    """An EDN symbol such as clojure.core/str."""

    name: str

    def __repr__(self):
        return self.name


@dataclass(frozen=True)
class TaggedLiteral:
    """A tagged element such as #inst "2024-01-01" or #error {...}."""

    tag: str
    value: Any


@dataclass
class Token:
    """A token with its source location."""

    value: Any  # str for delimiters and atoms, tuple for STRING/CHAR/TAG
    line: int  # 1-based line number
    col: int  # 0-based column offset


class _Discard:
    def __repr__(self):
        return "<discard>"


DISCARD = _Discard()

# =============================================================================
# Tokenizer
# =============================================================================

WHITESPACE = " \t\r\n,"
DELIMITERS = set("()[]{}")

STRING_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
    '"': '"',
    "\\": "\\",
}

CHAR_NAMES = {
    "newline": "\n",
    "space": " ",
    "tab": "\t",
    "return": "\r",
    "backspace": "\b",
    "formfeed": "\f",
}


def _is_atom_char(c: str) -> bool:
    return c not in WHITESPACE and c not in DELIMITERS and c not in '";'


def tokenize(src: str) -> list[Token]:
    """
    Tokenize EDN text into a list of Tokens with source locations.

    Raises:
        MalformedMessage: On unterminated strings or invalid escapes.
    """
    tokens = []
    i = 0
    n = len(src)
    line = 1
    line_start = 0

    def read_string(start_line: int) -> str:
        # i points just past the opening quote
        nonlocal i, line, line_start
        buf = []
        while i < n:
            c = src[i]
            if c == "\\":
                if i + 1 >= n:
                    raise MalformedMessage(f"Unterminated string escape at line {line}")
                esc = src[i + 1]
                if esc == "u":
                    digits = src[i + 2 : i + 6]
                    if len(digits) != 4 or not all(
                        d in "0123456789abcdefABCDEF" for d in digits
                    ):
                        raise MalformedMessage(
                            f"Invalid unicode escape at line {line}"
                        )
                    buf.append(chr(int(digits, 16)))
                    i += 6
                    continue
                if esc not in STRING_ESCAPES:
                    raise MalformedMessage(
                        f"Invalid string escape \\{esc} at line {line}"
                    )
                buf.append(STRING_ESCAPES[esc])
                i += 2
            elif c == '"':
                i += 1
                return "".join(buf)
            else:
                if c == "\n":
                    line += 1
                    line_start = i + 1
                buf.append(c)
                i += 1
        raise MalformedMessage(f"Unterminated string starting at line {start_line}")

    while i < n:
        c = src[i]
        if c == "\n":
            i += 1
            line += 1
            line_start = i
            continue
        if c in WHITESPACE:
            i += 1
            continue
        if c == ";":
            while i < n and src[i] != "\n":
                i += 1
            continue

        tok_line = line
        tok_col = i - line_start

        if c in DELIMITERS:
            tokens.append(Token(c, tok_line, tok_col))
            i += 1
            continue

        if c == '"':
            i += 1
            tokens.append(Token(("STRING", read_string(tok_line)), tok_line, tok_col))
            continue

        if c == "\\":
            start = i + 1
            if start >= n:
                raise MalformedMessage(f"Unterminated character at line {tok_line}")
            # The first character is always part of the literal, so \( and \, work
            i = start + 1
            while i < n and _is_atom_char(src[i]):
                i += 1
            name = src[start:i]
            if len(name) == 1:
                char = name
            elif name in CHAR_NAMES:
                char = CHAR_NAMES[name]
            elif re.fullmatch(r"u[0-9a-fA-F]{4}", name):
                char = chr(int(name[1:], 16))
            else:
                raise MalformedMessage(
                    f"Invalid character literal \\{name} at line {tok_line}"
                )
            tokens.append(Token(("CHAR", char), tok_line, tok_col))
            continue

        if c == "#":
            nxt = src[i + 1] if i + 1 < n else ""
            if nxt == "{":
                tokens.append(Token("#{", tok_line, tok_col))
                i += 2
                continue
            if nxt == "_":
                tokens.append(Token("#_", tok_line, tok_col))
                i += 2
                continue
            if nxt == '"':
                # Regex literal; kept as its source string
                i += 2
                tokens.append(
                    Token(("STRING", read_string(tok_line)), tok_line, tok_col)
                )
                continue
            if nxt == "#":
                # Symbolic values: ##Inf ##-Inf ##NaN
                start = i
                i += 2
                while i < n and _is_atom_char(src[i]):
                    i += 1
                tokens.append(Token(src[start:i], tok_line, tok_col))
                continue
            start = i + 1
            i = start
            while i < n and _is_atom_char(src[i]):
                i += 1
            tag = src[start:i]
            if not tag:
                raise MalformedMessage(
                    f"Invalid dispatch character after # at line {tok_line}"
                )
            tokens.append(Token(("TAG", tag), tok_line, tok_col))
            continue

        start = i
        while i < n and _is_atom_char(src[i]):
            i += 1
        tokens.append(Token(src[start:i], tok_line, tok_col))

    return tokens


# =============================================================================
# Reader
# =============================================================================

_INT_RE = re.compile(r"[+-]?\d+N?")
_FLOAT_RE = re.compile(r"[+-]?\d+(\.\d*)?([eE][+-]?\d+)?M?")
_RATIO_RE = re.compile(r"[+-]?\d+/\d+")
_HEX_RE = re.compile(r"([+-]?)0[xX]([0-9a-fA-F]+)N?")

_SYMBOLIC_VALUES = {
    "##Inf": math.inf,
    "##-Inf": -math.inf,
    "##NaN": math.nan,
}


def _hashable(value: Any) -> Any:
    """Convert a read value into something usable as a dict key or set member."""
    if isinstance(value, (list, tuple)):
        return tuple(_hashable(item) for item in value)
    if isinstance(value, dict):
        return frozenset((k, _hashable(v)) for k, v in value.items())
    if isinstance(value, TaggedLiteral):
        return TaggedLiteral(value.tag, _hashable(value.value))
    return value


def parse_atom(text: str, line: int = 0) -> Any:
    """Convert an atom token (number, keyword, symbol, constant) to a value."""
    if text == "nil":
        return None
    if text == "true":
        return True
    if text == "false":
        return False
    if text in _SYMBOLIC_VALUES:
        return _SYMBOLIC_VALUES[text]
    if text.startswith(":"):
        name = text[1:]
        if not name:
            raise MalformedMessage(f"Empty keyword at line {line}")
        return Keyword(name)
    if _INT_RE.fullmatch(text):
        return int(text.rstrip("N"))
    hex_match = _HEX_RE.fullmatch(text)
    if hex_match:
        sign, digits = hex_match.groups()
        return int(sign + digits, 16)
    if _FLOAT_RE.fullmatch(text):
        return float(text.rstrip("M"))
    if _RATIO_RE.fullmatch(text):
        numerator, denominator = text.split("/")
        if int(denominator) == 0:
            raise MalformedMessage(f"Invalid ratio {text} at line {line}")
        return Fraction(int(numerator), int(denominator))
    if text[0].isdigit() or (len(text) > 1 and text[0] in "+-" and text[1].isdigit()):
        raise MalformedMessage(f"Invalid number {text} at line {line}")
    return Symbol(text)


class Reader:
    """Reader that parses EDN tokens into Python values."""

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.i = 0

    def eof(self):
        return self.i >= len(self.tokens)

    def peek(self) -> Optional[Token]:
        if self.eof():
            return None
        return self.tokens[self.i]

    def next(self) -> Optional[Token]:
        tok = self.peek()
        self.i += 1
        return tok

    def read(self) -> list[Any]:
        """Read all values from the token stream."""
        forms = []
        while not self.eof():
            form = self.read_form()
            if form is not DISCARD:
                forms.append(form)
        return forms

    def read_form(self) -> Any:
        """Read a single value from the token stream."""
        tok = self.next()
        if tok is None:
            raise MalformedMessage("Unexpected end of input")

        value = tok.value
        if value == "(":
            return tuple(self.read_seq(")", tok))
        if value == "[":
            return self.read_seq("]", tok)
        if value == "{":
            items = self.read_seq("}", tok)
            if len(items) % 2:
                raise MalformedMessage(
                    f"Map literal at line {tok.line} has an odd number of forms"
                )
            return {
                _hashable(items[k]): items[k + 1] for k in range(0, len(items), 2)
            }
        if value == "#{":
            return frozenset(_hashable(item) for item in self.read_seq("}", tok))
        if value in (")", "]", "}"):
            raise MalformedMessage(
                f"Unexpected {value} at line {tok.line}, column {tok.col}"
            )
        if value == "#_":
            self.read_form()
            return DISCARD

        if isinstance(value, tuple):
            kind, text = value
            if kind == "TAG":
                inner = self.read_form()
                while inner is DISCARD:
                    inner = self.read_form()
                return TaggedLiteral(text, inner)
            return text

        return parse_atom(value, tok.line)

    def read_seq(self, closer: str, open_tok: Token) -> list[Any]:
        """Read values up to the matching closing delimiter."""
        items = []
        while True:
            tok = self.peek()
            if tok is None:
                raise MalformedMessage(
                    f"Unterminated collection starting at line {open_tok.line}"
                )
            if tok.value == closer:
                self.next()
                return items
            form = self.read_form()
            if form is not DISCARD:
                items.append(form)


def read_one(text: str) -> Any:
    """
    Read exactly one EDN value from text.

    Raises:
        MalformedMessage: On syntax errors, empty input, or trailing values.
    """
    try:
        forms = Reader(tokenize(text)).read()
    except RecursionError:
        raise MalformedMessage("EDN value nested too deeply")
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"Unreadable EDN value: {e}")
    if len(forms) != 1:
        raise MalformedMessage(f"Expected exactly one EDN value, found {len(forms)}")
    return forms[0]


# =============================================================================
# Printer
# =============================================================================


def _quote(text: str) -> str:
    escaped = (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
        .replace("\r", "\\r")
    )
    return f'"{escaped}"'


def pr_str(value: Any) -> str:
    """Print a read value back as EDN text."""
    if value is None:
        return "nil"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, (Keyword, Symbol)):
        return repr(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "##NaN"
        if math.isinf(value):
            return "##Inf" if value > 0 else "##-Inf"
        return repr(value)
    if isinstance(value, Fraction):
        return f"{value.numerator}/{value.denominator}"
    if isinstance(value, tuple):
        return "(" + " ".join(pr_str(item) for item in value) + ")"
    if isinstance(value, list):
        return "[" + " ".join(pr_str(item) for item in value) + "]"
    if isinstance(value, dict):
        pairs = ", ".join(f"{pr_str(k)} {pr_str(v)}" for k, v in value.items())
        return "{" + pairs + "}"
    if isinstance(value, (set, frozenset)):
        return "#{" + " ".join(pr_str(item) for item in value) + "}"
    if isinstance(value, TaggedLiteral):
        return f"#{value.tag} {pr_str(value.value)}"
    return str(value)


# =============================================================================
# Exceptions
# =============================================================================

_VIA = Keyword("via")
_TRACE = Keyword("trace")
_CAUSE = Keyword("cause")
_MESSAGE = Keyword("message")
_TYPE = Keyword("type")


def _frame_part(part: Any) -> str:
    if isinstance(part, str):
        return part
    return pr_str(part)


def format_throwable(throwable: Any) -> str:
    """
    Render a Throwable->map as text: one line per :via entry, then the trace.

    Accepts the map itself, a #error tagged literal, or the printed text of
    either. Text that cannot be read is returned unchanged.
    """
    data = throwable
    if isinstance(data, str):
        try:
            data = read_one(data)
        except MalformedMessage:
            return throwable.strip()
    while isinstance(data, TaggedLiteral):
        data = data.value
    if not isinstance(data, dict):
        return pr_str(data)

    lines = []
    for entry in data.get(_VIA) or []:
        if not isinstance(entry, dict):
            continue
        message = entry.get(_MESSAGE)
        kind = entry.get(_TYPE)
        if kind is not None and message is not None:
            lines.append(f"{_frame_part(kind)}: {message}")
        elif message is not None:
            lines.append(str(message))
        elif kind is not None:
            lines.append(_frame_part(kind))
    if not lines and data.get(_CAUSE) is not None:
        lines.append(str(data[_CAUSE]))

    trace = data.get(_TRACE) or []
    if trace:
        lines.append("-- Trace --")
        for frame in trace:
            if isinstance(frame, (list, tuple)):
                lines.append(" ".join(_frame_part(part) for part in frame))
            else:
                lines.append(_frame_part(frame))

    return "\n".join(lines)
