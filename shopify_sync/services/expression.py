"""Sandboxed expression language used by mapping transforms.

Formulas such as ``round(price * 1.13, 2)`` or
``firstName + ' ' + lastName`` are tokenized, parsed into a small tagged AST
and interpreted against a flat record context. Only the functions registered
in ``FUNCTIONS`` can be called; there is no attribute access, indexing or
assignment, so a formula can never reach Python objects.

Grammar (lowest to highest precedence)::

    conditional := or ( "?" conditional ":" conditional )?
    or          := and ( ("or" | "||") and )*
    and         := equality ( ("and" | "&&") equality )*
    equality    := comparison ( ("==" | "!=") comparison )*
    comparison  := additive ( ("<" | "<=" | ">" | ">=") additive )*
    additive    := multiplicative ( ("+" | "-") multiplicative )*
    multiplicative := unary ( ("*" | "/" | "%") unary )*
    unary       := ("-" | "+" | "!" | "not") unary | power
    power       := primary ( "^" unary )?
    primary     := number | string | true | false | null
                 | identifier | identifier "(" args ")" | "(" conditional ")"
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from shopify_sync.core.exceptions import ExpressionError
from shopify_sync.utils.records import resolve_path

DEFAULT_MAX_LENGTH = 500
MAX_EXPONENT = 1024

_NUMBER_RE = re.compile(r"(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_IDENT_RE = re.compile(r"[A-Za-z_$][\w$]*(?:\.[A-Za-z_$][\w$]*)*")
_FLOAT_PREFIX_RE = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_INT_PREFIX_RE = re.compile(r"^\s*[+-]?\d+")
_UNITS_RE = re.compile(r"^(\d+)PC-")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"'}
_KEYWORD_OPS = {"and", "or", "not"}
_LITERALS = {"true": True, "false": False, "null": None}
_TWO_CHAR_OPS = {"==", "!=", "<=", ">=", "&&", "||"}
_ONE_CHAR_OPS = set("+-*/%^<>!(),?:")


# ---------------------------------------------------------------------------
# Tokens and AST
# ---------------------------------------------------------------------------

@dataclass
class Token:
    kind: str  # number, string, ident, literal, op, eof
    value: Any
    pos: int


@dataclass
class Literal:
    value: Any


@dataclass
class Variable:
    name: str


@dataclass
class Unary:
    op: str
    operand: "Node"


@dataclass
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass
class Logical:
    op: str  # "and" | "or"
    left: "Node"
    right: "Node"


@dataclass
class Conditional:
    test: "Node"
    consequent: "Node"
    alternate: "Node"


@dataclass
class Call:
    name: str
    args: List["Node"]


Node = Union[Literal, Variable, Unary, Binary, Logical, Conditional, Call]


@dataclass
class CompiledExpression:
    formula: str
    ast: Node
    variables: List[str] = field(default_factory=list)


@dataclass
class EvaluationResult:
    success: bool
    value: Any = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _format_number(value: Union[int, float]) -> str:
    if isinstance(value, float):
        if value.is_integer() and math.isfinite(value):
            return str(int(value))
        return repr(value)
    return str(value)


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        return _format_number(value)
    return str(value)


def to_number(value: Any) -> Union[int, float]:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0
        try:
            if re.fullmatch(r"[+-]?\d+", text):
                return int(text)
            number = float(text)
        except ValueError:
            raise ExpressionError(f"Cannot convert '{value}' to a number")
        if not math.isfinite(number):
            raise ExpressionError(f"Cannot convert '{value}' to a number")
        return number
    raise ExpressionError(f"Cannot convert {type(value).__name__} to a number")


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    if isinstance(value, (list, dict)):
        return True
    return bool(value)


def strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


# ---------------------------------------------------------------------------
# Allow-listed functions
# ---------------------------------------------------------------------------

def _substring(s: Any, start: Any, length: Any = None) -> str:
    if s is None:
        return ""
    text = to_string(s)
    begin = max(0, int(to_number(start)))
    if length is None:
        return text[begin:]
    end = max(0, begin + int(to_number(length)))
    if end < begin:
        begin, end = end, begin
    return text[begin:end]


def _replace(s: Any, search: Any, replacement: Any) -> str:
    if s is None:
        return ""
    return to_string(s).replace(to_string(search), to_string(replacement), 1)


def _split(s: Any, delimiter: Any, index: Any) -> str:
    if s is None:
        return ""
    parts = to_string(s).split(to_string(delimiter)) if to_string(delimiter) else list(to_string(s))
    position = int(to_number(index))
    if 0 <= position < len(parts):
        return parts[position]
    return ""


def _parse_number(s: Any) -> Union[int, float]:
    if s is None:
        return 0
    if _is_number(s):
        return s
    match = _FLOAT_PREFIX_RE.match(to_string(s))
    if not match:
        return 0
    text = match.group(0).strip()
    if re.fullmatch(r"[+-]?\d+", text):
        return int(text)
    return float(text)


def _parse_int(s: Any) -> int:
    if s is None:
        return 0
    match = _INT_PREFIX_RE.match(to_string(s))
    return int(match.group(0)) if match else 0


def _round(n: Any, decimals: Any = None) -> Union[int, float]:
    number = to_number(n)
    if decimals is None:
        return _round_half_up(number)
    factor = 10 ** int(to_number(decimals))
    return _round_half_up(number * factor) / factor


def _parse_units(sku: Any) -> int:
    if sku is None:
        return 1
    match = _UNITS_RE.match(to_string(sku).upper())
    return int(match.group(1)) if match else 1


def _if_empty(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str) and value.strip() == "":
        return default
    return value


def _coalesce(*args: Any) -> Any:
    for arg in args:
        if arg is not None:
            return arg
    return None


def _is_finite_number(value: Any) -> bool:
    return _is_number(value) and math.isfinite(value)


# name -> (callable, min args, max args or None for variadic)
FUNCTIONS: Dict[str, Tuple[Callable[..., Any], int, Optional[int]]] = {
    "toUpperCase": (lambda s: to_string(s).upper(), 1, 1),
    "toLowerCase": (lambda s: to_string(s).lower(), 1, 1),
    "trim": (lambda s: to_string(s).strip(), 1, 1),
    "substring": (_substring, 2, 3),
    "length": (lambda s: len(to_string(s)), 1, 1),
    "replace": (_replace, 3, 3),
    "split": (_split, 3, 3),
    "startsWith": (lambda s, p: s is not None and to_string(s).startswith(to_string(p)), 2, 2),
    "endsWith": (lambda s, p: s is not None and to_string(s).endswith(to_string(p)), 2, 2),
    "contains": (lambda s, p: s is not None and to_string(p) in to_string(s), 2, 2),
    "parseNumber": (_parse_number, 1, 1),
    "parseInt": (_parse_int, 1, 1),
    "round": (_round, 1, 2),
    "floor": (lambda n: math.floor(to_number(n)), 1, 1),
    "ceil": (lambda n: math.ceil(to_number(n)), 1, 1),
    "abs": (lambda n: abs(to_number(n)), 1, 1),
    "min": (lambda *args: min(to_number(a) for a in args), 1, None),
    "max": (lambda *args: max(to_number(a) for a in args), 1, None),
    "parseUnits": (_parse_units, 1, 1),
    "ifNull": (lambda value, default: default if value is None else value, 2, 2),
    "ifEmpty": (_if_empty, 2, 2),
    "coalesce": (_coalesce, 1, None),
    "isNull": (lambda value: value is None, 1, 1),
    "isNumber": (_is_finite_number, 1, 1),
    "isString": (lambda value: isinstance(value, str), 1, 1),
}


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

def tokenize(formula: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    length = len(formula)

    while pos < length:
        char = formula[pos]

        if char.isspace():
            pos += 1
            continue

        if char.isdigit() or (char == "." and pos + 1 < length and formula[pos + 1].isdigit()):
            match = _NUMBER_RE.match(formula, pos)
            text = match.group(0)
            value = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(Token("number", value, pos))
            pos = match.end()
            continue

        if char in ("'", '"'):
            value, pos = _read_string(formula, pos)
            tokens.append(Token("string", value, pos))
            continue

        match = _IDENT_RE.match(formula, pos)
        if match:
            name = match.group(0)
            if name in _LITERALS:
                tokens.append(Token("literal", _LITERALS[name], pos))
            elif name in _KEYWORD_OPS:
                tokens.append(Token("op", name, pos))
            else:
                tokens.append(Token("ident", name, pos))
            pos = match.end()
            continue

        two = formula[pos:pos + 2]
        if two in _TWO_CHAR_OPS:
            tokens.append(Token("op", two, pos))
            pos += 2
            continue

        if char in _ONE_CHAR_OPS:
            tokens.append(Token("op", char, pos))
            pos += 1
            continue

        raise ExpressionError(f"Unexpected character '{char}' at position {pos}")

    tokens.append(Token("eof", None, length))
    return tokens


def _read_string(formula: str, start: int) -> Tuple[str, int]:
    quote = formula[start]
    pos = start + 1
    chars: List[str] = []
    while pos < len(formula):
        char = formula[pos]
        if char == "\\" and pos + 1 < len(formula):
            chars.append(_ESCAPES.get(formula[pos + 1], formula[pos + 1]))
            pos += 2
            continue
        if char == quote:
            return "".join(chars), pos + 1
        chars.append(char)
        pos += 1
    raise ExpressionError(f"Unterminated string starting at position {start}")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class Parser:
    """Recursive descent parser producing the AST for one formula."""

    def __init__(self, formula: str):
        self.tokens = tokenize(formula)
        self.index = 0
        self.variables: List[str] = []

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _match(self, *ops: str) -> Optional[str]:
        token = self.current
        if token.kind == "op" and token.value in ops:
            self.index += 1
            return token.value
        return None

    def _expect(self, op: str) -> None:
        if not self._match(op):
            raise ExpressionError(f"Expected '{op}' at position {self.current.pos}")

    def parse(self) -> Node:
        if self.current.kind == "eof":
            raise ExpressionError("Empty expression")
        node = self._conditional()
        if self.current.kind != "eof":
            raise ExpressionError(f"Unexpected token '{self.current.value}' at position {self.current.pos}")
        return node

    def _conditional(self) -> Node:
        test = self._or()
        if self._match("?"):
            consequent = self._conditional()
            self._expect(":")
            alternate = self._conditional()
            return Conditional(test, consequent, alternate)
        return test

    def _or(self) -> Node:
        node = self._and()
        while self._match("or", "||"):
            node = Logical("or", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._match("and", "&&"):
            node = Logical("and", node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._comparison()
        while True:
            op = self._match("==", "!=")
            if not op:
                return node
            node = Binary(op, node, self._comparison())

    def _comparison(self) -> Node:
        node = self._additive()
        while True:
            op = self._match("<", "<=", ">", ">=")
            if not op:
                return node
            node = Binary(op, node, self._additive())

    def _additive(self) -> Node:
        node = self._multiplicative()
        while True:
            op = self._match("+", "-")
            if not op:
                return node
            node = Binary(op, node, self._multiplicative())

    def _multiplicative(self) -> Node:
        node = self._unary()
        while True:
            op = self._match("*", "/", "%")
            if not op:
                return node
            node = Binary(op, node, self._unary())

    def _unary(self) -> Node:
        op = self._match("-", "+", "!", "not")
        if op:
            return Unary("not" if op == "!" else op, self._unary())
        return self._power()

    def _power(self) -> Node:
        node = self._primary()
        if self._match("^"):
            return Binary("^", node, self._unary())
        return node

    def _primary(self) -> Node:
        token = self._advance()

        if token.kind in ("number", "string", "literal"):
            return Literal(token.value)

        if token.kind == "ident":
            if self._match("("):
                return self._call(token)
            if token.value not in self.variables:
                self.variables.append(token.value)
            return Variable(token.value)

        if token.kind == "op" and token.value == "(":
            node = self._conditional()
            self._expect(")")
            return node

        if token.kind == "eof":
            raise ExpressionError("Unexpected end of expression")
        raise ExpressionError(f"Unexpected token '{token.value}' at position {token.pos}")

    def _call(self, token: Token) -> Node:
        name = token.value
        if name not in FUNCTIONS:
            raise ExpressionError(f"Unknown function: {name}")

        args: List[Node] = []
        if not self._match(")"):
            while True:
                args.append(self._conditional())
                if self._match(")"):
                    break
                self._expect(",")

        _, min_args, max_args = FUNCTIONS[name]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            raise ExpressionError(f"Function {name} called with {len(args)} argument(s)")
        return Call(name, args)


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------

def _pow(a: Union[int, float], b: Union[int, float]) -> Union[int, float]:
    if abs(b) > MAX_EXPONENT:
        raise ExpressionError(f"Exponent out of range: {_format_number(b)}")
    # Exact integer result only while it stays within float range
    if isinstance(a, int) and isinstance(b, int) and b >= 0:
        if abs(a) <= 1 or b * math.log10(abs(a)) <= 308:
            return a ** b
    try:
        result = math.pow(a, b)
    except (OverflowError, ValueError) as e:
        raise ExpressionError(f"Invalid power {_format_number(a)} ^ {_format_number(b)}: {e}")
    if not math.isfinite(result):
        raise ExpressionError(f"Invalid power {_format_number(a)} ^ {_format_number(b)}: result is not finite")
    return result


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if op == "+":
        if isinstance(left, str) or isinstance(right, str):
            return to_string(left) + to_string(right)
        return to_number(left) + to_number(right)

    a, b = to_number(left), to_number(right)
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        if b == 0:
            raise ExpressionError("Division by zero")
        return a / b
    if op == "%":
        if b == 0:
            raise ExpressionError("Division by zero")
        result = math.fmod(a, b)
        return int(result) if isinstance(a, int) and isinstance(b, int) else result
    if op == "^":
        return _pow(a, b)
    raise ExpressionError(f"Unknown operator: {op}")


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return strict_equals(left, right)
    if op == "!=":
        return not strict_equals(left, right)
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = to_number(left), to_number(right)
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def evaluate_node(node: Node, context: Dict[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Variable):
        found, value = resolve_path(context, node.name)
        return value if found else None

    if isinstance(node, Unary):
        operand = evaluate_node(node.operand, context)
        if node.op == "not":
            return not is_truthy(operand)
        number = to_number(operand)
        return -number if node.op == "-" else number

    if isinstance(node, Logical):
        left = is_truthy(evaluate_node(node.left, context))
        if node.op == "and":
            return left and is_truthy(evaluate_node(node.right, context))
        return left or is_truthy(evaluate_node(node.right, context))

    if isinstance(node, Conditional):
        if is_truthy(evaluate_node(node.test, context)):
            return evaluate_node(node.consequent, context)
        return evaluate_node(node.alternate, context)

    if isinstance(node, Binary):
        left = evaluate_node(node.left, context)
        right = evaluate_node(node.right, context)
        if node.op in ("==", "!=", "<", "<=", ">", ">="):
            return _compare(node.op, left, right)
        return _arithmetic(node.op, left, right)

    if isinstance(node, Call):
        func = FUNCTIONS[node.name][0]
        args = [evaluate_node(arg, context) for arg in node.args]
        try:
            return func(*args)
        except ExpressionError:
            raise
        except (TypeError, ValueError, OverflowError) as e:
            raise ExpressionError(f"{node.name}() failed: {e}")

    raise ExpressionError(f"Unsupported node: {type(node).__name__}")


class ExpressionEvaluator:
    """Compiles and evaluates mapping formulas."""

    def __init__(self, max_length: int = DEFAULT_MAX_LENGTH):
        self.max_length = max_length

    def compile(self, formula: str) -> CompiledExpression:
        """Parse a formula; raises ExpressionError when it is invalid or too long."""
        if len(formula) > self.max_length:
            raise ExpressionError(
                f"Expression exceeds maximum length of {self.max_length} characters"
            )
        try:
            parser = Parser(formula)
            ast = parser.parse()
        except ExpressionError as e:
            raise ExpressionError(f"Failed to compile expression: {e}")
        except RecursionError:
            raise ExpressionError("Failed to compile expression: nesting too deep")
        return CompiledExpression(formula=formula, ast=ast, variables=parser.variables)

    def evaluate(self, compiled: CompiledExpression, context: Dict[str, Any]) -> EvaluationResult:
        try:
            return EvaluationResult(success=True, value=evaluate_node(compiled.ast, context))
        except ExpressionError as e:
            return EvaluationResult(success=False, error=str(e))
        except RecursionError:
            return EvaluationResult(success=False, error="Expression nesting too deep")

    def evaluate_formula(self, formula: str, context: Dict[str, Any]) -> EvaluationResult:
        try:
            compiled = self.compile(formula)
        except ExpressionError as e:
            return EvaluationResult(success=False, error=str(e))
        return self.evaluate(compiled, context)
