"""
Sandboxed interpreter for report calculation scripts.

The LabReportAgent asks the model for a `calculationScript`: the body of a
JavaScript-style function that receives `rows` (the observation table) and
returns an object of named results, e.g.

    const slope = (rows[1][1] - rows[0][1]) / (rows[1][0] - rows[0][0]);
    return { slope: slope, g: 4 * Math.PI ** 2 / slope };

The script is never handed to a host JavaScript or Python `eval`. It is
tokenized, parsed into a small AST and walked by the Interpreter below,
which only knows about the `rows` argument and a fixed set of pure
builtins (Math, Number, parseFloat, array/string/number methods, ...).
There is no way to reach the network, the filesystem, timers or Python
objects. Every evaluation step is counted, so runaway scripts stop with a
CalculationError instead of hanging the server.
"""

import functools
import math
import re
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from engine.errors import CalculationError


MAX_STEPS = 200_000
MAX_CALL_DEPTH = 32
MAX_COLLECTION_SIZE = 100_000


class ScriptSyntaxError(CalculationError):
    """The calculation script could not be parsed"""


class ScriptBudgetExceeded(CalculationError):
    """The calculation script ran past its execution budget"""


class _Undefined:
    """JavaScript `undefined`"""

    def __repr__(self):
        return "undefined"

    def __bool__(self):
        return False


UNDEFINED = _Undefined()

# Property names that never resolve, whatever the receiver
BLOCKED_PROPERTIES = {"__proto__", "constructor", "prototype", "caller", "callee", "arguments"}

RESERVED_WORDS = {
    "break", "case", "catch", "class", "const", "continue", "debugger", "default", "delete",
    "do", "else", "export", "extends", "finally", "for", "function", "if", "import", "in",
    "instanceof", "let", "new", "return", "super", "switch", "this", "throw", "try",
    "typeof", "var", "void", "while", "with", "yield", "await", "async",
}


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

TOKEN_RE = re.compile(r"""
    (?P<ws>\s+|//[^\n]*|/\*.*?\*/)
  | (?P<num>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<str>"(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')
  | (?P<tpl>`(?:[^`\\]|\\.)*`)
  | (?P<name>[A-Za-z_$][\w$]*)
  | (?P<op>\.\.\.|===|!==|\*\*=|\?\?|\?\.(?!\d)|\*\*|=>|==|!=|<=|>=|&&|\|\||\+\+|--|\+=|-=|\*=|/=|%=|[{}()\[\];,.?:+\-*/%<>!=])
""", re.S | re.X)

ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|.)", re.S)
SIMPLE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0", "\n": ""}

Token = Tuple[str, Any, int]


def _decode_escapes(body: str) -> str:
    def replace(match):
        seq = match.group(1)
        if seq[0] in "ux" and len(seq) > 1:
            return chr(int(seq[1:], 16))
        return SIMPLE_ESCAPES.get(seq, seq)
    return ESCAPE_RE.sub(replace, body)


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(source):
        match = TOKEN_RE.match(source, pos)
        if not match:
            raise ScriptSyntaxError(f"Unexpected character {source[pos]!r} at position {pos}")
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "num":
            tokens.append(("num", float(text), pos))
        elif kind == "str":
            tokens.append(("str", _decode_escapes(text[1:-1]), pos))
        elif kind == "tpl":
            tokens.append(("tpl", text[1:-1], pos))
        elif kind != "ws":
            tokens.append((kind, text, pos))
        pos = match.end()
    tokens.append(("eof", None, pos))
    return tokens


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

BINARY_PRECEDENCE = {
    "??": 1, "||": 2, "&&": 3,
    "==": 4, "!=": 4, "===": 4, "!==": 4,
    "<": 5, ">": 5, "<=": 5, ">=": 5,
    "+": 6, "-": 6,
    "*": 7, "/": 7, "%": 7,
    "**": 8,
}
LOGICAL_OPERATORS = {"&&", "||", "??"}
ASSIGN_OPERATORS = {"=", "+=", "-=", "*=", "/=", "%=", "**="}
DECLARATION_KINDS = {"const", "let", "var"}


class Parser:
    """Recursive-descent parser producing tuple-based AST nodes."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    # -- token helpers --------------------------------------------------

    def peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        if token[0] != "eof":
            self.pos += 1
        return token

    def at_op(self, *values: str, offset: int = 0) -> bool:
        token = self.peek(offset)
        return token[0] == "op" and token[1] in values

    def at_name(self, *values: str, offset: int = 0) -> bool:
        token = self.peek(offset)
        return token[0] == "name" and token[1] in values

    def accept(self, value: str) -> bool:
        token = self.peek()
        if token[0] in ("op", "name") and token[1] == value:
            self.advance()
            return True
        return False

    def expect(self, value: str) -> Token:
        token = self.peek()
        if token[0] in ("op", "name") and token[1] == value:
            return self.advance()
        raise self.error(f"Expected '{value}'")

    def error(self, message: str) -> ScriptSyntaxError:
        kind, value, pos = self.peek()
        found = "end of script" if kind == "eof" else repr(value)
        return ScriptSyntaxError(f"{message} but found {found} at position {pos}")

    def identifier(self) -> str:
        kind, value, pos = self.peek()
        if kind != "name" or value in RESERVED_WORDS:
            raise self.error("Expected an identifier")
        self.advance()
        return value

    # -- statements -----------------------------------------------------

    def parse_program(self):
        body = []
        while self.peek()[0] != "eof":
            body.append(self.parse_statement())
        return ("block", body)

    def parse_block(self):
        self.expect("{")
        body = []
        while not self.at_op("}"):
            if self.peek()[0] == "eof":
                raise self.error("Expected '}'")
            body.append(self.parse_statement())
        self.advance()
        return ("block", body)

    def parse_statement(self):
        kind, value, pos = self.peek()
        if kind == "op" and value == "{":
            return self.parse_block()
        if kind == "op" and value == ";":
            self.advance()
            return ("empty",)
        if kind == "name":
            if value in DECLARATION_KINDS:
                node = self.parse_declaration()
                self.accept(";")
                return node
            if value == "function":
                self.advance()
                name = self.identifier()
                return ("funcdecl", name, self.parse_function_rest(name))
            if value == "return":
                self.advance()
                argument = None
                if not (self.at_op(";", "}") or self.peek()[0] == "eof"):
                    argument = self.parse_expression()
                self.accept(";")
                return ("return", argument)
            if value == "if":
                self.advance()
                self.expect("(")
                test = self.parse_expression()
                self.expect(")")
                consequent = self.parse_statement()
                alternate = self.parse_statement() if self.accept("else") else None
                return ("if", test, consequent, alternate)
            if value == "for":
                return self.parse_for()
            if value == "while":
                self.advance()
                self.expect("(")
                test = self.parse_expression()
                self.expect(")")
                return ("while", test, self.parse_statement())
            if value in ("break", "continue"):
                self.advance()
                self.accept(";")
                return (value,)
            if value == "throw":
                self.advance()
                argument = self.parse_expression()
                self.accept(";")
                return ("throw", argument)
            if value in RESERVED_WORDS and value not in ("typeof",):
                raise ScriptSyntaxError(f"Unsupported syntax '{value}' at position {pos}")
        expression = self.parse_expression()
        self.accept(";")
        return ("expr", expression)

    def parse_binding_target(self):
        if self.accept("["):
            names: List[Optional[str]] = []
            while not self.at_op("]"):
                if self.at_op(","):
                    names.append(None)
                else:
                    names.append(self.identifier())
                if not self.accept(","):
                    break
            self.expect("]")
            return ("pattern", names)
        return self.identifier()

    def parse_declaration(self):
        kind = self.advance()[1]
        declarations = []
        while True:
            target = self.parse_binding_target()
            init = self.parse_assignment() if self.accept("=") else None
            declarations.append((target, init))
            if not self.accept(","):
                break
        return ("var", kind, declarations)

    def parse_for(self):
        self.expect("for")
        self.expect("(")
        if self.at_name(*DECLARATION_KINDS):
            start = self.pos
            kind = self.advance()[1]
            target = self.parse_binding_target()
            if self.accept("of"):
                iterable = self.parse_assignment()
                self.expect(")")
                return ("forof", kind, target, iterable, self.parse_statement())
            if self.accept("in"):
                obj = self.parse_assignment()
                self.expect(")")
                return ("forin", kind, target, obj, self.parse_statement())
            self.pos = start
            init = self.parse_declaration()
        elif self.at_op(";"):
            init = None
        else:
            init = ("expr", self.parse_expression())
        self.expect(";")
        test = None if self.at_op(";") else self.parse_expression()
        self.expect(";")
        update = None if self.at_op(")") else self.parse_expression()
        self.expect(")")
        return ("for", init, test, update, self.parse_statement())

    def parse_params(self):
        self.expect("(")
        params = []
        while not self.at_op(")"):
            name = self.identifier()
            default = self.parse_assignment() if self.accept("=") else None
            params.append((name, default))
            if not self.accept(","):
                break
        self.expect(")")
        return params

    def parse_function_rest(self, name: Optional[str]):
        params = self.parse_params()
        body = self.parse_block()
        return ("func", name, params, body, False)

    # -- expressions ----------------------------------------------------

    def parse_expression(self):
        expression = self.parse_assignment()
        if not self.at_op(","):
            return expression
        items = [expression]
        while self.accept(","):
            items.append(self.parse_assignment())
        return ("seq", items)

    def _arrow_ahead(self) -> bool:
        if self.peek()[0] == "name" and self.at_op("=>", offset=1):
            return True
        if not self.at_op("("):
            return False
        depth = 0
        offset = 0
        while True:
            kind, value, _ = self.peek(offset)
            if kind == "eof":
                return False
            if kind == "op" and value in ("(", "[", "{"):
                depth += 1
            elif kind == "op" and value in (")", "]", "}"):
                depth -= 1
                if depth == 0:
                    return self.at_op("=>", offset=offset + 1)
            offset += 1

    def parse_arrow(self):
        if self.peek()[0] == "name":
            params = [(self.identifier(), None)]
        else:
            params = self.parse_params()
        self.expect("=>")
        if self.at_op("{"):
            return ("func", None, params, self.parse_block(), False)
        return ("func", None, params, self.parse_assignment(), True)

    def parse_assignment(self):
        if self._arrow_ahead():
            return self.parse_arrow()
        left = self.parse_conditional()
        if self.at_op(*ASSIGN_OPERATORS):
            if left[0] not in ("name", "member"):
                raise self.error("Invalid assignment target")
            operator = self.advance()[1]
            return ("assign", operator, left, self.parse_assignment())
        return left

    def parse_conditional(self):
        test = self.parse_binary(1)
        if self.accept("?"):
            consequent = self.parse_assignment()
            self.expect(":")
            alternate = self.parse_assignment()
            return ("cond", test, consequent, alternate)
        return test

    def parse_binary(self, min_precedence: int):
        left = self.parse_unary()
        while True:
            kind, value, _ = self.peek()
            precedence = BINARY_PRECEDENCE.get(value) if kind == "op" else None
            if precedence is None or precedence < min_precedence:
                return left
            self.advance()
            if value == "**":
                right = self.parse_binary(precedence)
            else:
                right = self.parse_binary(precedence + 1)
            tag = "logical" if value in LOGICAL_OPERATORS else "binary"
            left = (tag, value, left, right)

    def parse_unary(self):
        if self.at_op("!", "-", "+"):
            operator = self.advance()[1]
            return ("unary", operator, self.parse_unary())
        if self.at_name("typeof"):
            self.advance()
            return ("unary", "typeof", self.parse_unary())
        if self.at_op("++", "--"):
            operator = self.advance()[1]
            target = self.parse_unary()
            if target[0] not in ("name", "member"):
                raise self.error("Invalid update target")
            return ("update", operator, True, target)
        expression = self.parse_postfix()
        if self.at_op("**") and expression[0] == "unary":
            raise self.error("Unary operator before '**' needs parentheses")
        return expression

    def parse_postfix(self):
        expression = self.parse_call_member()
        if self.at_op("++", "--"):
            if expression[0] not in ("name", "member"):
                raise self.error("Invalid update target")
            operator = self.advance()[1]
            return ("update", operator, False, expression)
        return expression

    def parse_arguments(self):
        self.expect("(")
        args = []
        while not self.at_op(")"):
            if self.accept("..."):
                args.append(("spread", self.parse_assignment()))
            else:
                args.append(self.parse_assignment())
            if not self.accept(","):
                break
        self.expect(")")
        return args

    def parse_call_member(self):
        expression = self.parse_primary()
        while True:
            if self.accept("."):
                kind, value, _ = self.peek()
                if kind != "name":
                    raise self.error("Expected a property name")
                self.advance()
                expression = ("member", expression, ("str", value), False, False)
            elif self.accept("?."):
                if self.at_op("("):
                    expression = ("call", expression, self.parse_arguments(), True)
                elif self.accept("["):
                    prop = self.parse_expression()
                    self.expect("]")
                    expression = ("member", expression, prop, True, True)
                else:
                    kind, value, _ = self.peek()
                    if kind != "name":
                        raise self.error("Expected a property name")
                    self.advance()
                    expression = ("member", expression, ("str", value), False, True)
            elif self.accept("["):
                prop = self.parse_expression()
                self.expect("]")
                expression = ("member", expression, prop, True, False)
            elif self.at_op("("):
                expression = ("call", expression, self.parse_arguments(), False)
            else:
                return expression

    def parse_template(self, raw: str, pos: int):
        parts: List[Any] = []
        buffer = ""
        i = 0
        while i < len(raw):
            if raw.startswith("${", i):
                depth = 1
                j = i + 2
                while j < len(raw) and depth:
                    if raw[j] == "{":
                        depth += 1
                    elif raw[j] == "}":
                        depth -= 1
                    j += 1
                if depth:
                    raise ScriptSyntaxError(f"Unterminated template expression at position {pos}")
                if buffer:
                    parts.append(_decode_escapes(buffer))
                    buffer = ""
                inner = Parser(tokenize(raw[i + 2:j - 1]))
                parts.append(inner.parse_expression())
                if inner.peek()[0] != "eof":
                    raise inner.error("Unexpected token in template expression")
                i = j
            elif raw[i] == "\\" and i + 1 < len(raw):
                buffer += raw[i:i + 2]
                i += 2
            else:
                buffer += raw[i]
                i += 1
        if buffer:
            parts.append(_decode_escapes(buffer))
        return ("template", parts)

    def parse_array(self):
        self.expect("[")
        elements = []
        while not self.at_op("]"):
            if self.accept("..."):
                elements.append(("spread", self.parse_assignment()))
            else:
                elements.append(self.parse_assignment())
            if not self.accept(","):
                break
        self.expect("]")
        return ("array", elements)

    def parse_object(self):
        self.expect("{")
        entries = []
        while not self.at_op("}"):
            if self.accept("..."):
                entries.append(("spread", self.parse_assignment()))
            else:
                kind, value, _ = self.peek()
                if self.accept("["):
                    key = self.parse_assignment()
                    self.expect("]")
                elif kind in ("name", "str"):
                    self.advance()
                    key = ("str", value)
                elif kind == "num":
                    self.advance()
                    key = ("str", number_to_string(value))
                else:
                    raise self.error("Expected a property key")
                if self.accept(":"):
                    entries.append(("prop", key, self.parse_assignment()))
                elif self.at_op("("):
                    entries.append(("prop", key, self.parse_function_rest(key[1] if key[0] == "str" else None)))
                elif kind == "name" and key[0] == "str":
                    if value in RESERVED_WORDS:
                        raise self.error("Expected ':'")
                    entries.append(("prop", key, ("name", value)))
                else:
                    raise self.error("Expected ':'")
            if not self.accept(","):
                break
        self.expect("}")
        return ("object", entries)

    def parse_primary(self):
        kind, value, pos = self.peek()
        if kind == "num":
            self.advance()
            return ("num", value)
        if kind == "str":
            self.advance()
            return ("str", value)
        if kind == "tpl":
            self.advance()
            return self.parse_template(value, pos)
        if kind == "name":
            if value == "true":
                self.advance()
                return ("const", True)
            if value == "false":
                self.advance()
                return ("const", False)
            if value == "null":
                self.advance()
                return ("const", None)
            if value == "function":
                self.advance()
                name = self.identifier() if self.peek()[0] == "name" else None
                return self.parse_function_rest(name)
            if value in RESERVED_WORDS:
                raise ScriptSyntaxError(f"Unsupported syntax '{value}' at position {pos}")
            self.advance()
            return ("name", value)
        if kind == "op" and value == "(":
            self.advance()
            expression = self.parse_expression()
            self.expect(")")
            return expression
        if kind == "op" and value == "[":
            return self.parse_array()
        if kind == "op" and value == "{":
            return self.parse_object()
        raise self.error("Unexpected token")


def parse_script(source: str):
    """Parse a calculation script into an AST, raising ScriptSyntaxError."""
    if not isinstance(source, str):
        raise ScriptSyntaxError("Calculation script must be text")
    parser = Parser(tokenize(source))
    return parser.parse_program()


# ---------------------------------------------------------------------------
# JavaScript value semantics
# ---------------------------------------------------------------------------

DECIMAL_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
FLOAT_PREFIX_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
INT_PREFIX_RE = re.compile(r"^[+-]?\d+")


def is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def number_to_string(x: float) -> str:
    """Format a number the way JavaScript's String(x) does."""
    if math.isnan(x):
        return "NaN"
    if math.isinf(x):
        return "Infinity" if x > 0 else "-Infinity"
    if x == int(x) and abs(x) < 1e21:
        return str(int(x))
    text = repr(float(x))
    if "e" not in text:
        return text
    mantissa, exponent = text.split("e")
    power = int(exponent)
    if -7 < power < 21:
        return np.format_float_positional(x, trim="-")
    return f"{mantissa}e{'+' if power > 0 else '-'}{abs(power)}"


def to_fixed_string(x: float, digits: int) -> str:
    """
    Format like JavaScript's x.toFixed(digits).

    Rounds the exact binary value with ties away from zero, so 0.03125
    gives "0.0313" at 4 digits where Python's "%.4f" gives "0.0312".
    """
    if math.isnan(x) or math.isinf(x) or abs(x) >= 1e21:
        return number_to_string(x)
    if x == 0:
        x = 0.0  # (-0).toFixed() has no sign
    with localcontext() as ctx:
        ctx.prec = 200
        rounded = Decimal(x).quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)
        return format(rounded, "f")


def to_string(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if value is UNDEFINED:
        return "undefined"
    if is_number(value):
        return number_to_string(float(value))
    if isinstance(value, list):
        return ",".join("" if item is None or item is UNDEFINED else to_string(item) for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    return "function"


def to_number(value) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if is_number(value):
        return float(value)
    if value is None:
        return 0.0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        if DECIMAL_RE.match(text):
            return float(text)
        if text in ("Infinity", "+Infinity"):
            return math.inf
        if text == "-Infinity":
            return -math.inf
        if re.match(r"^0[xX][0-9a-fA-F]+$", text):
            return float(int(text, 16))
        return math.nan
    if isinstance(value, list):
        return to_number(to_string(value))
    return math.nan


def truthy(value) -> bool:
    if value is None or value is UNDEFINED:
        return False
    if isinstance(value, bool):
        return value
    if is_number(value):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def type_of(value) -> str:
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (JSFunction, NativeFunction)):
        return "function"
    return "object"


def strict_equals(a, b) -> bool:
    if is_number(a) and is_number(b):
        return float(a) == float(b)
    if isinstance(a, bool) and isinstance(b, bool):
        return a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    return a is b


def loose_equals(a, b) -> bool:
    nullish_a = a is None or a is UNDEFINED
    nullish_b = b is None or b is UNDEFINED
    if nullish_a or nullish_b:
        return nullish_a and nullish_b
    if type_of(a) == type_of(b):
        return strict_equals(a, b)
    if isinstance(a, (list, dict)) or isinstance(b, (list, dict)):
        return to_string(a) == to_string(b)
    return to_number(a) == to_number(b)


def js_divide(a: float, b: float) -> float:
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)
    return a / b


def js_modulo(a: float, b: float) -> float:
    if b == 0 or math.isnan(a) or math.isnan(b) or math.isinf(a):
        return math.nan
    if math.isinf(b):
        return a
    return math.fmod(a, b)


def js_power(a: float, b: float) -> float:
    if math.isnan(b):
        return math.nan
    if b == 0:
        return 1.0
    if abs(a) == 1 and math.isinf(b):
        return math.nan
    if a == 0 and b < 0:
        return math.inf
    try:
        return math.pow(a, b)
    except OverflowError:
        return math.inf
    except ValueError:
        return math.nan


def _index(key) -> Optional[int]:
    if is_number(key):
        if key >= 0 and key == int(key):
            return int(key)
        return None
    if isinstance(key, str) and key.isdigit():
        return int(key)
    return None


def _check_size(value):
    if isinstance(value, (list, str)) and len(value) > MAX_COLLECTION_SIZE:
        raise ScriptBudgetExceeded(f"Value grew past {MAX_COLLECTION_SIZE} elements")
    return value


def _arg(args: Sequence[Any], index: int, default=UNDEFINED):
    return args[index] if index < len(args) else default


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------

class JSFunction:
    """A function defined inside the script (declaration, expression or arrow)."""

    __slots__ = ("name", "params", "body", "expr_body", "closure")

    def __init__(self, name, params, body, expr_body, closure):
        self.name = name
        self.params = params
        self.body = body
        self.expr_body = expr_body
        self.closure = closure


class NativeFunction:
    """A builtin exposed to scripts; `properties` holds static members such as Number.isFinite."""

    __slots__ = ("name", "fn", "properties")

    def __init__(self, name: str, fn: Callable[[List[Any]], Any], properties: Optional[Dict[str, Any]] = None):
        self.name = name
        self.fn = fn
        self.properties = properties or {}


class Scope:
    __slots__ = ("vars", "consts", "parent", "is_function")

    def __init__(self, parent: Optional["Scope"] = None, is_function: bool = False):
        self.vars: Dict[str, Any] = {}
        self.consts = set()
        self.parent = parent
        self.is_function = is_function

    def find(self, name: str) -> Optional["Scope"]:
        scope = self
        while scope is not None:
            if name in scope.vars:
                return scope
            scope = scope.parent
        return None

    def function_scope(self) -> "Scope":
        scope = self
        while not scope.is_function and scope.parent is not None:
            scope = scope.parent
        return scope

    def declare(self, name: str, value, const: bool = False):
        self.vars[name] = value
        if const:
            self.consts.add(name)
        else:
            self.consts.discard(name)


class _Return(Exception):
    def __init__(self, value):
        self.value = value


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


# ---------------------------------------------------------------------------
# Builtins
# ---------------------------------------------------------------------------

def _math_unary(fn: Callable[[float], float]) -> Callable[[List[Any]], float]:
    def call(args):
        x = to_number(_arg(args, 0))
        if math.isnan(x):
            return math.nan
        try:
            return float(fn(x))
        except OverflowError:
            return math.inf
        except (ValueError, ZeroDivisionError):
            return math.nan
    return call


def _math_log(fn: Callable[[float], float]) -> Callable[[List[Any]], float]:
    def call(args):
        x = to_number(_arg(args, 0))
        if math.isnan(x) or x < 0:
            return math.nan
        if x == 0:
            return -math.inf
        if math.isinf(x):
            return math.inf
        return fn(x)
    return call


def _js_round(x: float) -> float:
    if math.isnan(x) or math.isinf(x):
        return x
    return float(math.floor(x + 0.5))


def _js_sign(x: float) -> float:
    if x > 0:
        return 1.0
    if x < 0:
        return -1.0
    return x


def _js_trunc(x: float) -> float:
    if math.isnan(x) or math.isinf(x):
        return x
    return float(math.trunc(x))


def _js_floor(x: float) -> float:
    if math.isnan(x) or math.isinf(x):
        return x
    return float(math.floor(x))


def _js_ceil(x: float) -> float:
    if math.isnan(x) or math.isinf(x):
        return x
    return float(math.ceil(x))


def _js_min(args):
    values = [to_number(v) for v in args]
    if any(math.isnan(v) for v in values):
        return math.nan
    return min(values) if values else math.inf


def _js_max(args):
    values = [to_number(v) for v in args]
    if any(math.isnan(v) for v in values):
        return math.nan
    return max(values) if values else -math.inf


def _js_hypot(args):
    values = [to_number(v) for v in args]
    if any(math.isinf(v) for v in values):
        return math.inf
    return math.hypot(*values) if values else 0.0


def _js_atan2(args):
    return math.atan2(to_number(_arg(args, 0)), to_number(_arg(args, 1)))


def _js_pow(args):
    return js_power(to_number(_arg(args, 0)), to_number(_arg(args, 1)))


def _parse_float(args):
    text = to_string(_arg(args, 0)).strip()
    match = FLOAT_PREFIX_RE.match(text)
    if match:
        return float(match.group(0))
    for prefix, value in (("Infinity", math.inf), ("+Infinity", math.inf), ("-Infinity", -math.inf)):
        if text.startswith(prefix):
            return value
    return math.nan


def _parse_int(args):
    text = to_string(_arg(args, 0)).strip()
    radix_arg = _arg(args, 1)
    radix = int(to_number(radix_arg)) if radix_arg is not UNDEFINED else 10
    if radix in (0, 16) and re.match(r"^[+-]?0[xX]", text):
        sign = -1 if text.startswith("-") else 1
        digits = re.match(r"[0-9a-fA-F]+", text.lstrip("+-")[2:])
        return float(sign * int(digits.group(0), 16)) if digits else math.nan
    if radix == 0:
        radix = 10
    if radix == 10:
        match = INT_PREFIX_RE.match(text)
        return float(int(match.group(0))) if match else math.nan
    if not 2 <= radix <= 36:
        return math.nan
    sign = -1 if text.startswith("-") else 1
    body = text.lstrip("+-")
    valid = ""
    for ch in body:
        if ch.isalnum() and int(ch, 36) < radix:
            valid += ch
        else:
            break
    return float(sign * int(valid, radix)) if valid else math.nan


def _is_integer(args):
    x = _arg(args, 0)
    return is_number(x) and math.isfinite(x) and x == int(x)


def _object_keys(args):
    obj = _arg(args, 0)
    if isinstance(obj, dict):
        return list(obj.keys())
    if isinstance(obj, (list, str)):
        return [str(i) for i in range(len(obj))]
    return []


def _object_values(args):
    obj = _arg(args, 0)
    if isinstance(obj, dict):
        return list(obj.values())
    if isinstance(obj, list):
        return list(obj)
    if isinstance(obj, str):
        return list(obj)
    return []


def _object_entries(args):
    obj = _arg(args, 0)
    if isinstance(obj, dict):
        return [[k, v] for k, v in obj.items()]
    if isinstance(obj, list):
        return [[str(i), v] for i, v in enumerate(obj)]
    return []


def _noop(args):
    return UNDEFINED


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------

class Interpreter:
    """
    Tree-walking evaluator for parsed calculation scripts.

    One Interpreter is used for one run; it owns the step counter and the
    call depth.
    """

    def __init__(self, max_steps: int = MAX_STEPS, max_depth: int = MAX_CALL_DEPTH):
        self.max_steps = max_steps
        self.max_depth = max_depth
        self.steps = 0
        self.depth = 0
        self._statements = {
            "block": self._exec_block,
            "var": self._exec_var,
            "funcdecl": self._exec_funcdecl,
            "return": self._exec_return,
            "if": self._exec_if,
            "for": self._exec_for,
            "forof": self._exec_forof,
            "forin": self._exec_forin,
            "while": self._exec_while,
            "break": self._exec_break,
            "continue": self._exec_continue,
            "throw": self._exec_throw,
            "expr": self._exec_expr,
            "empty": self._exec_empty,
        }
        self._expressions = {
            "num": self._eval_literal,
            "str": self._eval_literal,
            "const": self._eval_literal,
            "template": self._eval_template,
            "name": self._eval_name,
            "array": self._eval_array,
            "object": self._eval_object,
            "func": self._eval_func,
            "member": self._eval_member,
            "call": self._eval_call,
            "unary": self._eval_unary,
            "binary": self._eval_binary,
            "logical": self._eval_logical,
            "cond": self._eval_cond,
            "assign": self._eval_assign,
            "update": self._eval_update,
            "seq": self._eval_seq,
        }

    # -- entry point ----------------------------------------------------

    def run(self, program, rows: List[List[float]]):
        scope = Scope(self._globals(), is_function=True)
        scope.declare("rows", rows)
        try:
            self._run_body(program[1], scope)
        except _Return as result:
            return result.value
        except (_Break, _Continue):
            raise CalculationError("'break' or 'continue' used outside of a loop") from None
        except RecursionError:
            raise ScriptBudgetExceeded("Calculation script nested too deeply") from None
        return UNDEFINED

    def _globals(self) -> Scope:
        scope = Scope()
        math_object = {
            "PI": math.pi, "E": math.e, "LN2": math.log(2), "LN10": math.log(10),
            "LOG2E": 1 / math.log(2), "LOG10E": 1 / math.log(10),
            "SQRT2": math.sqrt(2), "SQRT1_2": math.sqrt(0.5),
        }
        unary = {
            "abs": abs, "sqrt": math.sqrt, "exp": math.exp, "expm1": math.expm1,
            "sin": math.sin, "cos": math.cos, "tan": math.tan,
            "asin": math.asin, "acos": math.acos, "atan": math.atan,
            "sinh": math.sinh, "cosh": math.cosh, "tanh": math.tanh,
            "floor": _js_floor, "ceil": _js_ceil, "round": _js_round, "trunc": _js_trunc,
            "sign": _js_sign, "cbrt": lambda x: math.copysign(abs(x) ** (1.0 / 3.0), x),
        }
        for name, fn in unary.items():
            math_object[name] = NativeFunction(name, _math_unary(fn))
        for name, fn in (("log", math.log), ("log10", math.log10), ("log2", math.log2)):
            math_object[name] = NativeFunction(name, _math_log(fn))
        math_object["log1p"] = NativeFunction("log1p", lambda args: _math_log(math.log)([to_number(_arg(args, 0)) + 1]))
        math_object["min"] = NativeFunction("min", _js_min)
        math_object["max"] = NativeFunction("max", _js_max)
        math_object["hypot"] = NativeFunction("hypot", _js_hypot)
        math_object["atan2"] = NativeFunction("atan2", _js_atan2)
        math_object["pow"] = NativeFunction("pow", _js_pow)

        parse_float = NativeFunction("parseFloat", _parse_float)
        parse_int = NativeFunction("parseInt", _parse_int)
        is_nan = NativeFunction("isNaN", lambda args: math.isnan(to_number(_arg(args, 0))))
        is_finite = NativeFunction("isFinite", lambda args: math.isfinite(to_number(_arg(args, 0))))

        number = NativeFunction("Number", lambda args: to_number(args[0]) if args else 0.0, {
            "isFinite": NativeFunction("isFinite", lambda args: is_number(_arg(args, 0)) and math.isfinite(args[0])),
            "isNaN": NativeFunction("isNaN", lambda args: is_number(_arg(args, 0)) and math.isnan(args[0])),
            "isInteger": NativeFunction("isInteger", _is_integer),
            "parseFloat": parse_float,
            "parseInt": parse_int,
            "EPSILON": 2.0 ** -52,
            "MAX_VALUE": 1.7976931348623157e308,
            "MIN_VALUE": 5e-324,
            "MAX_SAFE_INTEGER": float(2 ** 53 - 1),
            "MIN_SAFE_INTEGER": float(-(2 ** 53 - 1)),
            "POSITIVE_INFINITY": math.inf,
            "NEGATIVE_INFINITY": -math.inf,
            "NaN": math.nan,
        })
        string = NativeFunction("String", lambda args: to_string(args[0]) if args else "")
        array = NativeFunction("Array", self._array_constructor, {
            "isArray": NativeFunction("isArray", lambda args: isinstance(_arg(args, 0), list)),
            "from": NativeFunction("from", self._array_from),
        })
        obj = NativeFunction("Object", lambda args: _arg(args, 0, {}), {
            "keys": NativeFunction("keys", _object_keys),
            "values": NativeFunction("values", _object_values),
            "entries": NativeFunction("entries", _object_entries),
        })
        console = {name: NativeFunction(name, _noop) for name in ("log", "warn", "error", "info", "debug")}

        for name, value in {
            "Math": math_object, "Number": number, "String": string, "Array": array,
            "Object": obj, "parseFloat": parse_float, "parseInt": parse_int,
            "isNaN": is_nan, "isFinite": is_finite, "console": console,
            "Infinity": math.inf, "NaN": math.nan, "undefined": UNDEFINED,
        }.items():
            scope.declare(name, value)
        return scope

    def _array_constructor(self, args):
        if len(args) == 1 and is_number(args[0]):
            size = _index(args[0])
            if size is None:
                raise CalculationError("RangeError: Invalid array length")
            return _check_size([UNDEFINED] * size)
        return list(args)

    def _array_from(self, args):
        source = _arg(args, 0)
        mapper = _arg(args, 1)
        if isinstance(source, list):
            items = list(source)
        elif isinstance(source, str):
            items = list(source)
        elif isinstance(source, dict):
            length = _index(to_number(source.get("length", 0))) or 0
            _check_size(range(length))
            items = [source.get(str(i), UNDEFINED) for i in range(length)]
        else:
            items = []
        _check_size(items)
        if mapper is not UNDEFINED:
            items = [self.call(mapper, [item, float(i)]) for i, item in enumerate(items)]
        return items

    # -- bookkeeping ----------------------------------------------------

    def _tick(self):
        self.steps += 1
        if self.steps > self.max_steps:
            raise ScriptBudgetExceeded(f"Calculation script exceeded {self.max_steps} evaluation steps")

    def _run_body(self, statements, scope: Scope):
        for statement in statements:
            if statement[0] == "funcdecl":
                func = statement[2]
                scope.declare(statement[1], JSFunction(func[1], func[2], func[3], func[4], scope))
        for statement in statements:
            self.execute(statement, scope)

    def execute(self, node, scope: Scope):
        self._tick()
        return self._statements[node[0]](node, scope)

    def evaluate(self, node, scope: Scope):
        self._tick()
        return self._expressions[node[0]](node, scope)

    # -- statements -----------------------------------------------------

    def _exec_block(self, node, scope):
        self._run_body(node[1], Scope(scope))

    def _bind(self, target, value, kind: str, scope: Scope):
        if kind == "var":
            scope = scope.function_scope()
        const = kind == "const"
        if isinstance(target, tuple):
            if not isinstance(value, (list, str)):
                raise CalculationError(f"TypeError: {to_string(value)} is not iterable")
            for index, name in enumerate(target[1]):
                if name is not None:
                    scope.declare(name, value[index] if index < len(value) else UNDEFINED, const)
        else:
            scope.declare(target, value, const)

    def _exec_var(self, node, scope):
        _, kind, declarations = node
        for target, init in declarations:
            value = self.evaluate(init, scope) if init is not None else UNDEFINED
            self._bind(target, value, kind, scope)

    def _exec_funcdecl(self, node, scope):
        # Hoisted in _run_body
        return None

    def _exec_return(self, node, scope):
        raise _Return(self.evaluate(node[1], scope) if node[1] is not None else UNDEFINED)

    def _exec_if(self, node, scope):
        _, test, consequent, alternate = node
        if truthy(self.evaluate(test, scope)):
            self.execute(consequent, scope)
        elif alternate is not None:
            self.execute(alternate, scope)

    def _loop_body(self, body, scope) -> bool:
        """Run one iteration; False means the loop was broken out of."""
        try:
            self.execute(body, scope)
        except _Break:
            return False
        except _Continue:
            pass
        return True

    @staticmethod
    def _next_iteration(loop_scope: Scope, parent: Scope) -> Scope:
        """Fresh copy of the loop's let/const bindings, so closures keep their own."""
        copy = Scope(parent)
        copy.vars = dict(loop_scope.vars)
        copy.consts = set(loop_scope.consts)
        return copy

    def _exec_for(self, node, scope):
        _, init, test, update, body = node
        loop_scope = Scope(scope)
        if init is not None:
            self.execute(init, loop_scope)
        per_iteration = init is not None and init[0] == "var" and init[1] in ("let", "const")
        if per_iteration:
            loop_scope = self._next_iteration(loop_scope, scope)
        while True:
            self._tick()
            if test is not None and not truthy(self.evaluate(test, loop_scope)):
                break
            if not self._loop_body(body, Scope(loop_scope)):
                break
            if per_iteration:
                loop_scope = self._next_iteration(loop_scope, scope)
            if update is not None:
                self.evaluate(update, loop_scope)

    def _iterate(self, value) -> List[Any]:
        if isinstance(value, list):
            return list(value)
        if isinstance(value, str):
            return list(value)
        raise CalculationError(f"TypeError: {to_string(value)} is not iterable")

    def _exec_forof(self, node, scope):
        _, kind, target, iterable, body = node
        for item in self._iterate(self.evaluate(iterable, scope)):
            self._tick()
            iteration = Scope(scope)
            self._bind(target, item, kind if kind != "var" else "let", iteration)
            if not self._loop_body(body, iteration):
                break

    def _exec_forin(self, node, scope):
        _, kind, target, obj, body = node
        for key in _object_keys([self.evaluate(obj, scope)]):
            self._tick()
            iteration = Scope(scope)
            self._bind(target, key, kind if kind != "var" else "let", iteration)
            if not self._loop_body(body, iteration):
                break

    def _exec_while(self, node, scope):
        _, test, body = node
        while True:
            self._tick()
            if not truthy(self.evaluate(test, scope)):
                break
            if not self._loop_body(body, Scope(scope)):
                break

    def _exec_break(self, node, scope):
        raise _Break()

    def _exec_continue(self, node, scope):
        raise _Continue()

    def _exec_throw(self, node, scope):
        value = self.evaluate(node[1], scope)
        if isinstance(value, dict) and "message" in value:
            value = value["message"]
        raise CalculationError(f"Calculation script threw: {to_string(value)}")

    def _exec_expr(self, node, scope):
        self.evaluate(node[1], scope)

    def _exec_empty(self, node, scope):
        return None

    # -- expressions ----------------------------------------------------

    def _eval_literal(self, node, scope):
        return node[1]

    def _eval_template(self, node, scope):
        pieces = []
        for part in node[1]:
            pieces.append(part if isinstance(part, str) else to_string(self.evaluate(part, scope)))
        return _check_size("".join(pieces))

    def _eval_name(self, node, scope):
        owner = scope.find(node[1])
        if owner is None:
            raise CalculationError(f"ReferenceError: {node[1]} is not defined")
        return owner.vars[node[1]]

    def _eval_array(self, node, scope):
        items = []
        for element in node[1]:
            if element[0] == "spread":
                items.extend(self._iterate(self.evaluate(element[1], scope)))
            else:
                items.append(self.evaluate(element, scope))
        return _check_size(items)

    def _eval_object(self, node, scope):
        result: Dict[str, Any] = {}
        for entry in node[1]:
            if entry[0] == "spread":
                source = self.evaluate(entry[1], scope)
                if isinstance(source, dict):
                    result.update(source)
                elif isinstance(source, (list, str)):
                    result.update({str(i): v for i, v in enumerate(source)})
                continue
            _, key_node, value_node = entry
            key = to_string(self.evaluate(key_node, scope))
            if key in BLOCKED_PROPERTIES:
                raise CalculationError(f"Property name '{key}' is not allowed")
            result[key] = self.evaluate(value_node, scope)
        return result

    def _eval_func(self, node, scope):
        _, name, params, body, expr_body = node
        return JSFunction(name, params, body, expr_body, scope)

    def _eval_member(self, node, scope):
        _, obj_node, prop_node, computed, optional = node
        obj = self.evaluate(obj_node, scope)
        if optional and (obj is None or obj is UNDEFINED):
            return UNDEFINED
        key = self.evaluate(prop_node, scope) if computed else prop_node[1]
        return self.get_property(obj, key)

    def _eval_call(self, node, scope):
        _, callee_node, arg_nodes, optional = node
        fn = self.evaluate(callee_node, scope)
        if optional and (fn is None or fn is UNDEFINED):
            return UNDEFINED
        args = []
        for arg in arg_nodes:
            if arg[0] == "spread":
                args.extend(self._iterate(self.evaluate(arg[1], scope)))
            else:
                args.append(self.evaluate(arg, scope))
        return self.call(fn, args, callee_node)

    def _eval_unary(self, node, scope):
        _, operator, operand = node
        if operator == "typeof":
            if operand[0] == "name" and scope.find(operand[1]) is None:
                return "undefined"
            return type_of(self.evaluate(operand, scope))
        value = self.evaluate(operand, scope)
        if operator == "!":
            return not truthy(value)
        if operator == "-":
            return -to_number(value)
        return to_number(value)

    def _eval_binary(self, node, scope):
        _, operator, left, right = node
        return self.binary(operator, self.evaluate(left, scope), self.evaluate(right, scope))

    def binary(self, operator: str, a, b):
        if operator == "+":
            if isinstance(a, (str, list, dict)) or isinstance(b, (str, list, dict)):
                return _check_size(to_string(a) + to_string(b))
            return to_number(a) + to_number(b)
        if operator == "-":
            return to_number(a) - to_number(b)
        if operator == "*":
            return to_number(a) * to_number(b)
        if operator == "/":
            return js_divide(to_number(a), to_number(b))
        if operator == "%":
            return js_modulo(to_number(a), to_number(b))
        if operator == "**":
            return js_power(to_number(a), to_number(b))
        if operator == "===":
            return strict_equals(a, b)
        if operator == "!==":
            return not strict_equals(a, b)
        if operator == "==":
            return loose_equals(a, b)
        if operator == "!=":
            return not loose_equals(a, b)
        if isinstance(a, str) and isinstance(b, str):
            x, y = a, b
        else:
            x, y = to_number(a), to_number(b)
        if operator == "<":
            return x < y
        if operator == ">":
            return x > y
        if operator == "<=":
            return x <= y
        if operator == ">=":
            return x >= y
        raise CalculationError(f"Unsupported operator {operator}")

    def _eval_logical(self, node, scope):
        _, operator, left, right = node
        value = self.evaluate(left, scope)
        if operator == "&&":
            return self.evaluate(right, scope) if truthy(value) else value
        if operator == "||":
            return value if truthy(value) else self.evaluate(right, scope)
        return self.evaluate(right, scope) if value is None or value is UNDEFINED else value

    def _eval_cond(self, node, scope):
        _, test, consequent, alternate = node
        return self.evaluate(consequent if truthy(self.evaluate(test, scope)) else alternate, scope)

    def _eval_assign(self, node, scope):
        _, operator, target, value_node = node
        if operator == "=":
            value = self.evaluate(value_node, scope)
        else:
            current = self.evaluate(target, scope)
            value = self.binary(operator[:-1], current, self.evaluate(value_node, scope))
        self.store(target, value, scope)
        return value

    def _eval_update(self, node, scope):
        _, operator, prefix, target = node
        old = to_number(self.evaluate(target, scope))
        new = old + 1 if operator == "++" else old - 1
        self.store(target, new, scope)
        return new if prefix else old

    def _eval_seq(self, node, scope):
        value = UNDEFINED
        for item in node[1]:
            value = self.evaluate(item, scope)
        return value

    # -- assignment -----------------------------------------------------

    def store(self, target, value, scope: Scope):
        if target[0] == "name":
            name = target[1]
            owner = scope.find(name)
            if owner is None:
                # Sloppy-mode implicit declaration, kept inside the script's own scope
                scope.function_scope().declare(name, value)
                return
            if name in owner.consts:
                raise CalculationError(f"TypeError: Assignment to constant variable '{name}'")
            if owner.parent is None:
                raise CalculationError(f"TypeError: '{name}' is read-only")
            owner.vars[name] = value
            return
        _, obj_node, prop_node, computed, _ = target
        obj = self.evaluate(obj_node, scope)
        key = self.evaluate(prop_node, scope) if computed else prop_node[1]
        self.set_property(obj, key, value)

    def set_property(self, obj, key, value):
        if isinstance(obj, list):
            index = _index(key)
            if index is not None:
                if index >= MAX_COLLECTION_SIZE:
                    raise ScriptBudgetExceeded(f"Array index {index} is past the {MAX_COLLECTION_SIZE} element limit")
                if index >= len(obj):
                    obj.extend([UNDEFINED] * (index - len(obj) + 1))
                obj[index] = value
                return
            if key == "length":
                length = _index(to_number(value))
                if length is None:
                    raise CalculationError("RangeError: Invalid array length")
                if length < len(obj):
                    del obj[length:]
                else:
                    obj.extend([UNDEFINED] * (length - len(obj)))
                _check_size(obj)
                return
            raise CalculationError(f"Cannot set property '{to_string(key)}' on an array")
        if isinstance(obj, dict):
            name = to_string(key)
            if name in BLOCKED_PROPERTIES:
                raise CalculationError(f"Property name '{name}' is not allowed")
            obj[name] = value
            return
        if obj is None or obj is UNDEFINED:
            raise CalculationError(f"TypeError: Cannot set properties of {to_string(obj)} (setting '{to_string(key)}')")
        raise CalculationError(f"TypeError: Cannot set property '{to_string(key)}' on a {type_of(obj)}")

    # -- property access ------------------------------------------------

    def get_property(self, obj, key):
        name = to_string(key) if not isinstance(key, str) else key
        if name in BLOCKED_PROPERTIES:
            return UNDEFINED
        if obj is None or obj is UNDEFINED:
            raise CalculationError(f"TypeError: Cannot read properties of {to_string(obj)} (reading '{name}')")
        if isinstance(obj, list):
            index = _index(key)
            if index is not None:
                return obj[index] if index < len(obj) else UNDEFINED
            if name == "length":
                return float(len(obj))
            return self._array_method(obj, name)
        if isinstance(obj, str):
            index = _index(key)
            if index is not None:
                return obj[index] if index < len(obj) else UNDEFINED
            if name == "length":
                return float(len(obj))
            return self._string_method(obj, name)
        if isinstance(obj, dict):
            return obj.get(name, UNDEFINED)
        if isinstance(obj, bool):
            if name == "toString":
                return NativeFunction(name, lambda args: to_string(obj))
            return UNDEFINED
        if is_number(obj):
            return self._number_method(float(obj), name)
        if isinstance(obj, NativeFunction):
            return obj.properties.get(name, UNDEFINED)
        return UNDEFINED

    def call(self, fn, args: List[Any], callee_node=None):
        if isinstance(fn, NativeFunction):
            self._tick()
            return fn.fn(args)
        if isinstance(fn, JSFunction):
            if self.depth >= self.max_depth:
                raise ScriptBudgetExceeded(f"Calculation script exceeded call depth {self.max_depth}")
            self.depth += 1
            try:
                scope = Scope(fn.closure, is_function=True)
                for index, (name, default) in enumerate(fn.params):
                    value = args[index] if index < len(args) else UNDEFINED
                    if value is UNDEFINED and default is not None:
                        value = self.evaluate(default, scope)
                    scope.declare(name, value)
                if fn.expr_body:
                    return self.evaluate(fn.body, scope)
                try:
                    self._run_body(fn.body[1], scope)
                except _Return as result:
                    return result.value
                return UNDEFINED
            finally:
                self.depth -= 1
        label = _describe(callee_node) if callee_node is not None else to_string(fn)
        raise CalculationError(f"TypeError: {label} is not a function")

    def _number_method(self, x: float, name: str):
        if name == "toFixed":
            def to_fixed(args):
                digits = to_number(_arg(args, 0, 0.0))
                digits = 0 if math.isnan(digits) else _js_trunc(digits)
                if not 0 <= digits <= 100:
                    raise CalculationError("RangeError: toFixed() digits argument must be between 0 and 100")
                return to_fixed_string(x, int(digits))
            return NativeFunction(name, to_fixed)
        if name == "toPrecision":
            def to_precision(args):
                if _arg(args, 0) is UNDEFINED:
                    return number_to_string(x)
                precision = int(to_number(args[0]))
                if not 1 <= precision <= 100:
                    raise CalculationError("RangeError: toPrecision() argument must be between 1 and 100")
                if math.isnan(x) or math.isinf(x):
                    return number_to_string(x)
                text = f"{x:#.{precision}g}".rstrip(".")
                return re.sub(r"e([+-])0*(\d)", r"e\1\2", text)
            return NativeFunction(name, to_precision)
        if name == "toString":
            return NativeFunction(name, lambda args: number_to_string(x))
        return UNDEFINED

    def _string_method(self, s: str, name: str):
        def arg_str(args, index, default=""):
            value = _arg(args, index)
            return default if value is UNDEFINED else to_string(value)

        def slice_bounds(args):
            start = int(to_number(_arg(args, 0, 0.0)))
            end_arg = _arg(args, 1)
            end = len(s) if end_arg is UNDEFINED else int(to_number(end_arg))
            return start, end

        methods: Dict[str, Callable[[List[Any]], Any]] = {
            "toUpperCase": lambda args: s.upper(),
            "toLowerCase": lambda args: s.lower(),
            "trim": lambda args: s.strip(),
            "toString": lambda args: s,
            "includes": lambda args: arg_str(args, 0) in s,
            "startsWith": lambda args: s.startswith(arg_str(args, 0)),
            "endsWith": lambda args: s.endswith(arg_str(args, 0)),
            "indexOf": lambda args: float(s.find(arg_str(args, 0))),
            "charAt": lambda args: s[int(to_number(_arg(args, 0, 0.0)))] if 0 <= int(to_number(_arg(args, 0, 0.0))) < len(s) else "",
            "slice": lambda args: s[slice(*slice_bounds(args))],
            "substring": lambda args: s[max(0, min(slice_bounds(args))):max(0, max(slice_bounds(args)))],
            "split": lambda args: list(s) if arg_str(args, 0) == "" and _arg(args, 0) is not UNDEFINED else ([s] if _arg(args, 0) is UNDEFINED else s.split(arg_str(args, 0))),
            "concat": lambda args: _check_size(s + "".join(to_string(a) for a in args)),
            "repeat": lambda args: _check_size(s * max(0, min(int(to_number(_arg(args, 0, 0.0))), MAX_COLLECTION_SIZE + 1))),
            "padStart": lambda args: _check_size(s.rjust(min(int(to_number(_arg(args, 0, 0.0))), MAX_COLLECTION_SIZE + 1), (arg_str(args, 1, " ") or " ")[0])),
            "padEnd": lambda args: _check_size(s.ljust(min(int(to_number(_arg(args, 0, 0.0))), MAX_COLLECTION_SIZE + 1), (arg_str(args, 1, " ") or " ")[0])),
            "replace": lambda args: s.replace(arg_str(args, 0), arg_str(args, 1), 1),
        }
        if name in methods:
            return NativeFunction(name, methods[name])
        return UNDEFINED

    def _array_method(self, arr: List[Any], name: str):
        call = self.call

        def callback(args):
            fn = _arg(args, 0)
            if not isinstance(fn, (JSFunction, NativeFunction)):
                raise CalculationError(f"TypeError: {to_string(fn)} is not a function")
            return fn

        def map_(args):
            fn = callback(args)
            return [call(fn, [item, float(i), arr]) for i, item in enumerate(list(arr))]

        def filter_(args):
            fn = callback(args)
            return [item for i, item in enumerate(list(arr)) if truthy(call(fn, [item, float(i), arr]))]

        def for_each(args):
            fn = callback(args)
            for i, item in enumerate(list(arr)):
                call(fn, [item, float(i), arr])
            return UNDEFINED

        def reduce_(args):
            fn = callback(args)
            items = list(arr)
            if len(args) > 1:
                acc = args[1]
                start = 0
            elif items:
                acc = items[0]
                start = 1
            else:
                raise CalculationError("TypeError: Reduce of empty array with no initial value")
            for i in range(start, len(items)):
                acc = call(fn, [acc, items[i], float(i), arr])
            return acc

        def some(args):
            fn = callback(args)
            return any(truthy(call(fn, [item, float(i), arr])) for i, item in enumerate(list(arr)))

        def every(args):
            fn = callback(args)
            return all(truthy(call(fn, [item, float(i), arr])) for i, item in enumerate(list(arr)))

        def find(args):
            fn = callback(args)
            for i, item in enumerate(list(arr)):
                if truthy(call(fn, [item, float(i), arr])):
                    return item
            return UNDEFINED

        def find_index(args):
            fn = callback(args)
            for i, item in enumerate(list(arr)):
                if truthy(call(fn, [item, float(i), arr])):
                    return float(i)
            return -1.0

        def bounds(args, length):
            def clamp(value, default):
                if value is UNDEFINED:
                    return default
                n = to_number(value)
                if math.isnan(n):
                    return 0
                n = int(n) if math.isfinite(n) else (length if n > 0 else -length)
                return max(0, length + n) if n < 0 else min(n, length)
            return clamp(_arg(args, 0), 0), clamp(_arg(args, 1), length)

        def slice_(args):
            start, end = bounds(args, len(arr))
            return arr[start:end]

        def concat(args):
            result = list(arr)
            for value in args:
                if isinstance(value, list):
                    result.extend(value)
                else:
                    result.append(value)
            return _check_size(result)

        def index_of(args):
            target = _arg(args, 0)
            for i, item in enumerate(arr):
                if strict_equals(item, target):
                    return float(i)
            return -1.0

        def includes(args):
            target = _arg(args, 0)
            for item in arr:
                if strict_equals(item, target):
                    return True
                if is_number(item) and is_number(target) and math.isnan(item) and math.isnan(target):
                    return True
            return False

        def join(args):
            separator = "," if _arg(args, 0) is UNDEFINED else to_string(args[0])
            return _check_size(separator.join("" if v is None or v is UNDEFINED else to_string(v) for v in arr))

        def push(args):
            arr.extend(args)
            _check_size(arr)
            return float(len(arr))

        def pop(args):
            return arr.pop() if arr else UNDEFINED

        def shift(args):
            return arr.pop(0) if arr else UNDEFINED

        def unshift(args):
            arr[0:0] = args
            _check_size(arr)
            return float(len(arr))

        def sort(args):
            fn = _arg(args, 0)
            if fn is UNDEFINED:
                arr.sort(key=to_string)
            else:
                def compare(a, b):
                    result = to_number(call(fn, [a, b]))
                    return 0 if math.isnan(result) else (1 if result > 0 else -1 if result < 0 else 0)
                arr.sort(key=functools.cmp_to_key(compare))
            return arr

        def reverse(args):
            arr.reverse()
            return arr

        def fill(args):
            value = _arg(args, 0)
            start, end = bounds(args[1:], len(arr))
            for i in range(start, end):
                arr[i] = value
            return arr

        methods = {
            "map": map_, "filter": filter_, "forEach": for_each, "reduce": reduce_,
            "some": some, "every": every, "find": find, "findIndex": find_index,
            "slice": slice_, "concat": concat, "indexOf": index_of, "includes": includes,
            "join": join, "push": push, "pop": pop, "shift": shift, "unshift": unshift,
            "sort": sort, "reverse": reverse, "fill": fill, "toString": join,
        }
        if name in methods:
            return NativeFunction(name, methods[name])
        return UNDEFINED


def _describe(node) -> str:
    if node[0] == "name":
        return node[1]
    if node[0] == "member" and not node[3]:
        return f"{_describe(node[1])}.{node[2][1]}"
    return "expression"


def export_value(value):
    """Convert a script value into the Python value reported to the template engine."""
    if isinstance(value, bool):
        return value
    if is_number(value):
        return float(value)
    if isinstance(value, str):
        return value
    return to_string(value)


class CalculationScript:
    """A parsed calculation script, ready to be run against table rows."""

    def __init__(self, source: str):
        self.source = source
        self.program = parse_script(source)

    def run(self, rows: Sequence[Sequence[float]], max_steps: int = MAX_STEPS) -> Dict[str, Any]:
        """
        Run the script against a copy of `rows`.

        Returns:
            Mapping of result name to float, str or bool

        Raises:
            CalculationError: any runtime failure, budget overrun or non-object return
        """
        table = [[float(v) for v in row] for row in rows]
        result = Interpreter(max_steps=max_steps).run(self.program, table)
        if not isinstance(result, dict):
            raise CalculationError(
                f"Calculation script must return an object of results, got {type_of(result)}"
            )
        return {key: export_value(value) for key, value in result.items()}
