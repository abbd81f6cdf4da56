"""
formlogic/expression_parser.py

PEG grammar (arpeggio) for the restricted expression language, the AST it
produces, and a thread-safe LRU cache of parsed ASTs keyed by expression text.

Precedence (lowest first):
  1. iife / conditional   (a ? b : c)
  2. nullish              (??)
  3. logical or           (||)
  4. logical and          (&&)
  5. equality             (=== !== == !=)
  6. relational           (< > <= >=)
  7. additive             (+ -)
  8. multiplicative       (* / %)
  9. unary                (! - + typeof)
 10. postfix              (.x  ?.x  [i]  ?.[i]  (args))
 11. primary              (literal, array, identifier, (expr))

Deliberately absent: object literals, assignment, loops, free function
definitions. The only function form is a self-invoking body of const/let
declarations followed by a return.
"""

from __future__ import annotations

import hashlib
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Tuple

from arpeggio import EOF, NoMatch, Optional, ParserPython, PTNodeVisitor, Terminal, ZeroOrMore, visit_parse_tree
from arpeggio import RegExMatch as _

from .canonical import canonicalize_expression
from .config import get_config
from .diagnostics import get_logger
from .errors import ExpressionSyntaxError
from .operator_lexicon import RESERVED_WORDS
from .values import UNDEFINED

logger = get_logger("expressions")

# ==========================================
# AST
# ==========================================
# Nodes are frozen: one cached AST is shared by every evaluation.


class Node:
    """Base class for AST nodes."""

    __slots__ = ()


@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class Identifier(Node):
    name: str


@dataclass(frozen=True)
class ArrayLiteral(Node):
    elements: Tuple[Node, ...]


@dataclass(frozen=True)
class Member(Node):
    object: Node
    property: str
    optional: bool = False


@dataclass(frozen=True)
class Index(Node):
    object: Node
    index: Node
    optional: bool = False


@dataclass(frozen=True)
class Call(Node):
    callee: Node
    args: Tuple[Node, ...]
    optional: bool = False


@dataclass(frozen=True)
class OptionalChain(Node):
    """Boundary of a chain containing ?. links; a nullish link ends the whole chain."""

    expression: Node


@dataclass(frozen=True)
class Unary(Node):
    op: str
    operand: Node


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Logical(Node):
    op: str  # && || ??
    left: Node
    right: Node


@dataclass(frozen=True)
class Conditional(Node):
    test: Node
    consequent: Node
    alternate: Node


@dataclass(frozen=True)
class Declaration(Node):
    kind: str  # const | let
    name: str
    value: Node


@dataclass(frozen=True)
class FunctionBody(Node):
    declarations: Tuple[Declaration, ...]
    result: Node


@dataclass(frozen=True)
class Iife(Node):
    body: FunctionBody


# ==========================================
# GRAMMAR (arpeggio, Python-defined)
# ==========================================

_RESERVED = "|".join(sorted(RESERVED_WORDS, key=len, reverse=True))


def identifier():
    # Reserved words are never identifiers
    return _(r"(?!(?:{})\b)[A-Za-z_$][\w$]*".format(_RESERVED))


def property_name():
    # After '.', keywords are fine (obj.return is a plain key)
    return _(r"[A-Za-z_$][\w$]*")


def number():
    return _(r"(?:\d+(?:\.\d+)?|\.\d+)(?:[eE][+-]?\d+)?")


def string_literal():
    return _(r"'(?:[^'\\]|\\.)*'" + "|" + r'"(?:[^"\\]|\\.)*"')


def keyword_literal():
    return _(r"(?:true|false|null|undefined)\b")


def array_literal():
    return "[", Optional(expression, ZeroOrMore(",", expression), Optional(",")), "]"


def group():
    return "(", expression, ")"


def declaration_keyword():
    return _(r"(?:const|let)\b")


def assign_op():
    # '=' but not '==' / '=>'
    return _(r"=(?![=>])")


def declaration():
    return declaration_keyword, identifier, assign_op, expression, Optional(";")


def return_statement():
    return _(r"return\b"), expression, Optional(";")


def function_body():
    return "{", ZeroOrMore(declaration), return_statement, "}"


def arrow_function():
    return "(", ")", "=>", [function_body, expression]


def function_expression():
    return _(r"function\b"), "(", ")", function_body


def iife():
    return "(", [arrow_function, function_expression], ")", "(", ")"


def primary():
    # iife before group: both open with '('
    return [iife, number, string_literal, keyword_literal, array_literal, identifier, group]


def optional_chain_op():
    # '?.' but not the ternary '?' followed by a decimal like '.5'
    return _(r"\?\.(?!\d)")


def member_access():
    return ".", property_name


def optional_member():
    return optional_chain_op, property_name


def index_access():
    return "[", expression, "]"


def optional_index():
    return optional_chain_op, "[", expression, "]"


def call_arguments():
    return "(", Optional(expression, ZeroOrMore(",", expression)), ")"


def optional_call():
    return optional_chain_op, call_arguments


def postfix():
    return primary, ZeroOrMore([optional_index, optional_call, optional_member, member_access, index_access, call_arguments])


def unary_op():
    return _(r"typeof\b|!(?!=)|[-+]")


def unary():
    # Stacked unary ops allowed (!!x, - -x)
    return ZeroOrMore(unary_op), postfix


def multiplicative_op():
    return _(r"[*/%]")


def multiplicative():
    return unary, ZeroOrMore(multiplicative_op, unary)


def additive_op():
    return _(r"[+-]")


def additive():
    return multiplicative, ZeroOrMore(additive_op, multiplicative)


def relational_op():
    return _(r"<=|>=|<|>")


def relational():
    return additive, ZeroOrMore(relational_op, additive)


def equality_op():
    return _(r"===|!==|==|!=")


def equality():
    return relational, ZeroOrMore(equality_op, relational)


def and_op():
    return _(r"&&")


def logical_and():
    return equality, ZeroOrMore(and_op, equality)


def or_op():
    return _(r"\|\|")


def logical_or():
    return logical_and, ZeroOrMore(or_op, logical_and)


def nullish_op():
    return _(r"\?\?")


def nullish():
    return logical_or, ZeroOrMore(nullish_op, logical_or)


def ternary_op():
    # '?' that is neither '??' nor '?.' (a '?.5' decimal still counts as ternary)
    return _(r"\?(?!\?|\.(?!\d))")


def conditional():
    # Right-associative: a ? b : c ? d : e
    return nullish, Optional(ternary_op, conditional, ":", conditional)


def expression():
    return conditional


def expression_text():
    return expression, Optional(";"), EOF


# ==========================================
# VISITOR (parse tree -> AST)
# ==========================================

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}


def _unescape(body: str) -> str:
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\" or i + 1 >= len(body):
            out.append(ch)
            i += 1
            continue
        nxt = body[i + 1]
        if nxt == "u" and len(body) >= i + 6:
            try:
                out.append(chr(int(body[i + 2:i + 6], 16)))
                i += 6
                continue
            except ValueError:
                pass
        out.append(_ESCAPES.get(nxt, nxt))
        i += 2
    return "".join(out)


def _flatten(children):
    # Arpeggio nests ZeroOrMore/Optional groups as lists; AST nodes are never lists
    flat = []
    for x in children:
        if isinstance(x, list):
            flat.extend(_flatten(x))
        else:
            flat.append(x)
    return flat


@dataclass(frozen=True)
class _Link:
    """One postfix step, before it is attached to its receiver."""

    kind: str  # member | index | call
    payload: Any
    optional: bool = False


class ASTBuilder(PTNodeVisitor):
    """Turns an arpeggio parse tree into frozen AST nodes."""

    def visit__default__(self, node, children):
        # Punctuation and keywords without a visitor carry no value
        if isinstance(node, Terminal):
            return None
        if len(children) == 1:
            return children[0]
        return list(children)

    # --- terminals ---

    def visit_identifier(self, node, children):
        return Identifier(node.value)

    def visit_property_name(self, node, children):
        return node.value

    def visit_number(self, node, children):
        text = node.value
        if any(c in text for c in ".eE"):
            return Literal(float(text))
        return Literal(int(text))

    def visit_string_literal(self, node, children):
        return Literal(_unescape(node.value[1:-1]))

    def visit_keyword_literal(self, node, children):
        return Literal({"true": True, "false": False, "null": None, "undefined": UNDEFINED}[node.value])

    def visit_declaration_keyword(self, node, children):
        return node.value

    def visit_unary_op(self, node, children):
        return node.value

    def visit_multiplicative_op(self, node, children):
        return node.value

    def visit_additive_op(self, node, children):
        return node.value

    def visit_relational_op(self, node, children):
        return node.value

    def visit_equality_op(self, node, children):
        return node.value

    def visit_and_op(self, node, children):
        return node.value

    def visit_or_op(self, node, children):
        return node.value

    def visit_nullish_op(self, node, children):
        return node.value

    # --- primaries ---

    def visit_array_literal(self, node, children):
        return ArrayLiteral(tuple(_flatten(children)))

    def visit_group(self, node, children):
        return _flatten(children)[0]

    def visit_primary(self, node, children):
        return _flatten(children)[0]

    def visit_declaration(self, node, children):
        kind, ident, value = _flatten(children)
        return Declaration(kind, ident.name, value)

    def visit_return_statement(self, node, children):
        return _flatten(children)[0]

    def visit_function_body(self, node, children):
        flat = _flatten(children)
        return FunctionBody(tuple(flat[:-1]), flat[-1])

    def visit_arrow_function(self, node, children):
        body = _flatten(children)[0]
        if not isinstance(body, FunctionBody):
            # Expression-bodied arrow
            body = FunctionBody((), body)
        return body

    def visit_function_expression(self, node, children):
        return _flatten(children)[0]

    def visit_iife(self, node, children):
        return Iife(_flatten(children)[0])

    # --- postfix chain ---

    def visit_member_access(self, node, children):
        return _Link("member", _flatten(children)[0])

    def visit_optional_member(self, node, children):
        return _Link("member", _flatten(children)[0], optional=True)

    def visit_index_access(self, node, children):
        return _Link("index", _flatten(children)[0])

    def visit_optional_index(self, node, children):
        return _Link("index", _flatten(children)[0], optional=True)

    def visit_call_arguments(self, node, children):
        return _Link("call", tuple(_flatten(children)))

    def visit_optional_call(self, node, children):
        link = _flatten(children)[0]
        return _Link("call", link.payload, optional=True)

    def visit_postfix(self, node, children):
        flat = _flatten(children)
        result = flat[0]
        has_optional = False
        for link in flat[1:]:
            has_optional = has_optional or link.optional
            if link.kind == "member":
                result = Member(result, link.payload, link.optional)
            elif link.kind == "index":
                result = Index(result, link.payload, link.optional)
            else:
                result = Call(result, link.payload, link.optional)
        if has_optional:
            return OptionalChain(result)
        return result

    # --- operators ---

    def visit_unary(self, node, children):
        flat = _flatten(children)
        result = flat[-1]
        for op in reversed(flat[:-1]):
            result = Unary(op, result)
        return result

    def _fold_binary(self, children, node_type=Binary):
        """Left-associative fold: (((L op1 R1) op2 R2) ...)."""
        flat = _flatten(children)
        result = flat[0]
        i = 1
        while i < len(flat):
            result = node_type(flat[i], result, flat[i + 1])
            i += 2
        return result

    def visit_multiplicative(self, node, children):
        return self._fold_binary(children)

    def visit_additive(self, node, children):
        return self._fold_binary(children)

    def visit_relational(self, node, children):
        return self._fold_binary(children)

    def visit_equality(self, node, children):
        return self._fold_binary(children)

    def visit_logical_and(self, node, children):
        return self._fold_binary(children, Logical)

    def visit_logical_or(self, node, children):
        return self._fold_binary(children, Logical)

    def visit_nullish(self, node, children):
        return self._fold_binary(children, Logical)

    def visit_conditional(self, node, children):
        flat = _flatten(children)
        if len(flat) == 1:
            return flat[0]
        test, consequent, alternate = flat
        return Conditional(test, consequent, alternate)

    def visit_expression(self, node, children):
        # expression is an alias of conditional; the node may carry either name
        return self.visit_conditional(node, children)

    def visit_expression_text(self, node, children):
        return _flatten(children)[0]


# ==========================================
# PARSER + AST CACHE
# ==========================================
# Expressions are re-evaluated on every state change, so parsing once per
# distinct text matters. Cache is module-level: an AST is a pure function of
# the text, it never holds form state.

_AST_CACHE: "OrderedDict[str, Node]" = OrderedDict()
_AST_CACHE_LOCK = threading.Lock()
_PARSER_LOCK = threading.Lock()

# Grammar version tracking for cache invalidation
GRAMMAR_VERSION = "1.0.0"  # Increment when grammar changes
_GRAMMAR_HASH = hashlib.sha256(GRAMMAR_VERSION.encode()).hexdigest()[:8]

_GLOBAL_PARSER = None


def _get_or_create_parser() -> ParserPython:
    """Get global parser instance, creating it if needed."""
    global _GLOBAL_PARSER
    with _PARSER_LOCK:
        if _GLOBAL_PARSER is None:
            _GLOBAL_PARSER = ParserPython(expression_text, ignore_case=False)
    return _GLOBAL_PARSER


def _parse_uncached(text: str) -> Node:
    parser = _get_or_create_parser()
    # Arpeggio parser state is not re-entrant
    with _PARSER_LOCK:
        try:
            tree = parser.parse(text)
        except NoMatch as e:
            raise ExpressionSyntaxError(f"Invalid expression syntax: {e}", text, getattr(e, "position", 0)) from e
    try:
        return visit_parse_tree(tree, ASTBuilder())
    except ExpressionSyntaxError:
        raise
    except Exception as e:
        raise ExpressionSyntaxError(f"Could not build expression tree: {e}", text, 0) from e


def parse_expression(expression: str) -> Node:
    """
    Parse expression text into an AST, using the shared cache.

    Raises ExpressionSyntaxError for empty or malformed text.
    """
    if not isinstance(expression, str):
        raise ExpressionSyntaxError(f"Expression must be a string, got {type(expression).__name__}", repr(expression))
    text = canonicalize_expression(expression)
    if not text:
        raise ExpressionSyntaxError("Empty expression", expression, 0)

    cache_key = f"{_GRAMMAR_HASH}:{text}"
    with _AST_CACHE_LOCK:
        if cache_key in _AST_CACHE:
            _AST_CACHE.move_to_end(cache_key)
            return _AST_CACHE[cache_key]

    ast = _parse_uncached(text)
    logger.debug("Parsed expression %r", text)

    with _AST_CACHE_LOCK:
        if cache_key in _AST_CACHE:
            _AST_CACHE.move_to_end(cache_key)
            return _AST_CACHE[cache_key]
        max_size = max(1, get_config().ast_cache_max_size)
        while len(_AST_CACHE) >= max_size:
            _AST_CACHE.popitem(last=False)
        _AST_CACHE[cache_key] = ast
    return ast


def ast_cache_info() -> dict:
    with _AST_CACHE_LOCK:
        return {"size": len(_AST_CACHE), "max_size": get_config().ast_cache_max_size}


def clear_ast_cache() -> None:
    with _AST_CACHE_LOCK:
        _AST_CACHE.clear()
