#!/usr/bin/env python3
"""
chainsafe - add optional chaining to JavaScript / TypeScript sources

High-level flow:
- Parse JS / JSX / TS / TSX (via tree-sitter) into a concrete syntax tree
- Classify bindings by the shape of their declaration
- Decide, per member access, whether a `?.` guard should be inserted
- Splice the guards into the original text and repeat until nothing changes

The rewrite is a heuristic, not a type check. Only insertions are ever made,
so the formatting of the input survives untouched.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple
import argparse
import bisect
import functools
import json
import os
import re
import sys
import time

import tree_sitter_javascript
import tree_sitter_typescript
import yaml
from tree_sitter import Language, Node, Parser, Tree


__version__ = "0.1.0"

DEFAULT_MAX_ITERATIONS = 5
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
BINARY_SNIFF_BYTES = 4096

SUPPORTED_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx")
IGNORED_DIRECTORIES = frozenset({"node_modules", ".git", "dist", "build"})
DECLARATION_FILE_SUFFIX = ".d.ts"
FILE_TYPES = ("js", "ts")

CONFIG_ENV_VAR = "CHAINSAFE_CONFIG"

DEFAULT_BUILTIN_GLOBALS = frozenset({
    "Array", "Object", "String", "Number", "Boolean",
    "Date", "Math", "JSON", "RegExp", "Error",
    "Map", "Set", "WeakMap", "WeakSet", "Symbol",
    "Promise", "Proxy", "Reflect", "BigInt",
    "Function", "console", "Buffer", "process",
})

IDENTIFIER_PATTERN = re.compile(r"[a-zA-Z_$][a-zA-Z0-9_$]*")

CONVERGED = "converged"
CAP_REACHED = "cap-reached"

MIXED_MODULES_WARNING = "Mixed imports/requires"


# ============================================================
# ========================= ERRORS ===========================
# ============================================================

class ChainsafeError(Exception):
    """Base class for every error chainsafe reports."""


class ConfigError(ChainsafeError):
    """Invalid option values or option combinations. Fatal for the whole run."""


class ParseError(ChainsafeError):
    """
    The grammar rejected the source text. Only the file being processed is
    affected; it is left untouched.
    """

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ) -> None:
        self.message = message
        self.path = path
        self.line = line
        self.column = column
        super().__init__(str(self))

    def __str__(self) -> str:
        where = self.path or "<source>"
        if self.line is not None:
            where = f"{where}:{self.line}:{self.column}"
        return f"{where}: {self.message}"


class TraversalError(ChainsafeError):
    """
    The decision engine met a node it could not make sense of.
    Carries the node kind and the character offset range of the node.
    """

    phase = "traverse"

    def __init__(self, node_kind: str, start: int, end: int, detail: str = "") -> None:
        self.node_kind = node_kind
        self.start = start
        self.end = end
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        text = f"unexpected {self.node_kind} at offsets {self.start}-{self.end}"
        if self.detail:
            text = f"{text}: {self.detail}"
        return text


# ============================================================
# ==================== SOURCE & PARSING ======================
# ============================================================

_LANGUAGE_FACTORIES: Dict[str, Callable[[], Any]] = {
    "javascript": tree_sitter_javascript.language,
    "typescript": tree_sitter_typescript.language_typescript,
    "tsx": tree_sitter_typescript.language_tsx,
}

DIALECTS = tuple(_LANGUAGE_FACTORIES)


def dialect_for_path(path: str) -> str:
    """
    Pick the grammar for a file. The JavaScript grammar accepts JSX, so
    .js and .jsx share it; TypeScript needs a separate grammar for .tsx.
    """
    lowered = path.lower()
    if lowered.endswith(".tsx"):
        return "tsx"
    if lowered.endswith(".ts"):
        return "typescript"
    return "javascript"


def is_typescript_path(path: str) -> bool:
    return dialect_for_path(path) != "javascript"


@functools.lru_cache(maxsize=None)
def _get_parser(dialect: str) -> Parser:
    try:
        factory = _LANGUAGE_FACTORIES[dialect]
    except KeyError:
        raise ValueError(f"unknown dialect {dialect!r}; expected one of {DIALECTS}") from None
    return Parser(Language(factory()))


@dataclass
class SourceText:
    """
    The text of one iteration together with its UTF-8 encoding.
    tree-sitter reports byte offsets; insertions are made on characters.
    """
    text: str
    data: bytes = field(init=False, repr=False)
    _char_starts: Optional[List[int]] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.data = self.text.encode("utf-8")

    @property
    def is_ascii(self) -> bool:
        return len(self.data) == len(self.text)

    def char_offset(self, byte_offset: int) -> int:
        if self.is_ascii:
            return byte_offset
        if self._char_starts is None:
            # byte offset at which each character starts
            starts: List[int] = []
            position = 0
            for char in self.text:
                starts.append(position)
                position += len(char.encode("utf-8"))
            self._char_starts = starts
        return bisect.bisect_left(self._char_starts, byte_offset)

    def node_text(self, node: Node) -> str:
        return self.data[node.start_byte:node.end_byte].decode("utf-8")


@dataclass
class ParsedSource:
    source: SourceText
    tree: Tree = field(repr=False)
    dialect: str
    path: Optional[str] = None

    @property
    def root(self) -> Node:
        return self.tree.root_node

    def text_of(self, node: Node) -> str:
        return self.source.node_text(node)

    def offset_range(self, node: Node) -> Tuple[int, int]:
        return self.source.char_offset(node.start_byte), self.source.char_offset(node.end_byte)


def walk_tree(root: Node) -> Iterator[Node]:
    """Pre-order, document-order walk without recursion."""
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def parse_source(text: str, dialect: str = "javascript", path: Optional[str] = None) -> ParsedSource:
    """
    Parse `text` with the grammar for `dialect`.
    Raises ParseError at the first syntax error tree-sitter recovered from.
    """
    source = SourceText(text)
    tree = _get_parser(dialect).parse(source.data)
    if tree.root_node.has_error:
        bad = _first_error_node(tree.root_node)
        if bad is None:
            raise ParseError("syntax error", path=path)
        row, column = bad.start_point[0], bad.start_point[1]
        what = f"missing {bad.type}" if bad.is_missing else "unexpected syntax"
        raise ParseError(what, path=path, line=row + 1, column=column + 1)
    return ParsedSource(source=source, tree=tree, dialect=dialect, path=path)


def _first_error_node(root: Node) -> Optional[Node]:
    for node in walk_tree(root):
        if node.type == "ERROR" or node.is_missing:
            return node
    return None


# ============================================================
# ===================== SYNTAX HELPERS =======================
# ============================================================

ACCESS_TYPES = frozenset({"member_expression", "subscript_expression"})

FUNCTION_TYPES = frozenset({
    "function_declaration",
    "generator_function_declaration",
    "function_expression",
    "function",
    "generator_function",
    "arrow_function",
    "method_definition",
})

CALLBACK_TYPES = frozenset({"function_expression", "function", "generator_function", "arrow_function"})

SCOPE_TYPES = FUNCTION_TYPES | {
    "program",
    "statement_block",
    "class_body",
    "for_statement",
    "for_in_statement",
    "catch_clause",
    "switch_body",
    "enum_declaration",
}

HOISTING_SCOPE_TYPES = FUNCTION_TYPES | {"program"}

IMPORT_BINDING_TYPES = frozenset({"import_clause", "import_specifier", "namespace_import"})

# Wrappers that do not change which object an access is made on.
_TRANSPARENT_TYPES = frozenset({"parenthesized_expression", "non_null_expression"})
_INITIALIZER_WRAPPERS = _TRANSPARENT_TYPES | {"as_expression", "satisfies_expression"}

_OPTIONAL_TOKENS = frozenset({"optional_chain", "?."})

_LITERAL_TYPES = frozenset({"string", "number", "true", "false", "array", "object", "template_string"})
_NON_NULL_INITIALIZERS = frozenset({"call_expression", "new_expression"}) | ACCESS_TYPES


def _same(left: Optional[Node], right: Optional[Node]) -> bool:
    return left is not None and right is not None and left.id == right.id


def _contains(outer: Node, inner: Node) -> bool:
    return outer.start_byte <= inner.start_byte and inner.end_byte <= outer.end_byte


def _enclosing(node: Node, types: Iterable[str]) -> Optional[Node]:
    parent = node.parent
    while parent is not None:
        if parent.type in types:
            return parent
        parent = parent.parent
    return None


def _has_ancestor(node: Node, types: Iterable[str]) -> bool:
    return _enclosing(node, types) is not None


def _first_named_child(node: Node) -> Optional[Node]:
    named = node.named_children
    return named[0] if named else None


def _strip_transparent(node: Optional[Node], wrappers: Iterable[str] = _TRANSPARENT_TYPES) -> Optional[Node]:
    while node is not None and node.type in wrappers:
        node = _first_named_child(node)
    return node


def access_receiver(node: Node) -> Optional[Node]:
    """
    The object side of an access. JSX tag names are aliased accesses without
    fields, so fall back to the first named child.
    """
    receiver = node.child_by_field_name("object")
    if receiver is not None:
        return receiver
    return _first_named_child(node)


def access_operator(node: Node) -> Optional[Node]:
    """The `.` token of a dotted access, or the `[` token of a computed one."""
    wanted = "[" if node.type == "subscript_expression" else "."
    for child in node.children:
        if child.type == wanted:
            return child
    return None


def is_optional_access(node: Node) -> bool:
    return any(child.type in _OPTIONAL_TOKENS for child in node.children)


def chain_root(node: Optional[Node]) -> Optional[Node]:
    """Left-most receiver of a chain of accesses (`a` in `a.b[c].d`)."""
    current = _strip_transparent(node)
    while current is not None and current.type in ACCESS_TYPES:
        current = _strip_transparent(access_receiver(current))
    return current


def chain_top(node: Node) -> Node:
    """The outermost access (or wrapper) that `node` is the receiver of."""
    current = node
    parent = current.parent
    while parent is not None:
        if parent.type in _TRANSPARENT_TYPES:
            pass
        elif parent.type in ACCESS_TYPES and _same(access_receiver(parent), current):
            pass
        else:
            break
        current = parent
        parent = current.parent
    return current


def _pattern_identifiers(node: Optional[Node]) -> List[Node]:
    """Identifier nodes bound by a declaration name or parameter pattern."""
    if node is None:
        return []
    kind = node.type
    if kind in ("identifier", "shorthand_property_identifier_pattern"):
        return [node]
    if kind in ("required_parameter", "optional_parameter"):
        return _pattern_identifiers(node.child_by_field_name("pattern"))
    if kind in ("assignment_pattern", "object_assignment_pattern"):
        return _pattern_identifiers(node.child_by_field_name("left"))
    if kind == "pair_pattern":
        return _pattern_identifiers(node.child_by_field_name("value"))
    if kind in ("object_pattern", "array_pattern", "rest_pattern"):
        found: List[Node] = []
        for child in node.named_children:
            found.extend(_pattern_identifiers(child))
        return found
    return []


def _parameter_identifiers(function_node: Node) -> List[Node]:
    single = function_node.child_by_field_name("parameter")
    if single is not None:
        return _pattern_identifiers(single)
    params = function_node.child_by_field_name("parameters")
    if params is None:
        return []
    found: List[Node] = []
    for child in params.named_children:
        found.extend(_pattern_identifiers(child))
    return found


def _import_identifiers(node: Node) -> List[Node]:
    if node.type == "import_specifier":
        local = node.child_by_field_name("alias") or node.child_by_field_name("name")
        return [local] if local is not None and local.type == "identifier" else []
    # Default import in an import_clause, or the `* as ns` local name.
    return [child for child in node.named_children if child.type == "identifier"]


def _enum_member_names(enum_node: Node) -> List[Node]:
    body = enum_node.child_by_field_name("body")
    if body is None:
        return []
    members: List[Node] = []
    for child in body.named_children:
        if child.type == "enum_assignment":
            child = child.child_by_field_name("name")
        if child is not None and child.type == "property_identifier":
            members.append(child)
    return members


def _declaration_keyword(declaration: Node) -> str:
    keyword = declaration.child_by_field_name("kind")
    if keyword is None and declaration.children:
        keyword = declaration.children[0]
    if keyword is not None and keyword.type in ("let", "const"):
        return keyword.type
    return "let"


# ============================================================
# ========================= SCOPES ===========================
# ============================================================

@dataclass
class Binding:
    """
    A declared name as seen from the scope that owns it.
    kind: var | let | const | param | function | class | import | catch | enum | enum_member
    """
    name: str
    kind: str
    node: Node = field(repr=False)


class ScopeIndex:
    """
    Lexical binding lookup over a tree-sitter tree, which has no scope API of
    its own. Built in one walk; `lookup` walks outwards from a node.
    `for (const x of xs)` declares `x` on the loop itself, so the loop owns it.
    """

    def __init__(self, parsed: ParsedSource) -> None:
        self._parsed = parsed
        self._scopes: Dict[int, Dict[str, Binding]] = {}

    @classmethod
    def build(cls, parsed: ParsedSource) -> "ScopeIndex":
        index = cls(parsed)
        for node in walk_tree(parsed.root):
            index._visit(node)
        return index

    def lookup(self, name: str, at: Node) -> Optional[Binding]:
        current: Optional[Node] = at
        while current is not None:
            bindings = self._scopes.get(current.id)
            if bindings and name in bindings:
                return bindings[name]
            current = current.parent
        return None

    def bindings_in(self, scope: Node) -> Dict[str, Binding]:
        return dict(self._scopes.get(scope.id, {}))

    def _declare(self, scope: Optional[Node], name_node: Node, kind: str, decl: Node) -> None:
        if scope is None:
            return
        name = self._parsed.text_of(name_node)
        self._scopes.setdefault(scope.id, {}).setdefault(name, Binding(name, kind, decl))

    def _visit(self, node: Node) -> None:
        kind = node.type
        if kind == "variable_declarator":
            declaration = node.parent
            if declaration is None:
                return
            if declaration.type == "variable_declaration":
                binding_kind = "var"
                scope = _enclosing(declaration, HOISTING_SCOPE_TYPES)
            else:
                binding_kind = _declaration_keyword(declaration)
                scope = _enclosing(declaration, SCOPE_TYPES)
            for ident in _pattern_identifiers(node.child_by_field_name("name")):
                self._declare(scope, ident, binding_kind, node)
        elif kind in FUNCTION_TYPES:
            name = node.child_by_field_name("name")
            if name is not None and kind in ("function_declaration", "generator_function_declaration"):
                self._declare(_enclosing(node, SCOPE_TYPES), name, "function", node)
            elif name is not None and kind in CALLBACK_TYPES:
                self._declare(node, name, "function", node)
            for ident in _parameter_identifiers(node):
                self._declare(node, ident, "param", ident)
        elif kind in ("class_declaration", "abstract_class_declaration"):
            name = node.child_by_field_name("name")
            if name is not None:
                self._declare(_enclosing(node, SCOPE_TYPES), name, "class", node)
        elif kind == "for_in_statement":
            keyword = node.child_by_field_name("kind")
            if keyword is None:
                return
            if keyword.type == "var":
                binding_kind, scope = "var", _enclosing(node, HOISTING_SCOPE_TYPES)
            else:
                binding_kind, scope = keyword.type, node
            for ident in _pattern_identifiers(node.child_by_field_name("left")):
                self._declare(scope, ident, binding_kind, node)
        elif kind == "catch_clause":
            for ident in _pattern_identifiers(node.child_by_field_name("parameter")):
                self._declare(node, ident, "catch", ident)
        elif kind in IMPORT_BINDING_TYPES:
            for ident in _import_identifiers(node):
                self._declare(self._parsed.root, ident, "import", node)
        elif kind == "enum_declaration":
            name = node.child_by_field_name("name")
            if name is not None:
                self._declare(_enclosing(node, SCOPE_TYPES), name, "enum", node)
            for member in _enum_member_names(node):
                self._declare(node, member, "enum_member", member)


# ============================================================
# =================== BINDING CLASSIFIER =====================
# ============================================================

@dataclass
class Classification:
    """
    Name-level nullability evidence gathered in one forward walk.
    The sets may overlap; the decision rules settle precedence.
    """
    nullable: Set[str] = field(default_factory=set)
    non_nullable: Set[str] = field(default_factory=set)
    nullable_properties: Set[str] = field(default_factory=set)
    enum_types: Set[str] = field(default_factory=set)


def classify_bindings(parsed: ParsedSource) -> Classification:
    """
    Label names by the shape of their declarations:
    - enum declarations -> enum_types
    - import bindings, call/new/member initializers, unchanged literals -> non_nullable
    - missing initializers, parameters, aliases of nullable names -> nullable
    - object literal initializers, aliases of nullable names -> nullable_properties
    """
    result = Classification()
    # name -> declared with `const`
    literal_candidates: Dict[str, bool] = {}
    reassigned: Set[str] = set()

    for node in walk_tree(parsed.root):
        kind = node.type
        if kind == "enum_declaration":
            name = node.child_by_field_name("name")
            if name is not None:
                result.enum_types.add(parsed.text_of(name))
        elif kind in IMPORT_BINDING_TYPES:
            for ident in _import_identifiers(node):
                result.non_nullable.add(parsed.text_of(ident))
        elif kind == "variable_declarator":
            _classify_declarator(parsed, node, result, literal_candidates)
        elif kind in FUNCTION_TYPES:
            for ident in _parameter_identifiers(node):
                result.nullable.add(parsed.text_of(ident))
        elif kind == "assignment_expression":
            _classify_assignment(parsed, node, result, reassigned)
        elif kind in ("augmented_assignment_expression", "for_in_statement"):
            target = node.child_by_field_name("left")
            declares = kind == "for_in_statement" and node.child_by_field_name("kind") is not None
            if not declares and target is not None and target.type == "identifier":
                reassigned.add(parsed.text_of(target))
        elif kind == "update_expression":
            target = _strip_transparent(node.child_by_field_name("argument"))
            if target is not None and target.type == "identifier":
                reassigned.add(parsed.text_of(target))

    for name, is_const in literal_candidates.items():
        if is_const or name not in reassigned:
            result.non_nullable.add(name)
    return result


def _classify_declarator(
    parsed: ParsedSource,
    node: Node,
    result: Classification,
    literal_candidates: Dict[str, bool],
) -> None:
    name_node = node.child_by_field_name("name")
    if name_node is None or name_node.type != "identifier":
        return
    name = parsed.text_of(name_node)
    value = _strip_transparent(node.child_by_field_name("value"), _INITIALIZER_WRAPPERS)
    if value is None:
        result.nullable.add(name)
        return

    value_kind = value.type
    if value_kind in _NON_NULL_INITIALIZERS:
        result.non_nullable.add(name)
        return
    if value_kind == "object":
        result.nullable_properties.add(name)
    elif value_kind == "identifier" and parsed.text_of(value) in result.nullable:
        result.nullable_properties.add(name)
        return

    if _is_literal(value):
        declaration = node.parent
        is_const = declaration is not None and declaration.type == "lexical_declaration" \
            and _declaration_keyword(declaration) == "const"
        literal_candidates[name] = literal_candidates.get(name, True) and is_const


def _is_literal(node: Node) -> bool:
    if node.type not in _LITERAL_TYPES:
        return False
    if node.type == "template_string":
        return not any(child.type == "template_substitution" for child in node.named_children)
    return True


def _classify_assignment(
    parsed: ParsedSource,
    node: Node,
    result: Classification,
    reassigned: Set[str],
) -> None:
    target = _strip_transparent(node.child_by_field_name("left"))
    if target is None:
        return
    if target.type == "identifier":
        reassigned.add(parsed.text_of(target))

    value = _strip_transparent(node.child_by_field_name("right"), _INITIALIZER_WRAPPERS)
    if value is None or value.type != "identifier" or parsed.text_of(value) not in result.nullable:
        return

    if target.type in ACCESS_TYPES:
        root = chain_root(target)
        if root is not None and root.type == "identifier":
            result.nullable_properties.add(parsed.text_of(root))
    elif target.type == "identifier":
        result.nullable.add(parsed.text_of(target))


def detect_module_warnings(parsed: ParsedSource) -> List[str]:
    """Report files that mix `import` declarations with `require(...)` calls."""
    has_import = False
    has_require = False
    for node in walk_tree(parsed.root):
        if node.type == "import_statement":
            has_import = True
        elif node.type == "call_expression":
            callee = node.child_by_field_name("function")
            if callee is not None and callee.type == "identifier" and parsed.text_of(callee) == "require":
                has_require = True
        if has_import and has_require:
            return [MIXED_MODULES_WARNING]
    return []


# ============================================================
# ==================== SKIP / APPLY POLICY ===================
# ============================================================

def parse_names(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [name.strip() for name in value.split(",") if name.strip()]


def validate_names(names: Iterable[str], option: str) -> None:
    invalid = [name for name in names if not IDENTIFIER_PATTERN.fullmatch(name)]
    if invalid:
        raise ConfigError(f"Invalid names provided for {option}: {', '.join(invalid)}")


@dataclass
class SkipPolicy:
    """
    Which root names are exempt from rewriting.

    - apply_only (non-empty): everything outside the set is skipped
    - skip_only (non-empty): exactly these names are skipped
    - otherwise: the built-in globals are skipped
    skip_none clears the built-in globals.
    """
    builtin_globals: Set[str] = field(default_factory=lambda: set(DEFAULT_BUILTIN_GLOBALS))
    skip_only: Set[str] = field(default_factory=set)
    apply_only: Set[str] = field(default_factory=set)
    skip_none: bool = False

    def __post_init__(self) -> None:
        if self.skip_none:
            self.builtin_globals = set()

    def should_skip(self, name: Optional[str]) -> bool:
        if not name:
            return False
        if self.apply_only:
            return name not in self.apply_only
        if self.skip_only:
            return name in self.skip_only
        return name in self.builtin_globals

    def add(self, names: Iterable[str]) -> None:
        self.builtin_globals.update(names)

    def remove(self, names: Iterable[str]) -> None:
        self.builtin_globals.difference_update(names)

    def skip_list(self) -> List[str]:
        return sorted(self.skip_only or self.builtin_globals)

    def validate(self) -> None:
        if self.apply_only and self.skip_only:
            raise ConfigError("--skip-only and --apply-only cannot be used together")
        if self.apply_only and self.skip_none:
            raise ConfigError("--skip-none and --apply-only cannot be used together")

    @classmethod
    def from_options(
        cls,
        *,
        skip: Optional[List[str]] = None,
        no_skip: Optional[List[str]] = None,
        skip_only: Optional[List[str]] = None,
        apply_only: Optional[List[str]] = None,
        skip_none: bool = False,
    ) -> "SkipPolicy":
        """
        Build a policy the way the command line composes it: skip-none first,
        then additions and removals, then the replacement lists.
        """
        for option, names in (
            ("--skip", skip),
            ("--no-skip", no_skip),
            ("--skip-only", skip_only),
            ("--apply-only", apply_only),
        ):
            validate_names(names or [], option)

        policy = cls(skip_none=skip_none)
        if skip:
            policy.add(skip)
        if no_skip:
            policy.remove(no_skip)
        if skip_only:
            policy.skip_only = set(skip_only)
            policy.builtin_globals = set()
        if apply_only:
            policy.apply_only = set(apply_only)
        policy.validate()
        return policy


# ============================================================
# ================ MEMBER-ACCESS DECISIONS ===================
# ============================================================

# Ancestors that make the whole subtree type-only or declaration-only syntax.
TYPE_CONTEXT_TYPES = frozenset({
    "type_annotation",
    "type_arguments",
    "type_parameters",
    "type_query",
    "type_alias_declaration",
    "interface_declaration",
    "implements_clause",
    "extends_type_clause",
    "nested_type_identifier",
    "internal_module",
    "module",
    "ambient_declaration",
})

# Parents for which an access chain is a qualified name rather than a read.
QUALIFIED_NAME_PARENTS = frozenset({
    "jsx_opening_element",
    "jsx_closing_element",
    "jsx_self_closing_element",
    "decorator",
    "class_heritage",
    "extends_clause",
    "nested_identifier",
})

METHOD_BODY_TYPES = frozenset({"method_definition", "field_definition", "public_field_definition"})
DESTRUCTURING_TYPES = frozenset({"object_pattern", "array_pattern"})

# Runtime configuration namespaces that are always defined.
ENV_ACCESSORS = frozenset({("process", "env")})


@dataclass
class DecisionContext:
    parsed: ParsedSource
    classification: Classification
    policy: SkipPolicy
    scopes: ScopeIndex
    # node id -> guard eligibility, filled innermost access first
    eligibility: Dict[int, bool] = field(default_factory=dict)

    def identifier_name(self, node: Optional[Node]) -> Optional[str]:
        if node is None or node.type != "identifier":
            return None
        return self.parsed.text_of(node)


@dataclass
class Decision:
    guard: bool
    rule: str
    offset: Optional[int] = None


def _receiver_of(node: Node) -> Optional[Node]:
    return _strip_transparent(access_receiver(node))


def _rule_already_optional(node: Node, ctx: DecisionContext) -> bool:
    return is_optional_access(node)


def _rule_key_position(node: Node, ctx: DecisionContext) -> bool:
    parent = node.parent
    return parent is not None and parent.type in ACCESS_TYPES and not _same(access_receiver(parent), node)


def _rule_this_in_method(node: Node, ctx: DecisionContext) -> bool:
    receiver = _receiver_of(node)
    return receiver is not None and receiver.type == "this" and _has_ancestor(node, METHOD_BODY_TYPES)


def _rule_receiver_policy(node: Node, ctx: DecisionContext) -> bool:
    return ctx.policy.should_skip(ctx.identifier_name(_receiver_of(node)))


def _rule_receiver_non_nullable(node: Node, ctx: DecisionContext) -> bool:
    name = ctx.identifier_name(_receiver_of(node))
    return name is not None and name in ctx.classification.non_nullable


def _rule_root_policy(node: Node, ctx: DecisionContext) -> bool:
    return ctx.policy.should_skip(ctx.identifier_name(chain_root(access_receiver(node))))


def _rule_type_context(node: Node, ctx: DecisionContext) -> bool:
    if _has_ancestor(node, TYPE_CONTEXT_TYPES):
        return True
    parent = chain_top(node).parent
    return parent is not None and parent.type in QUALIFIED_NAME_PARENTS


def _rule_catch_binding(node: Node, ctx: DecisionContext) -> bool:
    name = ctx.identifier_name(chain_root(access_receiver(node)))
    if name is not None:
        binding = ctx.scopes.lookup(name, node)
        if binding is not None and binding.kind == "catch":
            return True
    current = node
    parent = current.parent
    while parent is not None:
        if parent.type == "catch_clause":
            return _same(parent.child_by_field_name("parameter"), current)
        current = parent
        parent = current.parent
    return False


def _rule_write_or_call_position(node: Node, ctx: DecisionContext) -> bool:
    top = chain_top(node)
    parent = top.parent
    if parent is None:
        return False
    kind = parent.type
    if kind in ("assignment_expression", "augmented_assignment_expression", "for_in_statement"):
        return _same(parent.child_by_field_name("left"), top)
    if kind == "update_expression":
        return True
    if kind == "call_expression":
        return _same(parent.child_by_field_name("function"), top)
    if kind == "new_expression":
        return _same(parent.child_by_field_name("constructor"), top)
    return False


def _rule_pattern_or_class_member(node: Node, ctx: DecisionContext) -> bool:
    parent = node.parent
    while parent is not None:
        if parent.type in DESTRUCTURING_TYPES:
            return True
        if parent.type in METHOD_BODY_TYPES and parent.parent is not None and parent.parent.type == "class_body":
            return True
        parent = parent.parent
    return False


def _rule_env_accessor(node: Node, ctx: DecisionContext) -> bool:
    receiver = _receiver_of(node)
    if receiver is None or receiver.type != "member_expression":
        return False
    owner = ctx.identifier_name(_receiver_of(receiver))
    prop = receiver.child_by_field_name("property")
    return owner is not None and prop is not None and (owner, ctx.parsed.text_of(prop)) in ENV_ACCESSORS


def _rule_enum_declaration_site(node: Node, ctx: DecisionContext) -> bool:
    name = ctx.identifier_name(chain_root(access_receiver(node)))
    if name is None:
        return False
    binding = ctx.scopes.lookup(name, node)
    if binding is None:
        return False
    if binding.kind == "enum_member":
        return True
    return binding.kind == "enum" and _contains(binding.node, node)


# First match wins. Each rule returns True when the access must be left alone.
SKIP_RULES: Tuple[Tuple[str, Callable[[Node, DecisionContext], bool]], ...] = (
    ("already-optional", _rule_already_optional),
    ("key-position", _rule_key_position),
    ("this-in-method", _rule_this_in_method),
    ("receiver-policy", _rule_receiver_policy),
    ("receiver-non-nullable", _rule_receiver_non_nullable),
    ("root-policy", _rule_root_policy),
    ("type-context", _rule_type_context),
    ("catch-binding", _rule_catch_binding),
    ("write-or-call-position", _rule_write_or_call_position),
    ("pattern-or-class-member", _rule_pattern_or_class_member),
    ("env-accessor", _rule_env_accessor),
    ("enum-declaration-site", _rule_enum_declaration_site),
)


def _in_callback(node: Node) -> bool:
    function_node = _enclosing(node, FUNCTION_TYPES)
    return (
        function_node is not None
        and function_node.type in CALLBACK_TYPES
        and function_node.parent is not None
        and function_node.parent.type == "arguments"
    )


def is_guard_eligible(node: Node, ctx: DecisionContext) -> bool:
    """
    Nullability evidence for the receiver of `node`. A nested receiver passes
    its own eligibility on to the access made through it.

    Results are cached on the context. The receiver chain is walked once,
    then settled from the innermost access outwards without recursion.
    """
    cached = ctx.eligibility.get(node.id)
    if cached is not None:
        return cached

    pending: List[Node] = []
    current: Optional[Node] = node
    while current is not None and current.type in ACCESS_TYPES and current.id not in ctx.eligibility:
        pending.append(current)
        current = _receiver_of(current)

    root_name = ctx.identifier_name(chain_root(node))
    for access in reversed(pending):
        ctx.eligibility[access.id] = _has_guard_evidence(access, root_name, ctx)
    return ctx.eligibility[node.id]


def _has_guard_evidence(node: Node, root_name: Optional[str], ctx: DecisionContext) -> bool:
    receiver = _receiver_of(node)
    if receiver is None:
        return False
    classification = ctx.classification

    if root_name is not None:
        if root_name in classification.enum_types:
            return True
        if root_name in classification.nullable or root_name in classification.nullable_properties:
            return True

    if receiver.type == "identifier":
        if root_name not in classification.non_nullable and ctx.scopes.lookup(root_name, node) is not None:
            return True
    elif receiver.type in ACCESS_TYPES and ctx.eligibility.get(receiver.id, False):
        return True

    return root_name is not None and _in_callback(node)


def decide_member_access(node: Node, ctx: DecisionContext) -> Decision:
    if access_receiver(node) is None:
        start, end = ctx.parsed.offset_range(node)
        raise TraversalError(node.type, start, end, "access without a receiver")

    for name, rule in SKIP_RULES:
        if rule(node, ctx):
            return Decision(guard=False, rule=name)

    if not is_guard_eligible(node, ctx):
        return Decision(guard=False, rule="not-eligible")

    token = access_operator(node)
    if token is None:
        start, end = ctx.parsed.offset_range(node)
        raise TraversalError(node.type, start, end, "access without an operator token")
    return Decision(guard=True, rule="guard", offset=ctx.parsed.source.char_offset(token.start_byte))


def iter_decisions(
    parsed: ParsedSource,
    classification: Classification,
    policy: SkipPolicy,
) -> Iterator[Tuple[Node, Decision]]:
    ctx = DecisionContext(
        parsed=parsed,
        classification=classification,
        policy=policy,
        scopes=ScopeIndex.build(parsed),
    )
    for node in walk_tree(parsed.root):
        if node.type not in ACCESS_TYPES:
            continue
        try:
            decision = decide_member_access(node, ctx)
        except TraversalError:
            raise
        except Exception as exc:
            start, end = parsed.offset_range(node)
            raise TraversalError(node.type, start, end, str(exc)) from exc
        yield node, decision


def collect_insertions(
    parsed: ParsedSource,
    classification: Classification,
    policy: SkipPolicy,
) -> Set[int]:
    offsets: Set[int] = set()
    for _, decision in iter_decisions(parsed, classification, policy):
        if decision.guard and decision.offset is not None:
            offsets.add(decision.offset)
    return offsets


# ============================================================
# ===================== PATCH APPLIER ========================
# ============================================================

def apply_insertions(text: str, offsets: Iterable[int]) -> str:
    """
    Insert guards at character offsets measured against `text`.
    A `.` becomes `?.`; anything else (a `[`) is prefixed with `?.`.
    Offsets are applied from the end so earlier ones stay valid.
    """
    pieces: List[str] = []
    end = len(text)
    for offset in sorted(set(offsets), reverse=True):
        if offset < 0 or offset > len(text):
            raise ValueError(f"insertion offset {offset} outside text of length {len(text)}")
        pieces.append(text[offset:end])
        pieces.append("?" if text[offset:offset + 1] == "." else "?.")
        end = offset
    pieces.append(text[:end])
    return "".join(reversed(pieces))


# ============================================================
# =================== FIXED-POINT DRIVER =====================
# ============================================================

@dataclass
class TransformResult:
    code: str
    changed: bool
    iterations: int
    state: str  # CONVERGED | CAP_REACHED
    warnings: List[str] = field(default_factory=list)


def run_pass(
    text: str,
    dialect: str,
    policy: SkipPolicy,
    path: Optional[str] = None,
) -> Tuple[str, List[str]]:
    """One parse -> classify -> decide -> patch round against a single snapshot."""
    parsed = parse_source(text, dialect, path)
    classification = classify_bindings(parsed)
    warnings = detect_module_warnings(parsed)
    offsets = collect_insertions(parsed, classification, policy)
    return apply_insertions(text, offsets), warnings


def transform_source(
    text: str,
    dialect: str = "javascript",
    policy: Optional[SkipPolicy] = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    path: Optional[str] = None,
) -> TransformResult:
    """
    Repeat passes until the text stops changing or `max_iterations` passes
    have run. Reaching the cap is not an error; rewriting just stops there.
    """
    if max_iterations < 1:
        raise ConfigError(f"max_iterations must be a positive integer, got {max_iterations}")
    if policy is None:
        policy = SkipPolicy()

    code = text
    warnings: List[str] = []
    iterations = 0
    state = CAP_REACHED
    while iterations < max_iterations:
        iterations += 1
        new_code, pass_warnings = run_pass(code, dialect, policy, path)
        for warning in pass_warnings:
            if warning not in warnings:
                warnings.append(warning)
        if new_code == code:
            state = CONVERGED
            break
        code = new_code

    return TransformResult(
        code=code,
        changed=code != text,
        iterations=iterations,
        state=state,
        warnings=warnings,
    )


# ============================================================
# ==================== FILE PROCESSING =======================
# ============================================================

@dataclass
class Options:
    policy: SkipPolicy = field(default_factory=SkipPolicy)
    preview: bool = False
    file_type: Optional[str] = None  # "js" | "ts"
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    verbose: bool = True


@dataclass
class FileReport:
    path: str
    status: str  # "modified" | "previewed" | "unchanged" | "skipped" | "filtered" | "error"
    changed: bool = False
    iterations: int = 0
    state: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RunStats:
    files_processed: int = 0
    files_modified: int = 0
    errors: int = 0
    warnings: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def record(self, report: FileReport) -> None:
        if report.status == "error":
            self.errors += 1
            return
        if report.status in ("modified", "previewed", "unchanged"):
            self.files_processed += 1
        if report.status == "modified":
            self.files_modified += 1
        self.warnings += len(report.warnings)

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


def _is_supported_source(path: str) -> bool:
    lowered = path.lower()
    if lowered.endswith(DECLARATION_FILE_SUFFIX):
        return False
    return lowered.endswith(SUPPORTED_EXTENSIONS)


def _matches_file_type(path: str, file_type: Optional[str]) -> bool:
    if not file_type:
        return True
    return (file_type == "ts") == is_typescript_path(path)


def iter_source_files(root: str) -> Iterator[str]:
    """
    Recursively yield source files under `root`. Symlinks, hidden folders and
    the usual build/dependency folders are skipped; each real directory is
    visited once.
    """
    seen: Set[str] = set()

    def walk(directory: str) -> Iterator[str]:
        real = os.path.realpath(directory)
        if real in seen:
            return
        seen.add(real)
        for entry in sorted(os.listdir(directory)):
            full_path = os.path.normpath(os.path.join(directory, entry))
            if os.path.islink(full_path):
                continue
            if os.path.isdir(full_path):
                if entry in IGNORED_DIRECTORIES or entry.startswith("."):
                    continue
                yield from walk(full_path)
            elif _is_supported_source(full_path):
                yield full_path

    yield from walk(root)


def _is_binary(data: bytes) -> bool:
    return b"\x00" in data[:BINARY_SNIFF_BYTES]


def process_file(path: str, options: Options) -> FileReport:
    """
    Run the rewrite over one file. Files outside the --type filter come back
    "filtered" and are never announced. Resource problems (size, binary content,
    unreadable or undecodable data) never reach the core. Parse and
    traversal errors are reported on the file; the file is left untouched.
    """
    if not _matches_file_type(path, options.file_type):
        return FileReport(path=path, status="filtered", reason=f"not a {options.file_type} file")

    try:
        size = os.path.getsize(path)
    except OSError as exc:
        return FileReport(path=path, status="error", error=f"cannot stat file: {exc}")
    if size > options.max_file_size:
        limit_mb = options.max_file_size / 1024 / 1024
        return FileReport(path=path, status="error", error=f"File too large (>{limit_mb:g}MB)")

    if options.verbose:
        print(f"Processing: {path}")

    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except OSError as exc:
        return FileReport(path=path, status="error", error=f"cannot read file: {exc}")

    if _is_binary(data):
        if options.verbose:
            print("Skipping binary file")
        return FileReport(path=path, status="skipped", reason="binary file")

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        return FileReport(path=path, status="error", error=f"not valid UTF-8: {exc}")
    if text.startswith("\ufeff"):
        text = text[1:]

    try:
        result = transform_source(
            text,
            dialect_for_path(path),
            options.policy,
            options.max_iterations,
            path=path,
        )
    except (ParseError, TraversalError) as exc:
        return FileReport(path=path, status="error", error=str(exc))

    for warning in result.warnings:
        sys.stderr.write(f"[chainsafe] Warning: {warning} in {path}\n")

    report = FileReport(
        path=path,
        status="unchanged",
        changed=result.changed,
        iterations=result.iterations,
        state=result.state,
        warnings=list(result.warnings),
    )

    if not result.changed:
        if options.verbose:
            print("No changes needed")
        return report

    if result.iterations > 1 and result.state == CONVERGED and options.verbose:
        print(f"No more changes needed after iteration {result.iterations}")

    if options.preview:
        if options.verbose:
            print("\nTransformed code:")
            print(result.code)
        report.status = "previewed"
        return report

    try:
        with open(path, "w", encoding="utf-8", newline="") as handle:
            handle.write(result.code)
    except OSError as exc:
        report.status = "error"
        report.error = f"cannot write file: {exc}"
        return report

    if options.verbose:
        print("File transformed successfully")
    report.status = "modified"
    return report


def process_paths(paths: List[str], options: Options) -> Tuple[List[FileReport], RunStats]:
    """Process files and directories; one failing file never stops the rest."""
    stats = RunStats()
    reports: List[FileReport] = []

    def handle(report: FileReport) -> None:
        if report.status == "error":
            sys.stderr.write(f"[chainsafe] Error in {report.path}: {report.error}\n")
        elif report.status == "skipped" and options.verbose:
            print(f"Skipped {report.path}: {report.reason}")
        stats.record(report)
        reports.append(report)

    for path in paths:
        if os.path.isdir(path):
            for file_path in iter_source_files(path):
                handle(process_file(file_path, options))
        elif os.path.isfile(path):
            handle(process_file(path, options))
        else:
            handle(FileReport(path=path, status="error", error="no such file or directory"))

    return reports, stats


# ============================================================
# ===================== CONFIGURATION ========================
# ============================================================

CONFIG_KEYS = frozenset({
    "skip",
    "no_skip",
    "skip_only",
    "apply_only",
    "skip_none",
    "max_iterations",
    "type",
})


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Load settings from a YAML file. Keys mirror the long command-line
    options (`skip-only` and `skip_only` are both accepted).
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in config file {path}: {exc}") from exc

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"Config file {path} must contain a mapping of options")

    settings = {str(key).replace("-", "_"): value for key, value in document.items()}
    unknown = sorted(set(settings) - CONFIG_KEYS)
    if unknown:
        raise ConfigError(f"Unknown option(s) in config file {path}: {', '.join(unknown)}")
    return settings


def _coerce_names(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return parse_names(value)
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return [item.strip() for item in value if item.strip()]
    raise ConfigError(f"Option {key} must be a list of names or a comma-separated string")


def build_options(args: argparse.Namespace) -> Options:
    """
    Merge the optional config file with command-line flags (flags win) and
    validate the result before any file is touched.
    """
    config_path = args.config or os.environ.get(CONFIG_ENV_VAR)
    settings: Dict[str, Any] = load_config_file(config_path) if config_path else {}

    overrides = {
        "skip": args.skip,
        "no_skip": args.no_skip,
        "skip_only": args.skip_only,
        "apply_only": args.apply_only,
        "skip_none": True if args.skip_none else None,
        "max_iterations": args.max_iterations,
        "type": args.type,
    }
    settings.update({key: value for key, value in overrides.items() if value is not None})

    skip_none = settings.get("skip_none", False)
    if not isinstance(skip_none, bool):
        raise ConfigError("Option skip_none must be true or false")

    policy = SkipPolicy.from_options(
        skip=_coerce_names(settings.get("skip"), "skip"),
        no_skip=_coerce_names(settings.get("no_skip"), "no_skip"),
        skip_only=_coerce_names(settings.get("skip_only"), "skip_only"),
        apply_only=_coerce_names(settings.get("apply_only"), "apply_only"),
        skip_none=skip_none,
    )

    max_iterations = settings.get("max_iterations", DEFAULT_MAX_ITERATIONS)
    if isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations < 1:
        raise ConfigError(f"max_iterations must be a positive integer, got {max_iterations!r}")

    file_type = settings.get("type")
    if file_type is not None and file_type not in FILE_TYPES:
        raise ConfigError("Invalid file type. Use --type ts or --type js")

    return Options(
        policy=policy,
        preview=bool(getattr(args, "preview", False)),
        file_type=file_type,
        max_iterations=max_iterations,
    )


# ============================================================
# ===================== REPORT OUTPUT ========================
# ============================================================

def report_to_json_obj(report: FileReport) -> Dict[str, Any]:
    return {
        "path": report.path,
        "status": report.status,
        "changed": report.changed,
        "iterations": report.iterations,
        "state": report.state,
        "warnings": report.warnings,
        "reason": report.reason,
        "error": report.error,
    }


def emit_report_json(reports: List[FileReport], stats: RunStats, out: Optional[str] = None) -> None:
    """
    Serialize per-file reports and the run summary to JSON.
    `out` of None or "-" means stdout.
    """
    document = {
        "tool": "chainsafe",
        "version": __version__,
        "files": [report_to_json_obj(r) for r in reports],
        "summary": {
            "files_processed": stats.files_processed,
            "files_modified": stats.files_modified,
            "errors": stats.errors,
            "warnings": stats.warnings,
            "elapsed_seconds": round(stats.elapsed(), 2),
        },
    }
    text = json.dumps(document, indent=2, sort_keys=False)
    if out and out != "-":
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


def print_summary(stats: RunStats) -> None:
    print("\nProcessing complete!")
    print("\nStatistics:")
    print(f"Files processed: {stats.files_processed}")
    print(f"Files modified: {stats.files_modified}")
    print(f"Errors encountered: {stats.errors}")
    print(f"Warnings: {stats.warnings}")
    print(f"Total time: {stats.elapsed():.2f}s")


# ============================================================
# ============================ CLI ===========================
# ============================================================

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chainsafe",
        description="chainsafe: add optional chaining operators to JavaScript/TypeScript code",
        epilog=(
            "examples:\n"
            "  chainsafe src/\n"
            "  chainsafe file.js --preview\n"
            "  chainsafe src/ --skip axios,lodash\n"
            "  chainsafe src/ --apply-only axios"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help="Files or directories to transform.",
    )
    parser.add_argument(
        "--preview",
        action="store_true",
        help="Show changes without writing to files.",
    )
    parser.add_argument("--skip", metavar="NAMES", help="Add names to the skip list (comma-separated).")
    parser.add_argument("--no-skip", metavar="NAMES", help="Remove names from the skip list (comma-separated).")
    parser.add_argument("--skip-list", action="store_true", help="Show the current skip list and exit.")
    parser.add_argument("--skip-none", action="store_true", help="Don't skip any globals.")
    parser.add_argument("--skip-only", metavar="NAMES", help="Only skip the specified names.")
    parser.add_argument("--apply-only", metavar="NAMES", help="Only apply to the specified names.")
    parser.add_argument(
        "--type",
        choices=FILE_TYPES,
        help="Process only TypeScript or JavaScript files.",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        metavar="N",
        help=f"Maximum rewrite passes per file (default {DEFAULT_MAX_ITERATIONS}).",
    )
    parser.add_argument(
        "--config",
        metavar="CONFIG_YAML",
        help=f"YAML file with default options (or set {CONFIG_ENV_VAR}).",
    )
    parser.add_argument(
        "--json",
        nargs="?",
        const="-",
        metavar="OUT_JSON",
        help="Emit a JSON report to this file, or to stdout when no file is given.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.
      chainsafe <path>... [options]
    Exit codes: 0 success, 1 some file failed, 2 configuration error.
    """
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        options = build_options(args)
    except ConfigError as exc:
        sys.stderr.write(f"[chainsafe] {exc}\n")
        return 2

    if args.skip_list:
        print("\nCurrent skip list:")
        print("\n".join(options.policy.skip_list()))
        return 0

    if not args.paths:
        parser.print_help()
        return 0

    json_to_stdout = args.json == "-"
    options.verbose = not json_to_stdout

    if options.verbose:
        print("\nStarting transformation...")
    reports, stats = process_paths(args.paths, options)

    if args.json:
        emit_report_json(reports, stats, out=args.json)
    if options.verbose:
        print_summary(stats)

    return 1 if stats.errors else 0


if __name__ == "__main__":
    sys.exit(main())
