"""
formlogic Operator Lexicon (Single Source of Truth)

This module defines every operator and reserved name of the condition model
and the expression language. The grammar, the evaluator, the cross-field
detector and the validators all import from here so token sets stay aligned.
"""

# Condition comparison operators (FieldValue / FormValue)
COMPARISON_OPERATORS = {
    "equals", "notEquals",
    "greater", "less", "greaterOrEqual", "lessOrEqual",
    "contains", "startsWith", "endsWith",
    "matches",
}

# Condition kinds, with the aliases accepted on input
CONDITION_TYPES = {
    "fieldValue", "formValue", "expression", "custom",
    "and", "or", "remote", "async",
}
CONDITION_TYPE_ALIASES = {
    "javascript": "expression",
    "http": "remote",
}

# Expression operators, one set per precedence level (lowest first)
NULLISH_OPS = {"??"}
OR_OPS = {"||"}
AND_OPS = {"&&"}
EQUALITY_OPS = {"===", "!==", "==", "!="}
RELATIONAL_OPS = {"<=", ">=", "<", ">"}
ADDITIVE_OPS = {"+", "-"}
MULTIPLICATIVE_OPS = {"*", "/", "%"}
UNARY_OPS = {"!", "-", "+", "typeof"}

BINARY_OPS = (
    NULLISH_OPS | OR_OPS | AND_OPS | EQUALITY_OPS
    | RELATIONAL_OPS | ADDITIVE_OPS | MULTIPLICATIVE_OPS
)

# Words that can never be identifiers (still allowed as property names)
RESERVED_WORDS = {
    "true", "false", "null", "undefined",
    "typeof", "function", "return", "const", "let",
}

# Identifiers bound by the evaluation scope
SCOPE_IDENTIFIERS = {
    "fieldValue", "formValue", "rootFormValue",
    "fieldPath", "externalData", "arrayIndex",
}

# Whitelisted methods per receiver type
STRING_SAFE_METHODS = {
    "charAt", "concat", "endsWith", "includes", "indexOf", "lastIndexOf",
    "padEnd", "padStart", "repeat", "replace", "slice", "split",
    "startsWith", "substring", "toLowerCase", "toUpperCase",
    "trim", "trimEnd", "trimStart", "toString",
}
NUMBER_SAFE_METHODS = {"toFixed", "toString"}
ARRAY_SAFE_METHODS = {
    "concat", "includes", "indexOf", "join", "lastIndexOf", "slice", "toString",
}

SAFE_METHODS = {
    "string": STRING_SAFE_METHODS,
    "number": NUMBER_SAFE_METHODS,
    "array": ARRAY_SAFE_METHODS,
}

# Properties never readable from an expression
BLOCKED_PROPERTIES = {
    "constructor", "__proto__", "prototype",
    "__defineGetter__", "__defineSetter__",
    "__lookupGetter__", "__lookupSetter__",
}

# Built-in validator names
BUILTIN_VALIDATORS = {
    "required", "email", "min", "max", "minLength", "maxLength", "pattern",
}
FUNCTION_VALIDATORS = {"custom", "customAsync", "customRemote"}

# Field logic types
LOGIC_TYPES = {"hidden", "disabled", "readonly", "required"}

# Runtime type names accepted by applyWhenValue predicates
TYPE_NAMES = {"undefined", "object", "boolean", "number", "string", "function", "array", "null"}


def is_blocked_property(name: str) -> bool:
    """Blocked list plus any dunder name (Python's own escape hatches)."""
    return name in BLOCKED_PROPERTIES or (name.startswith("__") and name.endswith("__"))
