"""Variable resolution and ``$name`` substitution."""

import json
import re
from typing import Any, Dict, Iterable, Optional

VARIABLE_PATTERN = re.compile(r'\$([a-zA-Z0-9_]+)')


def stringify(value: Any) -> str:
    """String form of a variable value as it appears inside templated text."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def replace_variables(value: Any, variables: Dict[str, Any]) -> Any:
    """
    Substitute every resolvable ``$name`` token in ``value``.

    Strings are templated; dicts and lists are substituted recursively;
    everything else is returned unchanged. Unknown names are left as-is.
    """
    if isinstance(value, str):
        def _sub(match):
            name = match.group(1)
            if name in variables:
                return stringify(variables[name])
            return match.group(0)
        return VARIABLE_PATTERN.sub(_sub, value)
    if isinstance(value, dict):
        return {key: replace_variables(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [replace_variables(item, variables) for item in value]
    return value


def evaluate_expression(value: Any, variables: Dict[str, Any]) -> Any:
    """Resolve a ``$name`` reference to the raw variable value; literals pass through."""
    if isinstance(value, str) and value.startswith("$"):
        return variables.get(value[1:])
    return value


def initialize_variables(payload: Optional[Dict[str, Any]],
                         declared: Iterable[Any]) -> Dict[str, Any]:
    """Seed variables from the trigger payload, filling declared defaults for missing keys."""
    variables = dict(payload or {})
    for declaration in declared:
        if declaration.name not in variables and declaration.default_value is not None:
            variables[declaration.name] = declaration.default_value
    return variables
