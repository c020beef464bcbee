"""
Request field resolution and condition evaluation for policies.
"""

from typing import Callable, Dict, List, Optional, Sequence, Union

from .models import PolicyCondition, PolicyContext, PolicyGroupBy


METADATA_PREFIX = "metadata."
WILDCARD = "*"
DEFAULT_VALUE_KEY = "default"

_RESOLVERS: Dict[str, Callable[[PolicyContext], Optional[str]]] = {
    "api_key": lambda context: context.api_key_id,
    "organisation_id": lambda context: context.organisation_id,
    "workspace_id": lambda context: context.workspace_id,
    "virtual_key": lambda context: context.virtual_key_slug,
    "provider": lambda context: context.provider_slug,
    "config": lambda context: context.config_slug,
    "prompt": lambda context: context.prompt_slug,
}


def resolve_field(context: PolicyContext, key: str) -> Optional[str]:
    """Value of a policy field for this request, or None when absent.

    Models resolve as ``@<provider>/<model>`` and need both parts.
    """
    if key.startswith(METADATA_PREFIX):
        value = context.metadata.get(key[len(METADATA_PREFIX):])
    elif key == "model":
        if not context.provider_slug or not context.model:
            return None
        value = f"@{context.provider_slug}/{context.model}"
    else:
        resolver = _RESOLVERS.get(key)
        if resolver is None:
            return None
        value = resolver(context)

    return value or None


def _as_list(value: Optional[Union[str, List[str]]]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _value_matches(key: str, pattern: str, actual: str) -> bool:
    if pattern == WILDCARD:
        return True
    # "@openai/*" matches every model of that provider
    if key == "model" and pattern.endswith("/*"):
        return actual.startswith(pattern[:-1])
    return actual == pattern


def condition_matches(condition: PolicyCondition, context: PolicyContext) -> bool:
    actual = resolve_field(context, condition.key)
    if actual is None:
        return False

    if any(_value_matches(condition.key, pattern, actual) for pattern in _as_list(condition.excludes)):
        return False

    if condition.value is None:
        return True

    return any(_value_matches(condition.key, pattern, actual) for pattern in _as_list(condition.value))


def conditions_match(conditions: Sequence[PolicyCondition], context: PolicyContext) -> bool:
    """All conditions must hold. No conditions means the policy applies everywhere."""
    return all(condition_matches(condition, context) for condition in conditions)


def build_value_key(group_by: Sequence[PolicyGroupBy], context: PolicyContext) -> Optional[str]:
    """Bucket key for the request, or None if any grouping field is missing."""
    if not group_by:
        return DEFAULT_VALUE_KEY

    parts = []
    for group in group_by:
        value = resolve_field(context, group.key)
        if value is None:
            return None
        parts.append(f"{group.key}:{value}")
    return "-".join(parts)
