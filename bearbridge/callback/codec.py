"""
Parameter codec for Bear x-callback-url invocations.

Turns a CommandRequest's typed fields into the flat string mapping Bear reads
from its query string. Booleans use Bear's own ``yes``/``no`` tokens and
list fields are comma-joined, the same way Bear's URL scheme documents them.
"""

from __future__ import annotations

from typing import Any, Iterable, Union

from bearbridge.core.errors import ValidationError
from bearbridge.core.types import ActionSpec, CommandRequest, EncodedParameters

TRUE_TOKEN = "yes"
FALSE_TOKEN = "no"
BOOLEAN_TOKENS = (TRUE_TOKEN, FALSE_TOKEN)


def validate_non_empty_string(value: Any, name: str) -> str:
    if not isinstance(value, str) or value.strip() == "":
        raise ValidationError(f"{name} must be a non-empty string", field=name)
    return value


def format_boolean(value: Any, name: str) -> str:
    """Return ``yes``/``no`` for a bool or an already-encoded token; reject anything else."""
    if isinstance(value, bool):
        return TRUE_TOKEN if value else FALSE_TOKEN
    if isinstance(value, str) and value in BOOLEAN_TOKENS:
        return value
    raise ValidationError(f"{name} must be a boolean or '{TRUE_TOKEN}'/'{FALSE_TOKEN}'", field=name)


def format_tags(tags: Union[str, Iterable[str]], name: str = "tags") -> str:
    if isinstance(tags, str):
        return tags
    items = list(tags)
    for item in items:
        if not isinstance(item, str):
            raise ValidationError(f"{name} must contain only strings", field=name)
    return ",".join(items)


def is_truthy_flag(value: Any) -> bool:
    return value is True or value == TRUE_TOKEN


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def encode(request: CommandRequest, spec: ActionSpec) -> EncodedParameters:
    """
    Encode a request for ``spec``'s action.

    Raises ValidationError for undeclared fields, missing or blank required
    strings, an unmet ``one_of`` or ``choices`` constraint, and booleans
    outside the two tokens.
    Empty optional values are dropped so every output entry is non-empty.
    """
    if request.action != spec.name:
        raise ValidationError(
            f"Request action '{request.action}' does not match '{spec.name}'",
            field="action",
        )

    params = request.parameters
    unknown = sorted(set(params) - spec.fields)
    if unknown:
        raise ValidationError(
            f"Unsupported parameter(s) for '{spec.name}': {', '.join(unknown)}",
            field=unknown[0],
        )

    for name in sorted(spec.required):
        validate_non_empty_string(params.get(name), name)

    if spec.one_of and not any(
        is_truthy_flag(params.get(name)) if name in spec.booleans else not _is_empty(params.get(name))
        for name in spec.one_of
    ):
        choices = " or ".join(sorted(spec.one_of))
        raise ValidationError(f"'{spec.name}' requires {choices}", field=sorted(spec.one_of)[0])

    for name, allowed in spec.choices.items():
        value = params.get(name)
        if not _is_empty(value) and value not in allowed:
            raise ValidationError(f"{name} must be one of: {', '.join(allowed)}", field=name)

    encoded: EncodedParameters = {}
    for name, value in params.items():
        if name in spec.booleans:
            if value is None:
                continue
            encoded[name] = format_boolean(value, name)
        elif _is_empty(value):
            continue
        elif name in spec.lists:
            encoded[name] = format_tags(value, name)
        elif isinstance(value, str):
            encoded[name] = value
        else:
            raise ValidationError(f"{name} must be a string", field=name)
    return encoded
