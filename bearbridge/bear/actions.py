"""
Bear x-callback-url actions: which fields each accepts, which are required,
and when the API token must be sent.
"""

from typing import Dict, Tuple

from bearbridge.core.errors import ValidationError
from bearbridge.core.types import ActionSpec, TokenPolicy

ADD_MODES: Tuple[str, ...] = ("prepend", "append", "replace_all", "replace")

_WINDOW_FLAGS = frozenset({"new_window", "show_window", "open_note", "edit"})


def _spec(name: str, **kwargs) -> ActionSpec:
    for key in ("strings", "booleans", "lists", "required", "one_of"):
        if key in kwargs:
            kwargs[key] = frozenset(kwargs[key])
    return ActionSpec(name=name, **kwargs)


ACTIONS: Dict[str, ActionSpec] = {
    spec.name: spec
    for spec in (
        _spec(
            "open-note",
            strings={"id", "title", "header", "search"},
            booleans=_WINDOW_FLAGS | {"exclude_trashed", "float", "selected", "pin"},
            one_of={"id", "title", "selected"},
            token=TokenPolicy.WHEN_SELECTED,
            description="Open a note by identifier, title, or the current selection.",
        ),
        _spec(
            "create",
            strings={"title", "text", "file", "filename", "type", "url"},
            booleans=_WINDOW_FLAGS | {"clipboard", "float", "pin", "timestamp"},
            lists={"tags"},
            description="Create a new note.",
        ),
        _spec(
            "add-text",
            strings={"id", "title", "text", "header", "mode"},
            booleans=_WINDOW_FLAGS | {"selected", "clipboard", "new_line", "exclude_trashed", "timestamp"},
            lists={"tags"},
            one_of={"id", "title", "selected"},
            choices={"mode": ADD_MODES},
            token=TokenPolicy.WHEN_SELECTED,
            description="Append, prepend or replace text in a note.",
        ),
        _spec(
            "add-file",
            strings={"id", "title", "file", "filename", "header", "mode"},
            booleans=_WINDOW_FLAGS | {"selected"},
            required={"file", "filename"},
            one_of={"id", "title", "selected"},
            choices={"mode": ADD_MODES},
            token=TokenPolicy.WHEN_SELECTED,
            description="Attach a base64-encoded file to a note.",
        ),
        _spec(
            "tags",
            token=TokenPolicy.REQUIRED,
            description="List every tag.",
        ),
        _spec(
            "open-tag",
            strings={"name"},
            required={"name"},
            token=TokenPolicy.OPTIONAL,
            description="Show the notes under one or more tags.",
        ),
        _spec(
            "rename-tag",
            strings={"name", "new_name"},
            booleans={"show_window"},
            required={"name", "new_name"},
            description="Rename a tag.",
        ),
        _spec(
            "delete-tag",
            strings={"name"},
            booleans={"show_window"},
            required={"name"},
            description="Delete a tag.",
        ),
        _spec(
            "trash",
            strings={"id", "search"},
            booleans={"show_window"},
            one_of={"id", "search"},
            description="Move a note to the trash.",
        ),
        _spec(
            "archive",
            strings={"id", "search"},
            booleans={"show_window"},
            one_of={"id", "search"},
            description="Move a note to the archive.",
        ),
        _spec(
            "untagged",
            strings={"search"},
            booleans={"show_window"},
            token=TokenPolicy.OPTIONAL,
            description="Show untagged notes.",
        ),
        _spec(
            "todo",
            strings={"search"},
            booleans={"show_window"},
            token=TokenPolicy.OPTIONAL,
            description="Show notes with open todos.",
        ),
        _spec(
            "today",
            strings={"search"},
            booleans={"show_window"},
            token=TokenPolicy.OPTIONAL,
            description="Show notes created or modified today.",
        ),
        _spec(
            "locked",
            strings={"search"},
            booleans={"show_window"},
            description="Show locked notes.",
        ),
        _spec(
            "search",
            strings={"term", "tag"},
            booleans={"show_window"},
            token=TokenPolicy.OPTIONAL,
            description="Search notes by term and/or tag.",
        ),
        _spec(
            "grab-url",
            strings={"url"},
            booleans={"pin", "wait"},
            lists={"tags"},
            required={"url"},
            description="Create a note from the contents of a web page.",
        ),
    )
}


def get_action(name: str) -> ActionSpec:
    try:
        return ACTIONS[name]
    except KeyError:
        raise ValidationError(f"Unknown Bear action: {name}", field="action") from None
