"""
BearBridge MCP tool definitions.

Callback tools run a Bear x-callback-url action and return Bear's reply.
``db_*`` tools read Bear's SQLite store directly and never touch the app.
"""

from typing import Any, Dict, List, Mapping, Tuple

from bearbridge.bear.actions import ACTIONS
from bearbridge.core.types import ActionSpec, TokenPolicy


DEFAULT_MAX_NOTES = 25

FIELD_DESCRIPTIONS: Dict[str, str] = {
    "id": "Note unique identifier.",
    "title": "Note title.",
    "text": "Note body (Markdown).",
    "header": "Section header inside the note to target.",
    "search": "Search string used to select the note(s).",
    "selected": "Target the note currently selected in Bear (requires a token).",
    "mode": "How text is inserted.",
    "tags": "Tags as a list or comma-separated string.",
    "file": "Base64-encoded file contents.",
    "filename": "File name including extension.",
    "type": "Content type of text, e.g. 'html'.",
    "url": "Web page URL.",
    "name": "Tag name.",
    "new_name": "New tag name.",
    "term": "Search term.",
    "tag": "Tag to search within.",
    "token": "Bear API token; overrides the configured token for this call.",
    "clipboard": "Use clipboard contents as text.",
    "exclude_trashed": "Ignore notes in the trash.",
    "new_line": "Put appended text on a new line.",
    "timestamp": "Prefix the text with the current date and time.",
    "new_window": "Open the note in an external window.",
    "float": "Make the external window float on top.",
    "show_window": "Bring Bear's main window to the front.",
    "open_note": "Show the note in Bear after the action.",
    "pin": "Pin the note.",
    "edit": "Place the cursor inside the note editor.",
    "wait": "Wait for the page to finish loading before creating the note.",
}

KEEP_TITLE_PROPERTY = {
    "type": "boolean",
    "default": True,
    "description": "Keep the note's title line; false replaces the whole note.",
}

TIMEOUT_PROPERTY = {
    "type": "number",
    "exclusiveMinimum": 0,
    "description": "Seconds to wait for Bear's callback (default 10).",
}

# tool name -> (Bear action, fixed parameters, extra required fields, description override)
CALLBACK_TOOLS: Dict[str, Tuple[str, Mapping[str, str], Tuple[str, ...], str]] = {
    "open_note": ("open-note", {}, (), ""),
    "create_note": ("create", {}, (), ""),
    "add_text": ("add-text", {}, (), ""),
    "append_text": ("add-text", {"mode": "append"}, ("text",), "Append text to a note."),
    "prepend_text": ("add-text", {"mode": "prepend"}, ("text",), "Prepend text to a note."),
    "replace_text": ("add-text", {"mode": "replace"}, ("text",), "Replace a note's body, or the whole note with keep_title=false."),
    "add_file": ("add-file", {}, (), ""),
    "get_tags": ("tags", {}, (), ""),
    "open_tag": ("open-tag", {}, (), ""),
    "rename_tag": ("rename-tag", {}, (), ""),
    "delete_tag": ("delete-tag", {}, (), ""),
    "trash_note": ("trash", {}, (), ""),
    "archive_note": ("archive", {}, (), ""),
    "show_untagged": ("untagged", {}, (), ""),
    "show_todo": ("todo", {}, (), ""),
    "show_today": ("today", {}, (), ""),
    "show_locked": ("locked", {}, (), ""),
    "search_notes": ("search", {}, (), ""),
    "grab_url": ("grab-url", {}, (), ""),
}


def _property_for(spec: ActionSpec, field: str) -> Dict[str, Any]:
    if field in spec.booleans:
        prop: Dict[str, Any] = {"type": "boolean"}
    elif field in spec.lists:
        prop = {"anyOf": [{"type": "string"}, {"type": "array", "items": {"type": "string"}}]}
    else:
        prop = {"type": "string"}
    if field in spec.choices:
        prop["enum"] = list(spec.choices[field])
    description = FIELD_DESCRIPTIONS.get(field)
    if description:
        prop["description"] = description
    return prop


def _callback_tool_schema(name: str) -> Dict[str, Any]:
    action, fixed, extra_required, description = CALLBACK_TOOLS[name]
    spec = ACTIONS[action]
    properties = {
        field: _property_for(spec, field)
        for field in sorted(spec.fields)
        if field not in fixed
    }
    if name == "replace_text":
        properties["keep_title"] = dict(KEEP_TITLE_PROPERTY)
    properties["timeout"] = dict(TIMEOUT_PROPERTY)
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    required = sorted(set(spec.required) | set(extra_required))
    if required:
        schema["required"] = required
    if spec.one_of:
        schema["anyOf"] = [{"required": [field]} for field in sorted(spec.one_of)]

    text = description or spec.description
    if spec.token is TokenPolicy.REQUIRED:
        text += " Requires a Bear API token."
    elif spec.token is TokenPolicy.WHEN_SELECTED:
        text += " Requires a Bear API token when 'selected' is true."
    return {"name": name, "description": text, "inputSchema": schema}


DB_TOOLS_SCHEMAS: List[Dict[str, Any]] = [
    {
        "name": "db_open_note",
        "description": "Read a note's content straight from Bear's database by id or exact title.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": FIELD_DESCRIPTIONS["id"]},
                "title": {"type": "string", "description": FIELD_DESCRIPTIONS["title"]},
                "header": {"type": "string", "description": "Only return the section under this '## ' header."},
                "exclude_trashed": {"type": "boolean", "default": False, "description": FIELD_DESCRIPTIONS["exclude_trashed"]},
            },
            "anyOf": [{"required": ["id"]}, {"required": ["title"]}],
        },
    },
    {
        "name": "db_search_notes",
        "description": "Search non-trashed notes in Bear's database by term and/or tag, returning their content.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "term": {"type": "string", "description": "Text to match in title or body."},
                "tag": {"type": "string", "description": "Only notes carrying this tag."},
                "max_notes": {"type": "integer", "minimum": 1, "default": DEFAULT_MAX_NOTES, "description": "Maximum notes to return (default 25)."},
            },
        },
    },
    {
        "name": "db_get_tags",
        "description": "List every tag in Bear's database.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "db_open_tag",
        "description": "List notes carrying a tag, newest first, with their content.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": FIELD_DESCRIPTIONS["name"]},
                "max_notes": {"type": "integer", "minimum": 1, "default": DEFAULT_MAX_NOTES, "description": "Maximum notes to return (default 25)."},
            },
            "required": ["name"],
        },
    },
]

TOOLS_SCHEMAS: List[Dict[str, Any]] = [_callback_tool_schema(name) for name in CALLBACK_TOOLS] + DB_TOOLS_SCHEMAS

DB_TOOLS = {schema["name"] for schema in DB_TOOLS_SCHEMAS}

READ_ONLY_TOOLS = DB_TOOLS | {
    "open_note", "get_tags", "open_tag", "search_notes",
    "show_untagged", "show_todo", "show_today", "show_locked",
}

DESTRUCTIVE_TOOLS = {"replace_text", "delete_tag", "trash_note"}

IDEMPOTENT_TOOLS = READ_ONLY_TOOLS | {"rename_tag", "delete_tag", "trash_note", "archive_note"}
