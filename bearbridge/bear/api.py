"""
BearBridge Bear API
-------------------
One coroutine per Bear x-callback-url action. Each method shapes its keyword
arguments into a CommandRequest, applies the action's token policy, and
returns the payload Bear sent back on x-success.

Errors from the correlator (CommandTimeoutError, TransportFailure,
CallbackError) propagate unchanged. Input problems raise ValidationError
before any callback port is opened.

Usage:
    api = BearAPI(CommandCorrelator(), token="...")
    note = await api.create_note(title="Meeting Notes", text="# Hello")
    print(note["identifier"])
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

import pydantic

from bearbridge.bear.actions import get_action
from bearbridge.callback.codec import is_truthy_flag, validate_non_empty_string
from bearbridge.callback.correlator import CommandCorrelator
from bearbridge.core.errors import ValidationError
from bearbridge.core.types import (
    ActionSpec,
    CallbackPayload,
    CommandRequest,
    TokenPolicy,
    merge_parameters,
)

logger = logging.getLogger("BearBridge.API")

Flag = Union[bool, str, None]
Tags = Union[str, List[str], None]


def _normalize_values(params: Mapping[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        normalized[key] = list(value) if isinstance(value, tuple) else value
    return normalized


def _describe_model_error(exc: pydantic.ValidationError) -> ValidationError:
    first = exc.errors()[0] if exc.errors() else {}
    loc = [str(part) for part in first.get("loc", ())]
    field = loc[1] if len(loc) > 1 and loc[0] == "parameters" else (loc[0] if loc else None)
    message = first.get("msg", str(exc))
    return ValidationError(f"{field}: {message}" if field else message, field=field)


class BearAPI:
    """Typed facade over the command correlator."""

    def __init__(self, correlator: CommandCorrelator, token: Optional[str] = None):
        self.correlator = correlator
        self.token = token or None

    def _apply_token(
        self,
        spec: ActionSpec,
        params: Dict[str, Any],
        token: Optional[str],
    ) -> Dict[str, Any]:
        explicit = token or params.pop("token", None)
        effective = explicit or self.token
        policy = spec.token

        if policy is TokenPolicy.NEVER:
            if explicit:
                raise ValidationError(f"'{spec.name}' does not accept a token", field="token")
            return params

        needs_token = policy is TokenPolicy.REQUIRED or (
            policy is TokenPolicy.WHEN_SELECTED and is_truthy_flag(params.get("selected"))
        )
        if needs_token and not effective:
            reason = "when selected is set" if policy is TokenPolicy.WHEN_SELECTED else "for this action"
            raise ValidationError(
                f"A Bear API token is required {reason} ('{spec.name}')",
                field="token",
            )
        if effective and (needs_token or policy is TokenPolicy.OPTIONAL):
            params["token"] = effective
        return params

    async def call(
        self,
        action: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        """
        Run any supported action by its Bear name with Bear's own parameter names.

        This is the single path every typed method below goes through.
        """
        spec = get_action(action)
        parameters = self._apply_token(spec, _normalize_values(params or {}), token)
        try:
            request = CommandRequest(action=action, parameters=parameters)
        except pydantic.ValidationError as exc:
            raise _describe_model_error(exc) from exc
        logger.debug("Bear %s with fields %s", action, sorted(k for k in parameters if k != "token"))
        return await self.correlator.execute(request, spec, timeout=timeout)

    # --- notes ---

    async def open_note(
        self,
        *,
        id: Optional[str] = None,
        title: Optional[str] = None,
        header: Optional[str] = None,
        search: Optional[str] = None,
        selected: Flag = None,
        exclude_trashed: Flag = None,
        new_window: Flag = None,
        float_window: Flag = None,
        show_window: Flag = None,
        open_note: Flag = None,
        pin: Flag = None,
        edit: Flag = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "open-note",
            merge_parameters(
                {},
                id=id,
                title=title,
                header=header,
                search=search,
                selected=selected,
                exclude_trashed=exclude_trashed,
                new_window=new_window,
                float=float_window,
                show_window=show_window,
                open_note=open_note,
                pin=pin,
                edit=edit,
            ),
            token=token,
            timeout=timeout,
        )

    async def create_note(
        self,
        *,
        title: Optional[str] = None,
        text: Optional[str] = None,
        tags: Tags = None,
        file: Optional[str] = None,
        filename: Optional[str] = None,
        type: Optional[str] = None,
        url: Optional[str] = None,
        clipboard: Flag = None,
        open_note: Flag = None,
        new_window: Flag = None,
        float_window: Flag = None,
        show_window: Flag = None,
        pin: Flag = None,
        edit: Flag = None,
        timestamp: Flag = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "create",
            merge_parameters(
                {},
                title=title,
                text=text,
                tags=tags,
                file=file,
                filename=filename,
                type=type,
                url=url,
                clipboard=clipboard,
                open_note=open_note,
                new_window=new_window,
                float=float_window,
                show_window=show_window,
                pin=pin,
                edit=edit,
                timestamp=timestamp,
            ),
            timeout=timeout,
        )

    async def add_text(
        self,
        *,
        id: Optional[str] = None,
        title: Optional[str] = None,
        selected: Flag = None,
        text: Optional[str] = None,
        header: Optional[str] = None,
        mode: Optional[str] = None,
        tags: Tags = None,
        clipboard: Flag = None,
        new_line: Flag = None,
        exclude_trashed: Flag = None,
        open_note: Flag = None,
        new_window: Flag = None,
        show_window: Flag = None,
        edit: Flag = None,
        timestamp: Flag = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "add-text",
            merge_parameters(
                {},
                id=id,
                title=title,
                selected=selected,
                text=text,
                header=header,
                mode=mode,
                tags=tags,
                clipboard=clipboard,
                new_line=new_line,
                exclude_trashed=exclude_trashed,
                open_note=open_note,
                new_window=new_window,
                show_window=show_window,
                edit=edit,
                timestamp=timestamp,
            ),
            token=token,
            timeout=timeout,
        )

    async def append_text(self, *, text: str, **kwargs: Any) -> CallbackPayload:
        validate_non_empty_string(text, "text")
        return await self.add_text(text=text, mode="append", **kwargs)

    async def prepend_text(self, *, text: str, **kwargs: Any) -> CallbackPayload:
        validate_non_empty_string(text, "text")
        return await self.add_text(text=text, mode="prepend", **kwargs)

    async def replace_text(self, *, text: str, keep_title: bool = True, **kwargs: Any) -> CallbackPayload:
        """Replace a note's body, or the whole note including its title when ``keep_title`` is False."""
        validate_non_empty_string(text, "text")
        return await self.add_text(text=text, mode="replace" if keep_title else "replace_all", **kwargs)

    async def add_file(
        self,
        *,
        file: str,
        filename: str,
        id: Optional[str] = None,
        title: Optional[str] = None,
        selected: Flag = None,
        header: Optional[str] = None,
        mode: Optional[str] = None,
        open_note: Flag = None,
        new_window: Flag = None,
        show_window: Flag = None,
        edit: Flag = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "add-file",
            merge_parameters(
                {},
                file=file,
                filename=filename,
                id=id,
                title=title,
                selected=selected,
                header=header,
                mode=mode,
                open_note=open_note,
                new_window=new_window,
                show_window=show_window,
                edit=edit,
            ),
            token=token,
            timeout=timeout,
        )

    async def trash_note(
        self,
        *,
        id: Optional[str] = None,
        search: Optional[str] = None,
        show_window: Flag = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "trash",
            merge_parameters({}, id=id, search=search, show_window=show_window),
            timeout=timeout,
        )

    async def archive_note(
        self,
        *,
        id: Optional[str] = None,
        search: Optional[str] = None,
        show_window: Flag = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "archive",
            merge_parameters({}, id=id, search=search, show_window=show_window),
            timeout=timeout,
        )

    async def grab_url(
        self,
        *,
        url: str,
        tags: Tags = None,
        pin: Flag = None,
        wait: Flag = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "grab-url",
            merge_parameters({}, url=url, tags=tags, pin=pin, wait=wait),
            timeout=timeout,
        )

    # --- tags ---

    async def get_tags(self, *, token: Optional[str] = None, timeout: Optional[float] = None) -> CallbackPayload:
        return await self.call("tags", {}, token=token, timeout=timeout)

    async def open_tag(
        self,
        *,
        name: str,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call("open-tag", {"name": name}, token=token, timeout=timeout)

    async def rename_tag(
        self,
        *,
        name: str,
        new_name: str,
        show_window: Flag = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "rename-tag",
            merge_parameters({}, name=name, new_name=new_name, show_window=show_window),
            timeout=timeout,
        )

    async def delete_tag(
        self,
        *,
        name: str,
        show_window: Flag = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "delete-tag",
            merge_parameters({}, name=name, show_window=show_window),
            timeout=timeout,
        )

    # --- filtered views and search ---

    async def _show(
        self,
        action: str,
        search: Optional[str],
        show_window: Flag,
        token: Optional[str],
        timeout: Optional[float],
    ) -> CallbackPayload:
        return await self.call(
            action,
            merge_parameters({}, search=search, show_window=show_window),
            token=token,
            timeout=timeout,
        )

    async def show_untagged(
        self,
        *,
        search: Optional[str] = None,
        show_window: Flag = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self._show("untagged", search, show_window, token, timeout)

    async def show_todo(
        self,
        *,
        search: Optional[str] = None,
        show_window: Flag = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self._show("todo", search, show_window, token, timeout)

    async def show_today(
        self,
        *,
        search: Optional[str] = None,
        show_window: Flag = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self._show("today", search, show_window, token, timeout)

    async def show_locked(
        self,
        *,
        search: Optional[str] = None,
        show_window: Flag = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self._show("locked", search, show_window, None, timeout)

    async def search_notes(
        self,
        *,
        term: Optional[str] = None,
        tag: Optional[str] = None,
        show_window: Flag = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CallbackPayload:
        return await self.call(
            "search",
            merge_parameters({}, term=term, tag=tag, show_window=show_window),
            token=token,
            timeout=timeout,
        )
