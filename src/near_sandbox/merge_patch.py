"""JSON merge patch (RFC 7396) for genesis and node config documents."""

from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from typing import overload

from near_sandbox.errors import MalformedPatchError
from near_sandbox.json_types import JsonObject, JsonValue


@overload
def apply_merge_patch(target: JsonValue, patch: Mapping[str, JsonValue]) -> JsonObject: ...


@overload
def apply_merge_patch(target: JsonValue, patch: JsonValue) -> JsonValue: ...


def apply_merge_patch(target: JsonValue, patch: JsonValue) -> JsonValue:
    """Return `target` with `patch` applied; neither input is mutated.

    Objects merge key by key, `None` removes a key, and everything else
    (arrays included) replaces the existing value wholesale. An object patch
    always yields an object.
    """

    if not isinstance(patch, Mapping):
        return copy.deepcopy(patch)

    result: JsonObject = dict(target) if isinstance(target, Mapping) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


def coerce_patch(patch: Mapping[str, JsonValue] | str | None, *, name: str) -> JsonObject | None:
    """Normalize a caller-supplied patch into a JSON object.

    Accepts a mapping or JSON text. Anything that is not a JSON object, or
    that cannot round-trip through `json`, raises `MalformedPatchError`.
    """

    if patch is None:
        return None
    if isinstance(patch, str):
        try:
            patch = json.loads(patch)
        except json.JSONDecodeError as exc:
            raise MalformedPatchError(f"{name} is not valid JSON: {exc}") from exc
    if not isinstance(patch, Mapping):
        raise MalformedPatchError(f"{name} must be a JSON object, got {type(patch).__name__}")
    try:
        return json.loads(json.dumps(patch))
    except (TypeError, ValueError) as exc:
        raise MalformedPatchError(f"{name} is not JSON-serializable: {exc}") from exc


__all__ = ["apply_merge_patch", "coerce_patch"]
