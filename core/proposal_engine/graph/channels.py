"""
Channels - Per-channel reducers for merging partial updates into state.

Nodes return partial updates keyed by channel name. The executor merges each
written channel through its reducer, so concurrent branches that write the
same keyed channel (sections, intelligence) combine instead of clobbering
each other, and append-only channels never lose entries.

Reducers operate on plain JSON-compatible data. Updates are normalised
first (pydantic models dumped, enums turned into their values) so the same
sequence of writes always produces the same state.
"""

from collections.abc import Callable, Iterable
from typing import Any

import pydantic
from pydantic_core import to_jsonable_python

from proposal_engine.errors import InvalidUpdateError, ValidationError
from proposal_engine.schemas.checkpoint import Checkpoint
from proposal_engine.schemas.state import WorkflowState

Reducer = Callable[[Any, Any], Any]


def last_value(current: Any, value: Any) -> Any:
    return value


def append(current: Any, value: Any) -> list[Any]:
    """Append-only list. A single value or a list of values may be written."""
    items = list(current or [])
    if isinstance(value, list):
        items.extend(value)
    elif value is not None:
        items.append(value)
    return items


def append_messages(current: Any, value: Any) -> list[Any]:
    """Append messages in order; a message whose id already exists replaces it in place."""
    messages = list(current or [])
    incoming = value if isinstance(value, list) else [value]
    positions = {m.get("id"): i for i, m in enumerate(messages) if isinstance(m, dict)}
    for message in incoming:
        if message is None:
            continue
        message_id = message.get("id") if isinstance(message, dict) else None
        if message_id is not None and message_id in positions:
            messages[positions[message_id]] = message
        else:
            positions[message_id] = len(messages)
            messages.append(message)
    return messages


def merge_by_key(current: Any, value: Any) -> dict[str, Any]:
    """
    Merge a keyed map entry by entry.

    A dict entry is shallow-merged into the existing entry so a node can
    write just {"status": "stale"} for one section. A None entry removes
    the key. Writing None for the whole channel clears it.
    """
    if value is None:
        return {}
    merged = dict(current or {})
    for key, entry in value.items():
        if entry is None:
            merged.pop(key, None)
        elif isinstance(entry, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **entry}
        else:
            merged[key] = entry
    return merged


def shallow_merge(current: Any, value: Any) -> Any:
    """Merge top-level fields of an object channel; None resets it."""
    if value is None or not isinstance(value, dict) or not isinstance(current, dict):
        return value
    return {**current, **value}


CHANNEL_REDUCERS: dict[str, Reducer] = {
    "errors": append,
    "messages": append_messages,
    "sections": merge_by_key,
    "intelligence": merge_by_key,
    "context": merge_by_key,
    "rfp_document": shallow_merge,
    "interrupt_status": shallow_merge,
}


def reducer_for(channel: str) -> Reducer:
    return CHANNEL_REDUCERS.get(channel, last_value)


def normalize_update(update: dict[str, Any]) -> dict[str, Any]:
    """Convert models, enums and other rich values in an update to plain data."""
    return to_jsonable_python(update)


def apply_update(
    state: WorkflowState, update: dict[str, Any] | None
) -> tuple[WorkflowState, set[str]]:
    """
    Merge a partial update into state through the channel reducers.

    Args:
        state: Current state (not modified)
        update: Partial update keyed by channel name

    Returns:
        (new state, names of the channels written)

    Raises:
        InvalidUpdateError: The update names a channel the state does not have
        ValidationError: The merged value does not fit the channel's schema
    """
    if not update:
        return state, set()

    unknown = set(update) - WorkflowState.channels()
    if unknown:
        raise InvalidUpdateError(
            f"Update writes undeclared channel(s): {', '.join(sorted(unknown))}",
            channel=sorted(unknown)[0],
        )

    normalized = normalize_update(update)
    values = state.model_dump(mode="json")
    for channel, value in normalized.items():
        values[channel] = reducer_for(channel)(values.get(channel), value)

    try:
        new_state = WorkflowState.model_validate(values)
    except pydantic.ValidationError as e:
        channel = str(e.errors()[0]["loc"][0]) if e.errors() else None
        raise ValidationError(f"Update produced an invalid state: {e}", channel=channel) from e

    return new_state, set(normalized)


def bump_versions(versions: dict[str, int], written: Iterable[str]) -> dict[str, int]:
    """Return a copy of the channel versions with every written channel incremented."""
    bumped = dict(versions)
    for channel in written:
        bumped[channel] = bumped.get(channel, 0) + 1
    return bumped


def replay(checkpoints: Iterable[Checkpoint]) -> WorkflowState:
    """
    Rebuild the latest state by re-applying recorded writes in sequence order.

    The oldest checkpoint supplied is taken as the baseline; the writes of
    every later checkpoint are merged on top of it.

    Raises:
        ValueError: No checkpoints were supplied
    """
    ordered = sorted(checkpoints, key=lambda cp: cp.sequence)
    if not ordered:
        raise ValueError("Cannot replay an empty checkpoint history")

    state = ordered[0].state()
    for checkpoint in ordered[1:]:
        for write in checkpoint.writes:
            state, _ = apply_update(state, write.update)
    return state
