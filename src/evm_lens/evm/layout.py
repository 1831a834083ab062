"""Storage layout manifest and observed-storage snapshot parsing."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ..errors import LayoutError, SnapshotError

__all__ = ["StorageLayout", "StorageVariable", "parse_layout", "parse_snapshot"]

_AUTHORITY_NAME_HINTS = ("owner", "admin", "governance", "governor", "controller")


@dataclass(slots=True, frozen=True)
class StorageVariable:
    name: str
    slot: int
    offset: int = 0
    type: str = "unknown"
    public: bool = False


@dataclass(slots=True)
class StorageLayout:
    variables: list[StorageVariable] = field(default_factory=list)

    def by_slot(self, slot: int) -> list[StorageVariable]:
        return [var for var in self.variables if var.slot == slot]

    def name_of(self, slot: int) -> str | None:
        names = [var.name for var in self.by_slot(slot)]
        return "/".join(names) if names else None

    def is_declared(self, slot: int) -> bool:
        return any(var.slot == slot for var in self.variables)

    def public_slots(self) -> set[int]:
        return {var.slot for var in self.variables if var.public}

    def authority_slots(self) -> set[int]:
        """Slots whose declared name marks them as the contract's owner or admin."""
        slots: set[int] = set()
        for var in self.variables:
            lowered = var.name.lower().lstrip("_")
            if any(hint in lowered for hint in _AUTHORITY_NAME_HINTS):
                slots.add(var.slot)
        return slots


def _parse_int(raw: Any, what: str) -> int:
    if isinstance(raw, bool):
        raise ValueError(f"{what} must be an integer, got {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    raise ValueError(f"{what} must be an integer, got {raw!r}")


def _parse_entry(item: dict[str, Any]) -> StorageVariable:
    name = item.get("label", item.get("name"))
    if not isinstance(name, str) or not name:
        raise LayoutError("Layout entry is missing a variable name")
    try:
        slot = _parse_int(item.get("slot"), "slot")
        offset = _parse_int(item.get("offset", 0), "offset")
    except ValueError as exc:
        raise LayoutError(f"Invalid layout entry for '{name}': {exc}") from exc
    return StorageVariable(
        name=name,
        slot=slot,
        offset=offset,
        type=str(item.get("type", "unknown")),
        public=bool(item.get("public", False)),
    )


def parse_layout(raw_json: str) -> StorageLayout:
    """Parse a storage layout manifest.

    Accepts the solc ``storageLayout`` output (``{"storage": [...]}``), a bare
    list of the same entries, or a flat ``{"<slot>": "<name>"}`` object.
    """
    try:
        payload = json.loads(raw_json)
    except json.JSONDecodeError as exc:
        raise LayoutError(f"Invalid layout JSON: {exc}") from exc

    if isinstance(payload, dict) and isinstance(payload.get("storage"), list):
        entries = payload["storage"]
    elif isinstance(payload, list):
        entries = payload
    elif isinstance(payload, dict):
        layout = StorageLayout()
        for raw_slot, raw_name in payload.items():
            try:
                slot = _parse_int(raw_slot, "slot")
            except ValueError as exc:
                raise LayoutError(f"Invalid layout slot key {raw_slot!r}") from exc
            if isinstance(raw_name, dict):
                layout.variables.append(_parse_entry({"slot": slot, **raw_name}))
            else:
                layout.variables.append(StorageVariable(name=str(raw_name), slot=slot))
        return layout
    else:
        raise LayoutError("Layout root must be an object or a list")

    layout = StorageLayout()
    for item in entries:
        if not isinstance(item, dict):
            continue
        layout.variables.append(_parse_entry(item))
    return layout


def parse_snapshot(raw_json: str) -> dict[int, int]:
    """Parse an observed-storage snapshot ``{"<slot>": "<value>"}``."""
    try:
        payload = json.loads(raw_json)
    except json.JSONDecodeError as exc:
        raise SnapshotError(f"Invalid snapshot JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SnapshotError("Snapshot root must be an object")

    snapshot: dict[int, int] = {}
    for raw_slot, raw_value in payload.items():
        try:
            slot = _parse_int(raw_slot, "slot")
            value = _parse_int(raw_value, "value")
        except ValueError as exc:
            raise SnapshotError(f"Invalid snapshot entry {raw_slot!r}: {exc}") from exc
        if not 0 <= value < 1 << 256:
            raise SnapshotError(f"Snapshot value for slot {raw_slot!r} is outside the 256-bit range")
        snapshot[slot] = value
    return snapshot
