from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .parts import BOOLEAN, FieldSpec, FieldValue, dependency_table, index_specs

MIN_VISIBLE_GEARS = 6
MAX_GEARS = 20


class SelectionState(ABC):
    """Current and original values for one family of build fields.

    The original values are a read-only snapshot taken when the state is
    created; edits only ever touch the current map, so any field can be
    compared with or reverted to what was persisted. Operations on field ids
    missing from the catalogue are ignored.
    """

    def __init__(
        self,
        specs: Iterable[FieldSpec],
        original: Optional[Mapping[str, FieldValue]] = None,
        dependencies: Optional[Dict[str, Tuple[str, str]]] = None,
    ) -> None:
        specs = list(specs)
        self.specs: Dict[str, FieldSpec] = index_specs(specs)
        self._original: Mapping[str, FieldValue] = MappingProxyType(dict(original or {}))
        self._current: Dict[str, FieldValue] = dict(self._original)
        self.dependencies = dependency_table(specs, dependencies)

    @property
    def original(self) -> Mapping[str, FieldValue]:
        return self._original

    @property
    def current(self) -> Mapping[str, FieldValue]:
        return MappingProxyType(self._current)

    def value(self, field_id: str) -> FieldValue:
        if field_id in self._current:
            return self._current[field_id]
        return self._empty(field_id)

    def original_value(self, field_id: str) -> FieldValue:
        if field_id in self._original:
            return self._original[field_id]
        return self._empty(field_id)

    def set_value(self, field_id: str, value: FieldValue) -> None:
        if field_id not in self.specs:
            return
        self._current[field_id] = value

    def reset_value(self, field_id: str) -> None:
        if field_id not in self.specs:
            return
        if field_id in self._original:
            self._current[field_id] = self._original[field_id]
        else:
            self._current.pop(field_id, None)

    def clear_value(self, field_id: str) -> None:
        if field_id not in self.specs:
            return
        self._current[field_id] = self._empty(field_id)
        for dependent in self.dependents_of(field_id):
            self._current[dependent] = self._empty(dependent)

    def has_changed(self, field_id: str) -> bool:
        if field_id not in self.specs:
            return False
        current = self.value(field_id)
        original = self.original_value(field_id)
        # True and "true" are different values
        return type(current) is not type(original) or current != original

    def is_visible(self, field_id: str) -> bool:
        dependency = self.dependencies.get(field_id)
        if dependency is None:
            return True
        controller, required = dependency
        controlling_value = self.value(controller)
        return isinstance(controlling_value, str) and controlling_value == required

    def dependents_of(self, field_id: str) -> List[str]:
        return [dependent for dependent, (controller, _) in self.dependencies.items() if controller == field_id]

    def changed_fields(self) -> List[str]:
        return [field_id for field_id in self.specs if self.has_changed(field_id)]

    @abstractmethod
    def to_submission_list(self) -> List[Dict[str, Any]]:
        """The ``{"fieldId", "value"}`` pairs to persist."""

    def _empty(self, field_id: str) -> FieldValue:
        spec = self.specs.get(field_id)
        return spec.empty_value if spec is not None else ""


class UpgradeSelection(SelectionState):
    """Installed parts: checkbox parts hold booleans, dropdown parts hold text."""

    def toggle(self, field_id: str) -> None:
        spec = self.specs.get(field_id)
        if spec is None or spec.kind != BOOLEAN:
            return
        self.set_value(field_id, not self.value(field_id))

    def to_submission_list(self) -> List[Dict[str, Any]]:
        # Unchecked parts are omitted; absence means not installed
        submissions: List[Dict[str, Any]] = []
        for field_id, value in self._current.items():
            if isinstance(value, bool):
                if value:
                    submissions.append({"fieldId": field_id, "value": True})
            elif isinstance(value, str) and value:
                submissions.append({"fieldId": field_id, "value": value})
        return submissions


class TuningSelection(SelectionState):
    """Tuning values, all text; compound values look like ``"front:rear"``."""

    def to_submission_list(self) -> List[Dict[str, Any]]:
        # An empty string is an explicit clear and is still submitted
        return [{"fieldId": field_id, "value": value} for field_id, value in self._current.items()]


class GearRatios:
    """Gear ratio slots 1-20 plus final drive, with a growable visible count."""

    def __init__(self, gears: Optional[Mapping[int, Optional[str]]] = None, final_drive: Optional[str] = None) -> None:
        cleaned = {
            int(slot): str(value)
            for slot, value in (gears or {}).items()
            if 1 <= int(slot) <= MAX_GEARS and value not in (None, "")
        }
        self._original: Mapping[int, str] = MappingProxyType(dict(cleaned))
        self._original_final_drive = final_drive or None
        self.gears: Dict[int, str] = dict(cleaned)
        self.final_drive: Optional[str] = self._original_final_drive
        self.visible_count = max([MIN_VISIBLE_GEARS, *cleaned.keys()])

    @classmethod
    def from_build_row(cls, row: Mapping[str, Any]) -> "GearRatios":
        gears = {slot: row.get(f"gear{slot}") for slot in range(1, MAX_GEARS + 1)}
        final_drive = row.get("finalDrive")
        return cls(gears, final_drive=str(final_drive) if final_drive not in (None, "") else None)

    def gear(self, slot: int) -> Optional[str]:
        return self.gears.get(slot)

    def set_gear(self, slot: int, value: Optional[str]) -> None:
        if not 1 <= slot <= self.visible_count:
            return
        if value in (None, ""):
            self.gears.pop(slot, None)
        else:
            self.gears[slot] = str(value)

    def set_final_drive(self, value: Optional[str]) -> None:
        self.final_drive = value or None

    def add_gear(self) -> None:
        self.visible_count = min(MAX_GEARS, self.visible_count + 1)

    def remove_gear(self, slot: int) -> None:
        self.gears.pop(slot, None)
        # Only removing the last visible slot shrinks the list
        if slot == self.visible_count:
            self.visible_count = max(MIN_VISIBLE_GEARS, self.visible_count - 1)

    def has_changed(self, slot: int) -> bool:
        return self.gears.get(slot) != self._original.get(slot)

    def final_drive_changed(self) -> bool:
        return self.final_drive != self._original_final_drive

    def reset_gear(self, slot: int) -> None:
        if slot in self._original:
            self.gears[slot] = self._original[slot]
        else:
            self.gears.pop(slot, None)

    def reset_final_drive(self) -> None:
        self.final_drive = self._original_final_drive

    def changed_slots(self) -> List[int]:
        return [slot for slot in range(1, MAX_GEARS + 1) if self.has_changed(slot)]

    def to_columns(self) -> Dict[str, Optional[str]]:
        columns: Dict[str, Optional[str]] = {"finalDrive": self.final_drive}
        for slot in range(1, MAX_GEARS + 1):
            columns[f"gear{slot}"] = self.gears.get(slot)
        return columns


@dataclass
class BuildDraft:
    """An in-progress edit of a build."""

    build_id: str
    name: str
    description: Optional[str]
    is_public: bool
    upgrades: UpgradeSelection
    settings: TuningSelection
    gears: GearRatios = field(default_factory=GearRatios)

    @classmethod
    def from_build(
        cls,
        build: Mapping[str, Any],
        part_specs: Iterable[FieldSpec],
        setting_specs: Iterable[FieldSpec],
    ) -> "BuildDraft":
        part_specs = list(part_specs)
        parts_by_id = index_specs(part_specs)

        upgrades_original: Dict[str, FieldValue] = {}
        for row in build.get("upgrades") or []:
            if not isinstance(row, dict):
                continue
            part_id = str(row.get("partId") or "").strip()
            if not part_id:
                continue
            spec = parts_by_id.get(part_id)
            raw_value = row.get("value")
            if spec is not None and spec.kind != BOOLEAN:
                upgrades_original[part_id] = str(raw_value) if raw_value is not None else ""
            elif raw_value is None:
                upgrades_original[part_id] = True
            else:
                upgrades_original[part_id] = str(raw_value)

        settings_original: Dict[str, FieldValue] = {}
        for row in build.get("settings") or []:
            if not isinstance(row, dict):
                continue
            setting_id = str(row.get("settingId") or "").strip()
            if not setting_id:
                continue
            value = row.get("value")
            settings_original[setting_id] = "" if value is None else str(value)

        return cls(
            build_id=str(build.get("id") or ""),
            name=str(build.get("name") or ""),
            description=build.get("description"),
            is_public=bool(build.get("isPublic")),
            upgrades=UpgradeSelection(part_specs, upgrades_original),
            settings=TuningSelection(setting_specs, settings_original),
            gears=GearRatios.from_build_row(build),
        )

    def apply(self, changes: Mapping[str, Any]) -> None:
        """Apply an edit request.

        Order: header fields, new values, resets, clears, then gear slot
        changes. Ids in ``reset``/``clear`` may name parts or settings.
        """

        if changes.get("name") is not None:
            self.name = str(changes["name"]).strip()
        if "description" in changes:
            self.description = changes.get("description")
        if changes.get("isPublic") is not None:
            self.is_public = bool(changes["isPublic"])

        for field_id, value in (changes.get("upgrades") or {}).items():
            self.upgrades.set_value(field_id, value)
        for field_id, value in (changes.get("settings") or {}).items():
            self.settings.set_value(field_id, value)

        for field_id in changes.get("reset") or []:
            self.upgrades.reset_value(field_id)
            self.settings.reset_value(field_id)
        for field_id in changes.get("clear") or []:
            self.upgrades.clear_value(field_id)
            self.settings.clear_value(field_id)

        for _ in range(int(changes.get("addGears") or 0)):
            self.gears.add_gear()
        for slot, value in (changes.get("gears") or {}).items():
            self.gears.set_gear(int(slot), value)
        for slot in changes.get("removeGears") or []:
            self.gears.remove_gear(int(slot))
        if "finalDrive" in changes:
            self.gears.set_final_drive(changes.get("finalDrive"))

    def changed_fields(self) -> Dict[str, List[Any]]:
        return {
            "upgrades": self.upgrades.changed_fields(),
            "settings": self.settings.changed_fields(),
            "gears": self.gears.changed_slots(),
            "finalDrive": [self.gears.final_drive] if self.gears.final_drive_changed() else [],
        }

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "isPublic": self.is_public,
            "upgrades": self.upgrades.to_submission_list(),
            "settings": self.settings.to_submission_list(),
        }
        payload.update(self.gears.to_columns())
        return payload
