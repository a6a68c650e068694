from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

FieldValue = Union[bool, str]

BOOLEAN = "boolean"
TEXT = "text"

# Parts chosen from a dropdown rather than toggled on/off.
DROPDOWN_PARTS: Dict[str, Tuple[str, ...]] = {
    "Front": ("Standard", "Type A", "Type B"),
    "Side": ("Standard", "Type A", "Type B"),
    "Rear": ("Standard", "Type A", "Type B"),
    "Wing": ("Standard", "None", "Type A", "Type B", "Custom"),
    "Wing Height": ("Low", "Medium", "High"),
    "Wing Endplate": tuple(str(n) for n in range(1, 21)),
    "Wide Body Installed": ("Yes", "No"),
}

# dependent field name -> (controlling field name, value that reveals it)
FIELD_DEPENDENCIES: Dict[str, Tuple[str, str]] = {
    "Wing Height": ("Wing", "Custom"),
    "Wing Endplate": ("Wing", "Custom"),
}


@dataclass(frozen=True)
class FieldSpec:
    """Catalogue entry for one upgrade part or tuning setting."""

    field_id: str
    name: str
    kind: str = BOOLEAN
    category: str = ""
    options: Tuple[str, ...] = field(default_factory=tuple)
    input_type: str = ""
    default: Optional[str] = None

    @property
    def empty_value(self) -> FieldValue:
        return False if self.kind == BOOLEAN else ""

    def accepts(self, value: Any) -> bool:
        """Whether ``value`` is valid for this field at submission time."""

        if self.kind == BOOLEAN:
            return isinstance(value, bool)
        if not isinstance(value, str):
            return False
        if value == "" or not self.options:
            return True
        return value in self.options

    @classmethod
    def from_part_row(cls, row: Dict[str, Any]) -> "FieldSpec":
        """Factory for a ``Part`` row (optionally joined with its category)."""

        part_id = str(row.get("id") or "").strip()
        name = str(row.get("name") or "").strip()
        if not part_id or not name:
            raise ValueError("part rows require both id and name")

        category = row.get("category")
        category_name = str(category.get("name") or "") if isinstance(category, dict) else ""

        options = DROPDOWN_PARTS.get(name)
        if options:
            return cls(field_id=part_id, name=name, kind=TEXT, category=category_name, options=options, input_type="select")
        return cls(field_id=part_id, name=name, kind=BOOLEAN, category=category_name, input_type="checkbox")

    @classmethod
    def from_setting_row(cls, row: Dict[str, Any]) -> "FieldSpec":
        """Factory for a ``TuningSetting`` row; every setting holds text."""

        setting_id = str(row.get("id") or "").strip()
        name = str(row.get("name") or "").strip()
        if not setting_id or not name:
            raise ValueError("tuning setting rows require both id and name")

        section = row.get("section")
        section_name = str(section.get("name") or "") if isinstance(section, dict) else ""
        input_type = str(row.get("inputType") or "text")
        options: Tuple[str, ...] = ()
        if input_type == "select":
            options = _parse_options(row.get("options"))

        default = row.get("defaultValue")
        return cls(
            field_id=setting_id,
            name=name,
            kind=TEXT,
            category=section_name,
            options=options,
            input_type=input_type,
            default=str(default) if default is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.field_id,
            "name": self.name,
            "kind": self.kind,
            "category": self.category,
            "inputType": self.input_type,
            "options": list(self.options),
            "defaultValue": self.default,
        }


def index_specs(specs: Iterable[FieldSpec]) -> Dict[str, FieldSpec]:
    return {spec.field_id: spec for spec in specs}


def dependency_table(
    specs: Iterable[FieldSpec],
    dependencies: Optional[Dict[str, Tuple[str, str]]] = None,
) -> Dict[str, Tuple[str, str]]:
    """Translate the name-keyed dependency table into field ids.

    Entries whose dependent field is not in ``specs`` are dropped. A missing
    controlling field keeps its name as the id; it never holds a value, so
    its dependents stay hidden.
    """

    dependencies = FIELD_DEPENDENCIES if dependencies is None else dependencies
    by_name = {spec.name: spec.field_id for spec in specs}
    table: Dict[str, Tuple[str, str]] = {}
    for dependent, (controller, required) in dependencies.items():
        dependent_id = by_name.get(dependent)
        if dependent_id:
            table[dependent_id] = (by_name.get(controller, controller), required)
    return table


def invalid_values(values: Dict[str, Any], specs: Dict[str, FieldSpec]) -> List[str]:
    """Return human readable problems for values outside their option sets."""

    problems: List[str] = []
    for field_id, value in values.items():
        spec = specs.get(field_id)
        if spec is None:
            continue
        if not spec.accepts(value):
            if spec.kind == BOOLEAN:
                problems.append(f"'{spec.name}' expects true or false, got {value!r}")
            else:
                problems.append(f"'{spec.name}' does not accept {value!r}")
    return problems


def _parse_options(raw: Any) -> Tuple[str, ...]:
    if isinstance(raw, (list, tuple)):
        return tuple(str(item) for item in raw)
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            return tuple(part.strip() for part in raw.split(",") if part.strip())
        if isinstance(parsed, list):
            return tuple(str(item) for item in parsed)
    return ()
