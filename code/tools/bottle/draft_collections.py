#!/usr/bin/env python3
"""In-memory bottle draft: six ordered collections edited by position.

Entries are addressed by their current position. Each entry also carries a stable slot
number that never changes, so inline edit errors survive re-ordering and deletion only has
to re-bind the positions of the survivors.
"""

import itertools
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional

from bottle_common import COLLECTION_NAMES, render_token
from validate_fields import (
    ANNOTATION_RULES,
    AUTHOR_RULES,
    LABEL_RULES,
    METRIC_RULES,
    PART_LABEL_RULES,
    PART_RULES,
    SOURCE_RULES,
    FieldErrors,
    FieldRule,
    validate_fields,
)


class CollectionError(ValueError):
    pass


class Entry:
    def __init__(self, slot: int, fields: Dict[str, str]):
        self.slot = slot
        self.fields = OrderedDict(fields)
        self.index = -1
        self.editing = False
        self.edit_inputs: Dict[str, str] = OrderedDict()


class PartEntry(Entry):
    def __init__(self, slot: int, fields: Dict[str, str]):
        super().__init__(slot, fields)
        self.selected = False
        self.labels: Optional["Collection"] = None


def as_text(value) -> str:
    return "" if value is None else str(value)


class Collection:
    entry_class = Entry

    def __init__(
        self,
        name: str,
        rules: List[FieldRule],
        key_field: Optional[str] = None,
        token_value_field: Optional[str] = None,
        tooltip_field: Optional[str] = None,
        keep_empty_value: bool = False,
        route: Optional[str] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.name = name
        self.rules = rules
        self.key_field = key_field
        self.token_value_field = token_value_field
        self.tooltip_field = tooltip_field
        self.keep_empty_value = keep_empty_value
        self.route = route or name
        self.on_change = on_change
        self.entries: List[Entry] = []
        self.errors = FieldErrors()
        self.inputs = self._blank(self.rules)
        self._slots = itertools.count()

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def field_names(self) -> List[str]:
        return [rule.name for rule in self.rules]

    @staticmethod
    def _blank(rules: List[FieldRule]) -> Dict[str, str]:
        return OrderedDict((rule.name, "") for rule in rules)

    @staticmethod
    def _pick(rules: List[FieldRule], source: dict) -> Dict[str, str]:
        return OrderedDict((rule.name, as_text(source.get(rule.name, ""))) for rule in rules)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _entry(self, index: int) -> Entry:
        if not isinstance(index, int) or index < 0 or index >= len(self.entries):
            raise CollectionError(f"{self.name} has no entry at index {index}")
        return self.entries[index]

    def _append(self, values: Dict[str, str]) -> Entry:
        entry = self.entry_class(next(self._slots), values)
        entry.index = len(self.entries)
        self.entries.append(entry)
        return entry

    def _rebind(self) -> None:
        for position, entry in enumerate(self.entries):
            entry.index = position

    def edit_prefix(self, entry: Entry) -> str:
        return f"{self.name}.{entry.slot}"

    def set_inputs(self, values: dict) -> None:
        for name in self.field_names:
            if name in values:
                self.inputs[name] = as_text(values[name])

    def clear_inputs(self) -> None:
        self.inputs = self._blank(self.rules)

    def add(self, fields: Optional[dict] = None) -> Optional[Entry]:
        if fields is not None:
            self.set_inputs(fields)
        values = self._pick(self.rules, self.inputs)
        if not validate_fields(self.errors, self.name, self.rules, values):
            return None
        entry = self._append(values)
        self.clear_inputs()
        self._changed()
        return entry

    def editing_entry(self) -> Optional[Entry]:
        return next((e for e in self.entries if e.editing), None)

    def begin_edit(self, index: int) -> Entry:
        entry = self._entry(index)
        current = self.editing_entry()
        if current is not None and current is not entry:
            raise CollectionError(f"finish editing {self.name} entry {current.index} first")
        entry.editing = True
        entry.edit_inputs = OrderedDict(entry.fields)
        return entry

    def set_edit_inputs(self, entry: Entry, values: dict) -> None:
        for name in self.field_names:
            if name in values:
                entry.edit_inputs[name] = as_text(values[name])

    def commit_edit(self, index: int, fields: Optional[dict] = None) -> bool:
        entry = self._entry(index)
        if not entry.editing:
            raise CollectionError(f"{self.name} entry {index} is not being edited")
        if fields is not None:
            self.set_edit_inputs(entry, fields)
        values = self._pick(self.rules, entry.edit_inputs)
        if not validate_fields(self.errors, self.edit_prefix(entry), self.rules, values):
            return False
        entry.fields = values
        entry.editing = False
        entry.edit_inputs = OrderedDict()
        self._changed()
        return True

    def cancel_edit(self, index: int) -> Entry:
        # Closing an entry mid-edit removes it rather than restoring the saved values.
        entry = self._entry(index)
        if not entry.editing:
            raise CollectionError(f"{self.name} entry {index} is not being edited")
        return self.delete(index)

    def delete(self, index: int) -> Entry:
        entry = self._entry(index)
        del self.entries[index]
        self.errors.clear_prefix(self.edit_prefix(entry) + ".")
        self._rebind()
        self._changed()
        return entry

    def lookup_by_key(self, key: str) -> Optional[int]:
        if self.key_field is None:
            raise CollectionError(f"{self.name} is not addressed by key")
        for entry in self.entries:
            if entry.fields.get(self.key_field) == key:
                return entry.index
        return None

    def delete_by_key(self, key: str) -> Entry:
        index = self.lookup_by_key(key)
        if index is None:
            raise CollectionError(f"{self.name} has no entry with key {key!r}")
        return self.delete(index)

    def load(self, records: Iterable[dict]) -> None:
        for record in records:
            self._append(self._pick(self.rules, record))

    def records(self, include_editing: bool = True) -> List[Dict[str, str]]:
        return [OrderedDict(e.fields) for e in self.entries if include_editing or not e.editing]

    def token(self, entry: Entry) -> Optional[str]:
        if self.key_field is None:
            return None
        value = entry.fields.get(self.token_value_field, "") if self.token_value_field else ""
        return render_token(entry.fields.get(self.key_field, ""), value, self.keep_empty_value and bool(self.token_value_field))

    def controls(self, entry: Entry) -> Dict[str, str]:
        base = f"/api/{self.route}/{entry.index}"
        if entry.editing:
            return {"save": f"{base}/commit_edit", "close": f"{base}/cancel_edit"}
        return {"edit": f"{base}/edit", "delete": f"{base}/delete"}

    def render_entry(self, entry: Entry) -> dict:
        out = {
            "index": entry.index,
            "slot": entry.slot,
            "fields": dict(entry.fields),
            "editing": entry.editing,
            "controls": self.controls(entry),
        }
        if entry.editing:
            out["edit_inputs"] = dict(entry.edit_inputs)
            out["edit_prefix"] = self.edit_prefix(entry)
        token = self.token(entry)
        if token is not None:
            out["token"] = token
        if self.tooltip_field:
            out["tooltip"] = entry.fields.get(self.tooltip_field, "")
        return out

    def render(self) -> dict:
        return {
            "name": self.name,
            "route": self.route,
            "fields": self.field_names,
            "inputs": dict(self.inputs),
            "errors": self.errors.as_dict(),
            "entries": [self.render_entry(e) for e in self.entries],
        }


class PartsCollection(Collection):
    """Parts, each owning an independent labels collection.

    Labels are added through a shared form to every checked part, or to all parts while
    select-all is on.
    """

    entry_class = PartEntry

    def __init__(self, on_change: Optional[Callable[[], None]] = None):
        super().__init__("parts", PART_RULES, on_change=on_change)
        self.select_all = False
        self.label_inputs = self._blank(PART_LABEL_RULES)

    def _append(self, values: Dict[str, str]) -> PartEntry:
        entry = super()._append(values)
        entry.labels = Collection(
            f"parts.{entry.slot}.labels",
            PART_LABEL_RULES,
            key_field="key",
            token_value_field="value",
            keep_empty_value=True,
            route=f"parts/{entry.index}/labels",
            on_change=self._changed,
        )
        return entry

    def _rebind(self) -> None:
        super()._rebind()
        for entry in self.entries:
            entry.labels.route = f"parts/{entry.index}/labels"

    def part_labels(self, index: int) -> Collection:
        return self._entry(index).labels

    def select(self, index: int, checked: bool = True) -> None:
        self._entry(index).selected = bool(checked)

    def set_select_all(self, checked: bool) -> None:
        self.select_all = bool(checked)

    def selected_entries(self) -> List[PartEntry]:
        return [e for e in self.entries if self.select_all or e.selected]

    def set_label_inputs(self, values: dict) -> None:
        for rule in PART_LABEL_RULES:
            if rule.name in values:
                self.label_inputs[rule.name] = as_text(values[rule.name])

    def add_label(self, fields: Optional[dict] = None) -> Optional[int]:
        if fields is not None:
            self.set_label_inputs(fields)
        values = self._pick(PART_LABEL_RULES, self.label_inputs)
        if not validate_fields(self.errors, "parts.label", PART_LABEL_RULES, values):
            return None
        targets = self.selected_entries()
        for part in targets:
            part.labels.load([values])
        self.label_inputs = self._blank(PART_LABEL_RULES)
        if targets:
            self._changed()
        return len(targets)

    def delete_label(self, index: int, key: str) -> Entry:
        return self.part_labels(index).delete_by_key(key)

    def load(self, records: Iterable[dict]) -> None:
        for record in records:
            entry = self._append(self._pick(self.rules, record))
            labels = record.get("labels") or {}
            entry.labels.load({"key": k, "value": v} for k, v in labels.items())

    def render_entry(self, entry: PartEntry) -> dict:
        out = super().render_entry(entry)
        out["selected"] = entry.selected
        out["labels"] = entry.labels.render()
        return out

    def render(self) -> dict:
        out = super().render()
        out["select_all"] = self.select_all
        out["label_inputs"] = dict(self.label_inputs)
        return out


class Draft:
    def __init__(self, description: str = "", on_change: Optional[Callable[[], None]] = None):
        self.description = description or ""
        self.on_change = on_change
        self.authors = Collection("authors", AUTHOR_RULES, on_change=self._changed)
        self.sources = Collection("sources", SOURCE_RULES, on_change=self._changed)
        self.labels = Collection("labels", LABEL_RULES, key_field="key", token_value_field="value", on_change=self._changed)
        self.annotations = Collection("annotations", ANNOTATION_RULES, key_field="key", tooltip_field="value", on_change=self._changed)
        self.metrics = Collection(
            "metrics",
            METRIC_RULES,
            key_field="name",
            token_value_field="value",
            tooltip_field="description",
            keep_empty_value=True,
            on_change=self._changed,
        )
        self.parts = PartsCollection(on_change=self._changed)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    @property
    def collections(self) -> Dict[str, Collection]:
        return OrderedDict((name, getattr(self, name)) for name in COLLECTION_NAMES)

    def collection(self, name: str) -> Collection:
        try:
            return self.collections[name]
        except KeyError:
            raise CollectionError(f"unknown collection: {name}") from None

    def set_description(self, text: str) -> None:
        text = text or ""
        if text == self.description:
            return
        self.description = text
        self._changed()

    @classmethod
    def from_bottle(cls, bottle: dict, on_change: Optional[Callable[[], None]] = None) -> "Draft":
        draft = cls(description=as_text(bottle.get("description", "")))
        draft.authors.load(bottle.get("authors") or [])
        draft.sources.load(bottle.get("sources") or [])
        draft.labels.load({"key": k, "value": v} for k, v in (bottle.get("labels") or {}).items())
        draft.annotations.load({"key": k, "value": v} for k, v in (bottle.get("annotations") or {}).items())
        draft.metrics.load(bottle.get("metrics") or [])
        draft.parts.load(bottle.get("parts") or [])
        draft.on_change = on_change
        return draft

    def render(self) -> dict:
        return {
            "description": self.description,
            "collections": {name: c.render() for name, c in self.collections.items()},
        }
