import pytest

from draft_collections import CollectionError, Draft


def add_sources(draft: Draft, *names: str) -> None:
    for name in names:
        assert draft.sources.add({"name": name, "uri": f"https://example.com/{name}"}) is not None


def test_add_appends_entry_and_clears_inputs() -> None:
    draft = Draft()
    draft.authors.set_inputs({"name": "Ada", "email": "ada@x.com", "url": ""})
    entry = draft.authors.add()

    assert entry is not None
    assert len(draft.authors) == 1
    assert entry.index == 0
    assert entry.fields == {"name": "Ada", "email": "ada@x.com", "url": ""}
    assert draft.authors.inputs == {"name": "", "email": "", "url": ""}
    assert draft.authors.controls(entry) == {"edit": "/api/authors/0/edit", "delete": "/api/authors/0/delete"}


def test_invalid_add_keeps_inputs_and_shows_error() -> None:
    draft = Draft()
    before = {"name": "Ada", "email": "not-an-email", "url": ""}
    assert draft.authors.add(before) is None

    assert len(draft.authors) == 0
    assert draft.authors.inputs == before
    assert draft.authors.errors.get("authors.email").message == "Input must be a valid format."


def test_corrected_add_clears_inline_error() -> None:
    draft = Draft()
    draft.authors.add({"name": "Ada", "email": "nope"})
    assert draft.authors.add({"email": "ada@x.com"}) is not None
    assert len(draft.authors.errors) == 0


def test_delete_rebinds_survivors_to_shifted_indices() -> None:
    draft = Draft()
    add_sources(draft, "a", "b", "c", "d")
    draft.sources.delete(1)

    assert [e.fields["name"] for e in draft.sources] == ["a", "c", "d"]
    for position, entry in enumerate(draft.sources):
        assert entry.index == position
        assert draft.sources.controls(entry)["edit"] == f"/api/sources/{position}/edit"
        assert draft.sources.controls(entry)["delete"] == f"/api/sources/{position}/delete"


def test_edit_after_deleting_first_source_targets_index_zero() -> None:
    draft = Draft()
    add_sources(draft, "first", "second")
    draft.sources.delete(0)

    survivor = draft.sources.entries[0]
    assert draft.sources.controls(survivor)["edit"] == "/api/sources/0/edit"
    edited = draft.sources.begin_edit(0)
    assert edited is survivor
    assert edited.fields["name"] == "second"


def test_edit_roundtrip_writes_back_values() -> None:
    changes = []
    draft = Draft(on_change=lambda: changes.append(1))
    add_sources(draft, "upstream")
    changes.clear()

    entry = draft.sources.begin_edit(0)
    assert entry.edit_inputs == {"name": "upstream", "uri": "https://example.com/upstream"}
    assert draft.sources.controls(entry) == {"save": "/api/sources/0/commit_edit", "close": "/api/sources/0/cancel_edit"}
    assert changes == []

    assert draft.sources.commit_edit(0, {"name": "mirror"})
    assert entry.fields["name"] == "mirror"
    assert not entry.editing
    assert draft.sources.controls(entry)["edit"] == "/api/sources/0/edit"
    assert changes == [1]


def test_invalid_commit_edit_keeps_entry_in_edit_mode() -> None:
    draft = Draft()
    add_sources(draft, "upstream")
    entry = draft.sources.begin_edit(0)

    assert not draft.sources.commit_edit(0, {"uri": ""})
    assert entry.editing
    assert entry.fields["uri"] == "https://example.com/upstream"
    assert f"sources.{entry.slot}.uri" in draft.sources.errors


def test_second_edit_is_refused_while_another_is_open() -> None:
    draft = Draft()
    add_sources(draft, "a", "b")
    draft.sources.begin_edit(0)

    with pytest.raises(CollectionError, match="finish editing"):
        draft.sources.begin_edit(1)
    assert draft.sources.entries[0].editing
    assert not draft.sources.entries[1].editing


def test_cancel_edit_removes_the_entry() -> None:
    draft = Draft()
    add_sources(draft, "a", "b", "c")
    draft.sources.begin_edit(1)
    draft.sources.cancel_edit(1)

    assert [e.fields["name"] for e in draft.sources] == ["a", "c"]
    assert [e.index for e in draft.sources] == [0, 1]


def test_cancel_edit_requires_edit_mode() -> None:
    draft = Draft()
    add_sources(draft, "a")
    with pytest.raises(CollectionError):
        draft.sources.cancel_edit(0)


def test_out_of_range_index_is_rejected() -> None:
    draft = Draft()
    with pytest.raises(CollectionError, match="no entry at index 0"):
        draft.authors.delete(0)


def test_lookup_by_key_resolves_first_duplicate() -> None:
    draft = Draft()
    draft.labels.add({"key": "tier", "value": "gold"})
    draft.labels.add({"key": "beta"})
    draft.labels.add({"key": "tier", "value": "silver"})

    assert draft.labels.lookup_by_key("tier") == 0
    assert draft.labels.lookup_by_key("missing") is None

    draft.labels.delete_by_key("tier")
    assert [e.fields["value"] for e in draft.labels] == ["", "silver"]
    assert draft.labels.lookup_by_key("tier") == 1


def test_tokens_follow_collection_rendering() -> None:
    draft = Draft()
    draft.labels.add({"key": "tier", "value": "gold"})
    draft.labels.add({"key": "beta"})
    draft.annotations.add({"key": "note", "value": "hello world"})
    draft.metrics.add({"name": "accuracy", "value": "0.91", "description": "top-1"})

    labels = draft.labels.render()["entries"]
    assert [e["token"] for e in labels] == ["tier=gold", "beta"]
    annotation = draft.annotations.render()["entries"][0]
    assert annotation["token"] == "note"
    assert annotation["tooltip"] == "hello world"
    metric = draft.metrics.render()["entries"][0]
    assert metric["token"] == "accuracy=0.91"
    assert metric["tooltip"] == "top-1"


def test_sources_are_not_key_addressed() -> None:
    draft = Draft()
    with pytest.raises(CollectionError):
        draft.sources.lookup_by_key("x")


def test_part_label_goes_to_checked_parts_only() -> None:
    draft = Draft.from_bottle({
        "parts": [
            {"name": "a.csv", "size": 10, "digest": "sha256:aa"},
            {"name": "b.csv", "size": 20, "digest": "sha256:bb"},
        ],
    })
    draft.parts.select(1)

    assert draft.parts.add_label({"key": "split", "value": "test"}) == 1
    assert len(draft.parts.part_labels(0)) == 0
    assert draft.parts.part_labels(1).entries[0].fields == {"key": "split", "value": "test"}
    assert draft.parts.label_inputs == {"key": "", "value": ""}


def test_part_label_goes_to_every_part_with_select_all() -> None:
    draft = Draft.from_bottle({
        "parts": [
            {"name": "a.csv", "size": 10, "digest": "sha256:aa"},
            {"name": "b.csv", "size": 20, "digest": "sha256:bb"},
        ],
    })
    draft.parts.set_select_all(True)

    assert draft.parts.add_label({"key": "owner", "value": ""}) == 2
    token = draft.parts.render()["entries"][0]["labels"]["entries"][0]["token"]
    assert token == "owner="


def test_invalid_part_label_is_not_added() -> None:
    draft = Draft.from_bottle({"parts": [{"name": "a.csv", "size": 1, "digest": "sha256:aa"}]})
    draft.parts.set_select_all(True)

    assert draft.parts.add_label({"key": "-bad", "value": "x"}) is None
    assert len(draft.parts.part_labels(0)) == 0
    assert draft.parts.label_inputs["key"] == "-bad"
    assert "parts.label.key" in draft.parts.errors


def test_delete_part_label_by_key() -> None:
    draft = Draft.from_bottle({
        "parts": [{"name": "a.csv", "size": 1, "digest": "sha256:aa", "labels": {"x": "1", "y": "2"}}],
    })
    draft.parts.delete_label(0, "x")
    assert [e.fields["key"] for e in draft.parts.part_labels(0)] == ["y"]


def test_part_label_routes_follow_part_position() -> None:
    draft = Draft.from_bottle({
        "parts": [
            {"name": "a.csv", "size": 1, "digest": "sha256:aa"},
            {"name": "b.csv", "size": 2, "digest": "sha256:bb", "labels": {"k": "v"}},
        ],
    })
    draft.parts.delete(0)

    labels = draft.parts.part_labels(0)
    assert labels.controls(labels.entries[0])["delete"] == "/api/parts/0/labels/0/delete"


def test_load_does_not_mark_changes() -> None:
    changes = []
    draft = Draft.from_bottle(
        {"authors": [{"name": "Ada", "email": "ada@x.com"}], "labels": {"a": "b"}},
        on_change=lambda: changes.append(1),
    )
    assert changes == []
    draft.labels.delete(0)
    assert changes == [1]


def test_description_change_is_a_mutation() -> None:
    changes = []
    draft = Draft(description="same", on_change=lambda: changes.append(1))
    draft.set_description("same")
    assert changes == []
    draft.set_description("new")
    assert changes == [1]


def test_unknown_collection_name() -> None:
    with pytest.raises(CollectionError, match="unknown collection"):
        Draft().collection("widgets")
