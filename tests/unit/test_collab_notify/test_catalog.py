"""Tests for the category catalog."""

from __future__ import annotations

import pytest

from collab_notify.catalog import CategoryCatalog, CategorySchema, build_default_catalog


@pytest.mark.unit
def test_default_catalog_has_expected_categories() -> None:
    catalog = build_default_catalog()
    names = [s.category for s in catalog.list_all()]
    for expected in (
        "file-upload",
        "folder-update",
        "comment",
        "comment-mention",
        "invite",
        "share",
        "task-assignment",
        "task-subtask",
    ):
        assert expected in names


@pytest.mark.unit
def test_duplicate_registration_raises() -> None:
    catalog = CategoryCatalog()
    catalog.register(CategorySchema(category="x", description="X"))
    with pytest.raises(ValueError, match="already registered"):
        catalog.register(CategorySchema(category="x", description="again"))


@pytest.mark.unit
def test_urgent_categories() -> None:
    catalog = build_default_catalog()
    assert catalog.is_urgent("file-upload")
    assert catalog.is_urgent("comment-mention")
    assert not catalog.is_urgent("comment")
    assert not catalog.is_urgent("unknown")


@pytest.mark.unit
def test_identity_key_uses_category_field() -> None:
    catalog = build_default_catalog()
    assert catalog.build_identity_key("comment", "u1", {"commentId": "c1"}) == "comment:u1:c1"
    assert catalog.build_identity_key("file-upload", "u1", {"fileId": "f1"}) == "file-upload:u1:f1"


@pytest.mark.unit
def test_identity_key_none_without_value_or_field() -> None:
    catalog = build_default_catalog()
    assert catalog.build_identity_key("comment", "u1", {}) is None
    assert catalog.build_identity_key("invite", "u1", {"projectId": "p1"}) is None
    assert catalog.build_identity_key("nope", "u1", {"commentId": "c1"}) is None


@pytest.mark.unit
def test_skeleton_sets_content_type_and_date() -> None:
    catalog = build_default_catalog()
    skeleton = catalog.skeleton("task-assignment", "2024-01-01T00:00:00+00:00")
    assert skeleton["contentType"] == "task"
    assert skeleton["eventDate"] == "2024-01-01T00:00:00+00:00"
    assert skeleton["fileName"] == ""
