import json

from map_manager.core.availability import AvailabilityResolver
from map_manager.core.update_checker import UpdateChecker
from map_manager.models.feature import CatalogEntry

from .conftest import feature_entry

STAMP = "2024-01-01T00:00:00"


def _state(provided_version: str, requested: bool = True, installed: bool = True):
    provided = {"XX": feature_entry("territory", "Xland", provided_version)}
    catalog = {}
    if installed:
        catalog["XX/territory"] = CatalogEntry("XX/territory", "v1", STAMP)
    requested_manifest = (
        {"XX": feature_entry("territory", "Xland", "v1")} if requested else {}
    )
    return AvailabilityResolver().resolve(provided, requested_manifest, catalog)


def test_reports_new_provided_version() -> None:
    updates = UpdateChecker().check(_state("v2"))

    assert UpdateChecker.to_json(updates) == json.dumps(
        [{"id": "XX", "oldVersion": "v1", "newVersion": "v2"}]
    )


def test_same_version_is_not_an_update() -> None:
    assert UpdateChecker().check(_state("v1")) == []


def test_only_requested_and_available_features_are_checked() -> None:
    assert UpdateChecker().check(_state("v2", requested=False)) == []
    assert UpdateChecker().check(_state("v2", installed=False)) == []


def test_updates_are_ordered_by_name() -> None:
    provided = {
        "b": feature_entry("territory", "Alpha", "2"),
        "a": feature_entry("territory", "Beta", "2"),
    }
    requested = {
        "b": feature_entry("territory", "Alpha", "1"),
        "a": feature_entry("territory", "Beta", "1"),
    }
    catalog = {
        "a/territory": CatalogEntry("a/territory", "1", STAMP),
        "b/territory": CatalogEntry("b/territory", "1", STAMP),
    }
    state = AvailabilityResolver().resolve(provided, requested, catalog)

    assert [u.feature_id for u in UpdateChecker().check(state)] == ["b", "a"]
