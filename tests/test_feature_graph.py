import pytest

from map_manager.core.feature_graph import FeatureGraph
from map_manager.models.feature import FeatureRecord, ServerUrlManifest, version_key

from .conftest import feature_entry, provided_manifest


def test_malformed_entries_are_skipped() -> None:
    manifest = provided_manifest()
    manifest["broken"] = {"type": "territory", "prettyName": "Broken"}
    manifest["not-an-object"] = ["EE"]

    graph = FeatureGraph.from_manifests(manifest, source="countries_provided.json")

    assert "broken" not in graph
    assert "not-an-object" not in graph
    assert "EE" in graph
    assert len(graph.problems) == 2
    assert all("countries_provided.json" in p for p in graph.problems)


def test_sub_features_belong_to_closest_country() -> None:
    manifest = provided_manifest()
    manifest["EE/tallinn"] = feature_entry("territory", "Europe / Estonia / Tallinn")
    manifest["EE/tallinn/postal"] = feature_entry("postal", "Tallinn Postal")

    graph = FeatureGraph.from_manifests(manifest)

    assert graph.owner("EE/postal") == "EE"
    assert graph.owner("EE/tallinn/postal") == "EE/tallinn"
    assert graph.get("EE").sub_features == ["EE/postal"]
    assert graph.owner("world") is None


def test_dependency_closure_orders_dependencies_first() -> None:
    graph = FeatureGraph.from_manifests(provided_manifest())

    closure = graph.dependency_closure(["EE", "FI"])

    assert closure == ["world", "EE", "EE/postal", "FI"]
    assert graph.problems == []


def test_dependency_cycle_is_reported() -> None:
    graph = FeatureGraph.from_manifests(
        {
            "a": feature_entry("territory", "A", dependencies=["b"]),
            "b": feature_entry("coastline", "B", dependencies=["a"]),
        }
    )

    closure = graph.dependency_closure(["a"])

    assert closure == ["b", "a"]
    assert any("cycle" in p for p in graph.problems)


def test_unknown_dependency_is_reported() -> None:
    graph = FeatureGraph.from_manifests(
        {"a": feature_entry("territory", "A", dependencies=["ghost"])}
    )

    assert graph.dependency_closure(["a"]) == ["a"]
    assert graph.problems == ["Unknown dependency 'ghost' required by 'a'"]


def test_countries_sorted_by_display_name() -> None:
    graph = FeatureGraph.from_manifests(provided_manifest())
    assert [c.id for c in graph.countries()] == ["EE", "FI"]


@pytest.mark.parametrize(
    "entry",
    [
        {**feature_entry("postal", "P"), "path": "../outside"},
        {**feature_entry("postal", "P"), "path": "/etc/passwd"},
        {**feature_entry("postal", "P"), "dependencies": ["p"]},
        {**feature_entry("postal", "P"), "size": -1},
        {**feature_entry("postal", "P"), "version": ""},
    ],
)
def test_invalid_records_are_rejected(entry: dict) -> None:
    with pytest.raises(ValueError):
        FeatureRecord.from_manifest("p", entry)


def test_record_round_trips_to_manifest_form() -> None:
    entry = feature_entry("postal", "Estonia Postal")
    record = FeatureRecord.from_manifest("EE/postal", entry)

    assert record.path == "EE/postal/postal"
    assert record.to_manifest() == entry


def test_server_manifest_composes_feature_urls() -> None:
    server = ServerUrlManifest.model_validate(
        {"providedListUrl": "https://maps.example.org/v1/countries_provided.json"}
    )
    record = FeatureRecord.from_manifest("EE/postal", feature_entry("postal", "P"))

    assert server.base_url == "https://maps.example.org/v1/"
    assert server.feature_url(record) == "https://maps.example.org/v1/EE/postal/postal"


def test_version_key_orders_naturally() -> None:
    assert version_key("v10") > version_key("v9")
    assert version_key("1.2.10") > version_key("1.2.9")
    assert version_key("3") == version_key(" 3 ")
