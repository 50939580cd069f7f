"""
Reconciles what is provided, what is requested and what is installed into one
consistent view, and renders it for collaborators.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from map_manager.core.feature_graph import FeatureGraph
from map_manager.models.feature import (
    PRETTY_SEPARATOR,
    CatalogEntry,
    Feature,
    ServerUrlManifest,
    version_key,
)
from map_manager.models.session import FileRole, FileToDownload
from map_manager.storage.manifests import PROVIDED_FILE, REQUESTED_FILE
from map_manager.utils.formatting import format_size

log = logging.getLogger(__name__)

COUNTRY_LISTS = ("available", "requested", "provided")


def has_provided_update(feature: Feature) -> bool:
    """
    Whether the provided manifest offers a different version of an installed
    feature, or the same version built later.
    """
    if not feature.provided or feature.installed is None:
        return False
    installed = feature.installed
    if installed.version != feature.record.version:
        return True
    return feature.record.datetime > installed.datetime


@dataclass
class ResolvedState:
    """The reconciled view produced by one scan."""

    graph: FeatureGraph
    server: ServerUrlManifest | None = None
    provided_ids: set[str] = field(default_factory=set)
    requested_ids: set[str] = field(default_factory=set)
    required_ids: list[str] = field(default_factory=list)
    available_ids: set[str] = field(default_factory=set)

    @property
    def problems(self) -> list[str]:
        return self.graph.problems

    def feature(self, feature_id: str) -> Feature | None:
        return self.graph.get(feature_id)

    def is_available(self, feature_id: str) -> bool:
        feature = self.graph.get(feature_id)
        return bool(feature and feature.available)

    def is_requested(self, feature_id: str) -> bool:
        return feature_id in self.requested_ids

    def is_compatible(self, feature_id: str) -> bool:
        """
        Whether the installed data of a feature and all it needs can be read
        by this software version.
        """
        if feature_id not in self.graph:
            return False
        return all(
            self.graph.get(fid).compatible
            for fid in self.graph.dependency_closure([feature_id])
            if self.graph.get(fid).installed is not None
        )

    def _file_for(self, feature: Feature, role: FileRole) -> FileToDownload:
        url = feature.record.url or ""
        if self.server:
            url = self.server.feature_url(feature.record)
        return FileToDownload(
            feature_id=feature.id,
            url=url,
            path=feature.path,
            version=feature.record.version,
            datetime=feature.record.datetime,
            size=feature.record.size,
            role=role,
        )

    def missing_files(self) -> list[FileToDownload]:
        """Required features with missing or incompatible data, dependencies first."""
        files = []
        for feature_id in self.required_ids:
            feature = self.graph.get(feature_id)
            if feature.data_available:
                continue
            role = FileRole.INCOMPATIBLE if feature.installed else FileRole.MISSING
            files.append(self._file_for(feature, role))
        return files

    def outdated_files(self) -> list[FileToDownload]:
        """Required, installed features for which the provided list has an update."""
        return [
            self._file_for(self.graph.get(fid), FileRole.UPDATE)
            for fid in self.required_ids
            if self.graph.get(fid).data_available
            and has_provided_update(self.graph.get(fid))
        ]

    @property
    def missing(self) -> bool:
        return bool(self.missing_files())

    def missing_info(self) -> str:
        """Human readable summary of pending downloads and manifest problems."""
        lines: list[str] = []
        missing = self.missing_files()
        if missing:
            lines.append("Missing data:")
            for item in missing:
                line = (
                    f"  {self.graph.pretty_name(item.feature_id)}: {item.path} "
                    f"({format_size(item.size)})"
                )
                if item.role is FileRole.INCOMPATIBLE:
                    installed = self.graph.get(item.feature_id).installed
                    line += f", installed version {installed.version} is incompatible"
                lines.append(line)
            total = sum(item.size for item in missing)
            lines.append(f"Total to download: {format_size(total)}")
        if self.problems:
            lines.append("Problems:")
            lines.extend(f"  {problem}" for problem in self.problems)
        return "\n".join(lines)

    def _country_size(self, country: Feature) -> int:
        return country.record.size + sum(
            sub.record.size for sub in self.graph.sub_features(country.id)
        )

    def _country_entry(self, country: Feature) -> dict[str, Any]:
        return {
            "id": country.id,
            "name": country.pretty_name,
            "size": self._country_size(country),
            "requested": country.requested,
            "available": country.available,
        }

    def countries(self, kind: str) -> list[Feature]:
        """Countries of one list (available/requested/provided), sorted by name."""
        if kind not in COUNTRY_LISTS:
            raise ValueError(f"Unknown country list '{kind}'.")
        selected = {
            "available": self.available_ids,
            "requested": self.requested_ids,
            "provided": self.provided_ids,
        }[kind]
        return [c for c in self.graph.countries() if c.id in selected]

    def countries_json(self, kind: str, tree: bool = False) -> str:
        """
        Renders a country list as JSON. In tree mode, countries are nested by
        the segments of their display names ("Europe / Estonia").
        """
        entries = [self._country_entry(c) for c in self.countries(kind)]
        if not tree:
            return json.dumps(entries)

        root: list[dict[str, Any]] = []
        for entry in entries:
            parts = entry["name"].split(PRETTY_SEPARATOR)
            level = root
            for part in parts[:-1]:
                node = next(
                    (n for n in level if n["name"] == part and "children" in n), None
                )
                if node is None:
                    node = {"name": part, "children": []}
                    level.append(node)
                level = node["children"]
            level.append({**entry, "name": parts[-1]})
        return json.dumps(root)

    def country_details(self, feature_id: str) -> dict[str, Any]:
        """Details of a country and every feature it needs."""
        country = self.graph.get(feature_id)
        if country is None:
            return {}
        features = []
        for fid in self.graph.dependency_closure([feature_id]):
            if fid == feature_id:
                continue
            feature = self.graph.get(fid)
            features.append(
                {
                    "id": feature.id,
                    "type": feature.type,
                    "name": feature.pretty_name,
                    "path": feature.path,
                    "size": feature.record.size,
                    "version": feature.record.version,
                    "datetime": feature.record.datetime,
                    "installedVersion": (
                        feature.installed.version if feature.installed else None
                    ),
                    "available": feature.available,
                    "compatible": feature.compatible,
                }
            )
        return {
            **self._country_entry(country),
            "type": country.type,
            "provided": country.provided,
            "compatible": self.is_compatible(feature_id),
            "version": country.record.version,
            "datetime": country.record.datetime,
            "installedVersion": (
                country.installed.version if country.installed else None
            ),
            "features": features,
        }

    def data_paths(self, storage_root: Path) -> dict[str, list[str]]:
        """Absolute paths of installed, required data grouped by feature type."""
        paths: dict[str, list[str]] = {}
        for fid in self.required_ids:
            feature = self.graph.get(fid)
            if feature.available:
                paths.setdefault(feature.type, []).append(
                    str(storage_root / feature.path)
                )
        return {key: sorted(value) for key, value in sorted(paths.items())}


class AvailabilityResolver:
    """
    Computes the Available, Requested and Provided sets from the manifests and
    the catalog. Every call rebuilds the feature graph from scratch.
    """

    def __init__(self, required_versions: dict[str, str] | None = None):
        self.required_versions = dict(required_versions or {})

    def is_compatible(self, feature: Feature, entry: CatalogEntry) -> bool:
        """
        Checks an installed file against the minimum version this software
        expects for the feature's type.
        """
        if not entry.version or not entry.datetime:
            return False
        minimum = self.required_versions.get(feature.type)
        if minimum is None:
            return True
        return version_key(entry.version) >= version_key(minimum)

    def resolve(
        self,
        provided: dict[str, Any],
        requested: dict[str, Any],
        catalog: dict[str, CatalogEntry],
        server: ServerUrlManifest | None = None,
    ) -> ResolvedState:
        """
        Builds the reconciled state.

        Args:
            provided: Raw `countries_provided.json` object.
            requested: Raw `countries_requested.json` object.
            catalog: All catalog entries keyed by relative path.
            server: Parsed `url.json`, used to compose download URLs.
        """
        provided_graph = FeatureGraph.from_manifests(provided, source=PROVIDED_FILE)
        requested_graph = FeatureGraph.from_manifests(requested, source=REQUESTED_FILE)

        records = {f.id: f.record for f in requested_graph}
        records.update({f.id: f.record for f in provided_graph})
        graph = FeatureGraph(
            records.values(), requested_graph.problems + provided_graph.problems
        )

        state = ResolvedState(
            graph=graph,
            server=server,
            provided_ids={f.id for f in provided_graph},
            requested_ids={f.id for f in requested_graph},
        )

        for feature in graph:
            feature.requested = feature.id in state.requested_ids
            feature.provided = feature.id in state.provided_ids
            feature.installed = catalog.get(feature.path)
            feature.compatible = feature.installed is not None and self.is_compatible(
                feature, feature.installed
            )
            feature.data_available = feature.compatible
            if feature.installed is not None and not feature.compatible:
                log.warning(
                    f"[yellow]Installed '{feature.path}' version "
                    f"{feature.installed.version} is incompatible.[/yellow]"
                )

        self._resolve_availability(graph)

        requested_in_order = [
            f.id for f in graph.sorted_features() if f.id in state.requested_ids
        ]
        state.required_ids = graph.dependency_closure(requested_in_order)
        for fid in state.required_ids:
            graph.get(fid).required = True
        state.available_ids = {
            fid for fid in state.required_ids if graph.get(fid).available
        }

        log.debug(
            f"Resolved {len(graph)} features: {len(state.provided_ids)} provided, "
            f"{len(state.requested_ids)} requested, "
            f"{len(state.available_ids)} available."
        )
        return state

    @staticmethod
    def _resolve_availability(graph: FeatureGraph) -> None:
        """
        A feature is available when its own data is, every dependency is and,
        for countries, every sub-feature is.
        """
        memo: dict[str, bool] = {}

        def available(feature_id: str, visiting: frozenset[str]) -> bool:
            if feature_id in memo:
                return memo[feature_id]
            feature = graph.get(feature_id)
            if feature is None or feature_id in visiting:
                return False
            visiting = visiting | {feature_id}
            result = (
                feature.data_available
                and all(available(dep, visiting) for dep in feature.dependencies)
                and all(available(sub, visiting) for sub in feature.sub_features)
            )
            memo[feature_id] = result
            return result

        for feature in graph:
            feature.available = available(feature.id, frozenset())
