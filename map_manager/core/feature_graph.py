"""
In-memory model of features, countries and their dependency edges, built from
manifest entries.
"""

import logging
from collections.abc import Iterable, Iterator
from typing import Any

from pydantic import ValidationError

from map_manager.models.feature import Feature, FeatureRecord

log = logging.getLogger(__name__)


def describe_validation_error(error: ValueError) -> str:
    """Condenses a validation error into a single line."""
    if isinstance(error, ValidationError):
        return "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'entry'}: {err['msg']}"
            for err in error.errors()
        )
    return str(error)


class FeatureGraph:
    """
    Features keyed by id, with country/sub-feature ownership and dependency
    edges. Graphs are rebuilt from scratch on every scan and never patched.
    """

    def __init__(
        self, records: Iterable[FeatureRecord], problems: list[str] | None = None
    ):
        self._features: dict[str, Feature] = {
            record.id: Feature(record) for record in records
        }
        self.problems: list[str] = list(problems or [])
        self._owner: dict[str, str] = {}
        self._link_sub_features()

    @classmethod
    def from_manifests(
        cls, *manifests: dict[str, Any], source: str = ""
    ) -> "FeatureGraph":
        """
        Builds a graph from raw manifests. Later manifests override earlier ones
        per feature id. Malformed entries are skipped and recorded in `problems`.
        """
        where = f" in {source}" if source else ""
        records: dict[str, FeatureRecord] = {}
        problems: list[str] = []
        for manifest in manifests:
            for feature_id, entry in manifest.items():
                try:
                    records[feature_id] = FeatureRecord.from_manifest(feature_id, entry)
                except ValueError as e:
                    problem = (
                        f"Skipped malformed entry '{feature_id}'{where}: "
                        f"{describe_validation_error(e)}"
                    )
                    log.warning(f"[yellow]{problem}[/yellow]")
                    problems.append(problem)
        return cls(records.values(), problems)

    def _link_sub_features(self) -> None:
        """Assigns every non-country feature to the closest country prefixing its id."""
        countries = sorted(
            (f.id for f in self._features.values() if f.is_country),
            key=len,
            reverse=True,
        )
        for feature in self._features.values():
            if feature.is_country:
                continue
            owner = next(
                (c for c in countries if feature.id.startswith(c + "/")), None
            )
            if owner:
                self._owner[feature.id] = owner
                self._features[owner].sub_features.append(feature.id)
        for feature in self._features.values():
            feature.sub_features.sort()

    def _add_problem(self, problem: str) -> None:
        if problem not in self.problems:
            log.warning(f"[yellow]{problem}[/yellow]")
            self.problems.append(problem)

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._features

    def __iter__(self) -> Iterator[Feature]:
        return iter(self._features.values())

    def __len__(self) -> int:
        return len(self._features)

    def get(self, feature_id: str) -> Feature | None:
        return self._features.get(feature_id)

    def ids(self) -> list[str]:
        return sorted(self._features)

    def feature_type(self, feature_id: str) -> str:
        feature = self._features.get(feature_id)
        return feature.type if feature else ""

    def pretty_name(self, feature_id: str) -> str:
        """Display name of a feature, falling back to its id."""
        feature = self._features.get(feature_id)
        return feature.pretty_name if feature else feature_id

    def owner(self, feature_id: str) -> str | None:
        """The country a sub-feature belongs to, if any."""
        return self._owner.get(feature_id)

    def countries(self) -> list[Feature]:
        """Countries in alphabetical order of their display names."""
        return [f for f in self.sorted_features() if f.is_country]

    def sub_features(self, country_id: str) -> list[Feature]:
        country = self._features.get(country_id)
        if not country:
            return []
        return [self._features[sub_id] for sub_id in country.sub_features]

    def dependencies(self, feature_id: str) -> list[str]:
        feature = self._features.get(feature_id)
        return list(feature.dependencies) if feature else []

    def sorted_features(self) -> list[Feature]:
        """All features in deterministic alphabetical order by display name."""
        return sorted(self._features.values(), key=lambda f: f.sort_key)

    def dependency_closure(self, feature_ids: Iterable[str]) -> list[str]:
        """
        Expands features to everything they need: their sub-features and,
        transitively, their dependencies. Dependencies come before the
        features depending on them. Unknown ids and cycles are recorded as
        problems and left out.
        """
        ordered: list[str] = []
        done: set[str] = set()
        visiting: set[str] = set()

        def visit(feature_id: str, parent: str | None) -> None:
            if feature_id in done:
                return
            if feature_id in visiting:
                self._add_problem(f"Dependency cycle detected at '{feature_id}'")
                return
            feature = self._features.get(feature_id)
            if feature is None:
                if parent:
                    self._add_problem(
                        f"Unknown dependency '{feature_id}' required by '{parent}'"
                    )
                else:
                    self._add_problem(f"Unknown feature '{feature_id}'")
                return
            visiting.add(feature_id)
            for dep_id in feature.dependencies:
                visit(dep_id, feature_id)
            visiting.discard(feature_id)
            done.add(feature_id)
            ordered.append(feature_id)
            for sub_id in feature.sub_features:
                visit(sub_id, feature_id)

        for feature_id in feature_ids:
            visit(feature_id, None)
        return ordered
