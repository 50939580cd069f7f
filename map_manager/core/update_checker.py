"""
Finds installed, subscribed features for which the provided list offers
another version.
"""

import json
import logging

from map_manager.core.availability import ResolvedState, has_provided_update
from map_manager.models.session import UpdateRecord

log = logging.getLogger(__name__)


class UpdateChecker:
    """Read-only diff of provided versions against installed versions."""

    def check(self, state: ResolvedState) -> list[UpdateRecord]:
        """
        Compares every feature that is both requested and available with the
        provided list. Records are ordered by display name.
        """
        updates = []
        for feature in state.graph.sorted_features():
            if not (feature.requested and feature.available):
                continue
            if has_provided_update(feature):
                updates.append(
                    UpdateRecord(
                        feature_id=feature.id,
                        old_version=feature.installed.version,
                        new_version=feature.record.version,
                    )
                )
        if updates:
            log.info(f"Found {len(updates)} update(s) for installed data.")
        return updates

    @staticmethod
    def to_json(updates: list[UpdateRecord]) -> str:
        return json.dumps([update.to_json() for update in updates])
