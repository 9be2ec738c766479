"""
Sync-direction conflict detection.

Two channels that both push platform inventory into the same warehouses
race each other. Warnings are advisory and recomputed on every change.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from routing.models import ChannelIntegration, EcommerceSettings, SyncDirection

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConflictWarning:
    other_channel_id: str
    other_channel_name: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {
            "other_channel_id": self.other_channel_id,
            "other_channel_name": self.other_channel_name,
            "reason": self.reason,
        }


def _pushes_platform_inventory(channel: ChannelIntegration) -> bool:
    settings = channel.settings
    if not isinstance(settings, EcommerceSettings):
        return False
    return (
        channel.enabled
        and settings.inventory_sync_enabled
        and settings.sync_direction == SyncDirection.PLATFORM_TO_WAREHOUSES
    )


def detect_conflicts(
    channels: list[ChannelIntegration],
    subject_channel_id: str,
    *,
    proposed_direction: SyncDirection | None = None,
    proposed_inventory_sync: bool | None = None,
) -> list[ConflictWarning]:
    """
    Return one warning per other channel that would race the subject.

    ``proposed_*`` let the caller ask "what if" before saving; when omitted
    the subject's stored settings are used.
    """
    subject = next((c for c in channels if c.id == subject_channel_id), None)

    direction = proposed_direction
    inventory_sync = proposed_inventory_sync
    if subject is not None and isinstance(subject.settings, EcommerceSettings):
        if direction is None:
            direction = subject.settings.sync_direction
        if inventory_sync is None:
            inventory_sync = subject.settings.inventory_sync_enabled

    if not inventory_sync or direction != SyncDirection.PLATFORM_TO_WAREHOUSES:
        return []

    warnings = [
        ConflictWarning(
            other_channel_id=other.id,
            other_channel_name=other.name,
            reason=(
                f"{other.name} also syncs inventory from its platform to warehouses; "
                "both channels will overwrite the same stock levels"
            ),
        )
        for other in channels
        if other.id != subject_channel_id and _pushes_platform_inventory(other)
    ]
    if warnings:
        logger.info(
            "routing.sync_conflicts_detected",
            integration_id=subject_channel_id,
            conflicts=[w.other_channel_id for w in warnings],
        )
    return warnings
