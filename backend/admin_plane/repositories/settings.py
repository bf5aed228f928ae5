"""
Settings repository: the platform settings and security policy documents.

Each document is a single versioned row; a missing row reads as defaults.
"""

from datetime import datetime
from typing import Any, Dict, Tuple

from admin_plane.core.database import Store
from admin_plane.core.timeutils import to_iso
from admin_plane.models.admin import (
    CURRENT_SK,
    POLICIES_PK,
    SETTINGS_PK,
    SecurityPolicy,
    SystemSettings,
    merge_document,
)
from .base import Creation, Mutation


class SettingsRepository:
    """Read and build writes for the settings/policy documents."""

    def __init__(self, store: Store):
        self.store = store

    def _load(self, pk: str, defaults: Dict[str, Any]) -> Tuple[Dict[str, Any], int, Dict[str, Any]]:
        item = self.store.get(pk, CURRENT_SK)
        if item is None:
            return defaults, 0, {}
        document = merge_document(defaults, item.get("document") or {})
        return document, int(item.get("version") or 0), item

    def settings(self) -> Tuple[Dict[str, Any], int]:
        document, version, _ = self._load(SETTINGS_PK, SystemSettings.get_default_settings())
        return document, version

    def policies(self) -> Tuple[Dict[str, Any], int]:
        document, version, _ = self._load(POLICIES_PK, SecurityPolicy.get_default_policies())
        return document, version

    def _change(self, pk: str, entity_type: str, defaults: Dict[str, Any], updates: Dict[str, Any], admin_id: str, now: datetime):
        document, _, item = self._load(pk, defaults)
        merged = merge_document(document, updates)
        if not item:
            return Creation({
                "PK": pk,
                "SK": CURRENT_SK,
                "entityType": entity_type,
                "document": merged,
                "updatedBy": admin_id,
                "updatedAt": to_iso(now),
                "version": 1,
            }), document, merged
        mutation = Mutation(
            key={"PK": pk, "SK": CURRENT_SK},
            before=item,
            set_values={"document": merged, "updatedBy": admin_id, "updatedAt": to_iso(now)},
        )
        return mutation, document, merged

    def settings_change(self, updates: Dict[str, Any], admin_id: str, now: datetime):
        """Returns (write, previous document, merged document)."""
        return self._change(
            SETTINGS_PK, "SystemSettings", SystemSettings.get_default_settings(), updates, admin_id, now
        )

    def policies_change(self, updates: Dict[str, Any], admin_id: str, now: datetime):
        """Returns (write, previous document, merged document)."""
        return self._change(
            POLICIES_PK, "SecurityPolicy", SecurityPolicy.get_default_policies(), updates, admin_id, now
        )
