"""
On-device key/value store.

Holds two kinds of data:
- the advisory mirror of the last resolved entitlement (never authoritative)
- pre-account invoice history and business info consumed by migration

Backed by a single JSON file; reads and writes are synchronous.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from quickbill.core.config import settings
from quickbill.models.entitlement import Entitlement

logger = logging.getLogger("quickbill.local_cache")


class LocalStore:
    """JSON-file key/value store living in the user's app data directory."""

    INVOICES_KEY = "quickbill_invoices"
    USER_DATA_KEY = "quickbill_user_data"
    SETTINGS_KEY = "quickbill_settings"
    MIGRATED_KEY = "quickbill_migrated"
    SNAPSHOT_PREFIX = "quickbill_entitlement:"

    def __init__(self, path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read local store, starting empty", extra={"path": str(self.path), "error": str(e)})
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._dump(data)

    # Pre-account data

    def get_local_invoices(self) -> List[Dict[str, Any]]:
        invoices = self.get(self.INVOICES_KEY, [])
        return [inv for inv in invoices if isinstance(inv, dict)] if isinstance(invoices, list) else []

    def get_business_info(self) -> Optional[Dict[str, Any]]:
        app_settings = self.get(self.SETTINGS_KEY) or {}
        info = app_settings.get("lastBusinessInfo") if isinstance(app_settings, dict) else None
        return info if isinstance(info, dict) and info else None

    def get_migration_owner(self) -> Optional[str]:
        """User the device's pre-account data was migrated into, if any."""
        value = self.get(self.MIGRATED_KEY)
        return value if isinstance(value, str) and value else None

    def mark_migrated(self, user_id: str) -> None:
        self.set(self.MIGRATED_KEY, user_id)

    # Entitlement mirror

    def save_snapshot(self, entitlement: Entitlement) -> None:
        """Mirror the resolved view, including the legacy user_data shape the UI reads."""
        with self._lock:
            data = self._load()
            data[self.SNAPSHOT_PREFIX + entitlement.user_id] = entitlement.model_dump(mode="json")
            user_data = data.get(self.USER_DATA_KEY) or {}
            user_data.update({
                "isPro": entitlement.is_pro,
                "maxInvoices": None if entitlement.is_pro else entitlement.max_free_invoices,
                "invoicesCreated": entitlement.invoices_this_period,
            })
            data[self.USER_DATA_KEY] = user_data
            self._dump(data)

    def get_snapshot(self, user_id: str) -> Optional[Entitlement]:
        raw = self.get(self.SNAPSHOT_PREFIX + user_id)
        if not raw:
            return None
        try:
            return Entitlement.model_validate(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable entitlement snapshot", extra={"user_id": user_id, "error": str(e)})
            return None


_store: Optional[LocalStore] = None


def get_local_store() -> LocalStore:
    """Process-wide store at LOCAL_STORE_PATH."""
    global _store
    if _store is None:
        _store = LocalStore(settings.LOCAL_STORE_PATH)
    return _store


def mirror_entitlement(entitlement: Entitlement, cache: Optional[LocalStore] = None) -> None:
    """Best-effort snapshot write; a failing disk never fails the caller."""
    store = cache or get_local_store()
    try:
        store.save_snapshot(entitlement)
    except OSError as e:
        logger.warning("Local entitlement mirror failed", extra={"user_id": entitlement.user_id, "error": str(e)})
