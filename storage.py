# storage.py
# -----------------------------------------------------------------------------
# Durable Store: key-addressed JSON documents in public.app_storage.
# - Collections (users / exams / results) are JSON arrays, insertion ordered
# - Slots (current_user / theme) hold any JSON value or nothing
# - Decode failures fall back to the default value; DB failures raise
#   StorageUnavailable so callers never lose a write silently
# -----------------------------------------------------------------------------

import json
import threading
from typing import Any, Callable, Dict, List, Optional

import psycopg

USERS = "users"
EXAMS = "exams"
RESULTS = "results"
CURRENT_USER = "current_user"
THEME = "theme"

COLLECTIONS = (USERS, EXAMS, RESULTS)
SLOTS = (CURRENT_USER, THEME)

# Held for every collection rewrite (read, change, write back) in this process.
_WRITE_LOCK = threading.RLock()


class StorageUnavailable(RuntimeError):
    """The backing medium rejected a read or a write."""


class DurableStore:
    """
    Thin contract over the app_storage table. No business logic lives here.
    Required callables: fetch_one(sql, params), execute(sql, params).
    """

    def __init__(self, fetch_one: Callable, execute: Callable, namespace: str = "examportal"):
        self._fetch_one = fetch_one
        self._execute = execute
        self.namespace = (namespace or "").strip() or "examportal"

    # ------------------------------- keys -------------------------------------
    def _key(self, name: str) -> str:
        return f"{self.namespace}:{name}"

    # ------------------------------- raw I/O ----------------------------------
    def _read_raw(self, name: str) -> Optional[str]:
        try:
            row = self._fetch_one(
                "SELECT value FROM public.app_storage WHERE key = %s;",
                (self._key(name),),
            )
        except (psycopg.Error, RuntimeError) as e:
            raise StorageUnavailable(f"read of '{name}' failed: {e}") from e
        if not row:
            return None
        return row.get("value")

    def _write_raw(self, name: str, value: str) -> None:
        try:
            self._execute("""
                INSERT INTO public.app_storage (key, value, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (key) DO UPDATE
                   SET value = EXCLUDED.value, updated_at = now();
            """, (self._key(name), value))
        except (psycopg.Error, RuntimeError) as e:
            raise StorageUnavailable(f"write of '{name}' failed: {e}") from e

    def _delete_raw(self, name: str) -> None:
        try:
            self._execute("DELETE FROM public.app_storage WHERE key = %s;", (self._key(name),))
        except (psycopg.Error, RuntimeError) as e:
            raise StorageUnavailable(f"delete of '{name}' failed: {e}") from e

    def _decode(self, name: str, raw: Optional[str], default: Any) -> Any:
        if raw is None or raw == "":
            return default
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            print(f"[store] '{name}' is not valid JSON, using default: {e}", flush=True)
            return default
        return default if value is None else value

    # ------------------------------- schema -----------------------------------
    def ensure_schema(self) -> None:
        try:
            self._execute("""
                CREATE TABLE IF NOT EXISTS public.app_storage (
                    key        TEXT PRIMARY KEY,
                    value      TEXT NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
            """, ())
        except (psycopg.Error, RuntimeError) as e:
            raise StorageUnavailable(f"schema setup failed: {e}") from e

    # ------------------------------- collections ------------------------------
    def list(self, collection: str) -> List[Dict[str, Any]]:
        value = self._decode(collection, self._read_raw(collection), [])
        if not isinstance(value, list):
            print(f"[store] '{collection}' does not hold a list, using empty collection", flush=True)
            return []
        return value

    def append(self, collection: str, record: Dict[str, Any]) -> None:
        """Atomic within the process; the caller guarantees uniqueness."""
        self.update(collection, lambda records: records.append(record))

    def update(self, collection: str, change: Callable[[List[Dict[str, Any]]], Any]) -> Any:
        """
        Run change(records) on a fresh copy of the collection and write the
        list back, all under the write lock. Returns whatever change returns.
        change may mutate the list in place or return False to skip the write.
        """
        with _WRITE_LOCK:
            records = self.list(collection)
            outcome = change(records)
            if outcome is not False:
                self._write_raw(collection, json.dumps(records, ensure_ascii=False))
            return outcome

    def replace_all(self, collection: str, records: List[Dict[str, Any]]) -> None:
        with _WRITE_LOCK:
            self._write_raw(collection, json.dumps(list(records), ensure_ascii=False))

    # ------------------------------- slots ------------------------------------
    def get_slot(self, slot: str, default: Any = None) -> Any:
        return self._decode(slot, self._read_raw(slot), default)

    def set_slot(self, slot: str, value: Any) -> None:
        if value is None:
            self._delete_raw(slot)
            return
        self._write_raw(slot, json.dumps(value, ensure_ascii=False))

    # ------------------------------- maintenance ------------------------------
    def clear_all(self) -> None:
        """Drop users, exams, results and the current user. Theme survives."""
        for name in COLLECTIONS + (CURRENT_USER,):
            self._delete_raw(name)
