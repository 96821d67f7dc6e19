from __future__ import annotations

import base64
import hashlib
import json
import threading
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from sproutsession.logging import get_logger
from sproutsession.storage.common import StoreListener
from sproutsession.storage.errors import StorageError


class MemoryStore:
    """In-process key-value store with the semantics of a browser profile.

    Every mutation is a single full-value write under one lock, so jobs that
    tick independently never observe a half-written value. When ``fs_root`` is
    given the whole map is persisted to ``state/session_store.json`` after each
    write, Fernet-encrypted when ``encryption_key`` is set.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.items: Dict[str, str] = {}
        self._listeners: List[StoreListener] = []
        # RLock so listeners may read the store from inside a write callback
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._cipher = self._build_cipher(encryption_key) if encryption_key else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        return Fernet(self._derive_cipher_key(key_material))

    def _state_path(self) -> Path:
        if self.fs_root is None:
            raise StorageError("file persistence is not configured")
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "session_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        payload = json.dumps(self.items, indent=2).encode()
        if self._cipher is not None:
            payload = self._cipher.encrypt(payload)
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_bytes(payload)
            tmp_path.replace(path)
        except OSError as exc:
            raise StorageError(
                f"failed to persist session store: {exc}", detail={"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return False
        if self._cipher is not None:
            try:
                raw = self._cipher.decrypt(raw)
            except InvalidToken:
                # Wrong key or tampered file: start empty, same as a cleared profile
                self.logger.warning("session_store_decrypt_failed", path=str(path))
                return False
        try:
            data = json.loads(raw)
        except ValueError as exc:
            self.logger.warning("session_store_corrupt", path=str(path), error=str(exc))
            return False
        if not isinstance(data, dict):
            return False
        self.items = {str(k): str(v) for k, v in data.items()}
        return True

    def _notify(self, key: str, old: Optional[str], new: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, old, new)
            except Exception as exc:
                self.logger.error(
                    "store_listener_failed",
                    key=key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    def get_item(self, key: str) -> Optional[str]:
        with self._data_lock:
            return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError("store values must be strings", detail={"key": key})
        with self._data_lock:
            old = self.items.get(key)
            self.items[key] = value
            self._persist_state()
        if old != value:
            self._notify(key, old, value)

    def remove_item(self, key: str) -> None:
        with self._data_lock:
            if key not in self.items:
                return
            old = self.items.pop(key)
            self._persist_state()
        self._notify(key, old, None)

    def keys(self) -> list[str]:
        with self._data_lock:
            return list(self.items.keys())

    def clear(self) -> None:
        with self._data_lock:
            removed = dict(self.items)
            self.items.clear()
            self._persist_state()
        for key, old in removed.items():
            self._notify(key, old, None)

    def add_listener(self, listener: StoreListener) -> None:
        with self._data_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: StoreListener) -> None:
        with self._data_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
