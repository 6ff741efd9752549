"""Ban and mute management for the Corujão relay."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable

from .util import expand_path, username_key


class ModerationManager:
    """
    Tracks banned and muted users.

    Handles:
    - Banned usernames (loaded from config, persisted back on change)
    - Muted usernames (in memory only; cleared on restart)
    - Ban/mute checks at connect and send time
    """

    def __init__(self, config_path: str | None, banned: Iterable[str] = ()) -> None:
        self.config_path = config_path
        self.log = logging.getLogger("corujao.moderation")
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._banned: set[str] = {username_key(u) for u in banned if str(u).strip()}
        self._muted: set[str] = set()

    def is_banned(self, username: str | None) -> bool:
        if not username:
            return False
        with self._lock:
            return username_key(username) in self._banned

    def ban(self, username: str) -> bool:
        """Ban ``username``. Returns False if it was already banned."""
        key = username_key(username)
        with self._lock:
            if key in self._banned:
                return False
            self._banned.add(key)
        self.log.info("Banned username=%s", key)
        return True

    def unban(self, username: str) -> bool:
        key = username_key(username)
        with self._lock:
            if key not in self._banned:
                return False
            self._banned.discard(key)
        self.log.info("Unbanned username=%s", key)
        return True

    def banned(self) -> list[str]:
        with self._lock:
            return sorted(self._banned)

    def is_muted(self, username: str | None) -> bool:
        if not username:
            return False
        with self._lock:
            return username_key(username) in self._muted

    def mute(self, username: str) -> bool:
        key = username_key(username)
        with self._lock:
            if key in self._muted:
                return False
            self._muted.add(key)
        return True

    def unmute(self, username: str) -> bool:
        key = username_key(username)
        with self._lock:
            if key not in self._muted:
                return False
            self._muted.discard(key)
        return True

    def persist_banned_users_to_config(self) -> str:
        """
        Write the current ban list into ``[chat] banned_users`` of the config file.

        Formatting and comments of the file are preserved. Returns a short
        status line for the operator.
        """
        if not self.config_path:
            return "ban list updated (not persisted; no config_path)"

        from tomlkit import dumps, parse, table

        cfg_path = expand_path(str(self.config_path))
        try:
            with self._write_lock:
                st = None
                try:
                    st = os.stat(cfg_path)
                except OSError:
                    st = None

                with open(cfg_path, encoding="utf-8") as f:
                    doc = parse(f.read())

                chat = doc.get("chat")
                if chat is None:
                    chat = table()
                    doc["chat"] = chat

                chat["banned_users"] = self.banned()

                new_text = dumps(doc)
                with open(cfg_path, "w", encoding="utf-8") as f:
                    f.write(new_text)

                if st is not None:
                    try:
                        os.chmod(cfg_path, st.st_mode)
                    except OSError:
                        pass
        except OSError as e:
            self.log.warning("Failed to persist ban list path=%s err=%s", cfg_path, e)
            return f"ban list updated (persist failed: {e})"

        return "ban list saved"

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {"banned_count": len(self._banned), "muted_count": len(self._muted)}
