"""Address Book — persisted mapping from chat identity to contact e-mail.

The whole mapping is rewritten on every change (write-through). Older
versions of the bot occasionally left trailing commas in the file, so the
loader strips them before parsing.
"""

from __future__ import annotations

import json
import re
from pathlib import Path

from deskbot.services.base import BaseService

_TRAILING_COMMA = re.compile(r",\s*([}\]])")


class AddressBook(BaseService):
    def __init__(self, path: str | Path):
        super().__init__(name="address_book")
        self.path = Path(path)
        self._entries: dict[str, str] = {}

    async def initialize(self) -> None:
        self.load()

    def load(self) -> None:
        """Read the mapping from disk, starting empty if that is not possible."""
        if not self.path.exists():
            self.logger.info("No address file at %s, a new one will be created", self.path)
            self._entries = {}
            return

        try:
            raw = self.path.read_text(encoding="utf-8")
            data = json.loads(_TRAILING_COMMA.sub(r"\1", raw)) if raw.strip() else {}
        except (OSError, ValueError):
            self.logger.exception("Could not read address file %s, starting empty", self.path)
            self._entries = {}
            return

        if not isinstance(data, dict):
            self.logger.error("Address file %s does not hold an object, starting empty", self.path)
            self._entries = {}
            return

        self._entries = {str(k): str(v) for k, v in data.items()}
        self.logger.info("Loaded %d address(es) from %s", len(self._entries), self.path)

    def get(self, user_id: str) -> str | None:
        return self._entries.get(user_id)

    def set(self, user_id: str, address: str) -> None:
        """Store (or overwrite) the user's address and persist immediately."""
        self._entries[user_id] = address
        self._save()

    def find_identity(self, address: str) -> str | None:
        """Return the first user whose address equals ``address``.

        Addresses are not guaranteed unique; iteration follows insertion
        order, which is file order for entries loaded from disk.
        """
        for user_id, stored in self._entries.items():
            if stored == address:
                return user_id
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self._entries, f, indent=2, ensure_ascii=False)
        except OSError:
            self.logger.exception("Could not save address file %s", self.path)
            return
        self.logger.debug("Saved %d address(es) to %s", len(self._entries), self.path)
