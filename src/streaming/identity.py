"""Identity reconciler for the in-flight assistant message.

Three identifiers can name the same message during one exchange:

- ``provisional_id``: minted locally before the query is sent.
- ``reassigned_id``: the server's streaming id, received mid-stream.
- ``persisted_id``: the row id confirmed by the backing store.

The display id moves from provisional to reassigned and never back. The
persisted id does not move the display id (avoids re-keying the entry
while it is on screen) but is the first key tried when reconciling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class IdentityReconciler:
    """Session-scoped identifier bookkeeping for one assistant message."""

    provisional_id: str
    reassigned_id: str | None = None
    persisted_id: str | None = None

    @property
    def display_id(self) -> str:
        """Identifier the cache entry is keyed by while streaming."""
        return self.reassigned_id or self.provisional_id

    @property
    def record_key(self) -> str:
        """Identifier used to look the message up in the authoritative store."""
        return self.persisted_id or self.reassigned_id or self.provisional_id

    @property
    def acknowledged(self) -> bool:
        """Whether the backing store has confirmed the write."""
        return self.persisted_id is not None

    def lookup_keys(self) -> list[str]:
        """All known identifiers, most authoritative first, without duplicates."""
        keys: list[str] = []
        for key in (self.persisted_id, self.reassigned_id, self.provisional_id):
            if key and key not in keys:
                keys.append(key)
        return keys

    def reassign(self, streaming_id: str) -> str | None:
        """Adopt a server streaming id.

        Returns:
            The previous display id if the display id changed, else None.
        """
        if not streaming_id or streaming_id == self.display_id:
            return None
        previous = self.display_id
        self.reassigned_id = streaming_id
        logger.debug("Display id re-keyed %s -> %s", previous, streaming_id)
        return previous

    def mark_persisted(self, message_id: str) -> None:
        """Record the persisted row id. The display id is unchanged."""
        if not message_id:
            return
        if self.persisted_id and self.persisted_id != message_id:
            logger.warning(
                "Persisted id changed from %s to %s; keeping the latest",
                self.persisted_id,
                message_id,
            )
        self.persisted_id = message_id
