"""Record store interface implemented by the host note store."""

from typing import Any, Optional, Protocol

from notesync.models import Record, RecordSet


class RecordNotFoundError(LookupError):
    """Raised by ``update_record`` when the record no longer exists."""


class RecordStore(Protocol):
    """The narrow surface the sync engine needs from the note store.

    The store owns record identity and persistence. The engine re-reads
    ``current_record_set`` on every pass and never caches record contents.
    """

    async def create_record(
        self,
        record_id: str,
        fields: dict[str, Any],
        template: Optional[str] = None,
    ) -> Record:
        ...

    async def update_record(self, record: Record) -> None:
        ...

    async def delete_record(self, record_id: str) -> None:
        ...

    async def current_record_set(self) -> RecordSet:
        ...
