"""
Sequence Allocator
Mints human-readable, date-scoped document IDs: PREFIX-YYYYMMDD-NNNN.

The scan for the current maximum and the decision on the next value run under
one global lock. Releasing the lock between the two lets concurrent submissions
mint the same ID.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol, Tuple

from claimdocs.config import settings
from claimdocs.services.errors import DocumentIdError
from claimdocs.services.lock_manager import LockManager, get_lock_manager

logger = logging.getLogger(__name__)

_SUFFIX_RE = re.compile(r'^(?P<prefix>.+)-(?P<suffix>\d+)$')


class DocumentIdSource(Protocol):
    """Anything that can list previously minted IDs starting with a prefix"""

    def list_document_ids(self, prefix: str) -> Iterable[str]:
        ...


class SequenceAllocator:
    """Allocates monotonic document IDs under a global lock"""

    def __init__(
        self,
        record_store: DocumentIdSource,
        lock_manager: Optional[LockManager] = None,
        lock_name: Optional[str] = None,
        lock_timeout: Optional[float] = None,
        width: Optional[int] = None,
        id_prefix: Optional[str] = None,
    ):
        self.record_store = record_store
        self.lock_manager = lock_manager or get_lock_manager()
        self.lock_name = lock_name or settings.document_id_lock_name
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.lock_timeout_seconds
        self.width = width or settings.document_id_width
        self.id_prefix = id_prefix or settings.document_id_prefix

    def date_prefix(self, now: Optional[datetime] = None) -> str:
        """Default prefix for a given moment: {PREFIX}-{YYYYMMDD} (UTC)"""
        now = now or datetime.now(timezone.utc)
        return f"{self.id_prefix}-{now.strftime('%Y%m%d')}"

    @staticmethod
    def parse(document_id: str) -> Optional[Tuple[str, int]]:
        """
        Split a document ID into (prefix, numeric suffix).

        Returns:
            None when the ID has no numeric suffix
        """
        if not document_id:
            return None
        match = _SUFFIX_RE.match(document_id.strip())
        if not match:
            return None
        return match.group('prefix'), int(match.group('suffix'))

    def next_id(
        self,
        date_prefix: Optional[str] = None,
        now: Optional[datetime] = None,
        on_allocated: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Mint the next document ID for a date-scoped prefix.

        Args:
            date_prefix: Prefix to allocate under (default: {PREFIX}-{YYYYMMDD} for now)
            now: Reference time for the default prefix
            on_allocated: Called with the new ID while the lock is still held, so the
                caller can record it before another allocation scans

        Returns:
            prefix + '-' + (max existing suffix + 1), zero-padded

        Raises:
            LockTimeout: If the sequence lock is not acquired within the bounded wait
            DocumentIdError: If the record store cannot be scanned or on_allocated fails
        """
        prefix = (date_prefix or self.date_prefix(now)).rstrip('-')

        with self.lock_manager.hold(self.lock_name, timeout=self.lock_timeout):
            try:
                existing = list(self.record_store.list_document_ids(f"{prefix}-"))
            except Exception as e:
                logger.error(f"Failed to scan document IDs for prefix={prefix}: {e}", exc_info=True)
                raise DocumentIdError(f"Cannot scan existing document IDs: {e}") from e

            highest = 0
            for document_id in existing:
                parsed = self.parse(str(document_id))
                if parsed is None or parsed[0] != prefix:
                    continue
                highest = max(highest, parsed[1])

            document_id = f"{prefix}-{highest + 1:0{self.width}d}"
            if on_allocated is not None:
                try:
                    on_allocated(document_id)
                except Exception as e:
                    logger.error(f"Failed to record allocated document_id={document_id}: {e}", exc_info=True)
                    raise DocumentIdError(f"Cannot record document ID {document_id}: {e}") from e
            logger.info(f"Allocated document_id={document_id} (scanned {len(existing)} existing IDs)")
            return document_id
