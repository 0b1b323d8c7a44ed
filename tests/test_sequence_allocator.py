"""
Unit tests for SequenceAllocator
Document IDs are PREFIX-YYYYMMDD-NNNN, minted under a global lock
"""
import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from claimdocs.services.blob_storage import BlobStorageError
from claimdocs.services.errors import DocumentIdError, LockTimeout
from claimdocs.services.lock_manager import InProcessLockManager
from claimdocs.services.record_store import WorksheetRecordStore
from claimdocs.services.sequence_allocator import SequenceAllocator
from claimdocs.services.workbook_store import InMemoryWorkbookStore

NOW = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)


class ListIdSource:
    """Record store stand-in that remembers every allocated ID"""

    def __init__(self, ids=None):
        self.ids = list(ids or [])

    def list_document_ids(self, prefix):
        return [document_id for document_id in self.ids if document_id.startswith(prefix)]


def make_allocator(source, lock_manager=None):
    return SequenceAllocator(
        source,
        lock_manager=lock_manager or InProcessLockManager(),
        lock_name='test:sequence',
        lock_timeout=1.0,
        width=4,
        id_prefix='WC',
    )


class TestParse:
    """Tests for SequenceAllocator.parse"""

    def test_parse_valid_id(self):
        assert SequenceAllocator.parse('WC-20261018-0042') == ('WC-20261018', 42)

    def test_parse_without_numeric_suffix(self):
        assert SequenceAllocator.parse('WC-20261018-abc') is None
        assert SequenceAllocator.parse('') is None


class TestNextId:
    """Tests for SequenceAllocator.next_id"""

    def test_first_id_of_the_day(self):
        """Test that an empty store yields suffix 0001"""
        allocator = make_allocator(ListIdSource())
        assert allocator.next_id(now=NOW) == 'WC-20261018-0001'

    def test_next_after_highest_existing(self):
        """Test that the suffix follows the highest existing one, not the count"""
        source = ListIdSource(['WC-20261018-0001', 'WC-20261018-0007', 'WC-20261017-0099', 'WC-20261018-junk'])
        assert make_allocator(source).next_id(now=NOW) == 'WC-20261018-0008'

    def test_explicit_prefix(self):
        """Test that an explicit date prefix is honoured"""
        source = ListIdSource(['WC-20260101-0003'])
        assert make_allocator(source).next_id(date_prefix='WC-20260101') == 'WC-20260101-0004'

    def test_sequential_calls_are_strictly_increasing(self):
        """Test that N sequential allocations give N distinct, increasing suffixes"""
        source = ListIdSource()
        allocator = make_allocator(source)

        ids = [allocator.next_id(now=NOW, on_allocated=source.ids.append) for _ in range(12)]

        suffixes = [SequenceAllocator.parse(document_id)[1] for document_id in ids]
        assert len(set(ids)) == 12
        assert suffixes == sorted(suffixes)
        assert suffixes == list(range(1, 13))

    def test_concurrent_calls_do_not_collide(self):
        """Test that threads recording inside the lock never mint the same ID"""
        source = ListIdSource()
        allocator = make_allocator(source)
        results = []

        def worker():
            results.append(allocator.next_id(now=NOW, on_allocated=source.ids.append))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert len(results) == 8
        assert len(set(results)) == 8

    def test_on_allocated_runs_under_lock(self):
        """Test that the allocation callback sees the sequence lock held"""
        lock_manager = InProcessLockManager()
        allocator = make_allocator(ListIdSource(), lock_manager=lock_manager)
        seen = []

        allocator.next_id(now=NOW, on_allocated=lambda _: seen.append(lock_manager.is_locked('test:sequence')))

        assert seen == [True]
        assert not lock_manager.is_locked('test:sequence')

    def test_scan_failure_raises_document_id_error(self):
        """Test that a failing record store scan surfaces as DocumentIdError and frees the lock"""
        source = MagicMock()
        source.list_document_ids.side_effect = OSError("store unavailable")
        lock_manager = InProcessLockManager()

        with pytest.raises(DocumentIdError):
            make_allocator(source, lock_manager=lock_manager).next_id(now=NOW)
        assert not lock_manager.is_locked('test:sequence')

    def test_record_failure_raises_document_id_error(self):
        """Test that a failing allocation callback surfaces as DocumentIdError and frees the lock"""
        lock_manager = InProcessLockManager()
        allocator = make_allocator(ListIdSource(), lock_manager=lock_manager)
        upload_error = BlobStorageError("upload failed")

        def record(document_id):
            raise upload_error

        with pytest.raises(DocumentIdError) as exc_info:
            allocator.next_id(now=NOW, on_allocated=record)

        assert exc_info.value.__cause__ is upload_error
        assert 'WC-20261018-0001' in str(exc_info.value)
        assert not lock_manager.is_locked('test:sequence')

    def test_lock_timeout_propagates(self):
        """Test that a held sequence lock surfaces as LockTimeout"""
        lock_manager = InProcessLockManager()
        allocator = SequenceAllocator(
            ListIdSource(), lock_manager=lock_manager, lock_name='test:sequence', lock_timeout=0, id_prefix='WC'
        )
        with lock_manager.hold('test:sequence', timeout=0):
            with pytest.raises(LockTimeout):
                allocator.next_id(now=NOW)

    def test_with_worksheet_record_store(self):
        """Test allocation against the header-addressed record store"""
        store = WorksheetRecordStore(InMemoryWorkbookStore())
        allocator = make_allocator(store)

        first = allocator.next_id(now=NOW, on_allocated=lambda i: store.append_record({'document_id': i}))
        second = allocator.next_id(now=NOW, on_allocated=lambda i: store.append_record({'document_id': i}))

        assert (first, second) == ('WC-20261018-0001', 'WC-20261018-0002')
        assert store.list_document_ids('WC-20261018-') == [first, second]
