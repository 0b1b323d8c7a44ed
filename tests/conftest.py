"""
Shared fixtures: in-memory blob storage, template workbook, locks and renderers
"""
import pytest

from claimdocs.config.template_layout import DEFAULT_TEMPLATE_LAYOUT
from claimdocs.models.claim import AffectedPart, ClaimImages, ClaimRecord
from claimdocs.services.document_publisher import DocumentPublisher
from claimdocs.services.image_resolver import ImageResolver
from claimdocs.services.legacy_renderer import LegacyRenderer
from claimdocs.services.lock_manager import InProcessLockManager
from claimdocs.services.primary_renderer import PrimaryRenderer
from claimdocs.services.workbook_store import InMemoryWorkbookStore
from tests.fakes import (
    TEST_MIN_DOCUMENT_BYTES,
    FakeBlobStorageClient,
    FakeExporter,
    FakePdfBackend,
    data_uri,
    png_bytes,
    template_workbook,
)


@pytest.fixture
def blob_client():
    return FakeBlobStorageClient()


@pytest.fixture
def resolver(blob_client):
    return ImageResolver(blob_client=blob_client)


@pytest.fixture
def publisher(blob_client):
    return DocumentPublisher(blob_client=blob_client)


@pytest.fixture
def lock_manager():
    return InProcessLockManager()


@pytest.fixture
def template_store():
    return InMemoryWorkbookStore(template_workbook(), url="memory://templates/claim_template.xlsx")


@pytest.fixture
def pdf_backend():
    return FakePdfBackend()


@pytest.fixture
def exporter(template_store):
    return FakeExporter(workbook_store=template_store)


@pytest.fixture
def primary_renderer(resolver, publisher, pdf_backend):
    return PrimaryRenderer(
        resolver,
        publisher,
        pdf_backend=pdf_backend,
        logo_reference='',
        min_document_bytes=TEST_MIN_DOCUMENT_BYTES,
    )


@pytest.fixture
def legacy_renderer(resolver, publisher, lock_manager, template_store, exporter):
    return LegacyRenderer(
        DEFAULT_TEMPLATE_LAYOUT,
        template_store,
        resolver,
        publisher,
        lock_manager,
        exporter=exporter,
        lock_name='test:legacy-template',
        lock_timeout=1.0,
        min_document_bytes=TEST_MIN_DOCUMENT_BYTES,
    )


@pytest.fixture
def logo_uri():
    return data_uri(png_bytes((60, 30), (10, 60, 160)))


@pytest.fixture
def claim(logo_uri):
    """A complete claim with a logo and two affected parts"""
    return ClaimRecord(
        document_id='WC-20261018-0001',
        dealer_name='Northside Equipment',
        dealer_code='D-1042',
        dealer_address='12 Mill Road, Springfield',
        customer_name='Jordan Smith',
        customer_phone='555-201-3344',
        customer_address='4 Elm Street, Springfield',
        vin='1FTFW1E50PKE12345',
        vehicle_model='T-400',
        mileage='18250',
        repair_order='RO-77812',
        failure_date='2026-10-01',
        repair_date='2026-10-03',
        complaint='Hydraulic lift drifts down under load.',
        cause='Worn seal in lift cylinder.',
        correction='Replaced seal kit and tested lift.',
        causal_part_number='HC-2231',
        causal_part_name='Lift cylinder seal kit',
        causal_part_quantity='1',
        labor_hours='2.5',
        technician_name='A. Rivera',
        service_manager_name='K. Osei',
        customer_signoff_name='Jordan Smith',
        affected_parts=[
            AffectedPart(part_number='HC-2231', part_name='Seal kit', quantity=1),
            AffectedPart(part_number='HF-0090', part_name='Hydraulic filter', quantity=2),
        ],
        images=ClaimImages(logo=logo_uri),
    )
