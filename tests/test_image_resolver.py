"""
Unit tests for ImageResolver
Covers every accepted reference shape, failure handling and budget re-encoding
"""
import base64
import io

import pytest
from PIL import Image

from claimdocs.config.template_layout import ImageBudgets
from claimdocs.models.image_reference import (
    EmptyReference,
    ImageClass,
    RawPixelPayload,
    SourceKind,
    StorageId,
    StorageUrl,
)
from claimdocs.services.errors import ImageResolutionError
from claimdocs.services.image_resolver import (
    ImageResolver,
    classify_reference,
    extract_storage_id,
    recompress_to_budget,
    sniff_mime_type,
)
from tests.fakes import ACCOUNT_URL, SOURCE_CONTAINER, FakeBlobStorageClient, data_uri, noise_png, png_bytes

STORAGE_ID = 'abcDEF0123456789_-xyzXYZ98765'


class TestClassifyReference:
    """Tests for classify_reference"""

    def test_none_and_blank_are_empty(self):
        """Test that None, blank strings and empty bytes classify as empty"""
        assert isinstance(classify_reference(None), EmptyReference)
        assert isinstance(classify_reference('   '), EmptyReference)
        assert isinstance(classify_reference(b''), EmptyReference)

    def test_data_uri_keeps_declared_mime(self):
        """Test that a base64 data URI is decoded and keeps its declared MIME type"""
        data = png_bytes()
        reference = classify_reference(data_uri(data, 'image/png'))
        assert isinstance(reference, RawPixelPayload)
        assert reference.data == data
        assert reference.mime_type == 'image/png'
        assert reference.source_kind == SourceKind.DATA_URI

    def test_data_uri_without_mime(self):
        """Test that a data URI without a media type leaves the MIME type to sniffing"""
        data = png_bytes()
        reference = classify_reference('data:;base64,' + base64.b64encode(data).decode('ascii'))
        assert reference.mime_type is None
        assert reference.data == data

    def test_malformed_data_uri_raises(self):
        """Test that a data URI without a payload separator is rejected"""
        with pytest.raises(ImageResolutionError):
            classify_reference('data:image/png;base64')

    def test_long_base64_token_is_raw_payload(self):
        """Test that a long structure-less base64 token is treated as raw pixels"""
        data = noise_png((30, 30))
        token = base64.b64encode(data).decode('ascii')
        assert len(token) >= 200

        reference = classify_reference(token)
        assert isinstance(reference, RawPixelPayload)
        assert reference.source_kind == SourceKind.RAW_TOKEN
        assert reference.data == data

    def test_urlsafe_token_without_padding(self):
        """Test that url-safe base64 without padding still decodes"""
        data = noise_png((30, 30))
        token = base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')
        assert classify_reference(token).data == data

    def test_short_identifier_is_storage_id(self):
        """Test that a 25+ character identifier is a storage id"""
        reference = classify_reference(STORAGE_ID)
        assert reference == StorageId(object_id=STORAGE_ID)

    def test_url_is_storage_url(self):
        """Test that http(s) values classify as storage URLs"""
        reference = classify_reference(f"https://files.example.com/d/{STORAGE_ID}/view")
        assert isinstance(reference, StorageUrl)

    def test_raw_bytes(self):
        """Test that bytes classify as a raw payload with no declared MIME type"""
        reference = classify_reference(png_bytes())
        assert isinstance(reference, RawPixelPayload)
        assert reference.source_kind == SourceKind.RAW_BYTES
        assert reference.mime_type is None

    def test_unrecognized_string_raises(self):
        """Test that a short string matching no shape is rejected"""
        with pytest.raises(ImageResolutionError):
            classify_reference('not an image')

    def test_unsupported_type_raises(self):
        """Test that non-string, non-bytes values are rejected"""
        with pytest.raises(ImageResolutionError):
            classify_reference(12345)


class TestExtractStorageId:
    """Tests for extract_storage_id"""

    def test_path_embedded_id(self):
        assert extract_storage_id(f"https://files.example.com/file/d/{STORAGE_ID}/view?usp=sharing") == STORAGE_ID

    def test_query_parameter_id(self):
        assert extract_storage_id(f"https://files.example.com/open?id={STORAGE_ID}") == STORAGE_ID

    def test_url_without_id(self):
        assert extract_storage_id("https://files.example.com/images/logo.png") is None


class TestImageResolver:
    """Tests for ImageResolver.resolve over every reference shape"""

    @pytest.fixture
    def blob_client(self):
        client = FakeBlobStorageClient()
        client.put_upload(STORAGE_ID, png_bytes(), content_type='image/png')
        client.put('branding/logo.png', png_bytes((10, 10)), container_name=SOURCE_CONTAINER, content_type='image/png')
        return client

    @pytest.fixture
    def resolver(self, blob_client):
        return ImageResolver(blob_client=blob_client)

    def test_empty_reference_resolves_to_empty(self, resolver):
        """Test that an empty reference yields no pixels and no error"""
        resolved = resolver.resolve(None)
        assert resolved.pixel_bytes == b''
        assert resolved.error is None
        assert resolved.is_empty
        assert resolved.outcome == 'missing'

    def test_data_uri(self, resolver):
        """Test that inline data resolves to the same bytes"""
        data = png_bytes()
        resolved = resolver.resolve(data_uri(data))
        assert resolved.ok
        assert resolved.pixel_bytes == data
        assert resolved.mime_type == 'image/png'
        assert resolved.byte_size == len(data)

    def test_raw_bytes_mime_is_sniffed(self, resolver):
        """Test that the MIME type of raw bytes is inferred from the header"""
        resolved = resolver.resolve(png_bytes())
        assert resolved.ok
        assert resolved.mime_type == 'image/png'

    def test_raw_bytes_not_an_image(self, resolver):
        """Test that unidentifiable raw bytes fail without raising"""
        resolved = resolver.resolve(b'definitely not pixels')
        assert not resolved.ok
        assert resolved.error

    def test_raw_token_mime_is_sniffed(self, resolver):
        """Test that a raw base64 token takes its MIME type from the decoded pixels"""
        data = noise_png((30, 30))
        resolved = resolver.resolve(base64.b64encode(data).decode('ascii'))

        assert resolved.ok
        assert resolved.mime_type == 'image/png'
        assert resolved.source_kind == SourceKind.RAW_TOKEN

    def test_raw_token_not_an_image(self, resolver):
        """Test that a long base64 token decoding to non-image bytes fails instead of resolving"""
        token = base64.b64encode(b'not an image at all ' * 20).decode('ascii')
        assert classify_reference(token).mime_type is None

        resolved = resolver.resolve(token, is_signature_class=True)

        assert not resolved.ok
        assert resolved.pixel_bytes == b''
        assert 'not a recognizable image' in resolved.error

    def test_storage_id(self, resolver):
        """Test that a bare storage id is fetched from the upload folder"""
        resolved = resolver.resolve(STORAGE_ID)
        assert resolved.ok
        assert resolved.source_kind == SourceKind.STORAGE_ID

    def test_storage_url_with_path_id(self, resolver):
        """Test that a /d/<id> URL is fetched by id"""
        resolved = resolver.resolve(f"https://files.example.com/file/d/{STORAGE_ID}/view")
        assert resolved.ok
        assert resolved.source_kind == SourceKind.STORAGE_URL

    def test_storage_url_with_query_id(self, resolver):
        """Test that a ?id=<id> URL is fetched by id"""
        resolved = resolver.resolve(f"https://files.example.com/open?id={STORAGE_ID}")
        assert resolved.ok

    def test_direct_blob_url(self, resolver):
        """Test that a direct Azure blob URL is downloaded as-is"""
        resolved = resolver.resolve(f"{ACCOUNT_URL}/{SOURCE_CONTAINER}/branding/logo.png")
        assert resolved.ok
        assert resolved.source_kind == SourceKind.STORAGE_URL

    def test_unknown_url_shape_fails(self, resolver):
        """Test that a URL with no id and no blob host fails without raising"""
        resolved = resolver.resolve("https://files.example.com/images/logo.png")
        assert not resolved.ok
        assert 'Unsupported storage URL' in resolved.error

    def test_missing_object_fails(self, resolver):
        """Test that a storage id that does not exist fails without raising"""
        resolved = resolver.resolve('zzzzzzzzzzzzzzzzzzzzzzzzzzzzzz')
        assert not resolved.ok
        assert resolved.source_kind == SourceKind.STORAGE_ID
        assert resolved.outcome == 'error'

    def test_pixels_present_iff_reference_resolvable(self, resolver):
        """Test that pixel bytes are non-empty exactly for non-empty, resolvable references"""
        resolvable = [data_uri(png_bytes()), png_bytes(), STORAGE_ID, f"https://x.example.com/open?id={STORAGE_ID}"]
        unresolvable = [None, '', 'zzzzzzzzzzzzzzzzzzzzzzzzzzzzzz', b'garbage']

        for reference in resolvable:
            assert resolver.resolve(reference).pixel_bytes
        for reference in unresolvable:
            assert not resolver.resolve(reference).pixel_bytes

    def test_resolve_all_keys_by_class(self, resolver):
        """Test that resolve_all keeps one entry per requested class"""
        results = resolver.resolve_all({ImageClass.LOGO: STORAGE_ID, ImageClass.SIGNATURE_1: None})
        assert set(results) == {ImageClass.LOGO, ImageClass.SIGNATURE_1}
        assert results[ImageClass.LOGO].ok
        assert results[ImageClass.SIGNATURE_1].is_empty


class TestBudgets:
    """Tests for per-class byte budgets and re-encoding"""

    def test_signature_budget_selected(self):
        """Test that signature classes get the signature budget"""
        budgets = ImageBudgets(signature_max_bytes=100, image_max_bytes=1000)
        assert budgets.budget_for(True) == 100
        assert budgets.budget_for(False) == 1000

    def test_oversized_image_is_reencoded_within_budget(self):
        """Test that an image over budget comes back at or under the budget as JPEG"""
        budget = 60_000
        resolver = ImageResolver(blob_client=FakeBlobStorageClient(), budgets=ImageBudgets(image_max_bytes=budget))
        data = noise_png((300, 300))
        assert len(data) > budget

        resolved = resolver.resolve(data)
        assert resolved.ok
        assert resolved.recompressed
        assert resolved.mime_type == 'image/jpeg'
        assert resolved.byte_size <= budget
        assert resolved.outcome == 'recompressed'

    def test_reresolving_compressed_result_does_not_grow(self):
        """Test that resolving an already re-encoded image leaves it unchanged"""
        budget = 60_000
        resolver = ImageResolver(blob_client=FakeBlobStorageClient(), budgets=ImageBudgets(image_max_bytes=budget))
        first = resolver.resolve(noise_png((300, 300)))
        second = resolver.resolve(first.pixel_bytes)

        assert second.byte_size <= first.byte_size
        assert not second.recompressed

    def test_max_bytes_override(self):
        """Test that an explicit max_bytes beats the class budget"""
        resolver = ImageResolver(blob_client=FakeBlobStorageClient())
        resolved = resolver.resolve(noise_png((200, 200)), max_bytes=20_000)
        assert resolved.byte_size <= 20_000

    def test_transparent_image_is_flattened(self):
        """Test that RGBA images are flattened before JPEG encoding"""
        buffer = io.BytesIO()
        Image.new('RGBA', (200, 200), (0, 0, 0, 0)).save(buffer, format='PNG')
        encoded = recompress_to_budget(buffer.getvalue(), 50_000)
        with Image.open(io.BytesIO(encoded)) as img:
            assert img.format == 'JPEG'
            assert img.mode == 'RGB'

    def test_undecodable_image_raises(self):
        """Test that bytes Pillow cannot open are rejected by the re-encoder"""
        with pytest.raises(ImageResolutionError):
            recompress_to_budget(b'not an image at all', 10)

    def test_sniff_mime_type(self):
        assert sniff_mime_type(png_bytes()) == 'image/png'
        assert sniff_mime_type(b'plain text') is None
