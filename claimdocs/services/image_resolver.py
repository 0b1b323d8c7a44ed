"""
Image Resolver
Turns any supported image reference into embeddable pixel bytes + MIME type.

Accepted reference shapes:
- data URI (data:image/png;base64,...) -> decoded as-is, MIME from the prefix
- long base64 token with no structure -> raw pixel payload (client-drawn signatures)
- storage URL: /d/<id> path, ?id=<id> query, or a direct Azure blob URL
- bare storage id ([A-Za-z0-9_-]{25,}) -> {upload_prefix}/<id> in the SOURCE container
- raw bytes

Oversized images are re-encoded as JPEG until they fit the class budget. Resolution
never raises for a single image: failures come back as ResolvedImage.error.
"""
import base64
import binascii
import io
import logging
import re
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qs, unquote_to_bytes, urlparse

from PIL import Image

from claimdocs.config import settings
from claimdocs.config.template_layout import ImageBudgets
from claimdocs.models.image_reference import (
    EmptyReference,
    ImageClass,
    ImageReference,
    RawPixelPayload,
    ResolvedImage,
    SourceKind,
    StorageId,
    StorageUrl,
)
from claimdocs.services.blob_storage import BlobStorageClient, BlobStorageError, get_blob_storage_client
from claimdocs.services.errors import ImageResolutionError

logger = logging.getLogger(__name__)

_DATA_URI_RE = re.compile(r'^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(?:;[^,;]*)*),(?P<payload>.*)$', re.DOTALL)
_BASE64_TOKEN_RE = re.compile(r'^[A-Za-z0-9+/_\-\s]+={0,2}$')
_PATH_ID_RE = re.compile(r'/d/([A-Za-z0-9_-]+)')

# JPEG qualities tried before downscaling
_JPEG_QUALITIES = (85, 70, 55, 40, 25)
_DOWNSCALE_FACTOR = 0.75
_MAX_DOWNSCALE_STEPS = 8


def _storage_id_pattern(min_length: int) -> re.Pattern:
    return re.compile(rf'^[A-Za-z0-9_-]{{{min_length},}}$')


def classify_reference(value: Any) -> ImageReference:
    """
    Classify a raw submitted value into one ImageReference shape.

    Raises:
        ImageResolutionError: For strings matching no accepted shape
    """
    if isinstance(value, (RawPixelPayload, StorageId, StorageUrl, EmptyReference)):
        return value
    if value is None:
        return EmptyReference()
    if isinstance(value, (bytes, bytearray)):
        if not value:
            return EmptyReference()
        return RawPixelPayload(data=bytes(value), source_kind=SourceKind.RAW_BYTES)
    if not isinstance(value, str):
        raise ImageResolutionError(f"Unsupported image reference type: {type(value).__name__}")

    text = value.strip()
    if not text:
        return EmptyReference()

    if text.lower().startswith('data:'):
        return _parse_data_uri(text)

    if text.startswith('http://') or text.startswith('https://'):
        return StorageUrl(url=text)

    if len(text) >= settings.raw_token_min_length and _BASE64_TOKEN_RE.match(text):
        return RawPixelPayload(
            data=_b64decode(text),
            source_kind=SourceKind.RAW_TOKEN,
        )

    if _storage_id_pattern(settings.storage_id_min_length).match(text):
        return StorageId(object_id=text)

    raise ImageResolutionError(f"Unrecognized image reference: {text[:40]!r}")


def _parse_data_uri(text: str) -> RawPixelPayload:
    match = _DATA_URI_RE.match(text)
    if not match:
        raise ImageResolutionError("Malformed data URI")

    params = [p.strip().lower() for p in match.group('params').split(';') if p.strip()]
    payload = match.group('payload')
    if 'base64' in params:
        data = _b64decode(payload)
    else:
        data = unquote_to_bytes(payload)

    return RawPixelPayload(
        data=data,
        mime_type=(match.group('mime') or None),
        source_kind=SourceKind.DATA_URI,
    )


def _b64decode(token: str) -> bytes:
    cleaned = re.sub(r'\s+', '', token).replace('-', '+').replace('_', '/')
    cleaned += '=' * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageResolutionError(f"Invalid base64 payload: {e}") from e


def extract_storage_id(url: str) -> Optional[str]:
    """
    Pull an opaque storage id out of a URL.

    Accepts path-embedded ids (.../d/<id>/...) and query-parameter ids (?id=<id>).
    Returns None when the URL carries neither.
    """
    parsed = urlparse(url)
    id_pattern = _storage_id_pattern(settings.storage_id_min_length)

    path_match = _PATH_ID_RE.search(parsed.path)
    if path_match and id_pattern.match(path_match.group(1)):
        return path_match.group(1)

    for candidate in parse_qs(parsed.query).get('id', []):
        if id_pattern.match(candidate):
            return candidate
    return None


def is_blob_url(url: str) -> bool:
    return urlparse(url).netloc.endswith('.blob.core.windows.net')


def sniff_mime_type(data: bytes) -> Optional[str]:
    """MIME type from the image header, or None if Pillow cannot identify it"""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format)
    except (OSError, ValueError, Image.DecompressionBombError):
        return None


def recompress_to_budget(data: bytes, max_bytes: int) -> bytes:
    """
    Re-encode an image as JPEG until it fits max_bytes.

    Lowers quality first, then downscales. Transparent images are flattened
    onto white.

    Raises:
        ImageResolutionError: If the image cannot be decoded or never fits
    """
    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            img = _flatten(source)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageResolutionError(f"Cannot decode image for re-encoding: {e}") from e

    for step in range(_MAX_DOWNSCALE_STEPS + 1):
        if step:
            new_size = (max(1, int(img.width * _DOWNSCALE_FACTOR)), max(1, int(img.height * _DOWNSCALE_FACTOR)))
            img = img.resize(new_size, Image.Resampling.LANCZOS)
        qualities = _JPEG_QUALITIES if step == 0 else _JPEG_QUALITIES[-2:]
        for quality in qualities:
            buffer = io.BytesIO()
            img.save(buffer, format='JPEG', quality=quality, optimize=True)
            encoded = buffer.getvalue()
            if len(encoded) <= max_bytes:
                logger.debug(
                    f"Re-encoded image {len(data)} -> {len(encoded)} bytes "
                    f"(quality={quality}, size={img.width}x{img.height})"
                )
                return encoded

    raise ImageResolutionError(f"Image still exceeds {max_bytes} bytes after re-encoding")


def _source_kind_of(reference: ImageReference) -> SourceKind:
    if isinstance(reference, RawPixelPayload):
        return reference.source_kind
    if isinstance(reference, StorageId):
        return SourceKind.STORAGE_ID
    if isinstance(reference, StorageUrl):
        return SourceKind.STORAGE_URL
    return SourceKind.EMPTY


def _flatten(img: Image.Image) -> Image.Image:
    if img.mode in ('RGBA', 'LA') or (img.mode == 'P' and 'transparency' in img.info):
        rgba = img.convert('RGBA')
        background = Image.new('RGB', rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    return img.convert('RGB')


class ImageResolver:
    """
    Resolves image references to ResolvedImage values.

    Pure apart from the blob fetch: output depends only on the reference and
    the injected budgets.
    """

    def __init__(
        self,
        blob_client: Optional[BlobStorageClient] = None,
        budgets: Optional[ImageBudgets] = None,
    ):
        self._blob_client = blob_client
        self.budgets = budgets or ImageBudgets.from_settings(settings)

    @property
    def blob_client(self) -> BlobStorageClient:
        if self._blob_client is None:
            self._blob_client = get_blob_storage_client()
        return self._blob_client

    def resolve(
        self,
        ref: Any,
        max_bytes: Optional[int] = None,
        is_signature_class: bool = False,
    ) -> ResolvedImage:
        """
        Resolve one reference.

        Args:
            ref: ImageReference or any raw submitted value (classified first)
            max_bytes: Byte budget override; defaults to the class budget
            is_signature_class: Selects the signature budget when max_bytes is None

        Returns:
            ResolvedImage: empty for empty references, error set on failure
        """
        budget = max_bytes or self.budgets.budget_for(is_signature_class)
        source_kind = SourceKind.EMPTY
        try:
            reference = classify_reference(ref)
            if isinstance(reference, EmptyReference):
                return ResolvedImage.empty()
            source_kind = _source_kind_of(reference)

            data, mime_type, source_kind = self._load(reference)
            if not data:
                raise ImageResolutionError("Resolved image is empty")

            recompressed = False
            if len(data) > budget:
                logger.info(f"Image of {len(data)} bytes exceeds budget {budget}; re-encoding")
                data = recompress_to_budget(data, budget)
                mime_type = 'image/jpeg'
                recompressed = True

            return ResolvedImage(
                pixel_bytes=data,
                mime_type=mime_type,
                source_kind=source_kind,
                byte_size=len(data),
                recompressed=recompressed,
            )
        except (ImageResolutionError, BlobStorageError) as e:
            logger.warning(f"Image resolution failed ({source_kind.value}): {e}")
            return ResolvedImage.failed(source_kind, str(e))

    def resolve_for_class(self, image_class: ImageClass, ref: Any) -> ResolvedImage:
        resolved = self.resolve(ref, is_signature_class=image_class.is_signature)
        if resolved.ok:
            logger.info(
                f"Resolved {image_class.value}: {resolved.byte_size} bytes, "
                f"{resolved.mime_type}, source={resolved.source_kind.value}"
            )
        elif resolved.error:
            logger.warning(f"Image {image_class.value} unavailable: {resolved.error}")
        return resolved

    def resolve_all(self, references: Mapping[ImageClass, Any]) -> Dict[ImageClass, ResolvedImage]:
        return {image_class: self.resolve_for_class(image_class, ref) for image_class, ref in references.items()}

    def _load(self, reference: ImageReference) -> Tuple[bytes, Optional[str], SourceKind]:
        if isinstance(reference, RawPixelPayload):
            mime_type = reference.mime_type or sniff_mime_type(reference.data)
            if mime_type is None:
                raise ImageResolutionError("Raw payload is not a recognizable image")
            return reference.data, mime_type, reference.source_kind

        if isinstance(reference, StorageId):
            result = self.blob_client.fetch_object(reference.object_id, timeout=settings.image_fetch_timeout_seconds)
            return result['data'], self._content_mime(result), SourceKind.STORAGE_ID

        if isinstance(reference, StorageUrl):
            object_id = extract_storage_id(reference.url)
            if object_id:
                result = self.blob_client.fetch_object(object_id, timeout=settings.image_fetch_timeout_seconds)
            elif is_blob_url(reference.url):
                result = self.blob_client.download_bytes(reference.url, timeout=settings.image_fetch_timeout_seconds)
            else:
                raise ImageResolutionError(f"Unsupported storage URL shape: {reference.url[:80]}")
            return result['data'], self._content_mime(result), SourceKind.STORAGE_URL

        raise ImageResolutionError(f"Unsupported reference kind: {type(reference).__name__}")

    @staticmethod
    def _content_mime(result: Mapping[str, Any]) -> str:
        content_type = (result.get('content_type') or '').split(';')[0].strip().lower()
        if content_type.startswith('image/'):
            return content_type
        sniffed = sniff_mime_type(result['data'])
        if sniffed is None:
            raise ImageResolutionError(f"Fetched object is not an image (content_type={content_type or 'unknown'})")
        return sniffed
