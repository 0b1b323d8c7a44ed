"""
Image Reference Models
Tagged union of the image reference shapes a claim can carry, and the resolved
form that is ready for embedding.
"""
import base64
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict


class ImageClass(str, Enum):
    """Image classes with their own byte budget and failure policy"""
    LOGO = "logo"
    ILLUSTRATION = "illustration"
    SIGNATURE_1 = "signature_1"
    SIGNATURE_2 = "signature_2"
    SIGNATURE_3 = "signature_3"

    @property
    def is_signature(self) -> bool:
        return self.value.startswith("signature_")


SIGNATURE_CLASSES = (ImageClass.SIGNATURE_1, ImageClass.SIGNATURE_2, ImageClass.SIGNATURE_3)


class SourceKind(str, Enum):
    """Where resolved pixel data came from"""
    EMPTY = "empty"
    DATA_URI = "data_uri"
    RAW_TOKEN = "raw_token"
    RAW_BYTES = "raw_bytes"
    STORAGE_ID = "storage_id"
    STORAGE_URL = "storage_url"


class RawPixelPayload(BaseModel):
    """Pixel data carried inline (data URI, base64 token or bytes)"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["raw"] = "raw"
    data: bytes
    mime_type: Optional[str] = None  # declared; inferred when None
    source_kind: SourceKind = SourceKind.RAW_BYTES


class StorageId(BaseModel):
    """Opaque blob-store object identifier"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["storage_id"] = "storage_id"
    object_id: str


class StorageUrl(BaseModel):
    """Blob-store URL in one of the accepted shapes"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["storage_url"] = "storage_url"
    url: str


class EmptyReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["empty"] = "empty"


ImageReference = Union[RawPixelPayload, StorageId, StorageUrl, EmptyReference]


class ResolvedImage(BaseModel):
    """
    Image reference converted to in-memory pixel bytes + MIME type.
    Never persisted; recomputed per render.
    """
    model_config = ConfigDict(frozen=True)

    pixel_bytes: bytes = b""
    mime_type: Optional[str] = None
    source_kind: SourceKind = SourceKind.EMPTY
    byte_size: int = 0
    error: Optional[str] = None
    recompressed: bool = False

    @classmethod
    def empty(cls) -> "ResolvedImage":
        return cls()

    @classmethod
    def failed(cls, source_kind: SourceKind, error: str) -> "ResolvedImage":
        return cls(source_kind=source_kind, error=error)

    @property
    def is_empty(self) -> bool:
        return self.source_kind == SourceKind.EMPTY and self.error is None

    @property
    def ok(self) -> bool:
        return bool(self.pixel_bytes) and self.error is None

    @property
    def data_uri(self) -> str:
        """Inline data URI for embedding in markup ('' when nothing was resolved)"""
        if not self.ok:
            return ""
        encoded = base64.b64encode(self.pixel_bytes).decode("ascii")
        return f"data:{self.mime_type or 'image/png'};base64,{encoded}"

    @property
    def outcome(self) -> str:
        """Short outcome label used in audit reports"""
        if self.ok:
            return "recompressed" if self.recompressed else "resolved"
        if self.error:
            return "error"
        return "missing"
