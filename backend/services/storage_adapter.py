"""
Storage Adapter - GridFS-backed document store for letters and template files.

Exposes the document-store contract the letter pipeline consumes:
    upload_document(buffer, metadata) -> {"success": bool, "document": {...}}
    get_document_file(document_id)    -> {"buffer": bytes, "document": {...}}

Rendered letters and template content files live in the same bucket, told
apart by their "kind" metadata. Files are never overwritten; a new upload
always yields a new document id.
"""
import hashlib
import io
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorGridFSBucket
from database import database
from utils.letter_settings import get_documents_bucket

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StoredFileNotFoundError(StorageError):
    """File not found in storage."""
    pass


class FileMetadata:
    """Stored file metadata."""
    def __init__(
        self,
        file_id: str,
        filename: str,
        content_type: str,
        size_bytes: int,
        sha256_hash: str,
        upload_timestamp: datetime,
        uploaded_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.file_id = file_id
        self.filename = filename
        self.content_type = content_type
        self.size_bytes = size_bytes
        self.sha256_hash = sha256_hash
        self.upload_timestamp = upload_timestamp
        self.uploaded_by = uploaded_by
        self.metadata = metadata or {}

    @classmethod
    def from_gridfs(cls, file_doc: Dict[str, Any]) -> "FileMetadata":
        gridfs_meta = file_doc.get("metadata") or {}
        uploaded = gridfs_meta.get("upload_timestamp")
        return cls(
            file_id=str(file_doc["_id"]),
            filename=file_doc["filename"],
            content_type=gridfs_meta.get("content_type", "application/octet-stream"),
            size_bytes=file_doc.get("length", 0),
            sha256_hash=gridfs_meta.get("sha256_hash", ""),
            upload_timestamp=datetime.fromisoformat(uploaded) if uploaded else datetime.now(timezone.utc),
            uploaded_by=gridfs_meta.get("uploaded_by"),
            metadata=gridfs_meta.get("custom_metadata", {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.file_id,
            "filename": self.filename,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "sha256_hash": self.sha256_hash,
            "upload_timestamp": self.upload_timestamp.isoformat() if self.upload_timestamp else None,
            "uploaded_by": self.uploaded_by,
            "metadata": self.metadata,
        }


class StorageAdapter(ABC):
    """Abstract base class for storage implementations."""

    @abstractmethod
    async def upload_file(
        self,
        content: bytes,
        filename: str,
        content_type: str,
        uploaded_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FileMetadata:
        pass

    @abstractmethod
    async def download_file(self, file_id: str) -> tuple[bytes, FileMetadata]:
        pass


class GridFSStorageAdapter(StorageAdapter):
    """
    GridFS-based storage implementation.
    Stores files in MongoDB GridFS with a SHA256 hash and custom metadata per file.
    """

    def __init__(self, bucket_name: Optional[str] = None):
        self.bucket_name = bucket_name or get_documents_bucket()
        self._bucket = None

    def _get_bucket(self) -> AsyncIOMotorGridFSBucket:
        """Get or create GridFS bucket."""
        if self._bucket is None:
            db = database.get_db()
            self._bucket = AsyncIOMotorGridFSBucket(db, bucket_name=self.bucket_name)
        return self._bucket

    def _files_collection(self):
        return database.get_db()[f"{self.bucket_name}.files"]

    @staticmethod
    def _object_id(file_id: str) -> Optional[ObjectId]:
        try:
            return ObjectId(file_id)
        except (InvalidId, TypeError):
            return None

    async def upload_file(
        self,
        content: bytes,
        filename: str,
        content_type: str,
        uploaded_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FileMetadata:
        """Upload a file to GridFS."""
        bucket = self._get_bucket()
        if isinstance(content, str):
            content = content.encode("utf-8")

        uploaded_at = datetime.now(timezone.utc)
        sha256_hash = hashlib.sha256(content).hexdigest()
        gridfs_metadata = {
            "content_type": content_type,
            "sha256_hash": sha256_hash,
            "uploaded_by": uploaded_by,
            "upload_timestamp": uploaded_at.isoformat(),
            "custom_metadata": metadata or {},
        }

        file_id = await bucket.upload_from_stream(
            filename,
            io.BytesIO(content),
            metadata=gridfs_metadata,
        )

        file_meta = FileMetadata(
            file_id=str(file_id),
            filename=filename,
            content_type=content_type,
            size_bytes=len(content),
            sha256_hash=sha256_hash,
            upload_timestamp=uploaded_at,
            uploaded_by=uploaded_by,
            metadata=metadata,
        )

        logger.info(f"File uploaded to GridFS: {filename} ({file_meta.file_id})")
        return file_meta

    async def download_file(self, file_id: str) -> tuple[bytes, FileMetadata]:
        """Download file from GridFS."""
        object_id = self._object_id(file_id)
        if object_id is None:
            raise StoredFileNotFoundError(f"Invalid file ID: {file_id}")

        file_doc = await self._files_collection().find_one({"_id": object_id})
        if not file_doc:
            raise StoredFileNotFoundError(f"File not found: {file_id}")

        stream = io.BytesIO()
        await self._get_bucket().download_to_stream(object_id, stream)
        return stream.getvalue(), FileMetadata.from_gridfs(file_doc)


# Singleton instance
storage_adapter = GridFSStorageAdapter()


# ============================================================================
# DOCUMENT STORE CONTRACT
# ============================================================================

async def upload_document(buffer: bytes, metadata: Dict[str, Any]) -> Dict[str, Any]:
    """
    Persist a rendered document.

    metadata must carry file_name and mime_type; everything else (client_id,
    category, tags, ...) is stored alongside the file. Never raises: storage
    failures come back as success=False with an error message.
    """
    custom = {k: v for k, v in metadata.items() if k not in ("file_name", "mime_type", "uploaded_by")}
    custom.setdefault("kind", "letter")
    try:
        file_meta = await storage_adapter.upload_file(
            content=buffer,
            filename=metadata["file_name"],
            content_type=metadata.get("mime_type", "application/octet-stream"),
            uploaded_by=metadata.get("uploaded_by"),
            metadata=custom,
        )
        return {"success": True, "document": file_meta.to_dict()}
    except Exception as e:
        logger.error(f"Document upload failed for {metadata.get('file_name')}: {e}")
        return {"success": False, "document": None, "error": str(e)}


async def get_document_file(document_id: str) -> Dict[str, Any]:
    """Fetch a stored document. Raises StoredFileNotFoundError when absent."""
    content, file_meta = await storage_adapter.download_file(document_id)
    return {"buffer": content, "document": file_meta.to_dict()}


async def store_template_content(content: str, file_name: str, template_id: str, uploaded_by: Optional[str] = None) -> str:
    """Store a template body as a new file and return its id."""
    file_meta = await storage_adapter.upload_file(
        content=content.encode("utf-8"),
        filename=file_name,
        content_type="text/markdown",
        uploaded_by=uploaded_by,
        metadata={"kind": "template", "template_id": template_id},
    )
    return file_meta.file_id


async def load_template_content(file_id: str) -> str:
    content, _ = await storage_adapter.download_file(file_id)
    return content.decode("utf-8")
