from .blob_store import BlobStore, BlobMetadata, BlobReadStream
from .minio_repository import MinioRepository
from .local_repository import LocalDiskRepository
from .pg_repositoryDrop import DropRepository
from .pg_repositoryRateLimit import RateLimitRepository
from .pg_repositoryCatalog import CatalogRepository

__all__ = [
    "BlobStore",
    "BlobMetadata",
    "BlobReadStream",
    "MinioRepository",
    "LocalDiskRepository",
    "DropRepository",
    "RateLimitRepository",
    "CatalogRepository",
]
