import functools
import logging
from typing import Callable, Dict, Optional

from resumable_upload.core.config import settings
from resumable_upload.services.storage.base import BaseStorage
from resumable_upload.services.storage.internal import InternalStorage
from resumable_upload.services.storage.s3 import S3Storage

logger = logging.getLogger(__name__)

# STORAGE_BACKEND value -> storage implementation
BACKENDS: Dict[str, Callable[[], BaseStorage]] = {
    "local": InternalStorage,
    "s3": S3Storage,
}


def create_storage(backend: Optional[str] = None) -> BaseStorage:
    """Build a fresh storage for ``backend``, or for the configured STORAGE_BACKEND."""
    name = (backend or settings.STORAGE_BACKEND).lower()
    try:
        storage_cls = BACKENDS[name]
    except KeyError:
        raise ValueError(
            f"Unknown storage backend {name!r}, expected one of {', '.join(sorted(BACKENDS))}"
        ) from None
    logger.info(f"Using {storage_cls.__name__} for chunk staging and artifacts")
    return storage_cls()


@functools.lru_cache(maxsize=None)
def get_storage() -> BaseStorage:
    return create_storage()
