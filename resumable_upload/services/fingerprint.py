import hashlib
import logging
import re
import time
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

HASH_ALGORITHM = "sha1"
READ_BLOCK_SIZE = 64 * 1024

_SHA1_HEX = re.compile(r"^[0-9a-f]{40}$")


def new_digest():
    return hashlib.new(HASH_ALGORITHM)


def fingerprint_bytes(data: bytes) -> str:
    return hashlib.new(HASH_ALGORITHM, data).hexdigest()


def fingerprint_file(path: Union[str, Path]) -> str:
    """Stream the whole file once and return its hex digest."""
    digest = new_digest()
    with open(path, "rb") as f:
        while True:
            block = f.read(READ_BLOCK_SIZE)
            if not block:
                break
            digest.update(block)
    return digest.hexdigest()


def fallback_key(file_name: str, now: Optional[float] = None) -> str:
    """Non-cryptographic but unique key: name plus submission time in ms."""
    if now is None:
        now = time.time()
    return f"{file_name}_{int(now * 1000)}"


def is_digest(value: str) -> bool:
    """True when value looks like a digest this module produced."""
    return bool(_SHA1_HEX.match(value.lower()))


def fingerprint_or_fallback(path: Union[str, Path]) -> str:
    try:
        return fingerprint_file(path)
    except OSError as e:
        key = fallback_key(Path(path).name)
        logger.warning(f"Failed to calculate file hash for {path}: {e}. Using fallback key {key}")
        return key
