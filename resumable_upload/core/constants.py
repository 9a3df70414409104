# 1.5MB, kept below the 2MB request ceiling of the upstream proxy
CHUNK_SIZE = 1536 * 1024
MAX_CHUNK_SIZE = 2 * 1024 * 1024
MAX_FILE_SIZE = 500 * 1024 * 1024

SUPPORTED_EXTENSIONS = (
    "zip", "rar", "7z", "tar", "gz", "pdf", "epub", "mobi", "cbz", "cbr", "cb7", "cbt",
)
