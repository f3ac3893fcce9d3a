from .clone import deep_clone, json_clone
from .hashutils import (
    DIGEST_PATTERN,
    fnv32a,
    hash_bytes,
    is_sha256_digest,
    sha256_hex,
)
from .ids import IDAllocator, id_sequence
from .strings import (
    dedupe_preserve_order,
    normalize,
    normalize_priority,
    normalize_string_list,
)
from .timeutils import Clock, format_rfc3339_nano, parse_rfc3339, utc_now

__all__ = [
    "Clock",
    "DIGEST_PATTERN",
    "IDAllocator",
    "dedupe_preserve_order",
    "deep_clone",
    "fnv32a",
    "format_rfc3339_nano",
    "hash_bytes",
    "id_sequence",
    "is_sha256_digest",
    "json_clone",
    "normalize",
    "normalize_priority",
    "normalize_string_list",
    "parse_rfc3339",
    "sha256_hex",
    "utc_now",
]
