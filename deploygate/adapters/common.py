"""
Helpers shared by every adapter: pagination, label selectors, package ID
derivation, name/path validation and extension-map access.
"""

import hashlib
import re
from typing import Any, Optional, Sequence, TypeVar

from ..errors import InvalidNameError, InvalidPathError, ValidationError

T = TypeVar("T")

NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
MAX_NAME_LENGTH = 63

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_MAX_SLUG_LENGTH = 48


def validate_name(name: str) -> None:
    """Reject names outside the DNS-1123 label grammar."""
    if not name:
        raise InvalidNameError("name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise InvalidNameError(
            f"invalid name {name!r}: must be at most {MAX_NAME_LENGTH} characters"
        )
    if not NAME_PATTERN.match(name):
        raise InvalidNameError(
            f"invalid name {name!r}: must consist of lowercase alphanumeric characters "
            "or '-', and must start and end with an alphanumeric character"
        )


def validate_path(path: str) -> None:
    """Reject absolute paths and parent-directory traversal. Empty is allowed."""
    if not path:
        return
    if path.startswith(("/", "\\")) or re.match(r"^[A-Za-z]:[\\/]", path):
        raise InvalidPathError(f"invalid path {path!r}: must be relative")
    if ".." in re.split(r"[\\/]", path):
        raise InvalidPathError(f"invalid path {path!r}: must not contain '..'")


def paginate(items: Sequence[T], limit: int = 0, offset: int = 0) -> list[T]:
    """Return ``items[offset:offset+limit]``. A limit of 0 means no limit."""
    if offset < 0 or limit < 0:
        raise ValidationError("limit and offset must be non-negative")
    if offset >= len(items):
        return []
    if limit == 0:
        return list(items[offset:])
    return list(items[offset:offset + limit])


def build_label_selector(labels: Optional[dict[str, str]]) -> str:
    """Translate a label-equality map into selector syntax (``k=v,k2=v2``)."""
    if not labels:
        return ""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def matches_labels(actual: Optional[dict[str, str]], wanted: Optional[dict[str, str]]) -> bool:
    """Client-side equivalent of ``build_label_selector``."""
    if not wanted:
        return True
    actual = actual or {}
    return all(actual.get(key) == value for key, value in wanted.items())


def derive_package_id(package_type: str, url: str, path: str = "") -> str:
    """Deterministic package ID for a (type, URL, path) triple.

    The readable slug can collide for inputs that differ only in
    punctuation, so a digest of the exact triple is appended.
    """
    slug = _SLUG_PATTERN.sub("-", f"{url}/{path}".lower()).strip("-")[:_MAX_SLUG_LENGTH].rstrip("-")
    digest = hashlib.sha256("\x00".join((package_type, url, path)).encode()).hexdigest()[:12]
    prefix = _SLUG_PATTERN.sub("-", package_type.lower()).strip("-")
    return "-".join(part for part in (prefix, slug, digest) if part)


def ext_str(extensions: Optional[dict[str, Any]], key: str, default: str = "") -> str:
    """Return a string extension, or ``default`` if absent, empty or not a string."""
    value = (extensions or {}).get(key)
    return value if isinstance(value, str) and value else default


def ext_bool(extensions: Optional[dict[str, Any]], key: str, default: bool = False) -> bool:
    value = (extensions or {}).get(key)
    return value if isinstance(value, bool) else default


def require_ext(extensions: Optional[dict[str, Any]], key: str) -> str:
    """Return a required string extension or raise ValidationError."""
    value = ext_str(extensions, key)
    if not value:
        raise ValidationError(f"{key} extension is required")
    return value


def require_non_negative(field: str, value: int) -> None:
    if value < 0:
        raise ValidationError(f"{field} must be non-negative, got {value}")


DESCRIPTION_ANNOTATION = "deploygate.io/description"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "deploygate"
