import glob
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from enum import Enum
from io import BytesIO
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

from werkzeug.utils import secure_filename

from .names import PhraseGenerator

logger = logging.getLogger("pushbox.storage")

SIDECAR_SUFFIX = ".info.json"
TEMP_SUFFIX = ".tmp"
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
TEXT_URL_PREFIX_LENGTH = 8
DEFAULT_NAME_ATTEMPTS = 32
TEMP_FILE_MAX_AGE_SECONDS = 3600

# Names that would be shadowed by an application route.
RESERVED_NAMES = {
    "login",
    "logout",
    "manage",
    "listing",
    "upload",
    "delete",
    "rename",
}

_FORBIDDEN_NAME_CHARACTERS = (".", "/", "\\")


class ShareError(Exception):
    """Base class for errors surfaced to HTTP clients."""

    status_code = 500

    def to_payload(self) -> dict:
        return {"error": str(self)}


class InvalidNameError(ShareError):
    """A name contains path traversal characters or is otherwise unusable."""

    status_code = 400


class RecordError(ShareError):
    status_code = 404


class RecordNotFoundError(RecordError):
    pass


class RecordUnreadableError(RecordError):
    pass


class RecordMalformedError(RecordError):
    pass


class NameConflictError(ShareError):
    status_code = 409


class BlobExistsError(ShareError):
    status_code = 409


class InvalidKindError(ShareError):
    status_code = 400


class NoFilenameError(ShareError):
    status_code = 400


class InvalidTextError(ShareError):
    status_code = 400


class InvalidTargetError(ShareError):
    """A stored redirect target is not an absolute URL."""

    status_code = 400


class NameExhaustedError(ShareError):
    status_code = 503


class StorageIOError(ShareError):
    status_code = 500


class FileKind(Enum):
    FILE = "file"
    URL = "url"
    TEXT = "text"

    @classmethod
    def parse(cls, value: Optional[str]) -> "FileKind":
        try:
            return cls(value)
        except ValueError:
            raise InvalidKindError(f"Invalid input type {value!r}") from None

    @property
    def has_blob(self) -> bool:
        return self is not FileKind.URL


def _now() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


@dataclass
class Record:
    """Metadata sidecar describing one shared item.

    The public name is not part of the record; it is the sidecar's filename stem.
    """

    date: datetime
    kind: FileKind
    url: Optional[str] = None
    display_name: Optional[str] = None
    blob_name: Optional[str] = None
    # Date text as read from disk, written back verbatim.
    raw_date: Optional[str] = field(default=None, repr=False, compare=False)

    @classmethod
    def for_file(cls, display_name: str, blob_name: str) -> "Record":
        return cls(date=_now(), kind=FileKind.FILE, display_name=display_name, blob_name=blob_name)

    @classmethod
    def for_text(cls, display_name: str, blob_name: str) -> "Record":
        return cls(date=_now(), kind=FileKind.TEXT, display_name=display_name, blob_name=blob_name)

    @classmethod
    def for_url(cls, url: str) -> "Record":
        return cls(date=_now(), kind=FileKind.URL, url=url)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "date": self.raw_date or format_datetime(self.date),
            "type": self.kind.value,
            "url": self.url,
            "filename": self.display_name,
            "actual_filename": self.blob_name,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: object) -> "Record":
        if not isinstance(data, dict):
            raise RecordMalformedError("Record must be a JSON object")

        raw_date = data.get("date")
        if not isinstance(raw_date, str):
            raise RecordMalformedError("Record date is missing")
        try:
            date = parsedate_to_datetime(raw_date)
        except (TypeError, ValueError, IndexError) as error:
            raise RecordMalformedError(f"Record date {raw_date!r} is not RFC 2822") from error
        if date is None:
            raise RecordMalformedError(f"Record date {raw_date!r} is not RFC 2822")

        try:
            kind = FileKind(data.get("type"))
        except ValueError:
            raise RecordMalformedError(f"Unknown record type {data.get('type')!r}") from None

        url = data.get("url")
        display_name = data.get("filename")
        blob_name = data.get("actual_filename")

        if kind is FileKind.URL:
            if not isinstance(url, str):
                raise RecordMalformedError("URL record has no url")
        else:
            if not isinstance(display_name, str) or not isinstance(blob_name, str):
                raise RecordMalformedError(f"{kind.value} record has no filename")

        return cls(
            date=date,
            raw_date=raw_date,
            kind=kind,
            url=url if isinstance(url, str) else None,
            display_name=display_name if isinstance(display_name, str) else None,
            blob_name=blob_name if isinstance(blob_name, str) else None,
        )


@dataclass(frozen=True)
class ServedFile:
    path: Path
    display_name: str


@dataclass(frozen=True)
class RedirectTarget:
    url: str


@dataclass(frozen=True)
class TextView:
    text: str
    record: Record
    url: str


Resolved = Union[ServedFile, RedirectTarget, TextView]


_root_locks: Dict[str, threading.RLock] = {}
_root_locks_guard = threading.Lock()


def root_lock(root: Path) -> threading.RLock:
    """Return the lock serializing writers of *root*."""

    key = str(Path(root).resolve())
    with _root_locks_guard:
        lock = _root_locks.get(key)
        if lock is None:
            lock = _root_locks[key] = threading.RLock()
        return lock


def ensure_storage_root(root: Path) -> None:
    Path(root).mkdir(parents=True, exist_ok=True)


def validate_name(name: Optional[str]) -> str:
    """Reject names that must never be interpolated into a path."""

    if not name:
        raise InvalidNameError("Name is empty")
    if any(character in name for character in _FORBIDDEN_NAME_CHARACTERS):
        raise InvalidNameError(f"Name {name!r} contains bad characters")
    return name


def sidecar_path(root: Path, name: str) -> Path:
    return Path(root) / f"{name}{SIDECAR_SUFFIX}"


def blob_path(root: Path, blob_name: Optional[str]) -> Path:
    """Return the path of *blob_name*, which must live directly inside *root*."""

    if not blob_name or "/" in blob_name or "\\" in blob_name or blob_name.startswith("."):
        raise RecordMalformedError(f"Blob name {blob_name!r} is not usable")
    resolved_root = Path(root).resolve()
    candidate = (resolved_root / blob_name).resolve()
    if candidate.parent != resolved_root:
        logger.error("blob_path_escape blob_name=%s", blob_name)
        raise RecordMalformedError(f"Blob name {blob_name!r} escapes the storage root")
    return candidate


def load(root: Path, name: str) -> Record:
    validate_name(name)
    path = sidecar_path(root, name)
    try:
        raw = path.read_bytes().decode("utf-8")
    except FileNotFoundError:
        raise RecordNotFoundError(f"No record named {name}") from None
    except (OSError, UnicodeDecodeError) as error:
        logger.warning("record_unreadable name=%s error=%s", name, error)
        raise RecordUnreadableError(f"Record {name} is unreadable") from error

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as error:
        logger.warning("record_malformed name=%s error=%s", name, error)
        raise RecordMalformedError(f"Record {name} is not parsable") from error
    return Record.from_dict(data)


def save(root: Path, name: str, record: Record) -> None:
    """Write the sidecar for *name*, replacing any existing one."""

    validate_name(name)
    path = sidecar_path(root, name)
    temp_path = path.with_name(path.name + TEMP_SUFFIX)
    try:
        with temp_path.open("w", encoding="utf-8") as sidecar:
            sidecar.write(record.to_json())
            sidecar.flush()
            os.fsync(sidecar.fileno())
        temp_path.replace(path)
    except OSError as error:
        temp_path.unlink(missing_ok=True)
        logger.error("record_write_failed name=%s error=%s", name, error)
        raise StorageIOError(f"Failed to write metadata for {name}") from error


def remove(root: Path, name: str) -> None:
    validate_name(name)
    try:
        sidecar_path(root, name).unlink()
    except OSError as error:
        logger.error("record_remove_failed name=%s error=%s", name, error)
        raise StorageIOError(f"Failed to remove metadata for {name}") from error


def _date_sort_key(date: datetime) -> datetime:
    if date.tzinfo is None:
        return date.replace(tzinfo=timezone.utc)
    return date


def list_records(root: Path) -> List[Tuple[str, Record]]:
    """All readable records under *root*, newest first."""

    try:
        children = sorted(Path(root).iterdir())
    except FileNotFoundError:
        return []

    found: List[Tuple[str, Record]] = []
    for child in children:
        if not child.name.endswith(SIDECAR_SUFFIX) or not child.is_file():
            continue
        name = child.name[: -len(SIDECAR_SUFFIX)]
        try:
            found.append((name, load(root, name)))
        except (RecordError, InvalidNameError) as error:
            logger.warning("record_listing_skipped file=%s error=%s", child.name, error)

    found.sort(key=lambda entry: _date_sort_key(entry[1].date), reverse=True)
    return found


def name_taken(root: Path, name: str) -> bool:
    """True when *name* already owns a sidecar or any blob."""

    root = Path(root)
    if sidecar_path(root, name).exists() or (root / name).exists():
        return True
    return any(root.glob(glob.escape(name) + ".*"))


def allocate_name(root: Path, generator: PhraseGenerator, attempts: int = DEFAULT_NAME_ATTEMPTS) -> str:
    for attempt in range(1, max(1, attempts) + 1):
        candidate = generator.generate()
        if not name_taken(root, candidate):
            return candidate
        logger.info("name_collision candidate=%s attempt=%d", candidate, attempt)
    logger.error("name_exhausted attempts=%d", attempts)
    raise NameExhaustedError(f"Unable to find a free name after {attempts} attempts")


def display_name_from(supplied_name: Optional[str]) -> str:
    """Strip any client-side directory components from an uploaded filename."""

    if not supplied_name:
        return ""
    return supplied_name.replace("\\", "/").rsplit("/", 1)[-1].strip()


def split_extension(display_name: str) -> Optional[str]:
    _, separator, extension = display_name.rpartition(".")
    if not separator:
        return None
    extension = secure_filename(extension)
    return extension or None


def blob_name_for(name: str, display_name: str) -> str:
    extension = split_extension(display_name)
    return f"{name}.{extension}" if extension else name


def looks_like_url(payload: bytes) -> bool:
    """Heuristic used to turn pasted links into redirects, applied to the raw bytes."""

    if len(payload) < TEXT_URL_PREFIX_LENGTH:
        return False
    return b"://" in payload[:TEXT_URL_PREFIX_LENGTH]


def _write_blob(root: Path, blob_name: str, stream: BinaryIO) -> Path:
    path = blob_path(root, blob_name)
    try:
        destination = path.open("xb")
    except FileExistsError:
        raise BlobExistsError(f"Target file {blob_name} already exists") from None
    except OSError as error:
        raise StorageIOError(f"Failed to create {blob_name}") from error

    try:
        with destination:
            while True:
                chunk = stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                destination.write(chunk)
    except OSError as error:
        path.unlink(missing_ok=True)
        logger.error("blob_write_failed blob_name=%s error=%s", blob_name, error)
        raise StorageIOError(f"Failed to write {blob_name}") from error
    return path


def upload(
    root: Path,
    kind_hint: Optional[str],
    supplied_name: Optional[str],
    stream: BinaryIO,
    *,
    generator: PhraseGenerator,
    external_base: str,
    attempts: int = DEFAULT_NAME_ATTEMPTS,
) -> str:
    """Store an uploaded item and return its public URL."""

    kind = FileKind.parse(kind_hint)
    if kind is FileKind.URL:
        raise InvalidKindError("URL uploading type not supported")

    display_name = display_name_from(supplied_name)
    if not display_name:
        raise NoFilenameError("No multipart filename specified")

    root = Path(root)
    with root_lock(root):
        name = allocate_name(root, generator, attempts)
        blob_name = blob_name_for(name, display_name)
        written: Optional[Path] = None

        if kind is FileKind.FILE:
            written = _write_blob(root, blob_name, stream)
            record = Record.for_file(display_name, blob_name)
        else:
            payload = stream.read()
            try:
                text = payload.decode("utf-8")
            except UnicodeDecodeError:
                raise InvalidTextError("Uploaded text is not valid UTF-8") from None
            if looks_like_url(payload):
                record = Record.for_url(text)
            else:
                written = _write_blob(root, blob_name, BytesIO(payload))
                record = Record.for_text(display_name, blob_name)

        try:
            save(root, name, record)
        except StorageIOError:
            if written is not None:
                written.unlink(missing_ok=True)
            raise

    logger.info(
        "item_uploaded name=%s kind=%s blob_name=%s",
        name,
        record.kind.value,
        record.blob_name or "-",
    )
    return external_base + name


def validate_redirect(url: Optional[str]) -> str:
    candidate = (url or "").strip()
    parsed = urlparse(candidate)
    if not parsed.scheme or not parsed.netloc or any(ch.isspace() for ch in candidate):
        raise InvalidTargetError("Unable to build target URL")
    return candidate


def resolve(root: Path, name: str, external_base: str) -> Resolved:
    validate_name(name)
    try:
        record = load(root, name)
        if record.kind is FileKind.URL:
            return RedirectTarget(validate_redirect(record.url))

        path = blob_path(root, record.blob_name)
        if record.kind is FileKind.FILE:
            if not path.is_file():
                logger.warning("blob_missing name=%s blob_name=%s", name, record.blob_name)
                raise RecordNotFoundError(f"Blob for {name} is missing")
            return ServedFile(path=path, display_name=record.display_name or record.blob_name)

        try:
            text = path.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            logger.warning("text_blob_unreadable name=%s error=%s", name, error)
            raise RecordNotFoundError(f"Text for {name} is unreadable") from error
        return TextView(text=text, record=record, url=external_base + name)
    except RecordError as error:
        if isinstance(error, RecordNotFoundError):
            raise
        raise RecordNotFoundError(str(error)) from error


def delete_item(root: Path, name: str) -> None:
    validate_name(name)
    root = Path(root)
    with root_lock(root):
        record = load(root, name)
        if record.kind.has_blob:
            try:
                blob_path(root, record.blob_name).unlink()
            except FileNotFoundError:
                logger.warning("blob_missing_on_delete name=%s blob_name=%s", name, record.blob_name)
            except RecordMalformedError as error:
                logger.warning("blob_unusable_on_delete name=%s error=%s", name, error)
            except OSError as error:
                logger.error("blob_delete_failed name=%s error=%s", name, error)
                raise StorageIOError(f"Failed to delete blob of {name}") from error
        remove(root, name)

    logger.info("item_deleted name=%s kind=%s", name, record.kind.value)


def rename_item(root: Path, source: str, target: str) -> None:
    validate_name(source)
    validate_name(target)
    if target in RESERVED_NAMES:
        raise InvalidNameError(f"Name {target!r} is reserved")

    root = Path(root)
    with root_lock(root):
        record = load(root, source)
        if source == target or sidecar_path(root, target).exists():
            raise NameConflictError(f"Name {target} is already in use")

        moved: Optional[Tuple[Path, Path]] = None
        if record.kind.has_blob:
            _, separator, extension = record.blob_name.partition(".")
            new_blob_name = target + separator + extension
            old_path = blob_path(root, record.blob_name)
            new_path = blob_path(root, new_blob_name)
            if new_path.exists():
                raise NameConflictError(f"File {new_blob_name} is already in use")
            try:
                old_path.rename(new_path)
            except FileNotFoundError:
                logger.warning("blob_missing_on_rename name=%s blob_name=%s", source, record.blob_name)
                raise RecordNotFoundError(f"Blob for {source} is missing") from None
            except OSError as error:
                logger.error("blob_rename_failed name=%s error=%s", source, error)
                raise StorageIOError(f"Failed to rename blob of {source}") from error
            moved = (old_path, new_path)
            record = replace(record, blob_name=new_blob_name)

        try:
            save(root, target, record)
        except StorageIOError:
            if moved is not None:
                try:
                    moved[1].rename(moved[0])
                except OSError as error:
                    logger.error("blob_rename_rollback_failed name=%s error=%s", source, error)
            raise
        remove(root, source)

    logger.info("item_renamed source=%s target=%s", source, target)


def cleanup_temp_files(root: Path, max_age_seconds: float = TEMP_FILE_MAX_AGE_SECONDS) -> int:
    """Remove temporary sidecar files left behind by interrupted writes."""

    removed = 0
    cutoff = time.time() - max_age_seconds
    try:
        candidates = list(Path(root).glob(f"*{TEMP_SUFFIX}"))
    except OSError as error:
        logger.warning("temp_cleanup_failed root=%s error=%s", root, error)
        return 0

    for candidate in candidates:
        try:
            if candidate.is_file() and candidate.stat().st_mtime < cutoff:
                candidate.unlink()
                removed += 1
        except OSError as error:
            logger.warning("temp_cleanup_failed path=%s error=%s", candidate, error)
    if removed:
        logger.info("temp_cleanup_completed removed=%d", removed)
    return removed
