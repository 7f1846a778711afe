"""
PDF Chunk Merger Engine - Core planning and merging logic
Orders PDF files naturally, packs them into size-bounded chunks, merges each
chunk page-by-page into one PDF and bundles the results into a ZIP archive
"""

import io
import os
import json
import posixpath
import re
import tempfile
import threading
import traceback
import unicodedata
import uuid
import zipfile
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pypdf import PdfReader, PdfWriter

MB = 1024 * 1024
DEFAULT_LIMIT_MB = 20
DEFAULT_HEADROOM = 0.9
DEFAULT_OUTPUT_PREFIX = "merged_pdf_part"
DEFAULT_ARCHIVE_NAME = "merged_pdf_files.zip"
FAILURE_POLICIES = ("abort", "isolate")


class MergeError(RuntimeError):
    """Base class for every error raised by the merge pipeline."""


class CollectionError(MergeError):
    """An input file, folder or archive could not be enumerated or read."""


class ParseError(MergeError):
    """A chunk member could not be opened as a PDF document."""

    def __init__(self, file: str, chunk_number: Optional[int], error: Any):
        self.file = file
        self.chunk_number = chunk_number
        self.error = error
        where = f" in chunk {chunk_number}" if chunk_number is not None else ""
        super().__init__(f"Could not read PDF '{file}'{where}: {error}")


class SerializationError(MergeError):
    """A merged PDF or the output archive could not be serialized."""


class RunCancelled(MergeError):
    """The run was stopped through its cancel event."""


def _record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def _safe_progress(callback, *args) -> None:
    """Call a progress callback, swallowing exceptions to avoid crashing the merge."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        pass


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelled("Merge cancelled by user")


def _new_run_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]


class RunLogger:
    """Persist run events to text and JSONL logs."""

    def __init__(
        self,
        logs_dir: Optional[str],
        run_id: str,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.enabled = enabled and bool(logs_dir)
        self.privacy_mode = privacy_mode
        self.run_id = run_id
        self.logs_dir = logs_dir
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log") if logs_dir else None
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl") if logs_dir else None
        self._text_handle = None
        self._jsonl_handle = None

        if self.enabled:
            os.makedirs(self.logs_dir, exist_ok=True)
            self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
            self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")

    def close(self) -> None:
        for handle in (self._text_handle, self._jsonl_handle):
            if handle is not None:
                handle.close()
        self._text_handle = None
        self._jsonl_handle = None

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if isinstance(value, str) and key.lower() in {"file", "source", "archive", "entry", "path"}:
            return os.path.basename(value)
        return value

    def _sanitize_context(self, context: Dict) -> Dict:
        sanitized = {}
        for key, value in context.items():
            sanitized[key] = self._redact_value(key, value)
        return sanitized

    def log(self, level: str, event: str, message: str, **context) -> None:
        timestamp = datetime.now().isoformat()
        safe_context = self._sanitize_context(context)
        payload = {
            "ts": timestamp,
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": safe_context,
        }
        if self._jsonl_handle is not None:
            self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._jsonl_handle.flush()

            text_context = ""
            if safe_context:
                context_parts = [f"{key}={value}" for key, value in sorted(safe_context.items())]
                text_context = " | " + ", ".join(context_parts)
            self._text_handle.write(f"[{timestamp}] {level.upper()} {event}: {message}{text_context}\n")
            self._text_handle.flush()
        _safe_progress(self.event_callback, payload)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FileDescriptor:
    """One input document: its name, declared size and a lazy byte source."""

    name: str
    size_bytes: int
    content_source: Callable[[], bytes] = field(repr=False, compare=False)
    source: str = ""

    def __post_init__(self):
        if self.size_bytes < 0:
            raise ValueError(f"size_bytes must be >= 0 for {self.name!r}")

    def read_bytes(self) -> bytes:
        return self.content_source()

    @classmethod
    def from_bytes(cls, name: str, data: bytes, source: str = "") -> "FileDescriptor":
        return cls(name=name, size_bytes=len(data), content_source=lambda: data, source=source or name)


@dataclass
class Chunk:
    """A contiguous group of files planned to become one merged PDF."""

    number: int
    members: List[FileDescriptor] = field(default_factory=list)
    cumulative_size_bytes: int = 0

    def add(self, descriptor: FileDescriptor) -> None:
        self.members.append(descriptor)
        self.cumulative_size_bytes += descriptor.size_bytes

    @property
    def names(self) -> List[str]:
        return [member.name for member in self.members]


@dataclass(frozen=True)
class MergedOutput:
    chunk_number: int
    name: str
    data: bytes = field(repr=False)
    page_count: int = 0
    sources: Tuple[str, ...] = ()

    @property
    def byte_length(self) -> int:
        return len(self.data)


class RunPhase(Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    SEQUENCING = "sequencing"
    PLANNING = "planning"
    MERGING = "merging"
    ARCHIVING = "archiving"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self not in (RunPhase.IDLE, RunPhase.DONE, RunPhase.FAILED)


_ALLOWED_TRANSITIONS = {
    RunPhase.IDLE: {RunPhase.COLLECTING, RunPhase.SEQUENCING, RunPhase.FAILED},
    RunPhase.COLLECTING: {RunPhase.SEQUENCING, RunPhase.FAILED},
    RunPhase.SEQUENCING: {RunPhase.PLANNING, RunPhase.FAILED},
    RunPhase.PLANNING: {RunPhase.MERGING, RunPhase.FAILED},
    RunPhase.MERGING: {RunPhase.ARCHIVING, RunPhase.FAILED},
    RunPhase.ARCHIVING: {RunPhase.DONE, RunPhase.FAILED},
    RunPhase.DONE: set(),
    RunPhase.FAILED: set(),
}


@dataclass
class RunState:
    """Observable state of a single merge run."""

    phase: RunPhase = RunPhase.IDLE
    message: str = ""
    current: int = 0
    total: int = 0
    percent: float = 0.0
    outputs: List[MergedOutput] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    archive_bytes: Optional[bytes] = field(default=None, repr=False)
    error: Optional[BaseException] = None

    @property
    def total_bytes(self) -> int:
        return sum(output.byte_length for output in self.outputs)

    def summary(self) -> Tuple[List[Tuple[str, int]], int]:
        """Return the (name, byte_length) pairs of the produced outputs and their sum."""
        return [(output.name, output.byte_length) for output in self.outputs], self.total_bytes

    def snapshot(self) -> "RunState":
        return replace(
            self,
            outputs=list(self.outputs),
            failures=[dict(failure) for failure in self.failures],
        )


# ---------------------------------------------------------------------------
# Sequencer
# ---------------------------------------------------------------------------

_NAME_TOKEN = re.compile(r"(\d+)|(\D)")

# Collation order of common ASCII punctuation in the Unicode root locale.
# Characters not listed follow these, ordered by code point.
_PUNCTUATION_ORDER = {char: index for index, char in enumerate(" _-,;:!?.'\"()[]{}@*/\\&#%`^+<=>|~$")}


def _fold_case_and_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


def natural_sort_key(name: str) -> Tuple:
    """
    Build a sort key that compares digit runs as numbers.

    Every token becomes a (rank, number, text) triple so keys of any two
    names compare without mixing types. Punctuation ranks before digit runs
    and digit runs before letters, so "file.pdf" < "file1.pdf" < "filea.pdf".
    Punctuation follows locale collation order, so "a_b" < "a-b" < "a.b".
    """
    key = []
    for match in _NAME_TOKEN.finditer(_fold_case_and_accents(name)):
        digits, char = match.groups()
        if digits is not None:
            key.append((1, int(digits), ""))
        elif char.isalpha():
            key.append((2, 0, char))
        else:
            key.append((0, _PUNCTUATION_ORDER.get(char, len(_PUNCTUATION_ORDER)), char))
    return tuple(key)


def sequence_files(descriptors: Iterable[FileDescriptor]) -> List[FileDescriptor]:
    """Order descriptors by natural name order; ties fall back to the raw name and source."""
    return sorted(descriptors, key=lambda d: (natural_sort_key(d.name), d.name, d.source))


# ---------------------------------------------------------------------------
# Chunk planning
# ---------------------------------------------------------------------------

class PackingStrategy(Enum):
    BOUNDED = "under"
    OVERFLOW = "over"

    @classmethod
    def parse(cls, value) -> "PackingStrategy":
        if isinstance(value, cls):
            return value
        aliases = {
            "under": cls.BOUNDED,
            "bounded": cls.BOUNDED,
            "over": cls.OVERFLOW,
            "overflow": cls.OVERFLOW,
        }
        try:
            return aliases[str(value).strip().lower()]
        except KeyError:
            raise ValueError(f"Unknown packing strategy: {value!r}") from None


class ChunkPlanner:
    """Packs an ordered file list into size-bounded chunks in one greedy pass"""

    def __init__(
        self,
        limit_bytes: int,
        strategy: PackingStrategy = PackingStrategy.BOUNDED,
        headroom: float = DEFAULT_HEADROOM,
    ):
        if limit_bytes <= 0:
            raise ValueError("limit_bytes must be a positive integer")
        if not 0 < headroom <= 1:
            raise ValueError("headroom must be in the range (0, 1]")
        self.limit_bytes = int(limit_bytes)
        self.strategy = PackingStrategy.parse(strategy)
        self.headroom = headroom

    @property
    def threshold(self) -> float:
        """Size a Bounded chunk may reach; merged PDFs carry structural overhead beyond the raw sum."""
        if self.strategy is PackingStrategy.BOUNDED:
            return self.limit_bytes * self.headroom
        return self.limit_bytes

    def plan(self, files: Iterable[FileDescriptor]) -> List[Chunk]:
        """
        Partition files into chunks without reordering or splitting them.

        Bounded closes the current chunk before a file that would push it past
        the threshold. Overflow adds the file first and closes the chunk once
        it has reached the limit. A file larger than the limit always ends up
        alone in its chunk.
        """
        chunks: List[Chunk] = []
        current = Chunk(number=1)

        for descriptor in files:
            if self.strategy is PackingStrategy.BOUNDED:
                if current.members and current.cumulative_size_bytes + descriptor.size_bytes > self.threshold:
                    chunks.append(current)
                    current = Chunk(number=len(chunks) + 1)
                current.add(descriptor)
            else:
                current.add(descriptor)
                if current.cumulative_size_bytes >= self.limit_bytes:
                    chunks.append(current)
                    current = Chunk(number=len(chunks) + 1)

        if current.members:
            chunks.append(current)
        return chunks


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------

class PDFChunkMerger:
    """Merges the members of one chunk into a single PDF, page by page"""

    def __init__(self, add_bookmarks: bool = False):
        self.add_bookmarks = add_bookmarks

    def merge_chunk(
        self,
        chunk: Chunk,
        name: str,
        cancel_event: Optional[threading.Event] = None,
        warnings: Optional[List[Dict]] = None,
    ) -> MergedOutput:
        """
        Merge every page of every member, in order, into one PDF

        Args:
            chunk: Planned chunk whose members are merged in order
            name: File name of the merged output
            cancel_event: Optional threading.Event checked before each member
            warnings: Optional list collecting non-fatal warnings

        Returns:
            MergedOutput holding the serialized PDF

        Raises:
            CollectionError, ParseError, SerializationError, RunCancelled.
            Nothing is returned for a chunk whose merge failed.
        """
        writer = PdfWriter()
        total_pages_added = 0

        for descriptor in chunk.members:
            _check_cancel(cancel_event)
            try:
                data = descriptor.read_bytes()
            except Exception as exc:
                raise CollectionError(
                    f"Could not read '{descriptor.name}' in chunk {chunk.number}: {exc}"
                ) from exc

            page_start = total_pages_added
            try:
                reader = self._open_reader(descriptor, data, chunk.number, warnings)
                for page in reader.pages:
                    writer.add_page(page)
                    total_pages_added += 1
            except ParseError:
                raise
            except Exception as exc:
                raise ParseError(descriptor.name, chunk.number, exc) from exc

            if total_pages_added == page_start:
                _record_warning(
                    warnings,
                    'pdf_no_pages',
                    'PDF contained zero pages',
                    file=descriptor.source or descriptor.name,
                    chunk=chunk.number,
                )
            elif self.add_bookmarks:
                writer.add_outline_item(os.path.splitext(descriptor.name)[0], page_start)

        buffer = io.BytesIO()
        try:
            writer.write(buffer)
        except Exception as exc:
            raise SerializationError(
                f"Could not write merged PDF '{name}' for chunk {chunk.number}: {exc}"
            ) from exc

        print(f"    Created: {name} ({len(chunk.members)} PDFs, {total_pages_added} pages)")
        return MergedOutput(
            chunk_number=chunk.number,
            name=name,
            data=buffer.getvalue(),
            page_count=total_pages_added,
            sources=tuple(chunk.names),
        )

    @staticmethod
    def _open_reader(
        descriptor: FileDescriptor,
        data: bytes,
        chunk_number: int,
        warnings: Optional[List[Dict]],
    ) -> PdfReader:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            # View-only PDFs open with an empty user password.
            if not reader.decrypt(""):
                raise ParseError(descriptor.name, chunk_number, "PDF is password-protected")
            _record_warning(
                warnings,
                'pdf_decrypted_empty_password',
                'Encrypted PDF opened with an empty password',
                file=descriptor.source or descriptor.name,
                chunk=chunk_number,
            )
        return reader


# ---------------------------------------------------------------------------
# Archive assembly
# ---------------------------------------------------------------------------

class ArchiveAssembler:
    """Collects merged outputs into one in-memory ZIP archive"""

    def __init__(self, name_prefix: str = DEFAULT_OUTPUT_PREFIX, compression: int = zipfile.ZIP_DEFLATED):
        self.name_prefix = name_prefix
        self._buffer = io.BytesIO()
        self._archive: Optional[zipfile.ZipFile] = zipfile.ZipFile(self._buffer, "w", compression=compression)
        self._entries: List[Tuple[str, int]] = []
        self._last_chunk_number = 0
        self._data: Optional[bytes] = None

    def output_name(self, number: int, total: int) -> str:
        """Zero-padded so an alphabetical listing matches chunk order."""
        width = max(2, len(str(total)))
        return f"{self.name_prefix}_{number:0{width}d}.pdf"

    @property
    def entries(self) -> List[Tuple[str, int]]:
        return list(self._entries)

    def add(self, output: MergedOutput) -> None:
        if self._archive is None:
            raise SerializationError("Archive has already been built")
        if output.chunk_number <= self._last_chunk_number:
            raise ValueError(
                f"Outputs must be added in chunk order: got chunk {output.chunk_number} "
                f"after chunk {self._last_chunk_number}"
            )
        try:
            self._archive.writestr(output.name, output.data)
        except Exception as exc:
            raise SerializationError(f"Could not add '{output.name}' to the archive: {exc}") from exc
        self._entries.append((output.name, output.byte_length))
        self._last_chunk_number = output.chunk_number

    def build(self) -> bytes:
        if self._data is not None:
            return self._data
        try:
            self._archive.close()
        except Exception as exc:
            raise SerializationError(f"Could not finalize the archive: {exc}") from exc
        self._archive = None
        self._data = self._buffer.getvalue()
        return self._data

    def save(self, path: str) -> str:
        """Write the archive next to path first and move it into place, so path is never left truncated."""
        data = self.build()
        tmp_path = None
        try:
            tmp_fd, tmp_path = tempfile.mkstemp(
                suffix='.part', prefix=os.path.basename(path) + '.', dir=os.path.dirname(path) or None
            )
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as exc:
            raise SerializationError(f"Could not write archive to {path}: {exc}") from exc
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
        return path


# ---------------------------------------------------------------------------
# Progress tracking
# ---------------------------------------------------------------------------

class ProgressTracker:
    """Owns the RunState of a run and publishes a snapshot on every change"""

    def __init__(self, listener: Optional[Callable[[RunState], None]] = None):
        self.listener = listener
        self._state = RunState()
        self._lock = threading.Lock()

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state.snapshot()

    def _publish(self) -> None:
        _safe_progress(self.listener, self.state)

    def transition(self, phase: RunPhase, message: str = "", total: Optional[int] = None) -> None:
        with self._lock:
            if phase not in _ALLOWED_TRANSITIONS[self._state.phase]:
                raise RuntimeError(
                    f"Illegal run state transition: {self._state.phase.value} -> {phase.value}"
                )
            self._state.phase = phase
            self._state.message = message
            if total is not None:
                self._state.total = total
                self._state.current = 0
                self._state.percent = 0.0
        self._publish()

    def chunk_completed(
        self,
        number: int,
        total: int,
        output: Optional[MergedOutput] = None,
        failure: Optional[Dict[str, Any]] = None,
        message: str = "",
    ) -> None:
        with self._lock:
            if self._state.phase is not RunPhase.MERGING:
                raise RuntimeError("Chunks can only complete while merging")
            self._state.current = number
            self._state.total = total
            self._state.percent = number / total * 100
            self._state.message = message
            if output is not None:
                self._state.outputs.append(output)
            if failure is not None:
                self._state.failures.append(failure)
        self._publish()

    def complete(self, archive_bytes: bytes, message: str = "Done!") -> None:
        with self._lock:
            self._state.archive_bytes = archive_bytes
            self._state.percent = 100.0
        self.transition(RunPhase.DONE, message)

    def fail(self, error: BaseException) -> None:
        with self._lock:
            self._state.error = error
            self._state.archive_bytes = None
        self.transition(RunPhase.FAILED, str(error))

    def reset(self) -> None:
        with self._lock:
            self._state = RunState()
        self._publish()


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------

def _read_file(path: str) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()


def _read_zip_member(zip_path: str, member: zipfile.ZipInfo) -> bytes:
    # Reading by ZipInfo uses the entry's header offset; duplicate names stay distinct.
    with zipfile.ZipFile(zip_path) as archive:
        return archive.read(member)


def _safe_member_path(member_name: str) -> Optional[str]:
    if not member_name:
        return None

    normalized = member_name.replace("\\", "/")
    if normalized.startswith("/"):
        return None
    if re.match(r"^[A-Za-z]:", normalized):
        return None

    parts = []
    for part in normalized.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            return None
        parts.append(part)

    if not parts:
        return None
    return "/".join(parts)


class FileCollector:
    """Turns input paths (files, folders, ZIP archives) into file descriptors"""

    def __init__(self, extensions: Iterable[str] = (".pdf",), expand_archives: bool = True):
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.expand_archives = expand_archives

    def is_supported(self, name: str) -> bool:
        return name.lower().endswith(self.extensions)

    @staticmethod
    def _is_archive(name: str) -> bool:
        return name.lower().endswith('.zip')

    def collect(
        self,
        paths: Iterable[str],
        warnings: Optional[List[Dict]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[FileDescriptor]:
        """
        Enumerate every supported document under the given paths

        Args:
            paths: Files, folders or .zip archives
            warnings: Optional list collecting skipped archive entries
            cancel_event: Optional threading.Event checked between folders

        Returns:
            Unordered list of FileDescriptor
        """
        descriptors: List[FileDescriptor] = []
        for path in paths:
            _check_cancel(cancel_event)
            path = os.fspath(path)
            if os.path.isdir(path):
                descriptors.extend(self.walk_directory(path, warnings=warnings, cancel_event=cancel_event))
            elif os.path.isfile(path):
                if self.expand_archives and self._is_archive(path):
                    descriptors.extend(self.read_archive(path, warnings=warnings))
                elif self.is_supported(path):
                    descriptors.append(self.descriptor_from_path(path))
            else:
                raise CollectionError(f"Input path must exist and be accessible: {path}")
        return descriptors

    @staticmethod
    def descriptor_from_path(path: str) -> FileDescriptor:
        try:
            size = os.path.getsize(path)
        except OSError as exc:
            raise CollectionError(f"Could not determine size of {path}: {exc}") from exc
        return FileDescriptor(
            name=os.path.basename(path),
            size_bytes=size,
            content_source=partial(_read_file, path),
            source=path,
        )

    def walk_directory(
        self,
        root: str,
        warnings: Optional[List[Dict]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[FileDescriptor]:
        """Walk a folder tree with an explicit stack; symlinked folders are not followed."""
        found: List[FileDescriptor] = []
        pending = [root]

        while pending:
            _check_cancel(cancel_event)
            current = pending.pop()
            try:
                with os.scandir(current) as iterator:
                    entries = list(iterator)
            except OSError as exc:
                raise CollectionError(f"Could not list folder {current}: {exc}") from exc

            for entry in entries:
                try:
                    is_dir = entry.is_dir(follow_symlinks=False)
                    is_file = not is_dir and entry.is_file()
                except OSError as exc:
                    raise CollectionError(f"Could not inspect {entry.path}: {exc}") from exc

                if is_dir:
                    pending.append(entry.path)
                elif not is_file:
                    continue
                elif self.expand_archives and self._is_archive(entry.name):
                    found.extend(self.read_archive(entry.path, warnings=warnings))
                elif self.is_supported(entry.name):
                    found.append(self.descriptor_from_path(entry.path))
        return found

    def read_archive(self, zip_path: str, warnings: Optional[List[Dict]] = None) -> List[FileDescriptor]:
        """List supported members of a ZIP archive; their bytes are read on demand."""
        try:
            with zipfile.ZipFile(zip_path) as archive:
                members = archive.infolist()
        except (OSError, zipfile.BadZipFile) as exc:
            raise CollectionError(f"Could not open ZIP archive {zip_path}: {exc}") from exc

        descriptors: List[FileDescriptor] = []
        for info in members:
            if info.is_dir():
                continue
            safe_name = _safe_member_path(info.filename)
            if safe_name is None:
                _record_warning(
                    warnings,
                    'zip_entry_skipped_unsafe_path',
                    'Skipped ZIP entry with an unsafe path',
                    archive=zip_path,
                    entry=info.filename,
                )
                continue
            if not self.is_supported(safe_name):
                continue
            descriptors.append(
                FileDescriptor(
                    name=posixpath.basename(safe_name),
                    size_bytes=info.file_size,
                    content_source=partial(_read_zip_member, zip_path, info),
                    source=f"{zip_path}!{safe_name}",
                )
            )
        return descriptors


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class MergeOrchestrator:
    """Coordinates the entire merging process"""

    def __init__(
        self,
        limit_mb=DEFAULT_LIMIT_MB,
        strategy="under",
        headroom=DEFAULT_HEADROOM,
        limit_bytes=None,
        failure_policy="abort",
        add_bookmarks=False,
        max_output_files=None,
        output_name_prefix=DEFAULT_OUTPUT_PREFIX,
        archive_name=DEFAULT_ARCHIVE_NAME,
        extensions=(".pdf",),
        expand_archives=True,
        logs_subdir="logs",
        enable_detailed_logging=True,
        log_privacy_mode="redacted",
    ):
        if limit_bytes is None:
            limit_bytes = int(limit_mb * MB)
        if failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"failure_policy must be one of {FAILURE_POLICIES}, got {failure_policy!r}")
        self.planner = ChunkPlanner(limit_bytes, PackingStrategy.parse(strategy), headroom)
        self.merger = PDFChunkMerger(add_bookmarks=add_bookmarks)
        self.collector = FileCollector(extensions, expand_archives=expand_archives)
        self.tracker = ProgressTracker()
        self.failure_policy = failure_policy
        self.max_output_files = max_output_files
        self.output_name_prefix = output_name_prefix
        self.archive_name = archive_name
        self.logs_subdir = logs_subdir
        self.enable_detailed_logging = enable_detailed_logging
        self.log_privacy_mode = log_privacy_mode
        self.last_manifest: Optional[Dict] = None

    @property
    def state(self) -> RunState:
        return self.tracker.state

    def reset(self) -> None:
        """Return the run state to IDLE; refused while a run is in progress."""
        if self.tracker.state.phase.is_active:
            raise MergeError("Cannot reset while a merge run is in progress")
        self.tracker.reset()

    def summary(self) -> Tuple[List[Tuple[str, int]], int]:
        return self.tracker.state.summary()

    def run(
        self,
        descriptors: Iterable[FileDescriptor],
        progress_callback=None,
        state_callback: Optional[Callable[[RunState], None]] = None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunState:
        """
        Merge already collected descriptors into chunked PDFs and a ZIP archive

        Args:
            descriptors: Unordered input files
            progress_callback: Optional callback function(current, total, message)
            state_callback: Optional callback receiving a RunState snapshot on every change
            event_callback: Optional callback receiving each run log event
            cancel_event: Optional threading.Event; set to request cancellation

        Returns:
            Final RunState (phase DONE)

        Raises:
            MergeError subclasses after the state has moved to FAILED
        """
        run_logger = RunLogger(None, _new_run_id(), event_callback=event_callback)
        try:
            return self._execute(
                lambda: list(descriptors),
                collecting=False,
                run_logger=run_logger,
                warnings=[],
                progress_callback=progress_callback,
                state_callback=state_callback,
                cancel_event=cancel_event,
            )
        finally:
            run_logger.close()

    def merge_paths(
        self,
        input_paths,
        output_path: Optional[str] = None,
        progress_callback=None,
        state_callback: Optional[Callable[[RunState], None]] = None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunState:
        """
        Collect PDFs from files, folders or ZIP archives and merge them

        When output_path is given the archive, merge_manifest.json and the run
        logs are written there; the manifest is also kept in last_manifest.
        """
        if isinstance(input_paths, (str, os.PathLike)):
            input_paths = [input_paths]
        input_paths = [os.fspath(path) for path in input_paths]

        archive_path = None
        logs_dir = None
        if output_path:
            os.makedirs(output_path, exist_ok=True)
            archive_path = os.path.join(output_path, self.archive_name)
            logs_dir = os.path.join(output_path, self.logs_subdir)

        run_id = _new_run_id()
        run_logger = RunLogger(
            logs_dir=logs_dir,
            run_id=run_id,
            enabled=self.enable_detailed_logging,
            privacy_mode=self.log_privacy_mode,
            event_callback=event_callback,
        )
        warnings: List[Dict] = []
        try:
            return self._execute(
                lambda: self.collector.collect(input_paths, warnings=warnings, cancel_event=cancel_event),
                collecting=True,
                run_logger=run_logger,
                warnings=warnings,
                progress_callback=progress_callback,
                state_callback=state_callback,
                cancel_event=cancel_event,
                archive_path=archive_path,
            )
        finally:
            self.last_manifest = self._build_manifest(run_id, input_paths, archive_path, run_logger, warnings)
            if output_path:
                self._write_manifest(output_path, run_logger)
            run_logger.close()

    def _execute(
        self,
        load_files: Callable[[], List[FileDescriptor]],
        collecting: bool,
        run_logger: RunLogger,
        warnings: List[Dict],
        progress_callback=None,
        state_callback=None,
        cancel_event: Optional[threading.Event] = None,
        archive_path: Optional[str] = None,
    ) -> RunState:
        if self.tracker.state.phase.is_active:
            raise MergeError("A merge run is already in progress")
        self.tracker.listener = None
        self.tracker.reset()
        self.tracker.listener = state_callback
        warning_cursor = 0

        try:
            if collecting:
                self.tracker.transition(RunPhase.COLLECTING, "Scanning files...")
            files = load_files()
            run_logger.log("info", "files_collected", "Input files collected", file_count=len(files))
            warning_cursor = self._sync_warning_events(warnings, warning_cursor, run_logger)

            _check_cancel(cancel_event)
            self.tracker.transition(RunPhase.SEQUENCING, "Sorting files...")
            ordered = sequence_files(files)

            self.tracker.transition(RunPhase.PLANNING, "Planning chunks...")
            chunks = self.planner.plan(ordered)
            print(f"\nPlanned {len(chunks)} chunk(s) from {len(ordered)} PDF files")
            run_logger.log(
                "info",
                "chunks_planned",
                "Chunk plan ready",
                chunk_count=len(chunks),
                strategy=self.planner.strategy.value,
                limit_bytes=self.planner.limit_bytes,
            )
            self._ensure_output_capacity(len(chunks))

            total = len(chunks)
            assembler = ArchiveAssembler(self.output_name_prefix)
            self.tracker.transition(RunPhase.MERGING, f"Merging {total} chunk(s)...", total=total)

            for chunk in chunks:
                _check_cancel(cancel_event)
                name = assembler.output_name(chunk.number, total)
                message = f"Processing chunk {chunk.number} of {total}..."
                _safe_progress(progress_callback, chunk.number - 1, total, message)
                run_logger.log(
                    "info",
                    "chunk_start",
                    message,
                    chunk=chunk.number,
                    file_count=len(chunk.members),
                    size_bytes=chunk.cumulative_size_bytes,
                )
                try:
                    output = self.merger.merge_chunk(chunk, name, cancel_event=cancel_event, warnings=warnings)
                except ParseError as exc:
                    if self.failure_policy != "isolate":
                        raise
                    failure = {"chunk": chunk.number, "file": exc.file, "error": str(exc)}
                    run_logger.log("warning", "chunk_failed", "Chunk skipped after a parse error", **failure)
                    self.tracker.chunk_completed(chunk.number, total, failure=failure, message=str(exc))
                    _safe_progress(progress_callback, chunk.number, total, f"Skipped chunk {chunk.number}")
                    warning_cursor = self._sync_warning_events(warnings, warning_cursor, run_logger)
                    continue

                assembler.add(output)
                self.tracker.chunk_completed(chunk.number, total, output=output, message=f"Merged {name}")
                _safe_progress(progress_callback, chunk.number, total, f"Merged {name}")
                run_logger.log(
                    "info",
                    "chunk_end",
                    "Chunk merged",
                    chunk=chunk.number,
                    output=name,
                    pages=output.page_count,
                    size_bytes=output.byte_length,
                )
                warning_cursor = self._sync_warning_events(warnings, warning_cursor, run_logger)

            _check_cancel(cancel_event)
            self.tracker.transition(RunPhase.ARCHIVING, "Generating ZIP file...")
            archive_bytes = assembler.build()
            if archive_path:
                assembler.save(archive_path)
                run_logger.log("info", "archive_written", "Wrote ZIP archive", path=archive_path)
            state = self.tracker.state
            run_logger.log(
                "info",
                "run_complete",
                "Merge complete",
                outputs=len(state.outputs),
                total_bytes=state.total_bytes,
                failed_chunks=len(state.failures),
            )
            self.tracker.complete(archive_bytes)
            return self.tracker.state
        except Exception as exc:
            error = exc if isinstance(exc, MergeError) else MergeError(f"Unexpected merge failure: {exc}")
            self.tracker.fail(error)
            self._sync_warning_events(warnings, warning_cursor, run_logger)
            if isinstance(error, RunCancelled):
                run_logger.log("warning", "run_cancelled", "Merge cancelled by user")
            else:
                run_logger.log("error", "run_failed", str(error), traceback=traceback.format_exc())
            if error is exc:
                raise
            raise error from exc

    def _ensure_output_capacity(self, required_outputs: int) -> None:
        """Validate that the plan stays under the configured output file limit."""
        if self.max_output_files is None:
            return
        if required_outputs > self.max_output_files:
            raise MergeError(
                f"Output file limit exceeded: the plan requires {required_outputs} file(s) "
                f"(max_output_files={self.max_output_files})."
            )

    @staticmethod
    def _sync_warning_events(warnings: List[Dict], cursor: int, run_logger: RunLogger) -> int:
        for warning in warnings[cursor:]:
            context = {key: value for key, value in warning.items() if key not in {'code', 'message'}}
            run_logger.log("warning", warning['code'], warning['message'], **context)
        return len(warnings)

    def _build_manifest(
        self,
        run_id: str,
        input_paths: List[str],
        archive_path: Optional[str],
        run_logger: RunLogger,
        warnings: List[Dict],
    ) -> Dict:
        state = self.tracker.state
        done = state.phase is RunPhase.DONE
        manifest = {
            'timestamp': datetime.now().isoformat(),
            'run_id': run_id,
            'input_paths': input_paths,
            'phase': state.phase.value,
            'settings': {
                'limit_bytes': self.planner.limit_bytes,
                'strategy': self.planner.strategy.value,
                'headroom': self.planner.headroom,
                'failure_policy': self.failure_policy,
                'max_output_files': self.max_output_files,
            },
            'archive': archive_path if done else None,
            'output_files': [
                {
                    'chunk': output.chunk_number,
                    'name': output.name,
                    'size_bytes': output.byte_length,
                    'pages': output.page_count,
                    'sources': list(output.sources),
                }
                for output in state.outputs
            ],
            'total_output_bytes': state.total_bytes,
            'logs': {
                'text_log': run_logger.text_log_path if run_logger.enabled else None,
                'jsonl_log': run_logger.jsonl_log_path if run_logger.enabled else None,
            },
        }
        if state.failures:
            manifest['failures'] = state.failures
        if warnings:
            manifest['warnings'] = warnings
        if state.error is not None:
            manifest['error'] = str(state.error)
        return manifest

    def _write_manifest(self, output_path: str, run_logger: RunLogger) -> None:
        manifest_path = os.path.join(output_path, 'merge_manifest.json')
        try:
            with open(manifest_path, 'w', encoding='utf-8') as f:
                json.dump(self.last_manifest, f, indent=2, default=str)
            run_logger.log("info", "manifest_written", "Wrote merge manifest", path=manifest_path)
        except OSError as manifest_exc:
            run_logger.log(
                "warning",
                "manifest_write_failed",
                f"Could not write merge_manifest.json: {manifest_exc}",
                path=manifest_path,
            )
            self.last_manifest['manifest_write_error'] = str(manifest_exc)
