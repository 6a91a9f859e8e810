"""In-memory persistence for documents, jobs and narration syncs.

Records are stored and returned as copies keyed by numeric id, so callers
always read and write whole records (last write wins).
"""

from __future__ import annotations

import copy
import itertools
import threading

from pdf_to_epub_converter.models import AudioSync, ConversionJob, DocumentRecord, JobStatus


class DocumentRepository:
    """Thread-safe store of uploaded documents."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[int, DocumentRecord] = {}
        self._ids = itertools.count(1)

    def add(self, file_path: str, original_file_name: str | None = None, total_pages: int | None = None) -> DocumentRecord:
        with self._lock:
            record = DocumentRecord(
                id=next(self._ids),
                file_path=file_path,
                original_file_name=original_file_name,
                total_pages=total_pages,
            )
            self._records[record.id] = record
            return copy.deepcopy(record)

    def get(self, document_id: int) -> DocumentRecord | None:
        with self._lock:
            record = self._records.get(document_id)
            return copy.deepcopy(record) if record is not None else None

    def save(self, record: DocumentRecord) -> None:
        with self._lock:
            self._records[record.id] = copy.deepcopy(record)


class JobRepository:
    """Thread-safe store of conversion jobs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[int, ConversionJob] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def save(self, job: ConversionJob) -> ConversionJob:
        with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
        return job

    def get(self, job_id: int) -> ConversionJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def delete(self, job_id: int) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def list_all(self) -> list[ConversionJob]:
        with self._lock:
            return [copy.deepcopy(job) for _, job in sorted(self._jobs.items())]

    def list_by_status(self, status: JobStatus) -> list[ConversionJob]:
        return [job for job in self.list_all() if job.status == status]


class AudioSyncRepository:
    """Thread-safe store of narration sync records."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._syncs: dict[int, AudioSync] = {}
        self._ids = itertools.count(1)

    def save(self, sync: AudioSync) -> AudioSync:
        with self._lock:
            if sync.id is None:
                sync.id = next(self._ids)
            self._syncs[sync.id] = copy.deepcopy(sync)
        return sync

    def list_for_job(self, job_id: int) -> list[AudioSync]:
        with self._lock:
            syncs = [copy.deepcopy(s) for s in self._syncs.values() if s.job_id == job_id]
        return sorted(syncs, key=lambda s: (s.start_time, s.page_number))

    def replace_generated(self, job_id: int, syncs: list[AudioSync]) -> list[AudioSync]:
        """Replace a job's system-generated syncs, keeping user-edited ones."""
        with self._lock:
            stale = [
                sync_id
                for sync_id, s in self._syncs.items()
                if s.job_id == job_id and not s.is_custom_segment
            ]
            for sync_id in stale:
                del self._syncs[sync_id]
        return [self.save(sync) for sync in syncs]

    def delete_for_job(self, job_id: int) -> int:
        with self._lock:
            doomed = [sync_id for sync_id, s in self._syncs.items() if s.job_id == job_id]
            for sync_id in doomed:
                del self._syncs[sync_id]
        return len(doomed)
