"""Conversion orchestrator driving jobs through the nine-stage pipeline.

Jobs run on a thread pool, one worker per job at a time. Each stage runs on
its own single-use worker thread so it can be bounded by a wall-clock
timeout; a stage that overruns keeps its thread and never delays the stages
of other jobs. Job records are re-read and written under a single state
lock, which keeps check-and-set transitions (cancel, retry, stage
completion) atomic.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from datetime import datetime, timezone

from pdf_to_epub_converter.alignment import NarrationAligner
from pdf_to_epub_converter.chapter_detector import ChapterDetector
from pdf_to_epub_converter.errors import (
    IllegalTransitionError,
    NotFoundError,
    StageFailure,
    StageTimeoutError,
)
from pdf_to_epub_converter.models import (
    AudioSync,
    BulkSubmission,
    ChapterDetectionResult,
    ConversionConfig,
    ConversionJob,
    ConversionStep,
    DocumentMetadata,
    DocumentStructure,
    JobStatus,
    StageOutcome,
    TocEntry,
    WordTiming,
)
from pdf_to_epub_converter.pipeline import (
    PIPELINE,
    StageDescriptor,
    descriptor_for,
    first_stage,
    is_last_stage,
    next_stage,
    progress_after,
)
from pdf_to_epub_converter.repositories import AudioSyncRepository, DocumentRepository, JobRepository
from pdf_to_epub_converter.stages import StageProcessor, default_stage_processors
from pdf_to_epub_converter.storage import Storage
from pdf_to_epub_converter.structure import (
    dumps_structure,
    ensure_valid,
    load_metadata,
    load_pages,
    load_table_of_contents,
    loads_structure,
)

logger = logging.getLogger(__name__)

_RUNNABLE = (JobStatus.PENDING, JobStatus.IN_PROGRESS)
_TERMINAL = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
_RETRYABLE = (JobStatus.FAILED, JobStatus.REVIEW_REQUIRED, JobStatus.COMPLETED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _JobLock:
    """A per-job lock and the number of callers holding or awaiting it."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class ConversionOrchestrator:
    """Runs conversion jobs and exposes their lifecycle operations."""

    def __init__(
        self,
        documents: DocumentRepository,
        jobs: JobRepository,
        storage: Storage,
        stages: dict[ConversionStep, StageProcessor] | None = None,
        config: ConversionConfig | None = None,
        syncs: AudioSyncRepository | None = None,
        chapter_detector: ChapterDetector | None = None,
        aligner: NarrationAligner | None = None,
    ) -> None:
        self.documents = documents
        self.jobs = jobs
        self.storage = storage
        self.syncs = syncs or AudioSyncRepository()
        self.config = config or ConversionConfig()
        self.chapter_detector = chapter_detector or ChapterDetector()
        self.aligner = aligner or NarrationAligner()
        self.stages = stages if stages is not None else default_stage_processors(
            chapter_detector=self.chapter_detector
        )
        missing = [d.step.value for d in PIPELINE if d.step not in self.stages]
        if missing:
            raise ValueError(f"No processor registered for stages: {', '.join(missing)}")

        workers = max(1, self.config.max_concurrent_jobs)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="conversion")
        self._state_lock = threading.RLock()
        self._job_locks: dict[int, _JobLock] = {}
        self._futures: dict[int, Future] = {}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def start(self, document_id: int) -> ConversionJob:
        """Create a PENDING job for a document and run it in the background.

        Args:
            document_id: Id of a document known to the document repository.

        Returns:
            The new job, as created. It is not updated as the job advances;
            poll ``get_job`` for that.

        Raises:
            NotFoundError: If the document does not exist.
        """
        if self.documents.get(document_id) is None:
            raise NotFoundError(f"Document not found: {document_id}")
        now = _now()
        job = ConversionJob(
            id=self.jobs.next_id(),
            document_id=document_id,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.jobs.save(job)
        logger.info("Created job %d for document %d", job.id, document_id)
        self._submit(job.id)
        return job

    def start_bulk(self, document_ids: Sequence[int]) -> BulkSubmission:
        """Start one job per document; a failure never stops the others."""
        result = BulkSubmission()
        for document_id in document_ids:
            try:
                result.jobs.append(self.start(document_id))
            except Exception as exc:
                logger.warning("Could not start conversion for document %s: %s", document_id, exc)
                result.errors.append((document_id, str(exc)))
        return result

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, job_id: int) -> ConversionJob:
        """Advance a job until it leaves the runnable states.

        Runs on the calling thread; ``start`` schedules this on the pool.
        """
        with self._job_lock(job_id):
            job = self._require_job(job_id)
            while job.status in _RUNNABLE:
                job = self.advance(job_id)
            return job

    def advance(self, job_id: int) -> ConversionJob:
        """Execute the job's current stage once.

        On success the new structure is persisted, progress is updated and
        the job moves to the next stage, to COMPLETED after the last stage,
        or to REVIEW_REQUIRED when the stage asked for review. Any stage
        error marks the job FAILED; it is not retried automatically.

        Raises:
            NotFoundError: If the job does not exist.
            IllegalTransitionError: If the job is not PENDING or IN_PROGRESS.
        """
        with self._job_lock(job_id):
            with self._state_lock:
                job = self._require_job(job_id)
                if job.status not in _RUNNABLE:
                    raise IllegalTransitionError(
                        f"Job {job_id} cannot advance from {job.status.value}"
                    )
                descriptor = descriptor_for(job.current_step)
                job.status = JobStatus.IN_PROGRESS
                job.current_step = descriptor.step
                job.updated_at = _now()
                self.jobs.save(job)

            logger.info("Job %d: running %s", job_id, descriptor.label)
            # Everything from reading the input to persisting the output
            # counts as the stage; any error leaves the job FAILED.
            try:
                if descriptor == first_stage() or not job.intermediate_data:
                    structure = DocumentStructure()
                else:
                    structure = loads_structure(job.intermediate_data)
                pdf_bytes = self._read_document(job.document_id)
                outcome = self._execute_stage(job_id, descriptor, pdf_bytes, structure)
                ensure_valid(outcome.structure)
                intermediate = dumps_structure(outcome.structure)
                return self._complete_stage(job_id, descriptor, outcome, intermediate)
            except StageTimeoutError as exc:
                return self._fail(job_id, descriptor, str(exc), "timeout")
            except Exception as exc:
                logger.error("Job %d: %s failed: %s", job_id, descriptor.label, exc, exc_info=True)
                return self._fail(job_id, descriptor, f"{descriptor.label} failed: {exc}", "stage_failure")

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def retry(self, job_id: int) -> ConversionJob:
        """Restart a FAILED, REVIEW_REQUIRED or COMPLETED job from the first stage.

        Raises:
            NotFoundError: If the job does not exist.
            IllegalTransitionError: If the job is in any other state.
        """
        with self._state_lock:
            job = self._require_job(job_id)
            if job.status not in _RETRYABLE:
                raise IllegalTransitionError(f"Job {job_id} cannot be retried from {job.status.value}")
            job.status = JobStatus.PENDING
            job.current_step = first_stage().step
            job.progress_percentage = 0
            job.error_message = None
            job.error_kind = None
            job.requires_review = False
            job.review_reason = None
            job.confidence_score = None
            job.completed_at = None
            job.updated_at = _now()
            self.jobs.save(job)
        logger.info("Job %d: retrying from the first stage", job_id)
        self._submit(job_id)
        return job

    def cancel(self, job_id: int) -> ConversionJob:
        """Cancel a job that has not reached a terminal state.

        A stage already running finishes, but its output is discarded.

        Raises:
            NotFoundError: If the job does not exist.
            IllegalTransitionError: If the job is COMPLETED, FAILED or CANCELLED.
        """
        with self._state_lock:
            job = self._require_job(job_id)
            if job.status in _TERMINAL:
                raise IllegalTransitionError(f"Job {job_id} cannot be cancelled from {job.status.value}")
            job.status = JobStatus.CANCELLED
            job.updated_at = _now()
            self.jobs.save(job)
        logger.info("Job %d: cancelled", job_id)
        return job

    def mark_reviewed(self, job_id: int, reviewer: str) -> ConversionJob:
        """Record a human review; the pipeline is not resumed.

        Raises:
            NotFoundError: If the job does not exist.
            IllegalTransitionError: If the job does not require review.
        """
        with self._state_lock:
            job = self._require_job(job_id)
            if not job.requires_review:
                raise IllegalTransitionError(f"Job {job_id} does not require review")
            job.requires_review = False
            job.reviewed_by = reviewer
            job.reviewed_at = _now()
            job.updated_at = job.reviewed_at
            self.jobs.save(job)
        logger.info("Job %d: reviewed by %s", job_id, reviewer)
        return job

    def resume(self, job_id: int) -> ConversionJob:
        """Continue a reviewed job after the stage that requested review.

        Raises:
            NotFoundError: If the job does not exist.
            IllegalTransitionError: If the job is not a reviewed REVIEW_REQUIRED job.
        """
        with self._state_lock:
            job = self._require_job(job_id)
            if job.status != JobStatus.REVIEW_REQUIRED or job.requires_review:
                raise IllegalTransitionError(f"Job {job_id} must be reviewed before it can resume")
            following = next_stage(job.current_step) if job.current_step else first_stage()
            job.updated_at = _now()
            if following is None:
                job.status = JobStatus.COMPLETED
                job.completed_at = job.updated_at
                self.jobs.save(job)
                return job
            job.status = JobStatus.PENDING
            job.current_step = following.step
            self.jobs.save(job)
        self._submit(job_id)
        return job

    def delete_job(self, job_id: int) -> None:
        """Delete a job, its artifact and its narration syncs.

        Raises:
            NotFoundError: If the job does not exist.
            IllegalTransitionError: If a stage of the job is running.
        """
        with self._state_lock:
            job = self._require_job(job_id)
            if job.status == JobStatus.IN_PROGRESS:
                raise IllegalTransitionError(f"Job {job_id} is running; cancel it first")
            if job.epub_file_path and self.storage.exists(job.epub_file_path):
                self.storage.delete(job.epub_file_path)
            self.syncs.delete_for_job(job_id)
            self.jobs.delete(job_id)
            self._futures.pop(job_id, None)
        logger.info("Job %d: deleted", job_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: int) -> ConversionJob:
        return self._require_job(job_id)

    def list_jobs_by_status(self, status: JobStatus) -> list[ConversionJob]:
        return self.jobs.list_by_status(status)

    def list_review_required(self) -> list[ConversionJob]:
        return [job for job in self.jobs.list_all() if job.requires_review]

    def list_jobs_for_document(self, document_id: int) -> list[ConversionJob]:
        return [job for job in self.jobs.list_all() if job.document_id == document_id]

    def get_structure(self, job_id: int) -> DocumentStructure | None:
        """Return the last structure persisted for a job, if any."""
        job = self._require_job(job_id)
        return loads_structure(job.intermediate_data) if job.intermediate_data else None

    def get_metadata(self, job_id: int) -> DocumentMetadata:
        """Return the metadata extracted for a job so far.

        Only the metadata section of the stored structure is decoded.

        Raises:
            NotFoundError: If the job or its structure does not exist.
        """
        return load_metadata(self._require_intermediate(job_id))

    def get_table_of_contents(self, job_id: int) -> list[TocEntry]:
        """Return the table of contents built for a job so far.

        Raises:
            NotFoundError: If the job or its structure does not exist.
        """
        return load_table_of_contents(self._require_intermediate(job_id))

    def download(self, job_id: int) -> bytes:
        """Return the EPUB artifact produced by a job.

        Raises:
            NotFoundError: If the job or its artifact does not exist.
        """
        job = self._require_job(job_id)
        if not job.epub_file_path:
            raise NotFoundError(f"Job {job_id} has no EPUB artifact")
        try:
            return self.storage.read_bytes(job.epub_file_path)
        except FileNotFoundError as exc:
            raise NotFoundError(f"EPUB artifact of job {job_id} is missing") from exc

    def wait(self, job_id: int, timeout: float | None = None) -> ConversionJob:
        """Block until the job's background run finishes, then return the job."""
        future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self._require_job(job_id)

    # ------------------------------------------------------------------
    # Downstream consumers
    # ------------------------------------------------------------------

    def detect_chapters(self, job_id: int, use_ai: bool = False) -> Future[ChapterDetectionResult]:
        """Detect chapters of a job's structure in the background.

        Raises:
            NotFoundError: If the job or its structure does not exist.
        """
        structure = self._require_pages(job_id)
        return self._executor.submit(self.chapter_detector.detect, structure, use_ai)

    def align_narration(
        self,
        job_id: int,
        audio_path: str,
        timings: Sequence[WordTiming] | None = None,
    ) -> Future[list[AudioSync]]:
        """Align narration audio to a job's structure in the background.

        The job's previous system-generated syncs are replaced; user-edited
        syncs are kept.

        Raises:
            NotFoundError: If the job or its structure does not exist.
        """
        job = self._require_job(job_id)
        structure = self._require_pages(job_id)

        def _align() -> list[AudioSync]:
            syncs = self.aligner.align(
                structure, audio_path, timings, document_id=job.document_id, job_id=job_id
            )
            logger.info("Job %d: aligned %d narration segments", job_id, len(syncs))
            return self.syncs.replace_generated(job_id, syncs)

        return self._executor.submit(_align)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _submit(self, job_id: int) -> None:
        with self._state_lock:
            future = self._executor.submit(self._run_safely, job_id)
            self._futures[job_id] = future
        future.add_done_callback(lambda done: self._forget_future(job_id, done))

    def _forget_future(self, job_id: int, future: Future) -> None:
        with self._state_lock:
            if self._futures.get(job_id) is future:
                del self._futures[job_id]

    def _run_safely(self, job_id: int) -> None:
        try:
            self.run(job_id)
        except NotFoundError:
            logger.info("Job %d disappeared before it finished", job_id)
        except IllegalTransitionError as exc:
            logger.info("Job %d stopped: %s", job_id, exc)

    @contextmanager
    def _job_lock(self, job_id: int) -> Iterator[None]:
        """Serialize work on one job; the lock is dropped once nobody holds it."""
        with self._state_lock:
            entry = self._job_locks.get(job_id)
            if entry is None:
                entry = self._job_locks[job_id] = _JobLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._state_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._job_locks[job_id]

    def _require_job(self, job_id: int) -> ConversionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def _require_intermediate(self, job_id: int) -> str:
        job = self._require_job(job_id)
        if not job.intermediate_data:
            raise NotFoundError(f"Job {job_id} has no document structure yet")
        return job.intermediate_data

    def _require_pages(self, job_id: int) -> DocumentStructure:
        # Chapter detection and alignment only read pages.
        return DocumentStructure(pages=load_pages(self._require_intermediate(job_id)))

    def _read_document(self, document_id: int) -> bytes:
        record = self.documents.get(document_id)
        if record is None:
            raise NotFoundError(f"Document not found: {document_id}")
        return self.storage.read_bytes(record.file_path)

    def _execute_stage(
        self, job_id: int, descriptor: StageDescriptor, pdf_bytes: bytes, structure: DocumentStructure
    ) -> StageOutcome:
        processor = self.stages[descriptor.step]
        # A thread cannot be killed, so an overrunning stage is abandoned
        # with its own executor.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{job_id}")
        try:
            future = executor.submit(processor.process, pdf_bytes, structure)
            result = future.result(timeout=self.config.stage_timeout_seconds)
        except FutureTimeoutError as exc:
            raise StageTimeoutError(
                f"{descriptor.label} exceeded {self.config.stage_timeout_seconds:g}s"
            ) from exc
        finally:
            executor.shutdown(wait=False)
        if isinstance(result, DocumentStructure):
            return StageOutcome(structure=result)
        if not isinstance(result, StageOutcome):
            raise StageFailure(f"{descriptor.label} returned {type(result).__name__}")
        return result

    def _fail(self, job_id: int, descriptor: StageDescriptor, message: str, kind: str) -> ConversionJob:
        with self._state_lock:
            job = self._require_job(job_id)
            if job.status == JobStatus.CANCELLED:
                return job
            job.status = JobStatus.FAILED
            job.error_message = message
            job.error_kind = kind
            job.updated_at = _now()
            self.jobs.save(job)
        logger.warning("Job %d failed at %s: %s", job_id, descriptor.label, message)
        return job

    def _complete_stage(
        self, job_id: int, descriptor: StageDescriptor, outcome: StageOutcome, intermediate: str
    ) -> ConversionJob:
        with self._state_lock:
            job = self._require_job(job_id)
            if job.status == JobStatus.CANCELLED:
                logger.info("Job %d was cancelled; discarding %s output", job_id, descriptor.label)
                return job

            if outcome.artifact is not None:
                path = f"{self.config.epub_output_dir}/converted_{job_id}.epub"
                self.storage.write_bytes(path, outcome.artifact)
                job.epub_file_path = path

            job.intermediate_data = intermediate
            job.progress_percentage = max(job.progress_percentage, progress_after(descriptor.step))
            if outcome.confidence is not None:
                job.confidence_score = round(outcome.confidence, 4)
            job.updated_at = _now()

            review_reason = outcome.review_reason
            if (
                review_reason is None
                and descriptor.review_threshold is not None
                and outcome.confidence is not None
                and outcome.confidence < descriptor.review_threshold
            ):
                review_reason = (
                    f"{descriptor.label} confidence {outcome.confidence:.2f} "
                    f"is below {descriptor.review_threshold:.2f}"
                )

            if review_reason is not None:
                job.status = JobStatus.REVIEW_REQUIRED
                job.requires_review = True
                job.review_reason = review_reason
                logger.info("Job %d needs review: %s", job_id, review_reason)
            elif is_last_stage(descriptor.step):
                job.status = JobStatus.COMPLETED
                job.completed_at = job.updated_at
                logger.info("Job %d completed", job_id)
            else:
                job.current_step = next_stage(descriptor.step).step
            self.jobs.save(job)
            return job
