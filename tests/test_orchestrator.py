"""Tests for the ConversionOrchestrator job lifecycle, using fake stages."""

from __future__ import annotations

import copy
import shutil
import tempfile
import threading
import time

import pytest

from pdf_to_epub_converter.alignment import NarrationAligner
from pdf_to_epub_converter.errors import AlignmentDegraded, IllegalTransitionError, NotFoundError
from pdf_to_epub_converter.models import (
    AudioSync,
    ConversionConfig,
    ConversionJob,
    ConversionStep,
    DocumentStructure,
    JobStatus,
    PageStructure,
    StageOutcome,
    TextBlock,
)
from pdf_to_epub_converter.orchestrator import ConversionOrchestrator
from pdf_to_epub_converter.pipeline import PIPELINE, progress_after
from pdf_to_epub_converter.repositories import AudioSyncRepository, DocumentRepository, JobRepository
from pdf_to_epub_converter.storage import LocalFileStorage
from pdf_to_epub_converter.text_segmenter import apply_segmentation

_STEPS = [d.step for d in PIPELINE]


class _RecordingStage:
    """Fake stage that records its calls and stamps its step into the title."""

    def __init__(self, step, calls, confidence=None, review_reason=None, artifact=None, error=None, gate=None):
        self.step = step
        self.calls = calls
        self.confidence = confidence
        self.review_reason = review_reason
        self.artifact = artifact
        self.error = error
        self.gate = gate
        self.started = threading.Event()

    def process(self, pdf_bytes, structure):
        self.calls.append(self.step)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        structure = copy.deepcopy(structure)
        if not structure.pages:
            block = apply_segmentation(TextBlock(id="p1-t1", text="Chapter 1 The water cycle. Water moves."))
            structure.pages = [PageStructure(page_number=1, text_blocks=[block])]
        structure.metadata.title = self.step.value
        return StageOutcome(
            structure=structure,
            confidence=self.confidence,
            review_reason=self.review_reason,
            artifact=self.artifact,
        )


class _StallFirstCall:
    """Wraps a stage so that only its first call blocks on a gate."""

    def __init__(self, stage, gate):
        self.stage = stage
        self.gate = gate
        self.stalled = False

    def process(self, pdf_bytes, structure):
        if not self.stalled:
            self.stalled = True
            self.gate.wait(timeout=5)
        return self.stage.process(pdf_bytes, structure)


class _FullDiskStorage(LocalFileStorage):
    """Local storage that refuses to write EPUB files."""

    def write_bytes(self, path, data):
        if path.endswith(".epub"):
            raise OSError("disk full")
        super().write_bytes(path, data)


class TestConversionOrchestrator:
    def setup_method(self):
        self.tmpdir = tempfile.mkdtemp()
        self.storage = LocalFileStorage(self.tmpdir)
        self.storage.write_bytes("uploads/book.pdf", b"%PDF-1.4 placeholder")
        self.documents = DocumentRepository()
        self.jobs = JobRepository()
        self.syncs = AudioSyncRepository()
        self.document = self.documents.add("uploads/book.pdf", "book.pdf", total_pages=1)
        self.calls = []
        self.gates = []
        self.stages = {step: _RecordingStage(step, self.calls) for step in _STEPS}
        self.orchestrator = None

    def teardown_method(self):
        for gate in self.gates:
            gate.set()
        if self.orchestrator is not None:
            self.orchestrator.shutdown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _make_orchestrator(self, timeout=5.0, aligner=None, workers=2, storage=None):
        self.orchestrator = ConversionOrchestrator(
            self.documents,
            self.jobs,
            storage or self.storage,
            stages=self.stages,
            config=ConversionConfig(max_concurrent_jobs=workers, stage_timeout_seconds=timeout),
            syncs=self.syncs,
            aligner=aligner,
        )
        return self.orchestrator

    def _gate(self, step):
        gate = threading.Event()
        self.gates.append(gate)
        self.stages[step].gate = gate
        return gate

    def _pending_job(self):
        job = ConversionJob(id=self.jobs.next_id(), document_id=self.document.id)
        self.jobs.save(job)
        return job

    # ---- start / run ----

    def test_missing_stage_processor_is_rejected(self):
        del self.stages[ConversionStep.QA_REVIEW]
        with pytest.raises(ValueError, match="QA_REVIEW"):
            self._make_orchestrator()

    def test_start_unknown_document(self):
        orchestrator = self._make_orchestrator()
        with pytest.raises(NotFoundError):
            orchestrator.start(999)

    def test_job_runs_every_stage_in_order(self):
        orchestrator = self._make_orchestrator()
        created = orchestrator.start(self.document.id)
        assert created.status == JobStatus.PENDING
        assert created.current_step is None

        job = orchestrator.wait(created.id, timeout=10)
        assert job.status == JobStatus.COMPLETED
        assert job.progress_percentage == 100
        assert job.current_step == ConversionStep.QA_REVIEW
        assert job.completed_at is not None
        assert self.calls == _STEPS
        assert orchestrator.get_structure(job.id).metadata.title == "QA_REVIEW"

    def test_advance_reports_progress_per_stage(self):
        orchestrator = self._make_orchestrator()
        job = self._pending_job()
        progress = []
        for _ in _STEPS:
            progress.append(orchestrator.advance(job.id).progress_percentage)
        assert progress == [11, 22, 33, 44, 56, 67, 78, 89, 100]
        assert orchestrator.get_job(job.id).status == JobStatus.COMPLETED
        with pytest.raises(IllegalTransitionError):
            orchestrator.advance(job.id)

    def test_concurrent_runs_of_one_job_execute_each_stage_once(self):
        self._gate(ConversionStep.CLASSIFICATION)
        orchestrator = self._make_orchestrator()
        job = self._pending_job()
        results = []

        def _run():
            results.append(orchestrator.run(job.id))

        threads = [threading.Thread(target=_run) for _ in range(2)]
        for thread in threads:
            thread.start()
        assert self.stages[ConversionStep.CLASSIFICATION].started.wait(timeout=5)
        self.gates[0].set()
        for thread in threads:
            thread.join(timeout=10)

        assert self.calls == _STEPS
        assert [r.status for r in results] == [JobStatus.COMPLETED, JobStatus.COMPLETED]

    def test_finished_jobs_release_their_lock_and_future(self):
        orchestrator = self._make_orchestrator()
        first = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        second = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert first.status == second.status == JobStatus.COMPLETED
        assert orchestrator._job_locks == {}

        deadline = time.monotonic() + 5
        while orchestrator._futures and time.monotonic() < deadline:
            time.sleep(0.01)
        assert orchestrator._futures == {}
        assert orchestrator.wait(first.id).status == JobStatus.COMPLETED

    def test_stage_returning_a_bare_structure_is_accepted(self):
        class _PassThrough:
            def process(self, pdf_bytes, structure):
                return structure

        self.stages[ConversionStep.ACCESSIBILITY] = _PassThrough()
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert job.status == JobStatus.COMPLETED

    # ---- failures ----

    @pytest.mark.parametrize("failing", PIPELINE, ids=lambda d: d.step.value)
    def test_stage_error_fails_the_job(self, failing):
        self.stages[failing.step].error = RuntimeError("disk on fire")
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)

        index = _STEPS.index(failing.step)
        assert job.status == JobStatus.FAILED
        assert job.current_step == failing.step
        assert job.error_message == f"{failing.label} failed: disk on fire"
        assert job.error_kind == "stage_failure"
        assert job.progress_percentage == (progress_after(_STEPS[index - 1]) if index else 0)
        assert self.calls == _STEPS[: index + 1]

    def test_invalid_stage_output_fails_the_job(self):
        class _Broken:
            def process(self, pdf_bytes, structure):
                return DocumentStructure(
                    pages=[
                        PageStructure(page_number=1, text_blocks=[TextBlock(id="x", text="")]),
                        PageStructure(page_number=2, text_blocks=[TextBlock(id="x", text="")]),
                    ]
                )

        self.stages[ConversionStep.LAYOUT_ANALYSIS] = _Broken()
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert job.status == JobStatus.FAILED
        assert "Duplicate block id 'x' on page 2" in job.error_message

    def test_stage_timeout_fails_the_job(self):
        self._gate(ConversionStep.CLASSIFICATION)
        orchestrator = self._make_orchestrator(timeout=0.2)
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "timeout"
        assert "Classification exceeded 0.2s" in job.error_message

    def test_timed_out_stage_does_not_hold_up_other_jobs(self):
        gate = threading.Event()
        self.gates.append(gate)
        step = ConversionStep.CLASSIFICATION
        self.stages[step] = _StallFirstCall(self.stages[step], gate)
        orchestrator = self._make_orchestrator(timeout=0.5, workers=1)

        first = orchestrator.start(self.document.id)
        second = orchestrator.start(self.document.id)
        assert orchestrator.wait(first.id, timeout=10).error_kind == "timeout"
        job = orchestrator.wait(second.id, timeout=10)
        assert job.status == JobStatus.COMPLETED
        assert job.error_message is None

    def test_artifact_write_failure_fails_the_job(self):
        self.stages[ConversionStep.EPUB_GENERATION].artifact = b"PK\x03\x04epub"
        orchestrator = self._make_orchestrator(storage=_FullDiskStorage(self.tmpdir))
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert job.status == JobStatus.FAILED
        assert job.current_step == ConversionStep.EPUB_GENERATION
        assert job.error_message == "EPUB Generation failed: disk full"
        assert job.error_kind == "stage_failure"
        assert job.epub_file_path is None
        assert orchestrator.get_structure(job.id).metadata.title == "SPECIAL_CONTENT"

    def test_missing_upload_fails_the_job(self):
        self.storage.delete("uploads/book.pdf")
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert job.status == JobStatus.FAILED
        assert self.calls == []

    # ---- review ----

    def test_low_confidence_requires_review_then_resumes(self):
        self.stages[ConversionStep.TEXT_EXTRACTION].confidence = 0.5
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)

        assert job.status == JobStatus.REVIEW_REQUIRED
        assert job.requires_review
        assert job.review_reason == "Text Extraction confidence 0.50 is below 0.60"
        assert job.confidence_score == 0.5
        assert job.progress_percentage == 22
        assert [j.id for j in orchestrator.list_review_required()] == [job.id]

        with pytest.raises(IllegalTransitionError):
            orchestrator.resume(job.id)

        reviewed = orchestrator.mark_reviewed(job.id, "editor@example.com")
        assert reviewed.reviewed_by == "editor@example.com"
        assert reviewed.reviewed_at is not None
        assert not reviewed.requires_review
        assert reviewed.status == JobStatus.REVIEW_REQUIRED

        resumed = orchestrator.resume(job.id)
        assert resumed.current_step == ConversionStep.LAYOUT_ANALYSIS
        job = orchestrator.wait(job.id, timeout=10)
        assert job.status == JobStatus.COMPLETED
        assert self.calls.count(ConversionStep.TEXT_EXTRACTION) == 1

    def test_confident_stage_does_not_require_review(self):
        self.stages[ConversionStep.TEXT_EXTRACTION].confidence = 0.95
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert job.status == JobStatus.COMPLETED
        assert job.confidence_score == 0.95

    def test_review_requested_by_last_stage_completes_on_resume(self):
        self.stages[ConversionStep.QA_REVIEW].review_reason = "Conflicting chapter boundaries"
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert job.status == JobStatus.REVIEW_REQUIRED
        assert job.progress_percentage == 100

        orchestrator.mark_reviewed(job.id, "editor")
        job = orchestrator.resume(job.id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None

    def test_mark_reviewed_requires_a_review(self):
        orchestrator = self._make_orchestrator()
        job = self._pending_job()
        with pytest.raises(IllegalTransitionError, match="does not require review"):
            orchestrator.mark_reviewed(job.id, "editor")

    # ---- retry ----

    def test_retry_restarts_from_the_first_stage(self):
        failing = self.stages[ConversionStep.SEMANTIC_STRUCTURING]
        failing.error = RuntimeError("bad heading")
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert job.status == JobStatus.FAILED

        failing.error = None
        self.calls.clear()
        retried = orchestrator.retry(job.id)
        assert retried.status == JobStatus.PENDING
        assert retried.current_step == ConversionStep.CLASSIFICATION
        assert retried.progress_percentage == 0
        assert retried.error_message is None

        job = orchestrator.wait(job.id, timeout=10)
        assert job.status == JobStatus.COMPLETED
        assert self.calls == _STEPS

    def test_retry_of_a_runnable_job_is_rejected(self):
        orchestrator = self._make_orchestrator()
        job = self._pending_job()
        with pytest.raises(IllegalTransitionError):
            orchestrator.retry(job.id)

    def test_retry_unknown_job(self):
        orchestrator = self._make_orchestrator()
        with pytest.raises(NotFoundError):
            orchestrator.retry(42)

    # ---- cancel ----

    def test_cancel_discards_the_running_stage_output(self):
        gate = self._gate(ConversionStep.LAYOUT_ANALYSIS)
        orchestrator = self._make_orchestrator()
        job = orchestrator.start(self.document.id)
        assert self.stages[ConversionStep.LAYOUT_ANALYSIS].started.wait(timeout=5)

        cancelled = orchestrator.cancel(job.id)
        assert cancelled.status == JobStatus.CANCELLED
        gate.set()

        job = orchestrator.wait(job.id, timeout=10)
        assert job.status == JobStatus.CANCELLED
        assert job.current_step == ConversionStep.LAYOUT_ANALYSIS
        assert job.progress_percentage == 22
        assert ConversionStep.SEMANTIC_STRUCTURING not in self.calls

    def test_cancelled_pending_job_cannot_advance(self):
        orchestrator = self._make_orchestrator()
        job = self._pending_job()
        orchestrator.cancel(job.id)
        with pytest.raises(IllegalTransitionError):
            orchestrator.advance(job.id)
        assert self.calls == []

    def test_cancel_completed_job_is_rejected(self):
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        with pytest.raises(IllegalTransitionError, match="cannot be cancelled from COMPLETED"):
            orchestrator.cancel(job.id)
        assert orchestrator.get_job(job.id).status == JobStatus.COMPLETED

    # ---- bulk, queries, artifacts ----

    def test_bulk_start_collects_errors(self):
        second = self.documents.add("uploads/book.pdf", "copy.pdf")
        orchestrator = self._make_orchestrator()
        result = orchestrator.start_bulk([self.document.id, 999, second.id])
        assert [j.document_id for j in result.jobs] == [self.document.id, second.id]
        assert result.errors == [(999, "Document not found: 999")]
        for job in result.jobs:
            assert orchestrator.wait(job.id, timeout=10).status == JobStatus.COMPLETED
        assert len(orchestrator.list_jobs_by_status(JobStatus.COMPLETED)) == 2
        assert [j.id for j in orchestrator.list_jobs_for_document(second.id)] == [result.jobs[1].id]

    def test_download_returns_the_epub_artifact(self):
        self.stages[ConversionStep.EPUB_GENERATION].artifact = b"PK\x03\x04epub"
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert job.epub_file_path == f"epub/converted_{job.id}.epub"
        assert orchestrator.download(job.id) == b"PK\x03\x04epub"

    def test_download_without_artifact(self):
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        with pytest.raises(NotFoundError, match="no EPUB artifact"):
            orchestrator.download(job.id)

    def test_get_unknown_job(self):
        orchestrator = self._make_orchestrator()
        with pytest.raises(NotFoundError):
            orchestrator.get_job(7)

    # ---- delete ----

    def test_delete_removes_job_artifact_and_syncs(self):
        self.stages[ConversionStep.EPUB_GENERATION].artifact = b"epub"
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        self.syncs.save(AudioSync(page_number=1, start_time=0.0, end_time=1.0, job_id=job.id))

        orchestrator.delete_job(job.id)
        assert not self.storage.exists(job.epub_file_path)
        assert self.syncs.list_for_job(job.id) == []
        with pytest.raises(NotFoundError):
            orchestrator.get_job(job.id)

    def test_delete_running_job_is_rejected(self):
        orchestrator = self._make_orchestrator()
        job = self._pending_job()
        job.status = JobStatus.IN_PROGRESS
        self.jobs.save(job)
        with pytest.raises(IllegalTransitionError):
            orchestrator.delete_job(job.id)

    # ---- downstream consumers ----

    def test_detect_chapters_on_finished_structure(self):
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        result = orchestrator.detect_chapters(job.id).result(timeout=10)
        assert result.method == "heuristic"
        assert [(c.start_page, c.end_page) for c in result.chapters] == [(1, 1)]

    def test_metadata_and_table_of_contents_are_read_separately(self):
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        assert orchestrator.get_metadata(job.id).title == "QA_REVIEW"
        assert orchestrator.get_table_of_contents(job.id) == []

    def test_metadata_needs_a_structure(self):
        orchestrator = self._make_orchestrator()
        job = self._pending_job()
        with pytest.raises(NotFoundError, match="no document structure"):
            orchestrator.get_metadata(job.id)
        with pytest.raises(NotFoundError, match="no document structure"):
            orchestrator.get_table_of_contents(job.id)

    def test_detect_chapters_reads_only_pages(self):
        orchestrator = self._make_orchestrator()
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        stored = self.jobs.get(job.id)
        stored.intermediate_data = stored.intermediate_data.replace(
            '"metadata":{', '"metadata":"corrupt","unused":{', 1
        )
        self.jobs.save(stored)
        result = orchestrator.detect_chapters(job.id).result(timeout=10)
        assert [(c.start_page, c.end_page) for c in result.chapters] == [(1, 1)]

    def test_detect_chapters_needs_a_structure(self):
        orchestrator = self._make_orchestrator()
        job = self._pending_job()
        with pytest.raises(NotFoundError, match="no document structure"):
            orchestrator.detect_chapters(job.id)

    def test_align_narration_keeps_custom_syncs(self):
        def undecodable(path):
            raise AlignmentDegraded("no decoder")

        aligner = NarrationAligner(duration_probe=lambda path, config: 10.0, audio_loader=undecodable)
        orchestrator = self._make_orchestrator(aligner=aligner)
        job = orchestrator.wait(orchestrator.start(self.document.id).id, timeout=10)
        self.syncs.save(AudioSync(page_number=1, start_time=0.0, end_time=4.0, job_id=job.id, notes="old"))
        self.syncs.save(
            AudioSync(
                page_number=1,
                start_time=10.0,
                end_time=12.0,
                job_id=job.id,
                custom_text="Read by the author",
                is_custom_segment=True,
            )
        )

        created = orchestrator.align_narration(job.id, "audio/book.mp3").result(timeout=10)
        assert [(s.block_id, s.start_time, s.end_time) for s in created] == [("p1-t1", 0.0, 10.0)]
        assert all(s.id is not None for s in created)

        stored = self.syncs.list_for_job(job.id)
        assert [s.notes for s in stored] == [None, None]
        assert [s.is_custom_segment for s in stored] == [False, True]
        assert stored[0].document_id == self.document.id
