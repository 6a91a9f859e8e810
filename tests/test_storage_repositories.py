"""Unit tests for LocalFileStorage and the in-memory repositories."""

from __future__ import annotations

import shutil
import tempfile

import pytest

from pdf_to_epub_converter.models import AudioSync, ConversionJob, JobStatus
from pdf_to_epub_converter.repositories import (
    AudioSyncRepository,
    DocumentRepository,
    JobRepository,
)
from pdf_to_epub_converter.storage import LocalFileStorage


class TestLocalFileStorage:
    def setup_method(self):
        self.tmpdir = tempfile.mkdtemp()
        self.storage = LocalFileStorage(self.tmpdir)

    def teardown_method(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_write_then_read_creates_directories(self):
        self.storage.write_bytes("artifacts/1/structure.json", b"{}")
        assert self.storage.exists("artifacts/1/structure.json")
        assert self.storage.read_bytes("artifacts/1/structure.json") == b"{}"

    def test_read_missing_raises(self):
        with pytest.raises(FileNotFoundError):
            self.storage.read_bytes("uploads/missing.pdf")

    def test_delete_is_idempotent(self):
        self.storage.write_bytes("a.bin", b"x")
        self.storage.delete("a.bin")
        self.storage.delete("a.bin")
        assert not self.storage.exists("a.bin")

    def test_directories_do_not_count_as_files(self):
        self.storage.write_bytes("dir/a.bin", b"x")
        assert not self.storage.exists("dir")

    def test_list_returns_sorted_relative_paths(self):
        self.storage.write_bytes("chapters/b.json", b"{}")
        self.storage.write_bytes("chapters/nested/a.json", b"{}")
        self.storage.write_bytes("uploads/book.pdf", b"%PDF")
        assert self.storage.list("chapters") == ["chapters/b.json", "chapters/nested/a.json"]
        assert self.storage.list("missing") == []

    @pytest.mark.parametrize("path", ["../outside.txt", "a/../../outside.txt"])
    def test_paths_cannot_escape_root(self, path):
        with pytest.raises(ValueError, match="escapes storage root"):
            self.storage.write_bytes(path, b"x")


class TestDocumentRepository:
    def test_ids_are_sequential(self):
        repo = DocumentRepository()
        first = repo.add("uploads/a.pdf", original_file_name="a.pdf")
        second = repo.add("uploads/b.pdf", total_pages=12)
        assert (first.id, second.id) == (1, 2)
        assert repo.get(2).total_pages == 12
        assert repo.get(3) is None

    def test_returned_records_are_copies(self):
        repo = DocumentRepository()
        record = repo.add("uploads/a.pdf")
        record.total_pages = 99
        assert repo.get(record.id).total_pages is None

        record.total_pages = 40
        repo.save(record)
        assert repo.get(record.id).total_pages == 40


class TestJobRepository:
    def test_save_get_and_delete(self):
        repo = JobRepository()
        job = repo.save(ConversionJob(id=repo.next_id(), document_id=7))
        job.status = JobStatus.FAILED
        assert repo.get(job.id).status == JobStatus.PENDING
        assert repo.delete(job.id) is True
        assert repo.delete(job.id) is False
        assert repo.get(job.id) is None

    def test_list_by_status_is_ordered_by_id(self):
        repo = JobRepository()
        for status in (JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.COMPLETED):
            repo.save(ConversionJob(id=repo.next_id(), document_id=1, status=status))
        assert [j.id for j in repo.list_by_status(JobStatus.COMPLETED)] == [1, 3]
        assert [j.id for j in repo.list_all()] == [1, 2, 3]


def _sync(job_id: int, start: float, custom: bool = False, page: int = 1) -> AudioSync:
    return AudioSync(
        page_number=page,
        block_id=f"p{page}-t1",
        start_time=start,
        end_time=start + 1.0,
        job_id=job_id,
        is_custom_segment=custom,
    )


class TestAudioSyncRepository:
    def test_save_assigns_ids(self):
        repo = AudioSyncRepository()
        saved = [repo.save(_sync(1, 0.0)), repo.save(_sync(1, 1.0))]
        assert [s.id for s in saved] == [1, 2]

    def test_list_for_job_is_sorted_by_time(self):
        repo = AudioSyncRepository()
        repo.save(_sync(1, 5.0))
        repo.save(_sync(2, 0.0))
        repo.save(_sync(1, 2.0, page=2))
        assert [s.start_time for s in repo.list_for_job(1)] == [2.0, 5.0]

    def test_replace_generated_keeps_custom_segments(self):
        repo = AudioSyncRepository()
        repo.save(_sync(1, 0.0))
        custom = repo.save(_sync(1, 3.0, custom=True))
        repo.save(_sync(2, 0.0))

        repo.replace_generated(1, [_sync(1, 10.0)])

        remaining = repo.list_for_job(1)
        assert [s.start_time for s in remaining] == [3.0, 10.0]
        assert custom.id in {s.id for s in remaining}
        assert len(repo.list_for_job(2)) == 1

    def test_delete_for_job_returns_count(self):
        repo = AudioSyncRepository()
        repo.save(_sync(1, 0.0))
        repo.save(_sync(1, 1.0, custom=True))
        repo.save(_sync(2, 0.0))
        assert repo.delete_for_job(1) == 2
        assert repo.list_for_job(1) == []
        assert repo.delete_for_job(1) == 0
