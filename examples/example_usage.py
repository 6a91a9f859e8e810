#!/usr/bin/env python3
"""Example usage of the PDF-to-EPUB Converter library."""

from pdf_to_epub_converter.chapter_config import validate_chapters
from pdf_to_epub_converter.models import ConversionConfig, JobStatus
from pdf_to_epub_converter.orchestrator import ConversionOrchestrator
from pdf_to_epub_converter.repositories import DocumentRepository, JobRepository
from pdf_to_epub_converter.storage import LocalFileStorage


def convert_and_narrate(pdf_path: str, audio_path: str, workdir: str = ".pdf_to_epub") -> None:
    """Convert a textbook, detect its chapters and align narration to it."""
    storage = LocalFileStorage(workdir)
    with open(pdf_path, "rb") as f:
        storage.write_bytes("uploads/book.pdf", f.read())

    documents = DocumentRepository()
    record = documents.add("uploads/book.pdf", original_file_name=pdf_path)

    orchestrator = ConversionOrchestrator(
        documents,
        JobRepository(),
        storage,
        config=ConversionConfig(max_concurrent_jobs=2),
    )
    try:
        job = orchestrator.wait(orchestrator.start(record.id).id)

        # Print summary
        print(f"\nConversion Summary:")
        print(f"  Status: {job.status.value}")
        print(f"  Confidence: {job.confidence_score}")
        if job.status == JobStatus.REVIEW_REQUIRED:
            print(f"  Review: {job.review_reason}")
            orchestrator.mark_reviewed(job.id, reviewer="editor")
            job = orchestrator.wait(orchestrator.resume(job.id).id)
        if job.status != JobStatus.COMPLETED:
            print(f"  Error: {job.error_message}")
            return

        # Chapters
        detection = orchestrator.detect_chapters(job.id).result()
        structure = orchestrator.get_structure(job.id)
        report = validate_chapters(detection.chapters, len(structure.pages))
        print(f"\nChapters ({detection.method}, coverage {report.coverage:.1f}%):")
        for chapter in detection.chapters:
            print(f"  {chapter.start_page}-{chapter.end_page}: {chapter.title}")

        # Narration
        syncs = orchestrator.align_narration(job.id, audio_path).result()
        print(f"\nAligned {len(syncs)} narration segments")
        for sync in syncs[:5]:
            print(f"  [{sync.start_time:7.2f}-{sync.end_time:7.2f}] page {sync.page_number} {sync.block_id}")
    finally:
        orchestrator.shutdown()


def main():
    """Example usage."""
    print("Example: converting a textbook and aligning its narration...")
    # convert_and_narrate("textbook.pdf", "narration.mp3")

    print("\nUncomment the function call above and provide a PDF and an audio file to run.")


if __name__ == "__main__":
    main()
