"""Validation and versioned JSON encoding of ``DocumentStructure``.

The encoded form is a single JSON object carrying a ``schema_version``.
Downstream consumers that only need one section (pages, metadata, table of
contents) can decode just that section with the ``load_*`` helpers.
"""

from __future__ import annotations

import dataclasses

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from pdf_to_epub_converter.errors import StructureValidationError
from pdf_to_epub_converter.models import (
    DocumentMetadata,
    DocumentStructure,
    PageStructure,
    TocEntry,
)

SCHEMA_VERSION = 1


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_structure(structure: DocumentStructure) -> list[str]:
    """Check the structural invariants of a document.

    Args:
        structure: The document to check.

    Returns:
        A list of human-readable violations; empty when the structure is valid.
    """
    violations: list[str] = []
    violations.extend(_check_page_numbers(structure.pages))

    all_ids: set[str] = set()
    for page in structure.pages:
        page_ids: list[str] = [b.id for b in page.text_blocks]
        page_ids += [b.id for b in page.image_blocks]
        page_ids += [b.id for b in page.table_blocks]
        for block_id in page_ids:
            if block_id in all_ids:
                violations.append(f"Duplicate block id '{block_id}' on page {page.page_number}")
            all_ids.add(block_id)

        known = set(page_ids)
        for block_id in page.reading_order.block_ids:
            if block_id not in known:
                violations.append(
                    f"Reading order of page {page.page_number} references unknown block '{block_id}'"
                )

        for block in page.text_blocks:
            for name in ("words", "sentences", "phrases"):
                count = getattr(block, name[:-1] + "_count")
                if count != len(getattr(block, name)):
                    violations.append(
                        f"Block '{block.id}' has {name[:-1]}_count={count} "
                        f"but {len(getattr(block, name))} {name}"
                    )

    for semantic in structure.semantic_blocks:
        for block_id in semantic.related_block_ids:
            if block_id not in all_ids:
                violations.append(
                    f"Semantic block '{semantic.id}' references unknown block '{block_id}'"
                )

    return violations


def ensure_valid(structure: DocumentStructure) -> DocumentStructure:
    """Return *structure* unchanged or raise ``StructureValidationError``."""
    violations = validate_structure(structure)
    if violations:
        raise StructureValidationError(violations)
    return structure


def _check_page_numbers(pages: list[PageStructure]) -> list[str]:
    violations: list[str] = []
    seen: set[int] = set()
    previous: PageStructure | None = None
    for page in pages:
        if page.page_number < 1:
            violations.append(f"Page number {page.page_number} is not 1-based")
        if page.page_number in seen:
            violations.append(f"Duplicate page number {page.page_number}")
        seen.add(page.page_number)

        if previous is not None:
            if page.page_number < previous.page_number:
                violations.append(
                    f"Page {page.page_number} is out of order after page {previous.page_number}"
                )
            elif page.page_number > previous.page_number + 1:
                # A gap is only allowed next to a two-page spread.
                if not (previous.is_two_page_spread or page.is_two_page_spread):
                    violations.append(
                        f"Pages {previous.page_number + 1}-{page.page_number - 1} are missing"
                    )
        previous = page
    return violations


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

_STRUCTURE = TypeAdapter(DocumentStructure)


class _Section(BaseModel):
    """Envelope shared by the partial readers; unknown sections are ignored."""

    schema_version: int = SCHEMA_VERSION

    @field_validator("schema_version")
    @classmethod
    def _supported_version(cls, version: int) -> int:
        _check_version(version)
        return version


class _PagesSection(_Section):
    pages: list[PageStructure] = Field(default_factory=list)


class _MetadataSection(_Section):
    metadata: DocumentMetadata | None = None


class _TocSection(_Section):
    table_of_contents: list[TocEntry] = Field(default_factory=list)


def dumps_structure(structure: DocumentStructure, indent: int | None = None) -> str:
    """Serialize a structure to versioned JSON text."""
    stamped = dataclasses.replace(structure, schema_version=SCHEMA_VERSION)
    return _STRUCTURE.dump_json(stamped, indent=indent).decode("utf-8")


def loads_structure(text: str | bytes) -> DocumentStructure:
    """Decode a full structure from JSON text.

    Raises:
        ValueError: If the text is not a JSON object matching the structure
            model, or has an unsupported schema version. pydantic's
            ``ValidationError`` is a ``ValueError``.
    """
    structure = _STRUCTURE.validate_json(text)
    _check_version(structure.schema_version)
    return structure


def load_pages(text: str | bytes) -> list[PageStructure]:
    """Decode only the pages of an encoded structure."""
    return _PagesSection.model_validate_json(text).pages


def load_metadata(text: str | bytes) -> DocumentMetadata:
    """Decode only the metadata of an encoded structure."""
    return _MetadataSection.model_validate_json(text).metadata or DocumentMetadata()


def load_table_of_contents(text: str | bytes) -> list[TocEntry]:
    """Decode only the table of contents of an encoded structure."""
    return _TocSection.model_validate_json(text).table_of_contents


def _check_version(version: int) -> None:
    if version > SCHEMA_VERSION:
        raise ValueError(f"Unsupported structure schema version: {version}")
