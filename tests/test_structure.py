"""Tests for DocumentStructure validation and the versioned JSON codec."""

from __future__ import annotations

import json

import pytest

from pdf_to_epub_converter.errors import StructureValidationError
from pdf_to_epub_converter.models import (
    BlockType,
    BoundingBox,
    DocumentMetadata,
    DocumentStructure,
    ImageBlock,
    PageClassification,
    PageStructure,
    ReadingOrder,
    SemanticBlock,
    SemanticType,
    TextBlock,
    TocEntry,
)
from pdf_to_epub_converter.structure import (
    SCHEMA_VERSION,
    dumps_structure,
    ensure_valid,
    load_metadata,
    load_pages,
    load_table_of_contents,
    loads_structure,
    validate_structure,
)
from pdf_to_epub_converter.text_segmenter import apply_segmentation


def _make_block(block_id: str, text: str = "Some text here.", **kwargs) -> TextBlock:
    return apply_segmentation(TextBlock(id=block_id, text=text, **kwargs))


def _make_page(number: int, *block_ids: str, spread: bool = False) -> PageStructure:
    blocks = [_make_block(block_id) for block_id in block_ids]
    return PageStructure(
        page_number=number,
        text_blocks=blocks,
        reading_order=ReadingOrder(block_ids=list(block_ids)),
        is_two_page_spread=spread,
    )


def _make_structure() -> DocumentStructure:
    heading = _make_block(
        "p1-t1",
        "Chapter 1 Numbers",
        block_type=BlockType.HEADING,
        level=1,
        bbox=BoundingBox(72.0, 80.0, 300.0, 24.0, 1),
        font_size=24.0,
        is_bold=True,
    )
    body = _make_block("p1-t2", "Numbers count things. They also measure, compare and order.")
    image = ImageBlock(id="p1-img1", bbox=BoundingBox(72.0, 400.0, 200.0, 150.0, 1), alt_text="A number line")
    page1 = PageStructure(
        page_number=1,
        text_blocks=[heading, body],
        image_blocks=[image],
        reading_order=ReadingOrder(block_ids=["p1-t1", "p1-t2", "p1-img1"]),
        content_type=PageClassification.NATIVE_TEXT,
        width=612.0,
        height=792.0,
    )
    page2 = _make_page(2, "p2-t1")
    page2.is_scanned = True
    page2.ocr_confidence = 0.83
    return DocumentStructure(
        pages=[page1, page2],
        table_of_contents=[
            TocEntry(title="Chapter 1 Numbers", target_id="p1-t1", level=1,
                     children=[TocEntry(title="Counting", target_id="p2-t1", level=2)])
        ],
        metadata=DocumentMetadata(title="Arithmetic", authors=["A. Smith"], keywords=["math"]),
        semantic_blocks=[
            SemanticBlock(id="chapter-1", semantic_type=SemanticType.CHAPTER_BOUNDARY,
                          content="Chapter 1 Numbers", related_block_ids=["p1-t1"], confidence=0.85)
        ],
    )


class TestValidateStructure:
    def test_valid_structure_has_no_violations(self):
        assert validate_structure(_make_structure()) == []

    def test_empty_structure_is_valid(self):
        assert validate_structure(DocumentStructure()) == []

    def test_duplicate_page_numbers(self):
        structure = DocumentStructure(pages=[_make_page(1, "a"), _make_page(1, "b")])
        violations = validate_structure(structure)
        assert any("Duplicate page number 1" in v for v in violations)

    def test_page_numbers_start_at_one(self):
        violations = validate_structure(DocumentStructure(pages=[_make_page(0, "a")]))
        assert any("not 1-based" in v for v in violations)

    def test_missing_page_is_reported(self):
        structure = DocumentStructure(pages=[_make_page(1, "a"), _make_page(4, "b")])
        violations = validate_structure(structure)
        assert violations == ["Pages 2-3 are missing"]

    def test_gap_next_to_spread_is_allowed(self):
        structure = DocumentStructure(pages=[_make_page(1, "a", spread=True), _make_page(3, "b")])
        assert validate_structure(structure) == []

    def test_out_of_order_pages(self):
        structure = DocumentStructure(pages=[_make_page(2, "a"), _make_page(1, "b")])
        assert any("out of order" in v for v in validate_structure(structure))

    def test_unknown_reading_order_id(self):
        page = _make_page(1, "a")
        page.reading_order.block_ids.append("ghost")
        violations = validate_structure(DocumentStructure(pages=[page]))
        assert violations == ["Reading order of page 1 references unknown block 'ghost'"]

    def test_reading_order_cannot_reference_other_page(self):
        page1 = _make_page(1, "a")
        page2 = _make_page(2, "b")
        page1.reading_order.block_ids.append("b")
        violations = validate_structure(DocumentStructure(pages=[page1, page2]))
        assert any("unknown block 'b'" in v for v in violations)

    def test_duplicate_block_ids_across_pages(self):
        structure = DocumentStructure(pages=[_make_page(1, "a"), _make_page(2, "a")])
        assert any("Duplicate block id 'a'" in v for v in validate_structure(structure))

    def test_count_mismatch(self):
        page = _make_page(1, "a")
        page.text_blocks[0].word_count += 1
        violations = validate_structure(DocumentStructure(pages=[page]))
        assert len(violations) == 1
        assert "word_count" in violations[0]

    def test_semantic_block_unknown_reference(self):
        structure = _make_structure()
        structure.semantic_blocks[0].related_block_ids.append("missing")
        violations = validate_structure(structure)
        assert violations == ["Semantic block 'chapter-1' references unknown block 'missing'"]

    def test_semantic_block_may_reference_any_page(self):
        structure = _make_structure()
        structure.semantic_blocks[0].related_block_ids.append("p2-t1")
        assert validate_structure(structure) == []

    def test_ensure_valid_raises_with_violations(self):
        structure = DocumentStructure(pages=[_make_page(1, "a"), _make_page(1, "b")])
        with pytest.raises(StructureValidationError) as excinfo:
            ensure_valid(structure)
        assert excinfo.value.violations

    def test_ensure_valid_returns_structure(self):
        structure = _make_structure()
        assert ensure_valid(structure) is structure


class TestDocumentStructure:
    def test_iter_text_blocks_pairs_blocks_with_their_page(self):
        pairs = list(_make_structure().iter_text_blocks())
        assert [(page.page_number, block.id) for page, block in pairs] == [
            (1, "p1-t1"),
            (1, "p1-t2"),
            (2, "p2-t1"),
        ]

    def test_iter_text_blocks_of_empty_structure(self):
        assert list(DocumentStructure().iter_text_blocks()) == []


class TestStructureCodec:
    def test_round_trip_preserves_structure(self):
        structure = _make_structure()
        assert loads_structure(dumps_structure(structure)) == structure

    def test_encoded_form_is_versioned_json(self):
        data = json.loads(dumps_structure(_make_structure()))
        assert data["schema_version"] == SCHEMA_VERSION
        assert data["pages"][0]["text_blocks"][0]["block_type"] == "heading"
        assert data["pages"][0]["content_type"] == "native_text"

    def test_rejects_newer_schema(self):
        text = json.dumps({"schema_version": SCHEMA_VERSION + 1, "pages": []})
        with pytest.raises(ValueError, match="schema version"):
            loads_structure(text)

    def test_rejects_invalid_json(self):
        with pytest.raises(ValueError):
            loads_structure("{not json")

    def test_rejects_non_object(self):
        with pytest.raises(ValueError):
            loads_structure("[1, 2, 3]")

    def test_missing_fields_use_defaults(self):
        structure = loads_structure(json.dumps({"pages": [{"page_number": 1}]}))
        assert structure.pages[0].text_blocks == []
        assert structure.pages[0].reading_order == ReadingOrder()
        assert structure.metadata == DocumentMetadata()

    def test_unknown_fields_are_ignored(self):
        structure = loads_structure(json.dumps({"pages": [], "legacy_field": 1}))
        assert structure.pages == []

    def test_rejects_mistyped_fields(self):
        text = json.dumps({"pages": [{"page_number": "first"}]})
        with pytest.raises(ValueError, match="page_number"):
            loads_structure(text)

    def test_enums_are_decoded_from_values(self):
        structure = loads_structure(dumps_structure(_make_structure()))
        assert structure.pages[0].text_blocks[0].block_type is BlockType.HEADING


class TestPartialReads:
    def setup_method(self):
        self.text = dumps_structure(_make_structure())

    def test_load_pages(self):
        pages = load_pages(self.text)
        assert [p.page_number for p in pages] == [1, 2]
        assert pages[0].text_blocks[0].bbox == BoundingBox(72.0, 80.0, 300.0, 24.0, 1)
        assert pages[1].ocr_confidence == 0.83

    def test_load_metadata(self):
        assert load_metadata(self.text).title == "Arithmetic"

    def test_load_table_of_contents(self):
        toc = load_table_of_contents(self.text)
        assert toc[0].children[0].target_id == "p2-t1"

    def test_load_pages_ignores_other_sections(self):
        text = json.dumps({"pages": [{"page_number": 3}], "metadata": {"authors": "not a list"}})
        assert [p.page_number for p in load_pages(text)] == [3]

    def test_missing_metadata_reads_as_defaults(self):
        assert load_metadata(json.dumps({"metadata": None})) == DocumentMetadata()

    def test_partial_reads_check_version(self):
        text = json.dumps({"schema_version": 99})
        with pytest.raises(ValueError):
            load_metadata(text)
