"""Ordered descriptors of the nine conversion stages."""

from __future__ import annotations

from dataclasses import dataclass

from pdf_to_epub_converter.models import ConversionStep


@dataclass(frozen=True)
class StageDescriptor:
    """A pipeline stage and the confidence below which it asks for review."""

    step: ConversionStep
    label: str
    review_threshold: float | None = None


PIPELINE: tuple[StageDescriptor, ...] = (
    StageDescriptor(ConversionStep.CLASSIFICATION, "Classification"),
    StageDescriptor(ConversionStep.TEXT_EXTRACTION, "Text Extraction", review_threshold=0.6),
    StageDescriptor(ConversionStep.LAYOUT_ANALYSIS, "Layout Analysis"),
    StageDescriptor(ConversionStep.SEMANTIC_STRUCTURING, "Semantic Structuring"),
    StageDescriptor(ConversionStep.ACCESSIBILITY, "Accessibility"),
    StageDescriptor(ConversionStep.CONTENT_CLEANUP, "Content Cleanup"),
    StageDescriptor(ConversionStep.SPECIAL_CONTENT, "Special Content"),
    StageDescriptor(ConversionStep.EPUB_GENERATION, "EPUB Generation"),
    StageDescriptor(ConversionStep.QA_REVIEW, "QA Review", review_threshold=0.7),
)


def first_stage() -> StageDescriptor:
    return PIPELINE[0]


def stage_index(step: ConversionStep) -> int:
    """Return the 0-based position of *step* in the pipeline."""
    for index, descriptor in enumerate(PIPELINE):
        if descriptor.step == step:
            return index
    raise ValueError(f"Unknown conversion step: {step}")


def descriptor_for(step: ConversionStep | None) -> StageDescriptor:
    """Return the descriptor for *step*; ``None`` means the first stage."""
    if step is None:
        return first_stage()
    return PIPELINE[stage_index(step)]


def next_stage(step: ConversionStep) -> StageDescriptor | None:
    """Return the stage after *step*, or ``None`` if *step* is the last one."""
    index = stage_index(step) + 1
    if index >= len(PIPELINE):
        return None
    return PIPELINE[index]


def is_last_stage(step: ConversionStep) -> bool:
    return stage_index(step) == len(PIPELINE) - 1


def progress_after(step: ConversionStep) -> int:
    """Progress percentage once *step* has completed."""
    completed = stage_index(step) + 1
    return round(100 * completed / len(PIPELINE))
