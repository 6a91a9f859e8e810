"""Word, sentence and phrase segmentation of text blocks."""

from __future__ import annotations

import re

from pdf_to_epub_converter.models import TextBlock

_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")
_PHRASE_SPLIT_RE = re.compile(r"[,;:–—]+\s*|\s+-\s+")
_WORD_RE = re.compile(r"\w+(?:['’]\w+)*")


def split_sentences(text: str) -> list[str]:
    """Split text into sentences, keeping terminal punctuation."""
    sentences: list[str] = []
    for match in _SENTENCE_RE.finditer(text):
        sentence = " ".join(match.group(0).split())
        if sentence and any(ch.isalnum() for ch in sentence):
            sentences.append(sentence)
    return sentences


def split_phrases(text: str) -> list[str]:
    """Split text into phrases at clause punctuation and sentence ends."""
    phrases: list[str] = []
    for sentence in split_sentences(text):
        for part in _PHRASE_SPLIT_RE.split(sentence):
            part = part.strip()
            if part and any(ch.isalnum() for ch in part):
                phrases.append(part)
    return phrases


def split_words(text: str) -> list[str]:
    """Return the words of *text*, ignoring punctuation."""
    return _WORD_RE.findall(text)


def count_tokens(text: str) -> int:
    """Count whitespace-separated tokens, the unit narration timings use."""
    return len(text.split())


def apply_segmentation(block: TextBlock) -> TextBlock:
    """Recompute a block's segmentations and their counts in place."""
    block.words = split_words(block.text)
    block.sentences = split_sentences(block.text)
    block.phrases = split_phrases(block.text)
    block.word_count = len(block.words)
    block.sentence_count = len(block.sentences)
    block.phrase_count = len(block.phrases)
    return block
