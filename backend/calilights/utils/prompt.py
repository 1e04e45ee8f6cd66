# backend/calilights/utils/prompt.py
"""
Aggregation of a mission's entries into generation inputs.

The chapter prompt is built from the circular mean of the entries' dominant
hues (named by its palette bucket) and up to six scene/object tags.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .color import circular_mean, hue_bucket

DEFAULT_HUE = 180.0
MAX_PROMPT_TAGS = 6
MAX_PALETTE = 5


@dataclass
class EntrySummary:
    """Aggregate attributes of a set of entries."""

    hues: List[float] = field(default_factory=list)
    scene_tags: List[str] = field(default_factory=list)
    object_tags: List[str] = field(default_factory=list)
    palette: List[str] = field(default_factory=list)
    media_urls: List[str] = field(default_factory=list)

    @property
    def mean_hue(self) -> Optional[float]:
        return circular_mean(self.hues)

    @property
    def tags(self) -> List[str]:
        """Scene and object tags, de-duplicated case-insensitively in first-seen order."""
        return _unique(self.scene_tags + self.object_tags)


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if not value:
            continue
        key = value.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(value.strip())
    return result


def aggregate_entries(entries: Iterable) -> EntrySummary:
    """Collect hues, tags, palette and media references from Entry rows."""
    summary = EntrySummary()
    palette: List[str] = []
    for entry in entries:
        if entry.dominant_hue is not None:
            summary.hues.append(float(entry.dominant_hue))
        summary.scene_tags.extend(entry.scene_tags or [])
        summary.object_tags.extend(entry.object_tags or [])
        palette.extend(entry.palette or [])
        if entry.media_url:
            summary.media_urls.append(entry.media_url)

    summary.scene_tags = _unique(summary.scene_tags)
    summary.object_tags = _unique(summary.object_tags)
    summary.palette = _unique(palette)[:MAX_PALETTE]
    return summary


def build_chapter_prompt(summary: EntrySummary, fallback_subject: str = "") -> str:
    hue = summary.mean_hue
    palette_word = hue_bucket(DEFAULT_HUE if hue is None else hue)
    subject = ", ".join(summary.tags[:MAX_PROMPT_TAGS]) or fallback_subject.strip() or "the moment"
    return (
        f"A {palette_word} dreamscape of {subject}. "
        "Cinematic chapter, soft film grain, handheld glow."
    )


def build_chapter_title(summary: EntrySummary, fallback: str) -> str:
    tags = summary.tags
    if not tags:
        return fallback[:255]
    return " & ".join(tag.title() for tag in tags[:2])[:255]
