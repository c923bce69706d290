# =============================================================================
# hanyu_sync/offline/lesson_keys.py
# Canonical Lesson Identity and Legacy Key Resolution
# =============================================================================
"""
Every lesson is identified internally by a LessonRef (chapter_no, lesson_no).

Installs in the wild carry several historical key shapes for the same lesson:

    101003        packed numeric id ("1" + chapter:02 + lesson:03)
    "101003"      the same id as a string (downloaded map, cache keys)
    "1_3"         composite progress key (lesson_progress.lesson_id, local maps)
    "Ch1_L3"      older composite used by the first lesson list screens

resolve_lesson_ref() turns any of them into a LessonRef; storage_keys() lists
every shape a flag map may hold for one lesson. Nothing outside this module
should parse or format lesson keys.
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

# Legacy packed layout: 1 CC LLL
_LEGACY_PREFIX = 1
_LEGACY_CHAPTER_MAX = 99
_LEGACY_LESSON_MAX = 999
_LEGACY_MIN = 100000
_LEGACY_MAX = 199999

# Wide layout for pairs that overflow the legacy widths: 2 CCCCC LLLLL
_WIDE_PREFIX = 2
_WIDE_FIELD = 100000
_WIDE_MAX_PART = 99999
_WIDE_MIN = _WIDE_PREFIX * _WIDE_FIELD * _WIDE_FIELD
_WIDE_MAX = _WIDE_MIN + _WIDE_FIELD * _WIDE_FIELD - 1

_COMPOSITE_RE = re.compile(r"^\s*(\d+)\s*[_-]\s*(\d+)\s*$")
_CH_L_RE = re.compile(r"^\s*ch\s*(\d+)\s*_\s*l\s*(\d+)\s*$", re.IGNORECASE)


@dataclass(frozen=True, order=True)
class LessonRef:
    """Canonical lesson identifier."""

    chapter_no: int
    lesson_no: int

    def __post_init__(self):
        if self.chapter_no < 0 or self.lesson_no < 0:
            raise ValueError(f"Negative lesson coordinates: {self.chapter_no}, {self.lesson_no}")
        if self.chapter_no > _WIDE_MAX_PART or self.lesson_no > _WIDE_MAX_PART:
            raise ValueError(
                f"Lesson coordinates above {_WIDE_MAX_PART}: {self.chapter_no}, {self.lesson_no}"
            )

    @property
    def packed_id(self) -> int:
        return pack_lesson_id(self.chapter_no, self.lesson_no)

    @property
    def progress_key(self) -> str:
        """Key used by lesson_progress.lesson_id and the local progress maps."""
        return f"{self.chapter_no}_{self.lesson_no}"

    @property
    def legacy_composite_key(self) -> str:
        return f"Ch{self.chapter_no}_L{self.lesson_no}"

    def storage_keys(self) -> List[str]:
        """All key shapes a local flag map may use for this lesson, canonical first."""
        return [str(self.packed_id), self.progress_key, self.legacy_composite_key]

    def to_filters(self) -> Dict[str, int]:
        """Equality filters for remote tables keyed by chapter_no/lesson_no."""
        return {"chapter_no": self.chapter_no, "lesson_no": self.lesson_no}

    def __str__(self) -> str:
        return self.progress_key


def pack_lesson_id(chapter_no: int, lesson_no: int) -> int:
    """
    Encode (chapter, lesson) as a stable integer.

    pack_lesson_id(1, 3) == 101003, pack_lesson_id(12, 7) == 112007.
    Pairs outside the legacy widths use a wide form in a disjoint range,
    so the mapping stays injective up to 99,999 for both parts.
    """
    chapter_no = int(chapter_no)
    lesson_no = int(lesson_no)
    if chapter_no < 0 or lesson_no < 0:
        raise ValueError(f"Negative lesson coordinates: {chapter_no}, {lesson_no}")

    if chapter_no <= _LEGACY_CHAPTER_MAX and lesson_no <= _LEGACY_LESSON_MAX:
        return int(f"{_LEGACY_PREFIX}{chapter_no:02d}{lesson_no:03d}")

    if chapter_no > _WIDE_MAX_PART or lesson_no > _WIDE_MAX_PART:
        raise ValueError(f"Lesson coordinates above {_WIDE_MAX_PART}: {chapter_no}, {lesson_no}")
    return _WIDE_MIN + chapter_no * _WIDE_FIELD + lesson_no


def unpack_lesson_id(packed: int) -> Tuple[int, int]:
    """Inverse of pack_lesson_id for ids it produced."""
    packed = int(packed)
    if _LEGACY_MIN <= packed <= _LEGACY_MAX:
        rest = packed - _LEGACY_MIN
        return rest // 1000, rest % 1000
    if _WIDE_MIN <= packed <= _WIDE_MAX:
        rest = packed - _WIDE_MIN
        return rest // _WIDE_FIELD, rest % _WIDE_FIELD
    raise ValueError(f"Not a packed lesson id: {packed}")


def is_packed_lesson_id(value: Any) -> bool:
    try:
        unpack_lesson_id(int(value))
        return True
    except (TypeError, ValueError):
        return False


def resolve_lesson_ref(value: Any, chapter_no: Optional[int] = None) -> LessonRef:
    """
    Normalize any historical lesson key to a LessonRef.

    Args:
        value: LessonRef, packed id (int or str), "ch_lesson", "ChX_LY",
               a (chapter, lesson) tuple, or a row dict with chapter_no/lesson_no
               (or lesson_id)
        chapter_no: Chapter to assume when value is a bare lesson number

    Raises:
        ValueError: if the value cannot be resolved unambiguously
    """
    if isinstance(value, LessonRef):
        return value

    if isinstance(value, Mapping):
        ch = value.get("chapter_no", value.get("chapterNo"))
        le = value.get("lesson_no", value.get("lessonNo"))
        if ch is not None and le is not None:
            return LessonRef(int(ch), int(le))
        if value.get("lesson_id") is not None:
            return resolve_lesson_ref(value["lesson_id"], chapter_no=ch if ch is not None else chapter_no)
        raise ValueError(f"Row does not identify a lesson: {dict(value)}")

    if isinstance(value, tuple) and len(value) == 2:
        return LessonRef(int(value[0]), int(value[1]))

    if isinstance(value, bool):
        raise ValueError(f"Not a lesson key: {value!r}")

    if isinstance(value, int):
        return _resolve_number(value, chapter_no)

    if isinstance(value, str):
        text = value.strip()
        match = _COMPOSITE_RE.match(text) or _CH_L_RE.match(text)
        if match:
            return LessonRef(int(match.group(1)), int(match.group(2)))
        if text.isdigit():
            return _resolve_number(int(text), chapter_no)

    raise ValueError(f"Not a lesson key: {value!r}")


def _resolve_number(number: int, chapter_no: Optional[int]) -> LessonRef:
    if is_packed_lesson_id(number):
        return LessonRef(*unpack_lesson_id(number))
    if chapter_no is not None:
        return LessonRef(int(chapter_no), number)
    raise ValueError(f"Bare lesson number {number} needs a chapter to resolve")


def try_resolve_lesson_ref(value: Any, chapter_no: Optional[int] = None) -> Optional[LessonRef]:
    try:
        return resolve_lesson_ref(value, chapter_no=chapter_no)
    except (TypeError, ValueError):
        return None


# =============================================================================
# FLAG MAP COMPATIBILITY ADAPTER
# =============================================================================

def lookup_flag(flags: Mapping[str, Any], ref: LessonRef, include_bare_lesson: bool = False) -> bool:
    """
    True if any historical key for ref is set in a local flag map.

    Args:
        flags: Map such as lesson.completed.v1 or downloaded.lessons.v1
        ref: Lesson to look up
        include_bare_lesson: Also accept the bare lesson number (old downloaded maps)
    """
    keys = ref.storage_keys()
    if include_bare_lesson:
        keys.append(str(ref.lesson_no))
    return any(bool(flags.get(k)) for k in keys)


def normalize_flag_map(flags: Mapping[str, Any]) -> Dict[LessonRef, bool]:
    """
    Fold a flag map with mixed key shapes into {LessonRef: bool}.

    A lesson is flagged if any of its keys is truthy. Keys that cannot be
    resolved (bare lesson numbers) are skipped.
    """
    result: Dict[LessonRef, bool] = {}
    for key, flag in flags.items():
        ref = try_resolve_lesson_ref(key)
        if ref is None:
            continue
        result[ref] = result.get(ref, False) or bool(flag)
    return result


def set_flag(flags: Dict[str, Any], ref: LessonRef, value: bool = True, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Write value under the given key shapes (default: progress key) and return the map."""
    for key in keys or [ref.progress_key]:
        flags[key] = value
    return flags
