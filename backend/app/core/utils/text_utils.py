# backend/app/core/utils/text_utils.py
import re
import unicodedata
from typing import List, Optional

_WHITESPACE_RE = re.compile(r"\s+")
_GRADE_PREFIX_RE = re.compile(r"^(lop|khoi)(?=\s|\d|$)\s*", re.IGNORECASE)
_UNSAFE_FILENAME_RE = re.compile(r"[^\w.\-]+", re.UNICODE)

# Letters that carry no combining mark under NFKD but should still fold.
_EXTRA_FOLDS = str.maketrans({"đ": "d", "Đ": "D"})


def strip_diacritics(value: Optional[str]) -> str:
    """
    Remove combining marks while keeping case and inner spacing.

    "Tiếng Việt" -> "Tieng Viet", "Đại số" -> "Dai so".
    """
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value.translate(_EXTRA_FOLDS))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return unicodedata.normalize("NFC", stripped)


def normalize_label(label: Optional[str]) -> str:
    """
    Canonical comparison key for a grade or subject label.

    Diacritics are removed, the result is case-folded, inner whitespace is
    collapsed and the ends are trimmed. The function is total (None gives "")
    and idempotent, and precomposed/decomposed inputs map to the same key:

        normalize_label("Lớp 6") == normalize_label("lop 6") == normalize_label("LỚP  6")
    """
    if not label:
        return ""
    folded = strip_diacritics(label).casefold()
    return _WHITESPACE_RE.sub(" ", folded).strip()


def bare_grade(label: Optional[str]) -> str:
    """Grade label without a leading "Lớp"/"lop" prefix ("Lớp 6" -> "6")."""
    text = _WHITESPACE_RE.sub(" ", unicodedata.normalize("NFC", label or "")).strip()
    if not text:
        return ""
    prefix = _GRADE_PREFIX_RE.match(strip_diacritics(text))
    if prefix:
        # Under NFC the stripped prefix has the same length as the original.
        text = text[prefix.end():].strip()
    return text


def _dedupe(candidates: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for candidate in candidates:
        key = normalize_label(candidate)
        if key and key not in seen:
            seen.add(key)
            ordered.append(candidate)
    return ordered


def grade_candidates(label: Optional[str]) -> List[str]:
    """
    Ordered folder-name candidates for a grade label.

    The first entry is the display name used when a folder has to be created.
    Candidates that normalize identically are only kept once.
    """
    grade = bare_grade(label)
    if not grade:
        return []
    return _dedupe([f"Lớp {grade}", f"lop {grade}", grade])


def subject_candidates(label: Optional[str]) -> List[str]:
    """Subject label followed by its diacritic-stripped literal form."""
    subject = _WHITESPACE_RE.sub(" ", unicodedata.normalize("NFC", label or "")).strip()
    if not subject:
        return []
    return _dedupe([subject, strip_diacritics(subject)])


def safe_filename(name: Optional[str], default: str = "file") -> str:
    """
    Filesystem-safe rendition of an untrusted, user-supplied file name.

    Directory components are dropped and whitespace becomes underscores.
    """
    base = (name or "").replace("\\", "/").rsplit("/", 1)[-1]
    base = _WHITESPACE_RE.sub("_", base.strip())
    base = _UNSAFE_FILENAME_RE.sub("", base).lstrip(".")
    return base[:200] or default


def make_snippet(content: Optional[str], length: int = 400) -> str:
    """Bounded excerpt of a text column for search results."""
    if not content:
        return ""
    return str(content)[:length]
