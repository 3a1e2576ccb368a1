import html
import re
import unicodedata

_TAG_RE = re.compile(r"<[^>]*>")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """Lowercase ASCII slug: diacritics folded, other runs collapsed to '-'."""
    text = text.lower().replace("đ", "d")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _NON_ALNUM_RE.sub("-", text).strip("-")


def sanitize(text: str) -> str:
    """Strip HTML tags, escape what is left and trim."""
    if not text:
        return ""
    return html.escape(_TAG_RE.sub("", text), quote=True).strip()


LIKE_ESCAPE = "\\"


def like_pattern(term: str) -> str:
    """``%term%`` with LIKE wildcards in ``term`` escaped by ``LIKE_ESCAPE``."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
