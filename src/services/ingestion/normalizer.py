"""Normalizer -- turns raw source content into :class:`SchemeDraft` objects.

Each source descriptor carries a :class:`ParserKind` tag and
:func:`normalize` dispatches on it to a pure parse function.  Supporting a
new site structure means adding a tag and a function to ``_PARSERS``.

Parsers
-------
``json_feed``
    A JSON array of scheme objects, or an object wrapping one under
    ``schemes`` / ``data`` / ``items``.  Keys are accepted in camelCase or
    snake_case.
``rss``
    RSS 2.0 / Atom feeds (parsed with feedparser); one draft per entry.
``html_page``
    A single scheme page; the title comes from ``<h1>`` or ``<title>``.
``next_data``
    Next.js pages (MyScheme.gov.in) embedding their props in a
    ``__NEXT_DATA__`` script block.

All text is normalised the same way (tags stripped, entities unescaped,
Unicode NFC, whitespace collapsed) so cosmetic markup changes do not
alter the fingerprint.
"""

from __future__ import annotations

import io
import re
import unicodedata
from collections.abc import Callable, Mapping
from html import unescape
from typing import Any, Final
from urllib.parse import urljoin

import feedparser
import orjson
import structlog
from pydantic import ValidationError

from src.models.enums import Gender, GovernmentLevel, ParserKind
from src.models.scheme import SchemeDraft
from src.models.source import SourceDescriptor
from src.services.errors import ParseError
from src.services.ingestion.change_detector import canonical_url

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_TAG_RE = re.compile(r"</?(?:p|div|br|li|h[1-6]|tr|section|article)[^>]*>", re.IGNORECASE)
_SCRIPT_STYLE_RE = re.compile(r"<(script|style|noscript)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_WS_RE = re.compile(r"\s+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_AGE_RANGE_RE = re.compile(
    r"(?:aged?|between|from)?\s*(\d{1,2})\s*(?:-|–|to)\s*(\d{1,2})\s*(?:years|yrs)",
    re.IGNORECASE,
)
_NEXT_DATA_RE = re.compile(
    r'<script\s+id="__NEXT_DATA__"\s+type="application/json">\s*(.*?)\s*</script>',
    re.DOTALL,
)
_H1_RE = re.compile(r"<h1[^>]*>(.*?)</h1>", re.IGNORECASE | re.DOTALL)
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_CONTENT_RES = tuple(
    re.compile(rf"<{tag}[^>]*>(.*?)</{tag}>", re.IGNORECASE | re.DOTALL) for tag in ("main", "article", "body")
)
_PARAGRAPH_RE = re.compile(r"<p[^>]*>(.*?)</p>", re.IGNORECASE | re.DOTALL)

_GENDER_SYNONYMS: Final[dict[str, Gender]] = {
    "male": Gender.MALE,
    "m": Gender.MALE,
    "boy": Gender.MALE,
    "boys": Gender.MALE,
    "female": Gender.FEMALE,
    "f": Gender.FEMALE,
    "girl": Gender.FEMALE,
    "girls": Gender.FEMALE,
    "girl child": Gender.FEMALE,
    "woman": Gender.FEMALE,
    "women": Gender.FEMALE,
    "all": Gender.ALL,
    "any": Gender.ALL,
    "both": Gender.ALL,
    "everyone": Gender.ALL,
}

_LEVEL_SYNONYMS: Final[dict[str, GovernmentLevel]] = {
    "central": GovernmentLevel.CENTRAL,
    "centre": GovernmentLevel.CENTRAL,
    "national": GovernmentLevel.CENTRAL,
    "union": GovernmentLevel.CENTRAL,
    "state": GovernmentLevel.STATE,
    "district": GovernmentLevel.DISTRICT,
    "local": GovernmentLevel.LOCAL,
    "panchayat": GovernmentLevel.LOCAL,
    "municipal": GovernmentLevel.LOCAL,
}


def clean_text(value: object) -> str:
    """Strip markup and normalise whitespace and Unicode form."""
    if value is None:
        return ""
    if isinstance(value, list):
        value = " ".join(str(v) for v in value if v)
    text = _SCRIPT_STYLE_RE.sub(" ", str(value))
    text = _BLOCK_TAG_RE.sub(" ", text)
    text = unescape(_TAG_RE.sub("", text))
    text = unicodedata.normalize("NFC", text)
    return _WS_RE.sub(" ", text).strip()


def _slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.lower()).strip("-") or "scheme"


def parse_gender(value: object) -> Gender:
    if value is None:
        return Gender.ALL
    if isinstance(value, list):
        genders = {parse_gender(v) for v in value}
        return genders.pop() if len(genders) == 1 else Gender.ALL
    return _GENDER_SYNONYMS.get(str(value).strip().lower(), Gender.ALL)


def parse_level(value: object, default: GovernmentLevel | None = None) -> GovernmentLevel | None:
    if value is None:
        return default
    return _LEVEL_SYNONYMS.get(str(value).strip().lower(), default)


def parse_age(value: object) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return int(value)
    match = re.search(r"-?\d+", str(value))
    return int(match.group()) if match else None


def infer_age_range(text: str) -> tuple[int | None, int | None]:
    """Find an ``N-M years`` phrase in free text, e.g. "children aged 0-6 years"."""
    match = _AGE_RANGE_RE.search(text)
    if match is None:
        return None, None
    low, high = int(match.group(1)), int(match.group(2))
    return (low, high) if low <= high else (None, None)


def infer_gender(text: str) -> Gender:
    lowered = text.lower()
    mentions_girls = "girl child" in lowered or re.search(r"\bgirls?\b", lowered) is not None
    mentions_boys = re.search(r"\bboys?\b", lowered) is not None
    if mentions_girls and not mentions_boys:
        return Gender.FEMALE
    if mentions_boys and not mentions_girls:
        return Gender.MALE
    return Gender.ALL


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, "", []):
            return value
    return None


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _draft_from_mapping(item: Mapping[str, Any], source: SourceDescriptor) -> SchemeDraft:
    title = clean_text(_first(item, "title", "name", "schemeName"))
    description = clean_text(_first(item, "description", "summary", "briefDescription"))
    full_text = clean_text(_first(item, "fullText", "full_text", "details", "content")) or None

    raw_url = _first(item, "sourceUrl", "source_url", "url", "link")
    if raw_url:
        source_url = urljoin(source.url, str(raw_url).strip())
    else:
        # Several schemes may share one listing page; anchor by title.
        source_url = f"{source.url}#{_slugify(title)}"

    eligibility = item.get("eligibility") if isinstance(item.get("eligibility"), Mapping) else {}
    age_min = parse_age(_first(item, "ageMin", "age_min", "minAge", "min_age"))
    age_max = parse_age(_first(item, "ageMax", "age_max", "maxAge", "max_age"))
    if age_min is None:
        age_min = parse_age(_first(eligibility, "minAge", "min_age"))
    if age_max is None:
        age_max = parse_age(_first(eligibility, "maxAge", "max_age"))

    gender_raw = _first(item, "gender")
    if gender_raw is None:
        gender_raw = _first(eligibility, "gender")

    return SchemeDraft(
        title=title,
        description=description,
        full_text=full_text,
        source_url=source_url,
        age_min=age_min,
        age_max=age_max,
        gender=parse_gender(gender_raw),
        government_level=parse_level(
            _first(item, "governmentLevel", "government_level", "level"),
            source.government_level,
        ),
    )


def parse_json_feed(text: str, source: SourceDescriptor) -> list[SchemeDraft]:
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON from {source.url}: {exc}", source_key=source.key) from exc

    if isinstance(payload, dict):
        items = _first(payload, "schemes", "data", "items")
        if items is None and any(k in payload for k in ("schemes", "data", "items")):
            items = []
    else:
        items = payload
    if not isinstance(items, list):
        raise ParseError(f"No scheme list found in JSON from {source.url}", source_key=source.key)

    drafts: list[SchemeDraft] = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            logger.warning("normalizer.item_not_object", source=source.key, index=index)
            continue
        try:
            drafts.append(_draft_from_mapping(item, source))
        except ValidationError as exc:
            logger.warning(
                "normalizer.item_invalid",
                source=source.key,
                index=index,
                errors=exc.error_count(),
            )

    if items and not drafts:
        raise ParseError(f"None of {len(items)} items from {source.url} were valid", source_key=source.key)
    return drafts


def parse_rss(text: str, source: SourceDescriptor) -> list[SchemeDraft]:
    # A file-like object stops feedparser from treating the text as a path or URL.
    feed = feedparser.parse(io.BytesIO(text.encode("utf-8")))
    if feed.bozo and not feed.entries:
        raise ParseError(
            f"Unreadable feed from {source.url}: {feed.get('bozo_exception')}",
            source_key=source.key,
        )
    if not feed.entries and not feed.get("feed"):
        raise ParseError(f"No feed structure in {source.url}", source_key=source.key)

    drafts: list[SchemeDraft] = []
    for entry in feed.entries:
        title = clean_text(entry.get("title"))
        description = clean_text(entry.get("summary") or entry.get("description"))
        contents = entry.get("content") or []
        full_text = clean_text(contents[0].get("value")) if contents else ""
        link = entry.get("link")
        source_url = urljoin(source.url, link) if link else f"{source.url}#{_slugify(title)}"
        age_min, age_max = infer_age_range(f"{title} {description} {full_text}")
        try:
            drafts.append(
                SchemeDraft(
                    title=title,
                    description=description,
                    full_text=full_text or None,
                    source_url=source_url,
                    age_min=age_min,
                    age_max=age_max,
                    gender=infer_gender(f"{title} {description}"),
                    government_level=source.government_level,
                )
            )
        except ValidationError:
            logger.warning("normalizer.entry_invalid", source=source.key, link=link)

    if feed.entries and not drafts:
        raise ParseError(f"No valid entries in feed {source.url}", source_key=source.key)
    return drafts


def parse_html_page(text: str, source: SourceDescriptor) -> list[SchemeDraft]:
    heading = _H1_RE.search(text) or _TITLE_RE.search(text)
    title = clean_text(heading.group(1)) if heading else ""
    if not title:
        raise ParseError(f"No <h1> or <title> in {source.url}", source_key=source.key)

    body_html = text
    for pattern in _CONTENT_RES:
        match = pattern.search(text)
        if match:
            body_html = match.group(1)
            break
    paragraph = _PARAGRAPH_RE.search(body_html)
    description = clean_text(paragraph.group(1)) if paragraph else ""
    full_text = clean_text(body_html)

    age_min, age_max = infer_age_range(full_text)
    try:
        return [
            SchemeDraft(
                title=title,
                description=description,
                full_text=full_text or None,
                source_url=source.url,
                age_min=age_min,
                age_max=age_max,
                gender=infer_gender(f"{title} {description}"),
                government_level=source.government_level,
            )
        ]
    except ValidationError as exc:
        raise ParseError(f"Invalid scheme page {source.url}: {exc}", source_key=source.key) from exc


def parse_next_data(text: str, source: SourceDescriptor) -> list[SchemeDraft]:
    match = _NEXT_DATA_RE.search(text)
    if match is None:
        raise ParseError(f"No __NEXT_DATA__ block in {source.url}", source_key=source.key)
    try:
        next_data = orjson.loads(match.group(1))
    except orjson.JSONDecodeError as exc:
        raise ParseError(f"Malformed __NEXT_DATA__ in {source.url}", source_key=source.key) from exc

    page_props = next_data.get("props", {}).get("pageProps", {}) if isinstance(next_data, dict) else {}
    scheme_data = page_props.get("schemeData") or page_props.get("data")
    if isinstance(scheme_data, list) and scheme_data:
        scheme_data = scheme_data[0]
    if not isinstance(scheme_data, Mapping):
        raise ParseError(f"No scheme data in page props of {source.url}", source_key=source.key)

    item = dict(scheme_data)
    item.setdefault("sourceUrl", source.url)
    if not item.get("fullText"):
        item["fullText"] = " ".join(
            clean_text(scheme_data.get(key)) for key in ("benefits", "applicationProcess") if scheme_data.get(key)
        )
    try:
        return [_draft_from_mapping(item, source)]
    except ValidationError as exc:
        raise ParseError(f"Invalid scheme data in {source.url}: {exc}", source_key=source.key) from exc


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

_PARSERS: Final[dict[ParserKind, Callable[[str, SourceDescriptor], list[SchemeDraft]]]] = {
    ParserKind.JSON_FEED: parse_json_feed,
    ParserKind.RSS: parse_rss,
    ParserKind.HTML_PAGE: parse_html_page,
    ParserKind.NEXT_DATA: parse_next_data,
}


def normalize(content: str, source: SourceDescriptor) -> list[SchemeDraft]:
    """Parse *content* fetched from *source* into zero or more drafts.

    Drafts whose URLs canonicalise to the same address would collide on
    the same id, so only the first one is kept.

    Raises
    ------
    ParseError
        If the content does not have the structure the source's parser expects.
    """
    parser = _PARSERS.get(source.parser)
    if parser is None:
        raise ParseError(f"No parser registered for kind {source.parser!r}", source_key=source.key)

    drafts = parser(content, source)
    seen: set[str] = set()
    unique: list[SchemeDraft] = []
    for draft in drafts:
        key = canonical_url(draft.source_url)
        if key in seen:
            logger.warning("normalizer.duplicate_source_url", source=source.key, url=draft.source_url)
            continue
        seen.add(key)
        unique.append(draft)
    return unique
