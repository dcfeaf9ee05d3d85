"""Identifier normalization and payload → record mapping."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, Mapping, Pattern

from ..config.models import VariantLabel
from ..models import CanonicalRecord, DetailRecord, DetailStatus, HitSource, RecordKind, VariantHit

SCHOLAR_PREFIX = "scholar:"
DOI_PREFIX = "doi:"

_SEPARATORS = re.compile(r"[\s,\-./]+")
_LOCALE_SUFFIX = re.compile(r"/[a-z]{2}(?:-[a-z]{2})?/?$", re.IGNORECASE)
_PATENT_SHAPE = re.compile(r"^[A-Z]{2}[0-9A-Z]*[0-9][0-9A-Z]*$")
_YEAR = re.compile(r"\b(1[89]\d{2}|20\d{2})\b")


def _canonical_patent(value: str) -> str:
    value = _LOCALE_SUFFIX.sub("", value.strip())
    compact = _SEPARATORS.sub("", value).upper()
    if not compact:
        raise ValueError("empty patent identifier")
    if not _PATENT_SHAPE.match(compact):
        raise ValueError(f"not a publication number: {value!r}")
    return compact


def _canonical_scholar(value: str) -> str:
    compact = value.strip().strip("/").casefold()
    if not compact:
        raise ValueError("empty scholar identifier")
    return f"{SCHOLAR_PREFIX}{compact}"


def _canonical_doi(value: str) -> str:
    compact = "".join(value.split()).casefold()
    if not compact:
        raise ValueError("empty DOI")
    return f"{DOI_PREFIX}{compact}"


# Known identifier shapes, tried in order. Each pattern exposes an ``id``
# group that is handed to the canonicaliser of the matching family.
IDENTIFIER_FORMATS: tuple[tuple[str, Pattern[str], Callable[[str], str]], ...] = (
    (
        "doi_url",
        re.compile(r"^https?://(?:dx\.)?doi\.org/(?P<id>10\..+)$", re.IGNORECASE),
        _canonical_doi,
    ),
    ("doi_prefix", re.compile(r"^doi:\s*(?P<id>.+)$", re.IGNORECASE), _canonical_doi),
    ("bare_doi", re.compile(r"^(?P<id>10\.\d{4,9}/\S+)$"), _canonical_doi),
    (
        "scholar_url",
        re.compile(r"^https?://scholar\.google\.[a-z.]+/.*[?&]cluster=(?P<id>[^&#]+)", re.IGNORECASE),
        _canonical_scholar,
    ),
    ("scholar_prefix", re.compile(r"^scholar[:/]\s*(?P<id>.+)$", re.IGNORECASE), _canonical_scholar),
    (
        "google_patents_url",
        re.compile(
            r"^https?://patents\.google\.com/patent/(?P<id>[^/?#]+)(?:/[a-z]{2}(?:-[a-z]{2})?)?/?(?:[?#].*)?$",
            re.IGNORECASE,
        ),
        _canonical_patent,
    ),
    (
        "patent_path",
        re.compile(r"^/?patent/(?P<id>[^/]+)(?:/[a-z]{2}(?:-[a-z]{2})?)?/?$", re.IGNORECASE),
        _canonical_patent,
    ),
    (
        "publication_number",
        re.compile(r"^(?P<id>[A-Za-z]{2}[\s\-,./0-9A-Za-z]+)$"),
        _canonical_patent,
    ),
)


def normalize_identifier(raw: str) -> str:
    """Collapse any known provider spelling of a document id into its canonical key.

    Patents become upper-case publication numbers without separators or
    locale suffixes (``patent/US-10,123,456-B2/en`` → ``US10123456B2``).
    Scholarly ids become ``scholar:<id>`` and DOIs ``doi:<doi>``, both
    case-folded. The function is idempotent.
    """

    if raw is None:
        raise ValueError("identifier is required")
    text = str(raw).strip()
    if not text:
        raise ValueError("identifier is required")
    for _name, pattern, canonicalise in IDENTIFIER_FORMATS:
        match = pattern.match(text)
        if match:
            return canonicalise(match.group("id"))
    raise ValueError(f"unrecognised identifier: {raw!r}")


def identifier_kind(record_id: str) -> RecordKind:
    if record_id.startswith((SCHOLAR_PREFIX, DOI_PREFIX)):
        return RecordKind.SCHOLAR
    return RecordKind.PATENT


def looks_like_patent(record_id: str) -> bool:
    return bool(_PATENT_SHAPE.match(record_id))


def provider_detail_id(record_id: str, locale: str = "en") -> str:
    """Identifier form expected by the patent detail endpoint."""

    return f"patent/{record_id}/{locale}"


def normalize_date(value: Any) -> str | None:
    """Return an ISO ``YYYY-MM-DD`` string for loosely formatted dates."""

    if value in (None, ""):
        return None
    if isinstance(value, int):
        return f"{value:04d}-01-01" if 1800 <= value <= 2100 else None
    text = str(value).strip()
    digits = re.sub(r"[^0-9]", "", text[:10])
    try:
        if len(digits) >= 8:
            return date(int(digits[:4]), int(digits[4:6]), int(digits[6:8])).isoformat()
        if len(digits) == 6:
            return date(int(digits[:4]), int(digits[4:6]), 1).isoformat()
    except ValueError:
        return None
    match = _YEAR.search(text)
    if match:
        return f"{match.group(1)}-01-01"
    return None


def _split_names(value: Any) -> tuple[str, ...]:
    if value in (None, ""):
        return ()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",") if ";" not in value else value.split(";")
    elif isinstance(value, Mapping):
        items = [value.get("name")]
    else:
        items = value
    names: dict[str, None] = {}
    for item in items:
        if isinstance(item, Mapping):
            item = item.get("name") or item.get("title")
        text = str(item or "").strip()
        if text:
            names.setdefault(text, None)
    return tuple(names)


def _codes(values: Any) -> tuple[str, ...]:
    codes: dict[str, None] = {}
    for item in values or ():
        code = item.get("code") if isinstance(item, Mapping) else item
        text = str(code or "").replace(" ", "").upper()
        if text:
            codes.setdefault(text, None)
    return tuple(codes)


# ----------------------------------------------------------------------
# Search pages
# ----------------------------------------------------------------------
@dataclass(slots=True)
class NormalizedPage:
    records: list[CanonicalRecord] = field(default_factory=list)
    hits: list[VariantHit] = field(default_factory=list)
    skipped: int = 0


def _patent_item_id(item: Mapping[str, Any]) -> str | None:
    for key in ("patent_id", "publication_number", "id", "link"):
        value = item.get(key)
        if value:
            return normalize_identifier(str(value))
    return None


def _scholar_item_id(item: Mapping[str, Any]) -> str | None:
    result_id = item.get("result_id")
    if result_id:
        return normalize_identifier(f"{SCHOLAR_PREFIX}{result_id}")
    doi = item.get("doi")
    if doi:
        return normalize_identifier(f"{DOI_PREFIX}{doi}")
    return None


def _patent_record(record_id: str, item: Mapping[str, Any], seen_at: str) -> CanonicalRecord:
    return CanonicalRecord(
        record_id=record_id,
        kind=RecordKind.PATENT,
        title=str(item.get("title") or "").strip(),
        abstract=str(item.get("abstract") or "").strip(),
        language=str(item.get("language") or "").strip(),
        publication_date=normalize_date(item.get("publication_date")),
        priority_date=normalize_date(item.get("priority_date")),
        filing_date=normalize_date(item.get("filing_date")),
        grant_date=normalize_date(item.get("grant_date")),
        assignees=_split_names(item.get("assignee") or item.get("assignees")),
        inventors=_split_names(item.get("inventor") or item.get("inventors")),
        cpc_codes=_codes(item.get("cpc_codes")),
        link=str(item.get("link") or item.get("patent_link") or ""),
        pdf_link=str(item.get("pdf") or ""),
        extras={
            key: item[key]
            for key in ("publication_number", "country_status", "thumbnail")
            if item.get(key)
        },
        first_seen=seen_at,
        last_seen=seen_at,
    )


def _scholar_record(record_id: str, item: Mapping[str, Any], seen_at: str) -> CanonicalRecord:
    info = item.get("publication_info") or {}
    summary = str(info.get("summary") or item.get("publication") or "")
    year = item.get("year")
    if year is None:
        match = _YEAR.search(summary)
        year = int(match.group(1)) if match else None
    pdf_link = item.get("pdf_link") or ""
    for resource in item.get("resources") or ():
        if str(resource.get("file_format", "")).upper() == "PDF" and resource.get("link"):
            pdf_link = pdf_link or resource["link"]
    cited_by = (item.get("inline_links") or {}).get("cited_by") or {}
    venue = summary.split(" - ")[1].strip() if summary.count(" - ") >= 1 else summary
    return CanonicalRecord(
        record_id=record_id,
        kind=RecordKind.SCHOLAR,
        title=str(item.get("title") or "").strip(),
        abstract=str(item.get("abstract") or "").strip(),
        publication_date=normalize_date(int(year)) if year else None,
        inventors=_split_names(info.get("authors") or item.get("authors")),
        link=str(item.get("link") or ""),
        pdf_link=str(pdf_link),
        venue=venue,
        extras={
            key: value
            for key, value in (
                ("doi", item.get("doi")),
                ("cited_by", cited_by.get("total", item.get("cited_by"))),
                ("result_id", item.get("result_id")),
            )
            if value not in (None, "")
        },
        first_seen=seen_at,
        last_seen=seen_at,
    )


def normalize_page(
    payload: Mapping[str, Any],
    *,
    run_id: str,
    label: VariantLabel,
    kind: RecordKind,
    source: HitSource,
    seen_at: str,
    rank_offset: int = 0,
) -> NormalizedPage:
    """Map one raw page into record upserts and hits ranked in page order.

    Items without a usable identifier and repeats of an id already present
    on the page are skipped without consuming a rank.
    """

    page = NormalizedPage()
    seen: set[str] = set()
    for item in payload.get("organic_results") or ():
        if not isinstance(item, Mapping):
            page.skipped += 1
            continue
        try:
            if kind is RecordKind.SCHOLAR:
                record_id = _scholar_item_id(item)
            else:
                record_id = _patent_item_id(item)
        except ValueError:
            record_id = None
        if not record_id or record_id in seen:
            page.skipped += 1
            continue
        seen.add(record_id)
        if kind is RecordKind.SCHOLAR:
            record = _scholar_record(record_id, item, seen_at)
        else:
            record = _patent_record(record_id, item, seen_at)
        snippet = str(item.get("snippet") or record.abstract[:500])
        page.records.append(record)
        page.hits.append(
            VariantHit(
                run_id=run_id,
                label=label,
                record_id=record_id,
                rank=rank_offset + len(page.hits) + 1,
                snippet=snippet,
                source=source,
            )
        )
    return page


# ----------------------------------------------------------------------
# Detail payloads
# ----------------------------------------------------------------------
def _citation_ids(value: Any) -> tuple[str, ...]:
    if isinstance(value, Mapping):
        entries: list[Any] = []
        for group in value.values():
            entries.extend(group or ())
    else:
        entries = list(value or ())
    ids: dict[str, None] = {}
    for entry in entries:
        raw = entry.get("publication_number") or entry.get("patent_id") if isinstance(entry, Mapping) else entry
        if not raw:
            continue
        try:
            ids.setdefault(normalize_identifier(str(raw)), None)
        except ValueError:
            continue
    return tuple(ids)


def _non_patent_citations(value: Any) -> tuple[str, ...]:
    titles: list[str] = []
    for entry in value or ():
        text = entry.get("title") if isinstance(entry, Mapping) else entry
        if text:
            titles.append(str(text).strip())
    return tuple(titles)


def _worldwide_applications(value: Any) -> tuple[dict[str, Any], ...]:
    if isinstance(value, Mapping):
        flattened: list[dict[str, Any]] = []
        for year, entries in value.items():
            for entry in entries or ():
                if isinstance(entry, Mapping):
                    flattened.append({"year": str(year), **entry})
        return tuple(flattened)
    return tuple(dict(entry) for entry in value or () if isinstance(entry, Mapping))


def _description(value: Any) -> str:
    if isinstance(value, Mapping):
        return str(value.get("text") or value.get("link") or "")
    return str(value or "")


def normalize_detail(
    record_id: str, payload: Mapping[str, Any], fetched_at: str
) -> tuple[CanonicalRecord, DetailRecord]:
    """Map a detail payload into a canonical update plus the detail record."""

    classifications = tuple(
        {
            "code": str(item.get("code", "")).replace(" ", "").upper(),
            "description": item.get("description", ""),
            "is_cpc": bool(item.get("is_cpc", True)),
        }
        for item in payload.get("classifications") or ()
        if isinstance(item, Mapping) and item.get("code")
    )
    cpc = tuple(entry["code"] for entry in classifications if entry["is_cpc"])
    ipc = tuple(entry["code"] for entry in classifications if not entry["is_cpc"])
    update = CanonicalRecord(
        record_id=record_id,
        kind=RecordKind.PATENT,
        title=str(payload.get("title") or "").strip(),
        abstract=str(payload.get("abstract") or "").strip(),
        language=str(payload.get("language") or "").strip(),
        publication_date=normalize_date(payload.get("publication_date")),
        priority_date=normalize_date(payload.get("priority_date")),
        filing_date=normalize_date(payload.get("filing_date")),
        grant_date=normalize_date(payload.get("grant_date")),
        assignees=_split_names(payload.get("assignees") or payload.get("assignee")),
        inventors=_split_names(payload.get("inventors") or payload.get("inventor")),
        cpc_codes=cpc,
        ipc_codes=ipc,
        pdf_link=str(payload.get("pdf") or ""),
        first_seen=fetched_at,
        last_seen=fetched_at,
    )
    detail = DetailRecord(
        record_id=record_id,
        status=DetailStatus.OK,
        fetched_at=fetched_at,
        claims=tuple(str(claim) for claim in payload.get("claims") or () if claim),
        description=_description(payload.get("description")),
        classifications=classifications,
        patent_citations=_citation_ids(payload.get("patent_citations")),
        non_patent_citations=_non_patent_citations(payload.get("non_patent_citations")),
        events=tuple(dict(event) for event in payload.get("events") or () if isinstance(event, Mapping)),
        worldwide_applications=_worldwide_applications(payload.get("worldwide_applications")),
        pdf_link=str(payload.get("pdf") or ""),
    )
    return update, detail


__all__ = [
    "DOI_PREFIX",
    "IDENTIFIER_FORMATS",
    "NormalizedPage",
    "SCHOLAR_PREFIX",
    "identifier_kind",
    "looks_like_patent",
    "normalize_date",
    "normalize_detail",
    "normalize_identifier",
    "normalize_page",
    "provider_detail_id",
]
