"""Deterministic mapping from raw API records to NormalizedJob."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from html import unescape
from html.parser import HTMLParser
from typing import Optional

from .errors import EnrichmentError, TransformError
from .models import JobText, NormalizedJob, RawJobPosting
from .providers.base import EnrichmentProvider

logger = logging.getLogger(__name__)

_NULL_DATE = "0000-00-00 00:00:00"
_SKIP_TAGS = {"script", "style", "noscript", "svg", "head"}
_BLOCK_TAGS = {
    "p", "div", "br", "li", "ul", "ol", "tr", "table",
    "h1", "h2", "h3", "h4", "h5", "h6", "section", "article",
}
_WORD_RE = re.compile(r"[a-z][a-z\-]{2,}")
_STOPWORDS = frozenset("""
a about above after again all also an and any are as at be been before being below
between both but by can could did do does doing down during each few for from further
had has have having he her here hers him his how if in into is it its itself just
may more most must no nor not now of off on once only or other our out over own per
same she should so some such than that the their them then there these they this
those through to too under until up upon very was we were what when where which while
who whom why will with within without would you your
job position applicants applicant candidate candidates apply application applications
including include please university department work required requirements preferred
experience ability strong well new years year one two three
""".split())


def parse_date(value: str | None) -> Optional[datetime]:
    """Parse an upstream date string; the MySQL zero date and garbage become None."""
    if not value or value.strip() == _NULL_DATE:
        return None
    text = value.strip()
    if "T" not in text and " " not in text:
        text = f"{text}T00:00:00"
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _TextExtractor(HTMLParser):
    """HTML → plain text, keeping line breaks at block boundaries."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs):
        tag = tag.lower()
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag in _BLOCK_TAGS:
            self._parts.append("\n")
        if tag == "li" and self._skip_depth == 0:
            self._parts.append("- ")

    def handle_endtag(self, tag: str):
        tag = tag.lower()
        if tag in _SKIP_TAGS and self._skip_depth > 0:
            self._skip_depth -= 1
        elif tag in _BLOCK_TAGS:
            self._parts.append("\n")

    def handle_data(self, data: str):
        if self._skip_depth == 0:
            self._parts.append(data)

    def get_text(self) -> str:
        raw = "".join(self._parts)
        lines = [re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in raw.split("\n")]
        text = "\n".join(lines)
        return re.sub(r"\n{3,}", "\n\n", text).strip()


def clean_html(html: str | None) -> str:
    if not html:
        return ""
    extractor = _TextExtractor()
    extractor.feed(html)
    extractor.close()
    return extractor.get_text() or unescape(re.sub(r"<[^>]*>", " ", html)).strip()


def determine_job_type(title: str, tag: str = "") -> tuple[Optional[str], Optional[str]]:
    """Return (job_type, seniority_level) from the upstream tag, falling back to the title."""
    tag = (tag or "").lower()
    if "postdoc" in tag or "fellow" in tag:
        return "Postdoctoral", "Postdoctoral"
    if "assistantprofessor" in tag:
        return "Faculty", "Assistant Professor"
    if "associateprofessor" in tag:
        return "Faculty", "Associate Professor"
    if "professor" in tag:
        return "Faculty", "Professor"
    if "lecturer" in tag or "instructor" in tag:
        return "Faculty", "Lecturer"
    if "research" in tag:
        return "Research", "Research Staff"

    title = (title or "").lower()
    if "postdoc" in title or "fellow" in title:
        return "Postdoctoral", "Postdoctoral"
    if "assistant professor" in title:
        return "Faculty", "Assistant Professor"
    if "associate professor" in title:
        return "Faculty", "Associate Professor"
    if "professor" in title and "assistant" not in title and "associate" not in title:
        return "Faculty", "Professor"
    if "lecturer" in title or "instructor" in title:
        return "Faculty", "Lecturer"
    if "research" in title:
        return "Research", "Research Staff"
    return None, None


def extract_keywords(*texts: str, limit: int = 10) -> list[str]:
    """Most frequent non-stopword terms across the given texts."""
    counts: Counter[str] = Counter()
    for text in texts:
        if not text:
            continue
        words = _WORD_RE.findall(clean_html(text).lower())
        counts.update(w.strip("-") for w in words if w.strip("-") not in _STOPWORDS)
    return [word for word, _ in counts.most_common(limit) if word]


@dataclass
class TransformOptions:
    source_portal: str = "academic_jobs"
    llm_attributes: bool = False
    attributes_threshold: float = 0.5
    keyword_limit: int = 10


def transform(
    record: RawJobPosting,
    options: TransformOptions | None = None,
    provider: EnrichmentProvider | None = None,
) -> NormalizedJob:
    options = options or TransformOptions()
    if not record.univ.strip() or not record.name.strip() or not record.url.strip():
        raise TransformError(f"Record {record.id} is missing title, institution or url")

    job_type, seniority = determine_job_type(record.name, record.tag)
    description_text = clean_html(record.description)
    job = NormalizedJob(
        title=record.name.strip(),
        source_url=record.url.strip(),
        source_portal=options.source_portal,
        description_html=record.description or None,
        description_text=description_text or None,
        instructions=record.instructions or None,
        qualifications=record.qualifications or None,
        salary_range=record.salary or None,
        seniority_level=seniority,
        job_type=job_type,
        open_date=parse_date(record.open_date_raw),
        close_date=parse_date(record.close_date_raw),
        deadline_date=parse_date(record.deadline_raw),
        application_link=record.apply or None,
        legacy_position_id=record.legacy_position_id,
        institution=record.univ.strip(),
        location=record.location.strip() or None,
        department=record.unit_name.strip() or "General Department",
        discipline=record.disc.strip(),
        keywords=extract_keywords(
            record.name, record.description, record.qualifications, limit=options.keyword_limit
        ),
    )

    if options.llm_attributes and provider is not None and record.description:
        _apply_llm_attributes(job, record, options, provider)
    return job


def _apply_llm_attributes(
    job: NormalizedJob,
    record: RawJobPosting,
    options: TransformOptions,
    provider: EnrichmentProvider,
) -> None:
    text = JobText(
        id=record.id,
        title=job.title,
        description=job.description_text or "",
        salary=job.salary_range or "",
        institution=job.institution,
        location=job.location or "",
    )
    try:
        attrs = provider.enrich_job(text).job_attributes
    except EnrichmentError as e:
        logger.warning("LLM attribute pass failed for %s: %s", job.source_url, e)
        return
    if attrs.confidence <= options.attributes_threshold:
        logger.info(
            "Low confidence attributes (%.2f) for %s, skipping", attrs.confidence, job.source_url
        )
        return
    for field, value in attrs.model_dump(exclude={"confidence"}).items():
        setattr(job, field, value)
