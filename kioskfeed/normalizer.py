import logging
import math
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple

from bs4 import BeautifulSoup
from pydantic import ValidationError

from .schemas import AnalysisResult, ResultMeta, WebhookPayload, has_text
from .security import generate_analysis_id, sanitize_string

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"
PLACEHOLDER_COMPANY = "Onbekend Bedrijf"
PLACEHOLDER_TITLE = "Vacature"
PLACEHOLDER_IMAGE_URL = (
    "https://via.placeholder.com/400x300/2563eb/ffffff?text=Ideal+Candidate"
)
PLACEHOLDER_PARAGRAPH = (
    "<p>De vacaturetekst voor {title} bij {company} heeft een goede basis, "
    "maar er zijn enkele verbeterpunten mogelijk.</p>"
)
# (heading, body) pairs shown when a fallback payload carries no content
PLACEHOLDER_TIPS: Tuple[Tuple[str, str], ...] = (
    (
        "Specifieke vereisten toevoegen",
        "Voeg meer specifieke vereisten toe aan je vacature om de juiste "
        "kandidaten aan te trekken.",
    ),
    (
        "Bedrijfscultuur beschrijven",
        "Beschrijf de bedrijfscultuur en waarden om kandidaten een beter beeld "
        "te geven van de werkomgeving.",
    ),
    (
        "Salaris vermelden",
        "Vermeld het salaris of salarisrange om transparantie te bieden en "
        "geschikte kandidaten aan te trekken.",
    ),
    (
        "Thuiswerk mogelijkheden",
        "Specificeer thuiswerk mogelijkheden om flexibiliteit te bieden en meer "
        "kandidaten aan te spreken.",
    ),
)

_HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6", "strong"]


# ---------------------------------------------------------------------------
# Content layouts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContentLayout:
    """How a producer revision lays out its HTML analysis blob."""

    version: str
    heading_marker: str
    list_start: "re.Pattern[str]"

    def strip_heading(self, content: str) -> str:
        """Drop a leading metadata line such as ``## Matching: 72%``."""
        lines = content.split("\n")
        if lines and lines[0].strip().startswith(self.heading_marker):
            return "\n".join(lines[1:]).strip()
        return content

    def split(self, content: str) -> Tuple[str, str]:
        """Split into (lead paragraph, tip list) at the first list start."""
        match = self.list_start.search(content)
        if match is None:
            return "", content
        return content[: match.start()].strip(), content[match.start():].strip()


CONTENT_LAYOUTS: Dict[str, ContentLayout] = {
    "v1": ContentLayout("v1", "##", re.compile(re.escape("<ul>"))),
    "v2": ContentLayout("v2", "#", re.compile(r"<(?:ul|ol)\b", re.IGNORECASE)),
}


def get_layout(version: str) -> ContentLayout:
    try:
        return CONTENT_LAYOUTS[version]
    except KeyError:
        raise RuntimeError(
            f"Unknown CONTENT_LAYOUT {version!r}; "
            f"expected one of {', '.join(sorted(CONTENT_LAYOUTS))}."
        ) from None


# ---------------------------------------------------------------------------
# Fallback extraction rules
# ---------------------------------------------------------------------------


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def _text_or_list(value: Any) -> Any:
    if isinstance(value, list):
        items = [item for item in value if isinstance(item, str) and item.strip()]
        return items or None
    if isinstance(value, str) and value.strip():
        return value
    return None


def _present(value: Any) -> Any:
    if value is None or value == "":
        return None
    return value


@dataclass(frozen=True)
class FieldRule:
    """Candidate source keys for one canonical field, in priority order."""

    target: str
    candidates: Tuple[str, ...]
    accept: Callable[[Any], Any] = _text
    placeholder: Optional[str] = None

    def extract(self, body: Mapping[str, Any]) -> Any:
        for key in self.candidates:
            value = self.accept(body.get(key))
            if value is not None:
                return value
        return self.placeholder


FALLBACK_RULES: Tuple[FieldRule, ...] = (
    FieldRule("company_name", ("company_name", "companyName"), placeholder=PLACEHOLDER_COMPANY),
    FieldRule(
        "vacancy_title",
        ("vacancy_title", "vacancyTitle", "job_title"),
        placeholder=PLACEHOLDER_TITLE,
    ),
    FieldRule(
        "ideal_candidate_image_url",
        ("ideal_candidate_image_url", "idealCandidateImageUrl"),
        placeholder=PLACEHOLDER_IMAGE_URL,
    ),
    FieldRule("content", ("analysis_content", "tips", "content"), accept=_text_or_list),
    FieldRule("score", ("score", "Score"), accept=_present),
)


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------


def coerce_score(raw: Any) -> Optional[int]:
    """Parse a score into [0, 100], or None when unusable.

    Out-of-range values are dropped rather than clamped so that an unknown
    score stays distinguishable from a real 0.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            return None
    elif isinstance(raw, (int, float)):
        value = float(raw)
    else:
        return None
    if not math.isfinite(value) or value < 0 or value > 100:
        return None
    return int(round(value))


def _first_score(*candidates: Any) -> Optional[int]:
    for raw in candidates:
        if raw is not None and raw != "":
            return coerce_score(raw)
    return None


def html_to_tips(markup: str) -> List[str]:
    """Reduce an HTML tip list to short plain strings, one per item."""
    soup = BeautifulSoup(markup, "lxml")
    tips = []
    for item in soup.find_all("li"):
        heading = item.find(_HEADING_TAGS)
        text = (heading or item).get_text(" ", strip=True)
        if text:
            tips.append(text)
    if tips:
        return tips
    text = soup.get_text("\n", strip=True)
    return [line.strip() for line in text.split("\n") if line.strip()]


def tips_to_html(tips: List[str]) -> str:
    items = "".join(f"<li>{sanitize_string(tip.strip())}</li>" for tip in tips)
    return f"<ul>{items}</ul>"


def _placeholder_content(title: str, company: str) -> str:
    items = "".join(
        f"<li><h3>{heading}</h3><p>{body}</p></li>" for heading, body in PLACEHOLDER_TIPS
    )
    return PLACEHOLDER_PARAGRAPH.format(title=title, company=company) + f"<ul>{items}</ul>"


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class Normalization(NamedTuple):
    result: AnalysisResult
    fallback: bool
    errors: List[Dict[str, Any]]


class PayloadNormalizer:
    """Turns an untyped webhook body into a canonical ``AnalysisResult``.

    Strict validation is tried first.  When it fails, the best-effort
    fallback path extracts whatever it recognises and fills the rest with
    placeholders, so a result is always produced.
    """

    def __init__(
        self,
        content_format: str = "html",
        layout: str = "v1",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if content_format not in ("html", "list"):
            raise ValueError(f"Unsupported content format: {content_format!r}")
        self.content_format = content_format
        self.layout = get_layout(layout)
        self._clock = clock

    def normalize(self, body: Any) -> Normalization:
        if not isinstance(body, Mapping):
            body = {}
        try:
            payload = WebhookPayload.model_validate(body)
        except ValidationError as exc:
            errors = exc.errors(
                include_url=False, include_context=False, include_input=False
            )
            logger.warning(
                "Webhook validation failed, creating fallback result: %s", errors
            )
            return Normalization(self._fallback(body), True, errors)
        return Normalization(self._strict(payload), False, [])

    def _strict(self, payload: WebhookPayload) -> AnalysisResult:
        content = (
            payload.analysis_content
            if has_text(payload.analysis_content)
            else payload.tips
        )
        meta = None
        if payload.meta is not None:
            meta = ResultMeta(
                source=payload.meta.source,
                analysis_id=payload.meta.analysis_id,
                submitted_at=payload.meta.submitted_at,
            )
        result = AnalysisResult(
            id=generate_analysis_id(),
            company_name=sanitize_string(payload.company_name),
            vacancy_title=sanitize_string(payload.vacancy_title),
            ideal_candidate_image_url=payload.ideal_candidate_image_url,
            score=_first_score(payload.score, payload.score_alt),
            timestamp=self._clock(),
            meta=meta,
            **self._content_fields(content),
        )
        logger.info(
            "Valid analysis received: %s - %s (score=%s)",
            result.company_name,
            result.vacancy_title,
            result.score,
        )
        return result

    def _fallback(self, body: Mapping[str, Any]) -> AnalysisResult:
        fields = {rule.target: rule.extract(body) for rule in FALLBACK_RULES}
        company = sanitize_string(fields["company_name"])
        title = sanitize_string(fields["vacancy_title"])

        content = self._content_fields(fields["content"] or "")
        if not any(content.values()):
            content = self._content_fields(_placeholder_content(title, company))

        now = self._clock()
        result = AnalysisResult(
            id=generate_analysis_id(),
            company_name=company,
            vacancy_title=title,
            ideal_candidate_image_url=fields["ideal_candidate_image_url"],
            score=coerce_score(fields["score"]),
            timestamp=now,
            meta=ResultMeta(
                source=FALLBACK_SOURCE,
                analysis_id=f"fallback-{int(time.time() * 1000)}",
                submitted_at=now.isoformat(),
            ),
            **content,
        )
        logger.info(
            "Fallback result created: %s - %s (score=%s)",
            result.company_name,
            result.vacancy_title,
            result.score,
        )
        return result

    def _content_fields(self, content: Any) -> Dict[str, Any]:
        """Converge any accepted content shape onto the canonical one."""
        if isinstance(content, list):
            tips = [tip.strip() for tip in content if tip.strip()]
            if self.content_format == "list":
                return {"tips": [sanitize_string(tip) for tip in tips]}
            return {
                "analysis_paragraph": "",
                "analysis_tips": tips_to_html(tips) if tips else "",
            }

        content = self.layout.strip_heading(content)
        paragraph, tips_html = self.layout.split(content)
        if self.content_format == "list":
            tips = html_to_tips(tips_html) if tips_html.strip() else []
            return {"tips": [sanitize_string(tip) for tip in tips]}
        return {"analysis_paragraph": paragraph, "analysis_tips": tips_html}
