"""Query analyzer: lexical keywords and temporal constraints from free-text queries."""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Pattern, Tuple

from models.retrieval import QueryAnalysis, TemporalRange
from services.errors import TemporalParseAmbiguous
from services.text_analysis import extract_keywords, tokenize

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

_MONTH = r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
_ORD = r"(?:st|nd|rd|th)?"

# Date-shaped text, most specific first. Shape only; validity is checked by _parse_date.
_DATE = (
    r"(?:\d{4}[-/]\d{1,2}[-/]\d{1,2}"
    r"|\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4}"
    rf"|{_MONTH}\.?\s+\d{{1,2}}{_ORD},?\s+\d{{4}}"
    rf"|\d{{1,2}}{_ORD}\s+(?:of\s+)?{_MONTH}\.?,?\s+\d{{4}}"
    rf"|{_MONTH}\.?,?\s+\d{{4}}"
    r"|\d{4})"
)

_ISO_DATE = re.compile(r"^(\d{4})[-/](\d{1,2})[-/](\d{1,2})$")
_NUMERIC_DATE = re.compile(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{2,4})$")
_MONTH_DAY_YEAR = re.compile(rf"^({_MONTH})\.?\s+(\d{{1,2}}){_ORD},?\s+(\d{{4}})$")
_DAY_MONTH_YEAR = re.compile(rf"^(\d{{1,2}}){_ORD}\s+(?:of\s+)?({_MONTH})\.?,?\s+(\d{{4}})$")
_MONTH_YEAR = re.compile(rf"^({_MONTH})\.?,?\s+(\d{{4}})$")
_YEAR = re.compile(r"^(\d{4})$")


def _month_number(name: str) -> int:
    return _MONTHS[name.lower().rstrip(".")]


def _make_date(year: int, month: int, day: int, source: str) -> datetime:
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError as e:
        raise TemporalParseAmbiguous(f"Invalid date '{source}'", {"date": source}) from e


def _parse_date(text: str) -> datetime:
    """
    Resolve an explicit date to UTC midnight.

    Raises:
        TemporalParseAmbiguous: If the date is invalid, or numeric with an
            undecidable day/month order (e.g. 03/04/2024)
    """
    text = " ".join(text.lower().split())

    match = _ISO_DATE.match(text)
    if match:
        return _make_date(int(match.group(1)), int(match.group(2)), int(match.group(3)), text)

    match = _NUMERIC_DATE.match(text)
    if match:
        first, second, year = int(match.group(1)), int(match.group(2)), match.group(3)
        if len(year) != 4:
            raise TemporalParseAmbiguous(f"Two-digit year in '{text}'", {"date": text})
        if first > 12 >= second:
            day, month = first, second
        elif second > 12 >= first or first == second:
            month, day = first, second
        else:
            raise TemporalParseAmbiguous(f"Day/month order of '{text}' is ambiguous", {"date": text})
        return _make_date(int(year), month, day, text)

    match = _MONTH_DAY_YEAR.match(text)
    if match:
        return _make_date(int(match.group(3)), _month_number(match.group(1)), int(match.group(2)), text)

    match = _DAY_MONTH_YEAR.match(text)
    if match:
        return _make_date(int(match.group(3)), _month_number(match.group(2)), int(match.group(1)), text)

    match = _MONTH_YEAR.match(text)
    if match:
        return _make_date(int(match.group(2)), _month_number(match.group(1)), 1, text)

    match = _YEAR.match(text)
    if match:
        return _make_date(int(match.group(1)), 1, 1, text)

    raise TemporalParseAmbiguous(f"Unrecognised date '{text}'", {"date": text})


def _month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _next_month_start(moment: datetime) -> datetime:
    if moment.month == 12:
        return _month_start(moment.year + 1, 1)
    return _month_start(moment.year, moment.month + 1)


def _midnight(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _range(start: datetime, end: datetime, phrase: str) -> TemporalRange:
    try:
        return TemporalRange(start, end)
    except ValueError as e:
        raise TemporalParseAmbiguous(f"'{phrase}' does not describe a valid range", {"phrase": phrase}) from e


def _since(start: datetime, now: datetime) -> TemporalRange:
    # At exactly `start` the range still covers that instant
    return TemporalRange(start, max(now, start + timedelta(microseconds=1)))


def _between(match: re.Match, now: datetime) -> TemporalRange:
    return _range(_parse_date(match.group("first")), _parse_date(match.group("second")), match.group(0))


def _before(match: re.Match, now: datetime) -> TemporalRange:
    return _range(EPOCH, _parse_date(match.group("date")), match.group(0))


def _in_month(match: re.Match, now: datetime) -> TemporalRange:
    month = _month_number(match.group("month"))
    if match.group("year"):
        start = _month_start(int(match.group("year")), month)
    else:
        start = _month_start(now.year, month)
        if start > now:
            start = _month_start(now.year - 1, month)
    return _range(start, _next_month_start(start), match.group(0))


def _in_year(match: re.Match, now: datetime) -> TemporalRange:
    year = int(match.group("year"))
    return _range(_month_start(year, 1), _month_start(year + 1, 1), match.group(0))


def _yesterday(match: re.Match, now: datetime) -> TemporalRange:
    today = _midnight(now)
    return TemporalRange(today - timedelta(days=1), today)


def _today(match: re.Match, now: datetime) -> TemporalRange:
    return _since(_midnight(now), now)


def _days_back(days: int) -> Callable[[re.Match, datetime], TemporalRange]:
    def resolve(match: re.Match, now: datetime) -> TemporalRange:
        return TemporalRange(now - timedelta(days=days), now)
    return resolve


def _this_year(match: re.Match, now: datetime) -> TemporalRange:
    return _since(_month_start(now.year, 1), now)


# Priority order: explicit dates and months before relative phrases. First match wins.
TEMPORAL_PATTERNS: List[Tuple[str, Pattern, Callable[[re.Match, datetime], TemporalRange]]] = [
    ("between", re.compile(rf"\bbetween\s+(?P<first>{_DATE})\s+and\s+(?P<second>{_DATE})\b", re.I), _between),
    ("before", re.compile(rf"\bbefore\s+(?P<date>{_DATE})\b", re.I), _before),
    ("in_month", re.compile(rf"\bin\s+(?P<month>{_MONTH})\b(?:\s+(?P<year>\d{{4}})\b)?", re.I), _in_month),
    ("in_year", re.compile(r"\bin\s+(?P<year>(?:19|20)\d{2})\b", re.I), _in_year),
    ("yesterday", re.compile(r"\byesterday\b", re.I), _yesterday),
    ("today", re.compile(r"\btoday\b", re.I), _today),
    ("last_week", re.compile(r"\b(?:last|past)\s+week\b", re.I), _days_back(7)),
    ("last_month", re.compile(r"\b(?:last|past)\s+month\b", re.I), _days_back(30)),
    ("last_year", re.compile(r"\b(?:last|past)\s+year\b", re.I), _days_back(365)),
    ("this_year", re.compile(r"\bthis\s+year\b", re.I), _this_year),
]


class QueryAnalyzer:
    """Extract lexical keywords and an optional temporal range from a query."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            clock: Returns the current instant; defaults to UTC wall clock
        """
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def analyze(self, query_text: str, now: Optional[datetime] = None) -> QueryAnalysis:
        """
        Analyze a query.

        Args:
            query_text: Raw user query
            now: Instant relative phrases resolve against (defaults to the clock)

        Returns:
            QueryAnalysis with keywords, optional temporal range and the raw query
        """
        now = now or self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        temporal_range, phrase = self.extract_temporal_range(query_text, now)
        excluded = tokenize(phrase) if phrase and temporal_range else ()
        keywords = frozenset(extract_keywords(query_text, exclude=excluded))

        logger.debug(
            f"Analyzed query: {len(keywords)} keywords, temporal range: {temporal_range}"
        )
        return QueryAnalysis(
            raw_query=query_text,
            keywords=keywords,
            temporal_range=temporal_range,
            temporal_phrase=phrase
        )

    def extract_temporal_range(self, query_text: str, now: datetime) -> Tuple[Optional[TemporalRange], Optional[str]]:
        """
        Match the query against the temporal phrase table.

        Returns:
            (range, matched phrase); range is None when nothing matched or the
            matched phrase could not be resolved
        """
        for name, pattern, resolve in TEMPORAL_PATTERNS:
            match = pattern.search(query_text)
            if not match:
                continue
            try:
                return resolve(match, now), match.group(0)
            except TemporalParseAmbiguous as e:
                logger.warning(
                    f"Dropping temporal constraint '{match.group(0)}': {e.message}",
                    extra={"error_code": e.code, "pattern": name}
                )
                return None, match.group(0)
        return None, None
