# src/scraper.py
from __future__ import annotations

import argparse
import logging
import re
import sys
import time
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import requests
import soupsieve as sv
from bs4 import BeautifulSoup, Tag
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from errors import ConfigError, NotFoundError, ParseError, ScrapeError, SelectorError, TransportError
from settings import Settings, load_settings
from transformers import days_to_ordinals, decode_entities, parse_credit_range, parse_time_range, sections_frame
from validators import Course, ScheduleItem, Section, Subject, load_catalog, validate_catalog, write_json

logger = logging.getLogger(__name__)

# ---------------------------
# Constants & basic utilities
# ---------------------------

HEADERS = {
    "Accept-Encoding": "gzip",
}

SUBJECT_OPTION_RE = re.compile(r"([A-Z]{4})\s*[-–]\s*(.*)")
SECTION_LINE_RE = re.compile(r"(.*) - (\d{5}) - ([A-Z]{4}) (\d{4}[A-Z]?) - .*")
# the detail pages sometimes emit "<br\>"; the parser re-serializes <br> as "<br/>"
BR_RE = re.compile(r"<\s*br\s*[\\/]?\s*>")

SEARCH_SUBJECTS_SEL = "#subj_id > option"
BULLETIN_SUBJECTS_SEL = "#ddlAllPrefixes > option"
COURSE_DETAIL_SEL = (
    "table[summary='This table lists the course detail for the selected term.'] td.ntdefault"
)
SECTIONS_TABLE = "table[summary='This layout table is used to present the sections found']"
SECTIONS_ROWS_SEL = f"{SECTIONS_TABLE} > tr, {SECTIONS_TABLE} > tbody > tr"
SCHEDULE_TABLE_SEL = (
    ":scope table[summary='This table lists the scheduled meeting times "
    "and assigned instructors for this class..']"
)
TABLE_ROWS_SEL = ":scope > tr, :scope > tbody > tr"
LINE_LINK_SEL = ":scope > th > a"
COLUMN_SEL = ":scope .dddefault"
LINK_SEL = ":scope a"

# Failures that only cost the current row pair
ROW_ERRORS = (ParseError, NotFoundError, SelectorError)


@lru_cache(maxsize=None)
def compiled(selector: str) -> sv.SoupSieve:
    try:
        return sv.compile(selector)
    except sv.SelectorSyntaxError as e:
        raise SelectorError(f"bad selector {selector!r}: {e}") from e


def _escape_text(s: str) -> str:
    return EntitySubstitution.substitute_xml(s).replace("\xa0", "&nbsp;")

# Serialize text the way the registration pages spell it (&amp;, &nbsp;), so decode_entities applies.
INNER_HTML = HTMLFormatter(entity_substitution=_escape_text)


def inner_html(tag: Tag) -> str:
    return tag.decode_contents(formatter=INNER_HTML)


def first_text(tag: Tag, what: str) -> str:
    for s in tag.find_all(string=True):
        if s.strip():
            return s.strip()
    raise NotFoundError(what)

# -------------
# HTTP helpers
# -------------

class RateLimiter:
    """
    Token bucket with a burst of one: at most `per_minute` requests a minute,
    never two back to back. per_minute <= 0 turns limiting off.
    """

    def __init__(self, per_minute: int,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.enabled = per_minute > 0
        self.interval = 60.0 / per_minute if self.enabled else 0.0
        self._clock = clock
        self._sleep = sleep
        self._next_free: Optional[float] = None

    def wait(self) -> float:
        """Block until a token is available; returns the seconds slept."""
        if not self.enabled:
            return 0.0
        now = self._clock()
        if self._next_free is None or self._next_free <= now:
            self._next_free = now + self.interval
            return 0.0
        delay = self._next_free - now
        logger.info("Waiting for rate limit (%.1fs)...", delay)
        self._sleep(delay)
        self._next_free += self.interval
        return delay


class RateLimitedSession:
    """
    The one HTTP client of a run: a shared cookie jar plus the shared limiter.
    Every request, retries included, goes through the limiter first.
    """

    def __init__(self, settings: Settings,
                 limiter: Optional[RateLimiter] = None,
                 session: Optional[requests.Session] = None):
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({**HEADERS, "User-Agent": settings.user_agent})
        self.limiter = limiter if limiter is not None else RateLimiter(settings.per_min_ratelimit)
        self.timeout = settings.timeout
        self.retry_attempts = settings.retry_attempts
        self.retry_sleep: Callable[[float], None] = time.sleep
        self.request_count = 0

    def __enter__(self) -> "RateLimitedSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def get(self, url: str, params: Optional[Sequence[Tuple[str, str]]] = None) -> str:
        return self.request("GET", url, params)

    def post(self, url: str, params: Optional[Sequence[Tuple[str, str]]] = None) -> str:
        # the registration system reads POSTed search forms from the query string too
        return self.request("POST", url, params)

    def request(self, method: str, url: str, params: Optional[Sequence[Tuple[str, str]]] = None) -> str:
        retrying = Retrying(
            wait=wait_exponential(multiplier=0.8, min=0.5, max=8),
            stop=stop_after_attempt(self.retry_attempts),
            retry=retry_if_exception_type(TransportError),
            sleep=self.retry_sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._send(method, url, params)
        raise TransportError(f"{method} {url}: no attempt made")

    def _send(self, method: str, url: str, params: Optional[Sequence[Tuple[str, str]]]) -> str:
        self.limiter.wait()
        self.request_count += 1
        logger.debug("%s %s", method, url)
        try:
            resp = self.session.request(method, url, params=list(params or []), timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"{method} {url}: {e}") from e
        return resp.text

# ----------------------
# Subject long titles
# ----------------------

def parse_subject_option(option: Tag) -> Tuple[str, str]:
    inner = inner_html(option)
    m = SUBJECT_OPTION_RE.search(inner)
    if not m:
        raise ParseError(f"Could not parse subject: {inner}")
    return m.group(1), decode_entities(m.group(2))


def get_subject_titles(fetcher: RateLimitedSession, settings: Settings) -> Dict[str, str]:
    """
    Subject code -> long title.
    The course search page decides which subjects exist (its titles are sometimes
    abbreviated); the bulletin only replaces titles for codes already known.
    """
    titles: Dict[str, str] = {}

    page = fetcher.post(settings.course_search_url, [
        ("p_calling_proc", "bwckschd.p_disp_dyn_sched"),
        ("p_term", settings.term),
    ])
    soup = BeautifulSoup(page, "html.parser")
    for option in compiled(SEARCH_SUBJECTS_SEL).select(soup):
        code, title = parse_subject_option(option)
        titles[code] = title
    logger.info("Found %d subjects on the course search page", len(titles))

    page = fetcher.get(settings.bulletin_home_url)
    soup = BeautifulSoup(page, "html.parser")
    replaced = 0
    # first option is the "select a prefix" placeholder
    for option in compiled(BULLETIN_SUBJECTS_SEL).select(soup)[1:]:
        code, title = parse_subject_option(option)
        if code in titles:
            titles[code] = title
            replaced += 1
    logger.info("Took %d full subject titles from the bulletin", replaced)

    return titles

# ------------------------
# Course catalog details
# ------------------------

def parse_course_catalog(page: str) -> Tuple[str, Tuple[float, float]]:
    soup = BeautifulSoup(page, "html.parser")
    body = compiled(COURSE_DETAIL_SEL).select_one(soup)
    if body is None:
        raise NotFoundError("body")
    chunks = BR_RE.split(inner_html(body))
    if not chunks:
        raise NotFoundError("desc")
    desc = chunks[0].strip()
    if len(chunks) < 2:
        raise NotFoundError("credits")
    return desc, parse_credit_range(chunks[1])


def get_course_catalog(fetcher: RateLimitedSession, settings: Settings,
                       subj: str, code: str) -> Tuple[str, Tuple[float, float]]:
    page = fetcher.get(settings.course_details_url, [
        ("cat_term_in", settings.term),
        ("subj_code_in", subj),
        ("crse_numb_in", code),
    ])
    return parse_course_catalog(page)


def cached_course_info(previous: Optional[Dict[str, Subject]],
                       subj: str, code: str) -> Optional[Tuple[str, Tuple[float, float]]]:
    if not previous or subj not in previous:
        return None
    course = previous[subj].courses.get(code)
    if course is None:
        return None
    return course.description, course.credits

# ----------------------
# Section rows (parsing)
# ----------------------

def pair_rows(rows: Sequence[Tag]) -> Tuple[List[Tuple[Tag, Tag]], Optional[Tag]]:
    """Header/body rows alternate; an odd row out at the end comes back separately."""
    pairs = [(rows[i], rows[i + 1]) for i in range(0, len(rows) - 1, 2)]
    leftover = rows[-1] if len(rows) % 2 else None
    return pairs, leftover


def parse_section_line(row: Tag) -> Tuple[str, int, str, str]:
    """
    "Intro to Foo - 12345 - CSCI 1301 - Lecture" -> ("Intro to Foo", 12345, "CSCI", "1301")
    The title is returned still entity-encoded.
    """
    link = compiled(LINE_LINK_SEL).select_one(row)
    if link is None:
        raise NotFoundError("line find")
    line = inner_html(link)
    m = SECTION_LINE_RE.match(line)
    if not m:
        raise ParseError(f"line parse: {line!r}")
    return m.group(1), int(m.group(2)), m.group(3), m.group(4)


def _column(cols: List[Tag], i: int, name: str) -> Tag:
    if i >= len(cols):
        raise NotFoundError(name)
    return cols[i]


def parse_schedule_row(row: Tag, instructors: Set[str]) -> ScheduleItem:
    # first column is the meeting type ("Class"), not used
    cols = compiled(COLUMN_SEL).select(row)[1:]

    time_range = parse_time_range(first_text(_column(cols, 0, "time"), "time"))
    days = days_to_ordinals(decode_entities(inner_html(_column(cols, 1, "days"))).strip())
    location = decode_entities(first_text(_column(cols, 2, "location"), "location text"))
    _column(cols, 3, "date range")
    _column(cols, 4, "sched type")

    for link in compiled(LINK_SEL).select(_column(cols, 5, "instructors")):
        name = link.get("target")
        if name is None:
            raise NotFoundError("instructor name")
        instructors.add(name)

    return ScheduleItem(
        time=time_range,
        days=days,
        location=None if location == "TBA" else location,
    )


def parse_section_body(row: Tag) -> Tuple[List[ScheduleItem], Set[str]]:
    schedule: List[ScheduleItem] = []
    instructors: Set[str] = set()

    table = compiled(SCHEDULE_TABLE_SEL).select_one(row)
    if table is None:
        # no meeting times at all, e.g. asynchronous online sections
        return schedule, instructors

    for tr in compiled(TABLE_ROWS_SEL).select(table)[1:]:
        schedule.append(parse_schedule_row(tr, instructors))
    return schedule, instructors

# ----------------
# Top-level scrape
# ----------------

def sections_search_params(term: str, subjects: Sequence[str]) -> List[Tuple[str, str]]:
    """The search form's fields in form order: placeholders, subjects, then match-all filters."""
    params = [("term_in", term)]
    params += [(k, "dummy") for k in (
        "sel_subj", "sel_day", "sel_schd", "sel_insm", "sel_camp",
        "sel_levl", "sel_sess", "sel_instr", "sel_ptrm", "sel_attr",
    )]
    params += [("sel_subj", s) for s in subjects]
    params += [
        ("sel_crse", ""),
        ("sel_title", ""),
        ("sel_schd", "%"),
        ("sel_from_cred", ""),
        ("sel_to_cred", ""),
        ("sel_camp", "%"),
        ("sel_levl", "%"),
        ("sel_ptrm", "%"),
        ("sel_instr", "%"),
        ("sel_attr", "%"),
        ("begin_hh", "0"),
        ("begin_mi", "0"),
        ("begin_ap", "a"),
        ("end_hh", "0"),
        ("end_mi", "0"),
        ("end_ap", "a"),
    ]
    return params


def get_sections_doc(fetcher: RateLimitedSession, settings: Settings,
                     subjects: Sequence[str]) -> BeautifulSoup:
    logger.info("Requesting page with all sections (this will take a while)")
    page = fetcher.post(settings.course_sched_url, sections_search_params(settings.term, subjects))
    return BeautifulSoup(page, "html.parser")


def _get_or_create_subject(catalog: Dict[str, Subject], subj: str, titles: Dict[str, str]) -> Subject:
    subject = catalog.get(subj)
    if subject is None:
        title = titles.get(subj)
        if title is None:
            logger.warning("Subject code %s has no available long title, nulling it", subj)
        subject = catalog[subj] = Subject(title=title)
    return subject


def scrape_doc(fetcher: RateLimitedSession, settings: Settings, soup: BeautifulSoup,
               titles: Dict[str, str],
               previous: Optional[Dict[str, Subject]] = None) -> Dict[str, Subject]:
    """
    Build the Subject -> Course -> Section tree from the all-sections page.
    Bad rows are logged and skipped; catalog pages and transport errors are fatal.
    """
    catalog: Dict[str, Subject] = {}

    rows = compiled(SECTIONS_ROWS_SEL).select(soup)
    if not rows:
        logger.warning("No section rows found on the sections page")
    pairs, leftover = pair_rows(rows)

    for line, body in pairs:
        try:
            title, crn, subj, code = parse_section_line(line)
        except ROW_ERRORS as e:
            logger.warning("Could not parse info line `%s` (%s), skipping", line, e)
            continue

        try:
            schedule, instructors = parse_section_body(body)
        except ROW_ERRORS as e:
            logger.warning("Could not parse section body for CRN %s (%s), skipping", crn, e)
            continue

        section = Section(crn=crn, instructors=instructors, schedule=schedule)

        subject = catalog.get(subj)
        course = subject.courses.get(code) if subject is not None else None
        if course is None:
            info = cached_course_info(previous, subj, code)
            if info is None:
                try:
                    info = get_course_catalog(fetcher, settings, subj, code)
                except ParseError as e:
                    logger.warning("Could not parse catalog entry for %s %s (%s), skipping CRN %s",
                                   subj, code, e, crn)
                    continue
            else:
                logger.debug("Using cached catalog entry for %s %s", subj, code)
            description, credits = info
            subject = _get_or_create_subject(catalog, subj, titles)
            course = subject.courses[code] = Course(
                title=decode_entities(title),
                description=decode_entities(description),
                credits=credits,
            )

        course.sections.append(section)
        logger.info("Finished scraping a section of %s %s", subj, code)

    if leftover is not None:
        logger.warning("Some section tables were not processed")

    return catalog


def scrape(settings: Settings,
           previous: Optional[Dict[str, Subject]] = None,
           sections_html: Optional[str] = None,
           resolve_titles: bool = True,
           fetcher: Optional[RateLimitedSession] = None) -> Dict[str, Subject]:
    """
    One full run: subject titles, the all-sections page (or a saved copy of it),
    then the row-by-row build. `previous` is only read, never modified.
    """
    if not resolve_titles and sections_html is None:
        raise ConfigError("subject titles are needed to request the sections page")

    owned = fetcher is None
    fetcher = fetcher if fetcher is not None else RateLimitedSession(settings)
    try:
        titles = get_subject_titles(fetcher, settings) if resolve_titles else {}
        if sections_html is not None:
            soup = BeautifulSoup(sections_html, "html.parser")
        else:
            soup = get_sections_doc(fetcher, settings, list(titles))
        catalog = scrape_doc(fetcher, settings, soup, titles, previous)
    finally:
        if owned:
            fetcher.close()

    logger.info("Scraped %d subjects with %d requests", len(catalog), fetcher.request_count)
    return catalog

# -----------------------------
# CLI (useful for quick testing)
# -----------------------------

def _log_issues(label: str, catalog: Dict[str, Subject]) -> None:
    issues = validate_catalog(catalog)
    errors = [i for i in issues if i["level"] == "error"]
    if issues:
        logger.warning("%s: %d issues (%d errors)", label, len(issues), len(errors))
    for i in errors:
        logger.warning("%s: %s: %s", label, i["field"], i["message"])


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Registration system course catalog scraper")
    parser.add_argument("--term", default=None, help="Term code, e.g. 202408 (overrides DT_TERM).")
    parser.add_argument("--rate-limit", type=int, default=None, help="Requests per minute; 0 disables (overrides DT_PER_MIN_RATELIMIT).")
    parser.add_argument("--previous", default=None, help="Earlier scrape JSON reused as a catalog cache.")
    parser.add_argument("--sections-html", default=None, help="Parse a saved sections page instead of requesting it.")
    parser.add_argument("--skip-titles", action="store_true", help="Do not request subject titles (needs --sections-html).")
    parser.add_argument("-o", "--out", default="data/catalog.json", help="Where to write scraped JSON.")
    parser.add_argument("--csv", default=None, help="Also write a flat CSV with one row per meeting.")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        settings = load_settings(overrides={"term": args.term, "per_min_ratelimit": args.rate_limit})
        previous = None
        if args.previous:
            previous = load_catalog(args.previous)
            _log_issues("previous scrape", previous)
        sections_html = None
        if args.sections_html:
            with open(args.sections_html, "r", encoding="utf-8") as f:
                sections_html = f.read()
        catalog = scrape(settings, previous, sections_html, resolve_titles=not args.skip_titles)
    except (ScrapeError, OSError, ValueError, KeyError) as e:
        logger.error("Scrape aborted: %s", e)
        return 1

    _log_issues("scrape", catalog)
    write_json(args.out, catalog)
    logger.info("wrote %d subjects to %s", len(catalog), args.out)
    if args.csv:
        df = sections_frame(catalog)
        df.to_csv(args.csv, index=False)
        logger.info("wrote %d rows to %s", len(df), args.csv)
    return 0

if __name__ == "__main__":
    sys.exit(main())
