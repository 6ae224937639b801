from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from errors import TransportError
from settings import Settings

SEARCH_URL = "https://reg.example.edu/pls/bwckgens.p_proc_term_date"
BULLETIN_URL = "https://bulletin.example.edu/"
DETAILS_URL = "https://reg.example.edu/pls/bwckctlg.p_disp_course_detail"
SCHED_URL = "https://reg.example.edu/pls/bwckschd.p_get_crse_unsec"

SCHEDULE_SUMMARY = "This table lists the scheduled meeting times and assigned instructors for this class.."


class FakeFetcher:
    """Stands in for RateLimitedSession; serves canned pages and records every call."""

    def __init__(self, pages: Optional[Dict[Tuple[str, str], object]] = None):
        self.pages = dict(pages or {})
        self.calls: List[Tuple[str, str, list]] = []
        self.request_count = 0
        self.closed = False

    def _serve(self, method: str, url: str, params: Optional[Sequence[Tuple[str, str]]]) -> str:
        params = list(params or [])
        self.calls.append((method, url, params))
        self.request_count += 1
        page = self.pages.get((method, url))
        if page is None:
            raise TransportError(f"{method} {url}: 404")
        return page(params) if callable(page) else page

    def get(self, url, params=None):
        return self._serve("GET", url, params)

    def post(self, url, params=None):
        return self._serve("POST", url, params)

    def close(self):
        self.closed = True

    def calls_to(self, url):
        return [c for c in self.calls if c[1] == url]


@pytest.fixture
def settings():
    return Settings(
        bulletin_home_url=BULLETIN_URL,
        course_details_url=DETAILS_URL,
        course_search_url=SEARCH_URL,
        course_sched_url=SCHED_URL,
        term="202408",
        per_min_ratelimit=0,
    )


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


# -------------
# Page builders
# -------------

def header_row(line: str) -> str:
    return (
        '<tr><th class="ddtitle" scope="colgroup">'
        f'<a href="/pls/bwckschd.p_disp_detail_sched?term_in=202408">{line}</a>'
        "</th></tr>"
    )


def meeting_row(time="TBA", days="&nbsp;", where="TBA", instructors="") -> str:
    def tba(v):
        return '<abbr title="To Be Announced">TBA</abbr>' if v == "TBA" else v

    return (
        "<tr>"
        '<td class="dddefault">Class</td>'
        f'<td class="dddefault">{tba(time)}</td>'
        f'<td class="dddefault">{days}</td>'
        f'<td class="dddefault">{tba(where)}</td>'
        '<td class="dddefault">Aug 14, 2024 - Dec 09, 2024</td>'
        '<td class="dddefault">Lecture</td>'
        f'<td class="dddefault">{instructors}</td>'
        "</tr>"
    )


def instructor_link(target: str, email: str = "x@example.edu") -> str:
    return f'{target} (<abbr title="Primary">P</abbr>)<a href="mailto:{email}" target="{target}">E-mail</a>'


def body_row(meetings: Optional[List[str]] = None) -> str:
    table = ""
    if meetings is not None:
        table = (
            f'<table class="datadisplaytable" summary="{SCHEDULE_SUMMARY}">'
            '<caption class="captiontext">Scheduled Meeting Times</caption>'
            "<tr>"
            '<th class="ddheader" scope="col">Type</th><th class="ddheader" scope="col">Time</th>'
            '<th class="ddheader" scope="col">Days</th><th class="ddheader" scope="col">Where</th>'
            '<th class="ddheader" scope="col">Date Range</th><th class="ddheader" scope="col">Schedule Type</th>'
            '<th class="ddheader" scope="col">Instructors</th>'
            "</tr>"
            + "".join(meetings)
            + "</table>"
        )
    return (
        '<tr><td class="dddefault">'
        '<span class="fieldlabeltext">Associated Term: </span>Fall 2024<br>'
        '<span class="fieldlabeltext">Levels: </span>Undergraduate<br>'
        f"{table}"
        "</td></tr>"
    )


def sections_page(rows: List[str]) -> str:
    return (
        "<html><body>"
        '<table class="datadisplaytable" summary="This layout table is used to present the sections found" width="100%">'
        '<caption class="captiontext">Sections Found</caption>'
        + "".join(rows)
        + "</table></body></html>"
    )


def catalog_page(description: str, credit_line: str = "3.000 Credit hours") -> str:
    return (
        "<html><body>"
        '<table class="datadisplaytable" summary="This table lists the course detail for the selected term." width="100%">'
        '<tr><td class="nttitle" scope="colgroup">CSCI 1301 - Intro to Foo</td></tr>'
        f'<tr><td class="ntdefault">{description}<br>\n    {credit_line}<br>\n    3.000 Lecture hours<br></td></tr>'
        "</table></body></html>"
    )


@pytest.fixture
def pages():
    """Builders for the registration system's markup."""

    class Pages:
        header = staticmethod(header_row)
        meeting = staticmethod(meeting_row)
        instructor = staticmethod(instructor_link)
        body = staticmethod(body_row)
        sections = staticmethod(sections_page)
        catalog = staticmethod(catalog_page)

    return Pages
