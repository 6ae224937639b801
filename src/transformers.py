from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

import pandas as pd

from errors import FormatError, ParseError
from validators import DISPLAY_COLS, WEEKDAY_ORDER, Subject, flatten_for_display

# ---------------------------
# Entities, days, clock times
# ---------------------------

# Only the two entities the registration pages actually emit in text.
ENTITY_MAP = {
    "&amp;": "&",
    "&nbsp;": " ",
}

DAY_MAP = {
    "M": 1,
    "T": 2,
    "W": 3,
    "R": 4,
    "F": 5,
    "S": 6,
    "U": 7,
}

TIME_RANGE_RE = re.compile(r"(\d?\d):(\d\d) (am|pm) - (\d?\d):(\d\d) (am|pm)")

CREDIT_RANGE_RE = re.compile(r"(\d+\.\d+)\s+(?:TO|OR)\s+(\d+\.\d+) Credit hours")
CREDIT_SINGLE_RE = re.compile(r"(\d+\.\d+)\s+Credit hours")


def decode_entities(s: str) -> str:
    # "&amp;nbsp;" decodes to "&nbsp;" on the first pass, so repeat until stable
    while True:
        out = s
        for entity, ch in ENTITY_MAP.items():
            out = out.replace(entity, ch)
        if out == s:
            return out
        s = out


def fix_time(hours: str, minutes: str, meridiem: str) -> str:
    """
    12-hour clock parts -> "HH:MM".
    Only afternoon hours move; "12 am" is left as "12:00" like the source pages intend it.
    """
    if not re.fullmatch(r"\d+", hours or ""):
        raise FormatError(f"bad hours value: {hours!r}")
    if meridiem == "pm" and hours != "12":
        return f"{int(hours) + 12:02d}:{minutes}"
    return f"{hours:0>2}:{minutes}"


def day_letter_to_ordinal(c: str) -> Optional[int]:
    return DAY_MAP.get(c)


def days_to_ordinals(text: str) -> List[int]:
    """'MWF' -> [1, 3, 5]; anything that is not a day letter is dropped."""
    days: List[int] = []
    for c in text:
        d = day_letter_to_ordinal(c)
        if d is not None:
            days.append(d)
    return days


def parse_time_range(text: str) -> Optional[Tuple[str, str]]:
    """
    'TBA' -> None
    '9:30 am - 10:45 am' -> ('09:30', '10:45')
    """
    if text == "TBA":
        return None
    m = TIME_RANGE_RE.search(text)
    if not m:
        raise ParseError(f"time parse: {text!r}")
    start = fix_time(m.group(1), m.group(2), m.group(3))
    end = fix_time(m.group(4), m.group(5), m.group(6))
    return (start, end)


def parse_credit_range(line: str) -> Tuple[float, float]:
    m = CREDIT_RANGE_RE.search(line)
    if m:
        return (float(m.group(1)), float(m.group(2)))
    m = CREDIT_SINGLE_RE.search(line)
    if m:
        v = float(m.group(1))
        return (v, v)
    raise ParseError("credits: no match")

# ------------------
# Tabular CSV export
# ------------------

def _day_labels(days: List[int]) -> Optional[str]:
    if not days:
        return None
    return ", ".join(WEEKDAY_ORDER[d - 1] for d in days)


def sections_frame(catalog: Dict[str, Subject]) -> pd.DataFrame:
    """One row per meeting (or per section when it has no meetings)."""
    df = pd.DataFrame(flatten_for_display(catalog))
    for c in DISPLAY_COLS:
        if c not in df.columns:
            df[c] = None
    df = df[DISPLAY_COLS]
    df["days"] = df["days"].apply(lambda d: _day_labels(d) if isinstance(d, list) else None)
    return df.sort_values(["subject", "number", "crn"], kind="stable").reset_index(drop=True)
