from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Set, Tuple

WEEKDAY_ORDER = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

HHMM_RE = re.compile(r"^\d{2}:\d{2}$")

@dataclass
class ScheduleItem:
    time: Optional[Tuple[str, str]] = None      # ("HH:MM", "HH:MM"), None when TBA
    days: List[int] = field(default_factory=list)   # 1..7 for Mon..Sun
    location: Optional[str] = None              # None when TBA

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": list(self.time) if self.time is not None else None,
            "days": list(self.days),
            "location": self.location,
        }

@dataclass
class Section:
    crn: int
    instructors: Set[str] = field(default_factory=set)
    schedule: List[ScheduleItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "crn": self.crn,
            "instructors": sorted(self.instructors),
            "schedule": [s.to_dict() for s in self.schedule],
        }

@dataclass
class Course:
    title: str
    description: str
    credits: Tuple[float, float]
    sections: List[Section] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "credits": [self.credits[0], self.credits[1]],
            "sections": [s.to_dict() for s in self.sections],
        }

@dataclass
class Subject:
    title: Optional[str] = None
    courses: Dict[str, Course] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "courses": {code: c.to_dict() for code, c in self.courses.items()},
        }

# -----------------------
# JSON <-> dataclass tree
# -----------------------

def catalog_to_dict(catalog: Dict[str, Subject]) -> Dict[str, Any]:
    return {code: subj.to_dict() for code, subj in catalog.items()}

def _schedule_item_from_dict(r: Dict[str, Any]) -> ScheduleItem:
    t = r.get("time")
    return ScheduleItem(
        time=(t[0], t[1]) if t else None,
        days=[int(d) for d in r.get("days") or []],
        location=r.get("location"),
    )

def catalog_from_dict(raw: Dict[str, Any]) -> Dict[str, Subject]:
    """Rebuild the Subject/Course/Section tree from its JSON form."""
    catalog: Dict[str, Subject] = {}
    for subj_code, s in raw.items():
        courses: Dict[str, Course] = {}
        for code, c in (s.get("courses") or {}).items():
            lo, hi = c["credits"]
            courses[code] = Course(
                title=c.get("title") or "",
                description=c.get("description") or "",
                credits=(float(lo), float(hi)),
                sections=[
                    Section(
                        crn=int(sec["crn"]),
                        instructors=set(sec.get("instructors") or []),
                        schedule=[_schedule_item_from_dict(i) for i in sec.get("schedule") or []],
                    )
                    for sec in c.get("sections") or []
                ],
            )
        catalog[subj_code] = Subject(title=s.get("title"), courses=courses)
    return catalog

def write_json(path: str, catalog: Dict[str, Subject]) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(catalog_to_dict(catalog), f, ensure_ascii=False, indent=2)

def load_catalog(path: str) -> Dict[str, Subject]:
    with open(path, "r", encoding="utf-8") as f:
        return catalog_from_dict(json.load(f))

# ----------
# Validation
# ----------

def _issue(level: str, fld: str, message: str) -> Dict[str, str]:
    return {"level": level, "field": fld, "message": message}

def validate_catalog(catalog: Dict[str, Subject]) -> List[Dict[str, str]]:
    """
    Check the invariants a scraped tree should hold.
    Returns a list of {"level", "field", "message"} issues; empty means clean.
    """
    issues: List[Dict[str, str]] = []
    for subj_code, subj in catalog.items():
        if not re.fullmatch(r"[A-Z]{4}", subj_code):
            issues.append(_issue("warn", "subject", f"unexpected subject code {subj_code!r}"))
        if subj.title is None:
            issues.append(_issue("warn", "title", f"{subj_code} has no title"))
        for code, course in subj.courses.items():
            where = f"{subj_code} {code}"
            lo, hi = course.credits
            if lo > hi:
                issues.append(_issue("error", "credits", f"{where}: {lo} > {hi}"))
            if not course.sections:
                issues.append(_issue("warn", "sections", f"{where} has no sections"))
            for sec in course.sections:
                if not 0 <= sec.crn <= 99999:
                    issues.append(_issue("error", "crn", f"{where}: CRN {sec.crn} does not fit 5 digits"))
                for item in sec.schedule:
                    if any(d not in range(1, 8) for d in item.days):
                        issues.append(_issue("error", "days", f"{where} ({sec.crn}): {item.days}"))
                    if item.time is not None and not all(HHMM_RE.match(t) for t in item.time):
                        issues.append(_issue("error", "time", f"{where} ({sec.crn}): {item.time}"))
    return issues

# ----------------
# Flat display rows
# ----------------

def flatten_for_display(catalog: Dict[str, Subject]) -> List[Dict[str, Any]]:
    """One row per schedule item; sections without meetings still get a row."""
    rows: List[Dict[str, Any]] = []
    for subj_code, subj in catalog.items():
        for code, course in subj.courses.items():
            for sec in course.sections:
                base = {
                    "subject": subj_code,
                    "subject_title": subj.title,
                    "number": code,
                    "course_code": f"{subj_code} {code}",
                    "title": course.title,
                    "credits_min": course.credits[0],
                    "credits_max": course.credits[1],
                    "crn": sec.crn,
                    "instructors": "; ".join(sorted(sec.instructors)) or None,
                }
                if not sec.schedule:
                    rows.append({**base, "days": [], "start_time": None, "end_time": None, "location": None})
                    continue
                for item in sec.schedule:
                    rows.append({
                        **base,
                        "days": list(item.days),
                        "start_time": item.time[0] if item.time else None,
                        "end_time": item.time[1] if item.time else None,
                        "location": item.location,
                    })
    return rows

DISPLAY_COLS = [
    "course_code", "title", "credits_min", "credits_max", "subject",
    "subject_title", "number", "crn", "instructors", "days",
    "start_time", "end_time", "location",
]
