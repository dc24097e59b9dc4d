"""
Medication Reminder — Course Planner.

Expands a medication course (times of day over a date range, with a repeat
pattern) into one reminder draft per dose. All drafts of a course share a
course id, so the whole course can be deleted at once.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta
from typing import Literal

from pydantic import BaseModel, field_validator, model_validator

from medreminder.data.models import MedicationType, validate_date, validate_time

logger = logging.getLogger(__name__)


class ReminderDraft(BaseModel):
    """Fields for a new reminder, as supplied by the add flow.

    JSON example:
    {
        "name": "Aspirin",
        "dosage": "100mg",
        "type": "tablet",
        "date": "2026-02-14",
        "time": "09:00"
    }
    """
    name: str
    dosage: str
    type: MedicationType = MedicationType.TABLET
    date: str          # ISO format YYYY-MM-DD
    time: str          # HH:MM in 24h format
    course_id: str | None = None

    @field_validator("name", "dosage")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("date")
    @classmethod
    def check_date(cls, v: str) -> str:
        return validate_date(v)

    @field_validator("time")
    @classmethod
    def check_time(cls, v: str) -> str:
        return validate_time(v)


class MedicationCourse(BaseModel):
    """A course of doses, e.g. "Amoxicillin 500mg at 08:00 and 20:00 for a week".

    Weekdays use 0 = Sunday .. 6 = Saturday.
    """
    name: str
    dosage: str
    type: MedicationType = MedicationType.TABLET
    times: list[str]
    start_date: str
    end_date: str
    repeat_pattern: Literal["once", "daily", "alternate", "weekdays"] = "daily"
    weekdays: list[int] = []

    @field_validator("times")
    @classmethod
    def check_times(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one time is required")
        return sorted({validate_time(t.strip()) for t in v})

    @field_validator("start_date", "end_date")
    @classmethod
    def check_dates(cls, v: str) -> str:
        return validate_date(v)

    @field_validator("weekdays")
    @classmethod
    def check_weekdays(cls, v: list[int]) -> list[int]:
        for day in v:
            if not 0 <= day <= 6:
                raise ValueError(f"weekday {day} outside 0..6")
        return sorted(set(v))

    @model_validator(mode="after")
    def check_range(self) -> MedicationCourse:
        if self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        if self.repeat_pattern == "weekdays" and not self.weekdays:
            raise ValueError("weekdays pattern needs at least one weekday")
        return self


def _sunday_based_weekday(d: date) -> int:
    return (d.weekday() + 1) % 7


def course_dates(course: MedicationCourse) -> list[date]:
    """Calendar days on which the course has doses."""
    start = date.fromisoformat(course.start_date)
    end = date.fromisoformat(course.end_date)

    if course.repeat_pattern == "once":
        return [start]

    days: list[date] = []
    d = start
    while d <= end:
        if course.repeat_pattern == "daily":
            days.append(d)
        elif course.repeat_pattern == "alternate":
            if (d - start).days % 2 == 0:
                days.append(d)
        elif _sunday_based_weekday(d) in course.weekdays:
            days.append(d)
        d += timedelta(days=1)
    return days


def expand_course(course: MedicationCourse, course_id: str | None = None) -> list[ReminderDraft]:
    """One draft per (day, time) of the course, ordered chronologically."""
    course_id = course_id or str(uuid.uuid4())
    drafts = [
        ReminderDraft(
            name=course.name,
            dosage=course.dosage,
            type=course.type,
            date=d.isoformat(),
            time=t,
            course_id=course_id,
        )
        for d in course_dates(course)
        for t in course.times
    ]
    logger.info(
        "Course '%s' (%s) expanded to %d dose(s)", course.name, course.repeat_pattern, len(drafts),
    )
    return drafts
