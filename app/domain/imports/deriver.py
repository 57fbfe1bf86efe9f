"""
Work-order derivation heuristics.

Legacy CMMS exports often flatten preventive maintenance into plain work
order rows. For rows whose work type is preventive, this module derives a
reusable maintenance task and, when the row carries a recurrence and a
resolvable asset, a recurring maintenance schedule.

Every source row is kept with its own status and linked to the schedule.
What the schedule's next occurrence looks like depends on that status:
- a completed row is the historical record; nothing else is added
- an open row already is the next occurrence and only gains a due date
- any other status (on hold, in progress, canceled) gets a separate OPEN
  follow-up work order for the next occurrence
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple
import re
import logging

import pandas as pd

from app.domain.imports.registry import EntityType
from app.domain.imports.resolver import LookupCache
from app.domain.imports.values import (
    BoolValue,
    DateValue,
    EnumValue,
    NumberValue,
    StringValue,
    TransformedRecord,
)

logger = logging.getLogger(__name__)

PREVENTIVE_WORK_TYPES = {"PREVENTIVE", "PREVENTATIVE"}

# (keywords, task type, estimated minutes); first match wins.
TASK_CLASSIFIERS: Tuple[Tuple[Tuple[str, ...], str, int], ...] = (
    (("inspect", "check"), "INSPECTION", 30),
    (("clean",), "CLEANING", 60),
    (("lubricat", "oil", "grease"), "LUBRICATION", 45),
    (("replace", "change"), "REPLACEMENT", 120),
    (("calibrat",), "CALIBRATION", 90),
    (("test",), "TESTING", 60),
    (("repair", "fix"), "REPAIR", 180),
)
DEFAULT_TASK_CLASS = ("OTHER", 60)

_UNIT_ALIASES = {
    "day": "days", "daily": "days",
    "week": "weeks", "weekly": "weeks",
    "month": "months", "monthly": "months",
    "year": "years", "yearly": "years", "annual": "years", "annually": "years",
}
_SINGLE_INTERVAL_NAMES = {"days": "daily", "weeks": "weekly", "months": "monthly", "years": "annually"}
_EVERY_PATTERN = re.compile(r'every\s+(?:(\d+)\s+)?(day|week|month|year)s?\b')


@dataclass(frozen=True)
class Recurrence:
    unit: str
    interval: int

    @property
    def frequency(self) -> str:
        if self.interval == 1:
            return _SINGLE_INTERVAL_NAMES[self.unit]
        return f"{self.interval} {self.unit}"

    def next_due(self, start: datetime) -> datetime:
        offset = pd.DateOffset(**{self.unit: self.interval})
        return (pd.Timestamp(start) + offset).to_pydatetime()


def normalize_recurrence(raw) -> Optional[Recurrence]:
    """
    Parse a recurrence descriptor.

    Accepts pipe-delimited exports (``Weekly|2|Monday``, ``Monthly|3|1``,
    ``Yearly|1``) as well as free text (``every 2 weeks``, ``quarterly``,
    ``biweekly``). Returns None when nothing recognizable is found.
    """
    if raw is None:
        return None
    text_value = str(raw).strip().lower()
    if not text_value:
        return None

    if "|" in text_value:
        parts = [part.strip() for part in text_value.split("|")]
        unit = _UNIT_ALIASES.get(parts[0])
        if unit is None:
            return None
        interval = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() and int(parts[1]) > 0 else 1
        return Recurrence(unit, interval)

    if text_value in ("quarterly", "quarter"):
        return Recurrence("months", 3)
    if text_value in ("biweekly", "fortnightly"):
        return Recurrence("weeks", 2)
    if text_value in ("semiannually", "semi-annually", "biannually"):
        return Recurrence("months", 6)
    if text_value in _UNIT_ALIASES:
        return Recurrence(_UNIT_ALIASES[text_value], 1)

    match = _EVERY_PATTERN.search(text_value)
    if match:
        interval = int(match.group(1)) if match.group(1) else 1
        if interval > 0:
            return Recurrence(_UNIT_ALIASES[match.group(2)], interval)
    return None


def classify_task(title: Optional[str], description: Optional[str]) -> Tuple[str, int]:
    """Classify work into a task type by keyword, returning (type, estimated minutes)."""
    text_value = f"{title or ''} {description or ''}".lower()
    for keywords, task_type, minutes in TASK_CLASSIFIERS:
        if any(keyword in text_value for keyword in keywords):
            return task_type, minutes
    return DEFAULT_TASK_CLASS


def is_preventive_work_type(work_type) -> bool:
    if not work_type:
        return False
    return re.sub(r'[\s\-]+', '_', str(work_type).strip()).upper() in PREVENTIVE_WORK_TYPES


def is_preventive(record: TransformedRecord) -> bool:
    return is_preventive_work_type(record.get("work_type"))


@dataclass
class DerivedEntitySet:
    """
    Primary records plus derived maintenance tasks, schedules and the OPEN
    follow-up work orders written after the primary records.
    """
    primary: List = field(default_factory=list)
    secondary: List = field(default_factory=list)
    tertiary: List = field(default_factory=list)
    follow_ups: List = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)


def _derive_task(record: TransformedRecord, title: str) -> TransformedRecord:
    description = record.get("description")
    task_type, minutes = classify_task(title, description)
    hours = record.get("estimated_hours")
    if hours:
        minutes = max(1, int(round(float(hours) * 60)))

    values = {
        "title": StringValue(title),
        "type": EnumValue(task_type),
        "estimated_minutes": NumberValue(minutes),
        "is_active": BoolValue(True),
    }
    if description:
        values["description"] = StringValue(description)
    return TransformedRecord(row_number=record.row_number, values=values)


def _derive_schedule(
    record: TransformedRecord, title: str, recurrence: Recurrence, next_due: datetime
) -> TransformedRecord:
    description = record.get("description") or f"Preventive maintenance: {title}"
    return TransformedRecord(
        row_number=record.row_number,
        values={
            "title": StringValue(title),
            "description": StringValue(description),
            "frequency": StringValue(recurrence.frequency),
            "next_due": DateValue(next_due),
            "asset_name": record.values["asset_name"],
        },
    )


_FOLLOW_UP_FIELDS = ("title", "description", "priority", "work_type", "asset_name", "assigned_to", "estimated_hours")


def _derive_follow_up(record: TransformedRecord, next_due: datetime) -> TransformedRecord:
    values = {key: record.values[key] for key in _FOLLOW_UP_FIELDS if key in record.values}
    values["status"] = EnumValue("OPEN")
    values["due_date"] = DateValue(next_due)
    return TransformedRecord(row_number=record.row_number, values=values)


def derive_work_order_entities(
    records: Sequence[TransformedRecord],
    cache: LookupCache,
    now: Optional[datetime] = None,
) -> DerivedEntitySet:
    """
    Split preventive work-order rows into tasks, schedules and work orders.

    Args:
        records: Transformed work-order records
        cache: Run lookup cache; used to check whether a row's asset resolves
        now: Reference time for next-due dates (defaults to current UTC time)

    Returns:
        DerivedEntitySet with one unchanged-status primary record per input
        record, de-duplicated tasks (by title) and schedules (by title and
        asset), and one follow-up per scheduled row that is neither open
        nor completed.
    """
    now = now or datetime.now(timezone.utc)
    derived = DerivedEntitySet()
    summary = {
        "preventive_rows": 0,
        "tasks_derived": 0,
        "schedules_derived": 0,
        "schedules_skipped": 0,
        "completed_history": 0,
        "open_work_orders": 0,
        "follow_up_work_orders": 0,
    }
    seen_tasks = set()
    seen_schedules = set()

    for record in records:
        if not is_preventive(record):
            derived.primary.append(record)
            continue

        summary["preventive_rows"] += 1
        title = record.get("title") or ""
        primary = TransformedRecord(row_number=record.row_number, values=dict(record.values))

        task_key = title.strip().lower()
        if task_key and task_key not in seen_tasks:
            seen_tasks.add(task_key)
            derived.secondary.append(_derive_task(record, title))
            summary["tasks_derived"] += 1

        raw_recurrence = record.get("recurrence")
        if raw_recurrence:
            recurrence = normalize_recurrence(raw_recurrence)
            asset_name = record.get("asset_name")
            asset_id = None
            if asset_name and EntityType.ASSETS in cache:
                asset_id = cache.resolve(EntityType.ASSETS, asset_name)

            if recurrence is None:
                summary["schedules_skipped"] += 1
                derived.warnings.append(
                    f'Row {record.row_number}: Recurrence "{raw_recurrence}" is not recognized; '
                    f'no schedule created for "{title}"'
                )
            elif asset_id is None:
                summary["schedules_skipped"] += 1
                reason = f'asset "{asset_name}" could not be resolved' if asset_name else "no asset was given"
                derived.warnings.append(
                    f'Row {record.row_number}: No schedule created for "{title}" because {reason}'
                )
            else:
                next_due = recurrence.next_due(now)
                schedule_key = (task_key, asset_id)
                if schedule_key not in seen_schedules:
                    seen_schedules.add(schedule_key)
                    derived.tertiary.append(_derive_schedule(record, title, recurrence, next_due))
                    summary["schedules_derived"] += 1

                status = record.get("status")
                if status == "COMPLETED":
                    summary["completed_history"] += 1
                elif status in (None, "OPEN"):
                    primary.values.setdefault("due_date", DateValue(next_due))
                    summary["open_work_orders"] += 1
                else:
                    derived.follow_ups.append(_derive_follow_up(record, next_due))
                    summary["follow_up_work_orders"] += 1

        derived.primary.append(primary)

    derived.summary = summary
    if summary["preventive_rows"]:
        logger.info(
            f"Derived {summary['tasks_derived']} task(s) and {summary['schedules_derived']} schedule(s) "
            f"from {summary['preventive_rows']} preventive row(s); {summary['schedules_skipped']} skipped"
        )
    return derived
