"""Message composition for reminders and teacher summaries.

All times are rendered in the teacher's zone. Teachers may override the
student-facing texts with `{{variable}}` templates.
"""

import re
from datetime import date, datetime, timedelta

from pydantic import BaseModel, Field

from tutordesk.common.clock import Clock, ZoneLike

MISSING_VALUE = "—"
LESSON_TEMPLATE_VARIABLES = ("student_name", "lesson_date", "lesson_time", "lesson_datetime", "lesson_link")
PAYMENT_TEMPLATE_VARIABLES = LESSON_TEMPLATE_VARIABLES + ("lesson_price",)

_VARIABLE = re.compile(r"{{\s*([^}]+?)\s*}}")


class TemplateRender(BaseModel):
    text: str
    missing: list[str] = Field(default_factory=list)
    unknown: list[str] = Field(default_factory=list)


class SummaryLesson(BaseModel):
    start_at: datetime
    duration_minutes: int
    student_names: list[str] = Field(default_factory=list)


class SummaryDebt(BaseModel):
    start_at: datetime
    student_name: str
    amount: int | None = None


def render_template(
    template: str,
    values: dict[str, str | None],
    allowed: tuple[str, ...],
    missing_placeholder: str = MISSING_VALUE,
) -> TemplateRender:
    """Fill `{{name}}` placeholders; unknown names stay verbatim, empty values become a dash."""

    missing: list[str] = []
    unknown: list[str] = []

    def substitute(match: re.Match) -> str:
        key = match.group(1).strip()
        if key not in allowed:
            if key and key not in unknown:
                unknown.append(key)
            return match.group(0)
        value = values.get(key)
        if value is None or value == "":
            if key not in missing:
                missing.append(key)
            return missing_placeholder
        return str(value)

    return TemplateRender(text=_VARIABLE.sub(substitute, template), missing=missing, unknown=unknown)


def short_date(local: datetime | date) -> str:
    return f"{local.day} {local.strftime('%b')}"


def day_label(start_at: datetime, zone: ZoneLike, clock: Clock) -> str:
    """`today`, `tomorrow`, or `5 Jan` relative to the teacher's current date."""

    lesson_day = clock.local_date(start_at, zone)
    today = clock.today(zone)
    if lesson_day == today:
        return "today"
    if lesson_day == today + timedelta(days=1):
        return "tomorrow"
    return short_date(lesson_day)


def lead_time_label(minutes_before: int | None) -> str | None:
    if minutes_before is None:
        return None
    if minutes_before <= 0:
        return "now"
    return f"{minutes_before} min"


def amount_label(amount: int | None) -> str | None:
    if amount is None or amount <= 0:
        return None
    return f"{amount} ₽"


def time_label(start_at: datetime, zone: ZoneLike, clock: Clock) -> str:
    return clock.to_local(start_at, zone).strftime("%H:%M")


def time_range_label(start_at: datetime, duration_minutes: int, zone: ZoneLike, clock: Clock) -> str:
    end_at = start_at + timedelta(minutes=duration_minutes)
    return f"{time_label(start_at, zone, clock)}–{time_label(end_at, zone, clock)}"


def lesson_template_values(
    start_at: datetime,
    zone: ZoneLike,
    clock: Clock,
    student_name: str | None = None,
    meeting_link: str | None = None,
    price: int | None = None,
) -> dict[str, str | None]:
    local = clock.to_local(start_at, zone)
    return {
        "student_name": student_name,
        "lesson_date": short_date(local),
        "lesson_time": local.strftime("%H:%M"),
        "lesson_datetime": f"{short_date(local)}, {local.strftime('%H:%M')}",
        "lesson_link": meeting_link,
        "lesson_price": amount_label(price),
    }


def lesson_reminder_text(
    target: str,
    start_at: datetime,
    duration_minutes: int,
    zone: ZoneLike,
    clock: Clock,
    student_name: str | None = None,
    minutes_before: int | None = None,
) -> str:
    lead = lead_time_label(minutes_before)
    lines = [
        "⏰ Lesson reminder" if target == "teacher" else "⏰ Lesson soon",
        f"📅 Day: {day_label(start_at, zone, clock)}",
        f"🕒 Time: {time_label(start_at, zone, clock)}",
    ]
    if lead:
        lines.append(f"⏱️ Starts in: {lead}")
    if target == "teacher":
        lines.append(f"👤 Student: {(student_name or '').strip() or 'student'}")
    lines.append(f"⏳ Duration: {duration_minutes} min")
    return "\n".join(lines)


def auto_payment_reminder_text(
    teacher_name: str,
    start_at: datetime,
    zone: ZoneLike,
    clock: Clock,
    amount: int | None = None,
) -> str:
    local = clock.to_local(start_at, zone)
    when = f"{short_date(local)} {local.strftime('%H:%M')}"
    price = amount_label(amount)
    if price:
        return f"Hello! A reminder to pay for the lesson with {teacher_name} on {when}. Amount: {price}. Thank you!"
    return (
        f"Hello! A reminder to pay for the lesson with {teacher_name} on {when}. "
        "If you have already paid, no need to reply 🙂 Thank you!"
    )


def manual_payment_reminder_text(start_at: datetime, zone: ZoneLike, clock: Clock) -> str:
    return f"Hello! Just a reminder about paying for the lesson on {short_date(clock.to_local(start_at, zone))}. Thank you 🙂"


def teacher_payment_notice_text(source: str, student_name: str, start_at: datetime, zone: ZoneLike, clock: Clock) -> str:
    lesson_date = short_date(clock.to_local(start_at, zone))
    if source == "MANUAL":
        return f"Done ✅ Reminder sent to {student_name} for the lesson on {lesson_date}."
    return f"Automatic reminder sent to {student_name} for the lesson on {lesson_date}."


def daily_summary_text(
    scope: str,
    summary_date: date,
    lessons: list[SummaryLesson],
    zone: ZoneLike,
    clock: Clock,
    unpaid: list[SummaryDebt] | None = None,
) -> str:
    """Teacher digest; the `today` variant also lists unpaid lessons."""

    label = "Today" if scope == "today" else "Tomorrow"
    if lessons:
        lesson_lines = [
            f"• {time_range_label(item.start_at, item.duration_minutes, zone, clock)} · "
            f"{', '.join(item.student_names) or 'student'}"
            for item in lessons
        ]
    else:
        lesson_lines = [f"{label}: no lessons, time to breathe."]

    sections = [
        "🌅 Summary for today" if scope == "today" else "🌙 Summary for tomorrow",
        f"📅 {label}, {summary_date.day} {summary_date.strftime('%B')}",
        "",
        "📚 Lessons",
        *lesson_lines,
    ]
    if scope == "today":
        if unpaid:
            unpaid_lines = [
                f"• {short_date(clock.to_local(item.start_at, zone))}, {time_label(item.start_at, zone, clock)}"
                f" · {item.student_name} · {amount_label(item.amount) or MISSING_VALUE}"
                for item in unpaid
            ]
        else:
            unpaid_lines = ["✅ All lessons are paid."]
        sections += ["", "💳 Unpaid lessons", *unpaid_lines]
    return "\n".join(sections)
