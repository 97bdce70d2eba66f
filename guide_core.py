#!/usr/bin/env python3
"""
Schedule lookups and guide rendering for the channel guide.

Channels come from YAML files (see content_store). Each weekday holds a list of
half-hour keyed slots; a defined slot runs until the next defined slot of the
same day, or until midnight.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

# ReportLab
from reportlab.lib.pagesizes import letter, landscape
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Flowable
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.pdfbase import pdfmetrics
from xml.sax.saxutils import escape

from content_store import DAYS, Channel, ChannelCatalog, DaySchedule, Program, Schedule, TimeSlot

END_OF_DAY = "24:00"
BLOCK_MINUTES = 30
HOME_CHANNEL_ID = "00"
CHANNEL_PREFIX = "/ch/"


def ascii_only(s: str) -> str:
    return (s or "").encode("ascii", "ignore").decode("ascii")


def clean_text(s: str) -> str:
    return re.sub(r"\s+", " ", ascii_only(s)).strip()


def two_digits(n: int) -> str:
    return f"{n:02d}"


def hhmm(dt: datetime) -> str:
    return dt.strftime("%H:%M")


def weekday_name(dt: datetime) -> str:
    return DAYS[dt.weekday()]


def to_iso_utc(dt: datetime) -> str:
    """ISO 8601 in UTC with millisecond precision and a trailing Z."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class ActiveProgram:
    program: Program
    start_time: str
    end_time: str

    def to_dict(self) -> dict:
        return {
            "program": self.program.to_dict(),
            "startTime": self.start_time,
            "endTime": self.end_time,
        }


@dataclass(frozen=True)
class GuideBlock:
    title: str
    span: int
    continues_before: bool
    continues_after: bool

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "span": self.span,
            "continuesBefore": self.continues_before,
            "continuesAfter": self.continues_after,
        }


@dataclass(frozen=True)
class Event:
    start: datetime
    end: datetime
    title: str


def defined_slots(slots: DaySchedule) -> List[TimeSlot]:
    """Non-empty slots of a day, in time order."""
    return sorted((s for s in (slots or []) if s.program is not None), key=lambda s: s.time)


def find_active_program(schedule: Optional[Schedule], current_time: datetime) -> Optional[ActiveProgram]:
    """
    Return the program airing at current_time, with its start and end.

    Null slots are skipped, so a program runs on until the next defined slot.
    Nothing carries over from the previous day.
    """
    if not schedule:
        return None

    slots = schedule.get(weekday_name(current_time))
    if not slots:
        return None

    now = hhmm(current_time)
    defined = defined_slots(slots)

    current: Optional[TimeSlot] = None
    for slot in defined:
        if slot.time <= now:
            current = slot
        else:
            break

    if current is None:
        return None

    nxt = next((s for s in defined if s.time > current.time), None)
    end_time = nxt.time if nxt else END_OF_DAY

    if now < end_time:
        return ActiveProgram(program=current.program, start_time=current.time, end_time=end_time)
    return None


def create_time_blocks(dt: datetime) -> List[datetime]:
    """The current half-hour block plus the next two."""
    top = dt.replace(minute=0, second=0, microsecond=0)
    if dt.minute >= 30:
        offsets = (30, 60, 90)
    else:
        offsets = (0, 30, 60)
    return [top + timedelta(minutes=m) for m in offsets]


def _program_title(channel: Channel, at: datetime) -> str:
    active = find_active_program(channel.schedule, at)
    return active.program.title if active else ""


def time_blocks_for_channel(catalog: ChannelCatalog, blocks: List[datetime], channel_id: str) -> List[GuideBlock]:
    channel = catalog.get(channel_id)
    if channel is None:
        return [GuideBlock(title="", span=1, continues_before=False, continues_after=False) for _ in blocks]
    if not blocks:
        return []

    titles = [_program_title(channel, b) for b in blocks]
    title_before = _program_title(channel, blocks[0] - timedelta(minutes=BLOCK_MINUTES))
    title_after = _program_title(channel, blocks[-1] + timedelta(minutes=BLOCK_MINUTES))

    out: List[GuideBlock] = []
    idx = 0
    while idx < len(titles):
        title = titles[idx]
        span = 1
        while idx + span < len(titles) and titles[idx + span] == title:
            span += 1
        is_first = idx == 0
        is_last = idx + span == len(blocks)
        out.append(
            GuideBlock(
                title=title,
                span=span,
                continues_before=is_first and bool(title) and title_before == title,
                continues_after=is_last and bool(title) and title_after == title,
            )
        )
        idx += span
    return out


def build_guide(catalog: ChannelCatalog, dt: datetime) -> dict:
    blocks = create_time_blocks(dt)
    channels = []
    for ch in catalog.sorted_by_slug():
        channels.append(
            {
                "channel": {"slug": ch.slug, "name": ch.name},
                "blocks": [b.to_dict() for b in time_blocks_for_channel(catalog, blocks, ch.slug)],
            }
        )
    return {
        "currentTime": to_iso_utc(dt),
        "timeBlocks": [to_iso_utc(b) for b in blocks],
        "channels": channels,
    }


def list_contributors(catalog: ChannelCatalog, case_insensitive: bool = True) -> List[str]:
    seen: Dict[str, None] = {}
    for channel in catalog:
        for day in DAYS:
            for slot in channel.schedule.get(day) or []:
                if slot.program is None:
                    continue
                for author in slot.program.authors():
                    seen.setdefault(author, None)
    if case_insensitive:
        return sorted(seen, key=lambda a: (a.lower(), a))
    return sorted(seen)


def get_pagination(catalog: ChannelCatalog, channel_id: Optional[str]) -> Dict[str, str]:
    ids = [c.id for c in catalog.sorted_by_id()]
    if not ids:
        return {"next": "/", "prev": "/"}

    channel_id = clean_text(channel_id or "")
    last_id = ids[-1]
    is_valid = channel_id == HOME_CHANNEL_ID or channel_id in ids

    if not channel_id or not is_valid:
        return {"next": "/", "prev": f"{CHANNEL_PREFIX}{last_id}"}

    is_first = channel_id == HOME_CHANNEL_ID
    is_last = channel_id == last_id
    try:
        number = int(channel_id)
    except ValueError:
        # Non-numeric ids have no numeric neighbours; fall back to list order.
        pos = ids.index(channel_id)
        nxt = "/" if is_last else f"{CHANNEL_PREFIX}{ids[pos + 1]}"
        prev = f"{CHANNEL_PREFIX}{ids[pos - 1]}" if pos > 0 else "/"
        return {"next": nxt, "prev": prev}

    nxt = "/" if is_last else f"{CHANNEL_PREFIX}{two_digits(number + 1)}"
    prev = f"{CHANNEL_PREFIX}{last_id}" if is_first else f"{CHANNEL_PREFIX}{two_digits(number - 1)}"
    return {"next": nxt, "prev": prev}


def _slot_datetime(day: date, slot_time: str, tzinfo) -> datetime:
    if slot_time == END_OF_DAY:
        return datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=tzinfo)
    h, m = slot_time.split(":")
    return datetime.combine(day, time(int(h), int(m)), tzinfo=tzinfo)


def day_events(schedule: Schedule, day: date, tzinfo=None) -> List[Event]:
    """Events for one calendar day, using the same end rule as find_active_program."""
    slots = defined_slots(schedule.get(DAYS[day.weekday()]))
    events: List[Event] = []
    for idx, slot in enumerate(slots):
        end_time = slots[idx + 1].time if idx + 1 < len(slots) else END_OF_DAY
        events.append(
            Event(
                start=_slot_datetime(day, slot.time, tzinfo),
                end=_slot_datetime(day, end_time, tzinfo),
                title=slot.program.title,
            )
        )
    return events


def clip_events(events: List[Event], start_dt: datetime, end_dt: datetime) -> List[Event]:
    clipped = []
    for e in events:
        if e.end <= start_dt or e.start >= end_dt:
            continue
        clipped.append(e)
    return clipped


def expand_schedule(channel: Channel, start_dt: datetime, end_dt: datetime) -> List[Event]:
    events: List[Event] = []
    cur = start_dt.date()
    while datetime.combine(cur, time(0, 0), tzinfo=start_dt.tzinfo) < end_dt:
        events.extend(day_events(channel.schedule, cur, start_dt.tzinfo))
        cur += timedelta(days=1)
    return clip_events(events, start_dt, end_dt)


def hard_truncate_to_width(text: str, font_name: str, font_size: float, max_width_pts: float) -> str:
    """
    Chop characters off the end until the string fits max_width_pts.
    No ellipsis.
    """
    t = clean_text(text)
    if not t:
        return t

    if pdfmetrics.stringWidth(t, font_name, font_size) <= max_width_pts:
        return t

    lo, hi = 0, len(t)
    while lo < hi:
        mid = (lo + hi) // 2
        if pdfmetrics.stringWidth(t[:mid], font_name, font_size) <= max_width_pts:
            lo = mid + 1
        else:
            hi = mid
    best = max(0, lo - 1)
    return t[:best].rstrip()


def time_label(dt: datetime) -> str:
    return dt.strftime("%I:%M").lstrip("0").replace(":00", "") + ("p" if dt.hour >= 12 else "a")


class GuideTimelineFlowable(Flowable):
    def __init__(
        self,
        channels: List[Channel],
        start_dt: datetime,
        end_dt: datetime,
        step_minutes: int,
    ) -> None:
        super().__init__()
        self.channels = channels
        self.start_dt = start_dt
        self.end_dt = end_dt
        self.step_minutes = max(1, step_minutes)
        self.cell_font = "Helvetica-Bold"
        self.first_col = (1.15 * 0.75) * inch
        self.header_h = 0.26 * inch
        self.row_h = 0.24 * inch
        self.schedules: Dict[str, List[Event]] = {
            ch.id: expand_schedule(ch, start_dt, end_dt) for ch in channels
        }

    def wrap(self, availWidth: float, availHeight: float) -> Tuple[float, float]:
        self.width = availWidth
        self.height = self.header_h + (len(self.channels) * self.row_h)
        return self.width, self.height

    def _x_for(self, dt: datetime, timeline_w: float, total_seconds: float) -> float:
        secs = (dt - self.start_dt).total_seconds()
        secs = max(0.0, min(total_seconds, secs))
        return self.first_col + (timeline_w * (secs / total_seconds))

    def _safe_header_label_x(self, x: float, label: str, page_width: float) -> float:
        label_w = pdfmetrics.stringWidth(label, "Helvetica-Bold", 7)
        min_x = self.first_col + 1.0 + (label_w / 2.0)
        max_x = page_width - 1.0 - (label_w / 2.0)
        if max_x <= min_x:
            return x
        return min(max(x, min_x), max_x)

    def _draw_channel_label(self, c, row_bottom: float, channel: Channel) -> None:
        y = row_bottom + ((self.row_h - 7) / 2.0) + 1
        bubble_r = 4.3
        bubble_d = bubble_r * 2.0
        gap = 2.0
        num = hard_truncate_to_width(channel.slug, "Helvetica-Bold", 5.5, bubble_d - 2)
        name_max_w = max(1.0, self.first_col - bubble_d - gap - 4)
        name_fit = hard_truncate_to_width(channel.name, "Helvetica-Bold", 7, name_max_w)
        name_w = pdfmetrics.stringWidth(name_fit, "Helvetica-Bold", 7)

        group_w = bubble_d + gap + name_w
        start_x = max(1.0, (self.first_col - group_w) / 2.0)

        cx = start_x + bubble_r
        cy = row_bottom + (self.row_h / 2.0)
        c.circle(cx, cy, bubble_r, stroke=1, fill=0)
        c.setFont("Helvetica-Bold", 5.5)
        c.drawCentredString(cx, cy - 2.0, num)

        c.setFont("Helvetica-Bold", 7)
        c.drawString(start_x + bubble_d + gap, y, name_fit)

    def draw(self) -> None:
        c = self.canv
        width = self.width
        height = self.height
        timeline_w = max(1.0, width - self.first_col)
        total_seconds = max(1.0, (self.end_dt - self.start_dt).total_seconds())

        c.setLineWidth(0.25)
        c.rect(0, 0, width, height, stroke=1, fill=0)
        c.line(0, height - self.header_h, width, height - self.header_h)
        c.line(self.first_col, 0, self.first_col, height)

        # Header
        c.setFont("Helvetica-Bold", 7)
        c.drawCentredString(self.first_col / 2.0, height - self.header_h + 6, "CH")
        cur = self.start_dt
        while cur <= self.end_dt:
            x = self._x_for(cur, timeline_w, total_seconds)
            c.line(x, height - self.header_h, x, height - self.header_h + 3)
            label = time_label(cur)
            c.drawCentredString(self._safe_header_label_x(x, label, width), height - self.header_h + 6, label)
            cur += timedelta(minutes=self.step_minutes)

        # Rows and proportional event blocks
        for idx, ch in enumerate(self.channels):
            row_top = height - self.header_h - (idx * self.row_h)
            row_bottom = row_top - self.row_h
            c.line(0, row_bottom, width, row_bottom)
            self._draw_channel_label(c, row_bottom, ch)

            for e in self.schedules.get(ch.id, []):
                ev_start = max(e.start, self.start_dt)
                ev_end = min(e.end, self.end_dt)
                if ev_end <= ev_start:
                    continue

                x0 = self._x_for(ev_start, timeline_w, total_seconds)
                x1 = self._x_for(ev_end, timeline_w, total_seconds)
                box_w = max(0.5, x1 - x0)
                c.rect(x0, row_bottom + 0.5, box_w, max(1.0, self.row_h - 1.0), stroke=1, fill=0)

                text_w = box_w - 4
                if text_w <= 0:
                    continue
                title_fit = hard_truncate_to_width(e.title, self.cell_font, 6.5, text_w)
                if not title_fit:
                    continue
                c.setFont(self.cell_font, 6.5)
                c.drawString(x0 + 2, row_bottom + ((self.row_h - 6.5) / 2.0) + 1, title_fit)


def make_pdf(
    out_path: Path,
    grid_title: str,
    channels: List[Channel],
    start_dt: datetime,
    end_dt: datetime,
    step_minutes: int,
) -> None:
    doc = SimpleDocTemplate(
        str(out_path),
        pagesize=landscape(letter),
        leftMargin=0.35 * inch,
        rightMargin=0.35 * inch,
        topMargin=0.35 * inch,
        bottomMargin=0.35 * inch,
        title=grid_title,
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "title",
        parent=styles["Title"],
        fontName="Helvetica-Bold",
        fontSize=14,
        leading=16,
        spaceAfter=6,
    )
    story = [
        Paragraph(escape(grid_title), title_style),
        Spacer(1, 0.08 * inch),
        GuideTimelineFlowable(
            channels=channels,
            start_dt=start_dt,
            end_dt=end_dt,
            step_minutes=step_minutes,
        ),
    ]
    out_path.parent.mkdir(parents=True, exist_ok=True)
    doc.build(story)


def parse_date(s: str) -> date:
    return datetime.strptime(s, "%Y-%m-%d").date()


def parse_hhmm(s: str) -> time:
    return datetime.strptime(s, "%H:%M").time()
