"""
5필드 cron 표현식 (분 시 일 월 요일) 파서와 다음 실행 시각 계산.

다음 시각 계산은 arq.cron.next_cron 에 맡긴다. 일/요일이 모두 제한된 경우
전통적인 cron 처럼 둘 중 먼저 오는 시각을 사용한다.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from arq.cron import next_cron

MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

MONTH_NAMES = {name: i for i, name in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], start=1
)}
DAY_NAMES = {name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# (이름, 최소, 최대, 별칭)
FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day", 1, 31, {}),
    ("month", 1, 12, MONTH_NAMES),
    ("weekday", 0, 7, DAY_NAMES),
)


def _value(text: str, low: int, high: int, names: dict[str, int]) -> int:
    key = text.lower()
    if key in names:
        return names[key]
    if not text.isdigit():
        raise ValueError(f"잘못된 cron 값입니다: {text}")
    number = int(text)
    if not low <= number <= high:
        raise ValueError(f"cron 값 범위를 벗어났습니다: {number} (허용 {low}-{high})")
    return number


def _parse_field(text: str, low: int, high: int, names: dict[str, int]) -> set[int] | None:
    """'*' 이면 None (제한 없음)"""
    if text == "*":
        return None
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"잘못된 cron 필드입니다: {text}")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"잘못된 cron 간격입니다: {step_text}")
            step = int(step_text)
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = _value(start_text, low, high, names), _value(end_text, low, high, names)
            if start > end:
                raise ValueError(f"잘못된 cron 범위입니다: {part}")
        else:
            start = _value(part, low, high, names)
            # 'a/n' 은 a 부터 최대값까지 n 간격
            end = high if step > 1 else start
        values.update(range(start, end + 1, step))
    return values


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    minute: set[int] | None
    hour: set[int] | None
    day: set[int] | None
    month: set[int] | None
    weekday: set[int] | None  # 파이썬 요일 (월=0 ... 일=6)

    @classmethod
    def parse(cls, expression: str) -> "CronSchedule":
        text = " ".join((expression or "").split())
        text = MACROS.get(text.lower(), text)
        parts = text.split(" ")
        if len(parts) != 5:
            raise ValueError(f"cron 표현식은 5개 필드여야 합니다: '{expression}'")
        parsed = [_parse_field(part, low, high, names) for part, (_, low, high, names) in zip(parts, FIELDS)]
        minute, hour, day, month, cron_weekday = parsed
        weekday = None
        if cron_weekday is not None:
            # cron: 일=0/7, 월=1 ... -> python: 월=0 ... 일=6
            weekday = {(d - 1) % 7 for d in cron_weekday}
            if len(weekday) == 7:
                weekday = None
        return cls(expression=expression, minute=minute, hour=hour, day=day, month=month, weekday=weekday)

    def next_after(self, dt: datetime) -> datetime:
        """dt 이후(초과) 첫 실행 시각. 시간대는 dt를 따른다."""
        base = dt.replace(second=0, microsecond=0)
        common = {"month": self.month, "hour": self.hour, "minute": self.minute, "second": 0, "microsecond": 0}
        if self.day is not None and self.weekday is not None:
            by_day = next_cron(base, day=self.day, **common)
            by_weekday = next_cron(base, weekday=self.weekday, **common)
            return min(by_day, by_weekday)
        return next_cron(base, day=self.day, weekday=self.weekday, **common)


def validate_cron(expression: str) -> str:
    CronSchedule.parse(expression)
    return expression
