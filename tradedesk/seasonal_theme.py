"""Season and holiday detection for notification styling.

Pure date arithmetic; every function takes the day to evaluate so results are
reproducible. `seasonal_theme()` picks the season's palette, overridden by the
Christmas, Halloween or Thanksgiving theme (in that priority) while one of
those holidays or holiday seasons is active.
"""
import calendar
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Theme:
    colors: Dict[str, str]
    decorations: Tuple[str, ...]
    background: str
    message: str


def _theme(primary: str, secondary: str, accent: str, decorations, message: str) -> Theme:
    return Theme(
        colors={"primary": primary, "secondary": secondary, "accent": accent},
        decorations=tuple(decorations),
        background=f"linear-gradient(135deg, {primary} 0%, {secondary} 100%)",
        message=message,
    )


SEASON_THEMES: Dict[str, Theme] = {
    "winter": Theme(
        colors={"primary": "#1e3c72", "secondary": "#2a5298", "accent": "#667eea"},
        decorations=("❄️", "🌨️", "⛄"),
        background="linear-gradient(135deg, #667eea 0%, #764ba2 100%)",
        message="Staying warm this winter season",
    ),
    "spring": _theme("#56ab2f", "#a8e6cf", "#88e5a3", ("🌸", "🌷", "🦋"), "Celebrating new beginnings this spring"),
    "summer": _theme("#ff7b7b", "#ffa726", "#ffcc02", ("☀️", "🌻", "🏖️"), "Enjoying the sunny summer days"),
    "autumn": _theme("#d2691e", "#cd853f", "#daa520", ("🍂", "🍁", "🎃"), "Embracing the beautiful autumn colors"),
}

# (triggers, theme), checked in order
HOLIDAY_THEMES: List[Tuple[Tuple[str, ...], Theme]] = [
    (
        ("christmas", "holiday_season"),
        _theme("#c41e3a", "#228b22", "#ffd700", ("🎄", "🎅", "🎁", "❄️"),
               "Spreading holiday cheer to our beloved pet families"),
    ),
    (
        ("halloween", "halloween_season"),
        _theme("#ff4500", "#32174d", "#ffa500", ("🎃", "👻", "🦇"),
               "Having a spook-tacular time this Halloween season"),
    ),
    (
        ("thanksgiving", "thanksgiving_season"),
        _theme("#8b4513", "#daa520", "#ff8c00", ("🦃", "🍂", "🌽"),
               "Grateful for our amazing bulldog community this Thanksgiving"),
    ),
]


def current_season(day: Optional[date] = None) -> str:
    day = day or date.today()
    m, d = day.month, day.day
    if (m == 12 and d >= 21) or m <= 2 or (m == 3 and d < 20):
        return "winter"
    if m <= 5 or (m == 6 and d < 21):
        return "spring"
    if m <= 8 or (m == 9 and d < 22):
        return "summer"
    return "autumn"


def easter_date(year: int) -> date:
    """Western Easter Sunday (anonymous Gregorian computus)."""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


def last_weekday_of_month(year: int, month: int, weekday: int) -> date:
    last = date(year, month, calendar.monthrange(year, month)[1])
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def nth_weekday_of_month(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def current_holidays(day: Optional[date] = None) -> List[str]:
    """Holidays falling on `day`, followed by any active holiday seasons."""
    day = day or date.today()
    y, m, d = day.year, day.month, day.day

    fixed = {
        (1, 1): "new_year",
        (2, 14): "valentines",
        (3, 17): "st_patricks",
        (7, 4): "independence_day",
        (10, 31): "halloween",
        (12, 25): "christmas",
    }
    movable = {
        easter_date(y): "easter",
        last_weekday_of_month(y, 5, calendar.MONDAY): "memorial_day",
        nth_weekday_of_month(y, 9, calendar.MONDAY, 1): "labor_day",
        nth_weekday_of_month(y, 11, calendar.THURSDAY, 4): "thanksgiving",
    }

    holidays = []
    if (m, d) in fixed:
        holidays.append(fixed[(m, d)])
    if day in movable:
        holidays.append(movable[day])

    if m == 12:
        holidays.append("holiday_season")
    if m == 1 and d <= 7:
        holidays.append("new_year_season")
    if m == 10:
        holidays.append("halloween_season")
    if m == 11:
        holidays.append("thanksgiving_season")
    return holidays


def seasonal_theme(day: Optional[date] = None) -> Dict[str, Any]:
    day = day or date.today()
    season = current_season(day)
    holidays = current_holidays(day)

    theme = SEASON_THEMES[season]
    for triggers, holiday_theme in HOLIDAY_THEMES:
        if any(h in holidays for h in triggers):
            theme = holiday_theme
            break

    data = asdict(theme)
    data["decorations"] = list(theme.decorations)
    data["season"] = season
    data["holidays"] = holidays
    return data
