"""
Agricultural calendar helpers.
"""

from datetime import date


def season_year(value: date, cutover_month: int = 8) -> int:
    """
    Agricultural season a date belongs to.

    Dates on or after the cutover month belong to the season starting that
    calendar year; earlier dates belong to the previous year's season.
    """
    return value.year if value.month >= cutover_month else value.year - 1


def shift_years(value: date, years: int) -> date:
    """Shift a date by whole calendar years, keeping month/day (29 Feb -> 28 Feb)."""
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        return value.replace(year=value.year + years, day=28)
