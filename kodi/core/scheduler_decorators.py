from typing import Callable, Dict, Any, List

from kodi.core.config import settings

# Global registry of scheduled Dramatiq actors
SCHEDULED_TASKS: List[Dict[str, Any]] = []


def _register_task(func: Callable, trigger: str, **trigger_args):
    SCHEDULED_TASKS.append({
        "func": func,
        "trigger": trigger,
        "trigger_args": trigger_args,
    })
    return func


def run_cron(expr: str, timezone: str | None = None):
    """Generic cron expression, e.g. run_cron('1 0 1 * *') for 00:01 on the 1st."""
    parts = expr.strip().split()
    if len(parts) != 5:
        raise ValueError("Invalid cron expression (expected 5 fields)")
    minute, hour, day, month, day_of_week = parts

    def wrapper(func: Callable):
        return _register_task(
            func,
            "cron",
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone or settings.TIMEZONE,
        )
    return wrapper
