from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from .config import TIMEZONE

_TZ = ZoneInfo(TIMEZONE)


def ahora() -> datetime:
    """Fecha y hora local de la clínica (naive, así se guarda en BD)."""
    return datetime.now(_TZ).replace(tzinfo=None)


def hoy() -> date:
    return datetime.now(_TZ).date()
