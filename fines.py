import math
from datetime import datetime, timedelta
from typing import Optional

import config

ONE_DAY = timedelta(days=1)


def calculate_fine(
    due_at: datetime,
    returned_at: datetime,
    rate: Optional[float] = None,
    cap: Optional[float] = None,
) -> float:
    """Late fee for an item due at ``due_at`` and returned at ``returned_at``.

    Every started day past the due date costs ``rate`` (default
    ``config.FINE_RATE_PER_DAY``), up to ``cap`` (default ``config.FINE_CAP``).
    Early or on-time returns cost nothing.
    """
    rate = config.FINE_RATE_PER_DAY if rate is None else rate
    cap = config.FINE_CAP if cap is None else cap

    days_overdue = math.ceil((returned_at - due_at) / ONE_DAY)
    if days_overdue <= 0:
        return 0.0
    return round(min(days_overdue * rate, cap), 2)
