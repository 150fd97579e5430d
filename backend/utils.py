import logging
from datetime import date, timedelta


def setup_logger(name: str = "focuzxp") -> logging.Logger:
    """设置日志记录器"""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def today() -> date:
    return date.today()


def start_of_month(d: date) -> date:
    return d.replace(day=1)


def end_of_month(d: date) -> date:
    if d.month == 12:
        next_month = date(d.year + 1, 1, 1)
    else:
        next_month = date(d.year, d.month + 1, 1)
    return next_month - timedelta(days=1)


def add_months(d: date, n: int) -> date:
    """First day of the month ``n`` months away from ``d``."""
    index = d.year * 12 + (d.month - 1) + n
    return date(index // 12, index % 12 + 1, 1)


def parse_date(s):
    if not s:
        return None
    if isinstance(s, date):
        return s
    if not isinstance(s, str):
        raise ValueError(f"invalid date: {s!r}")
    return date.fromisoformat(s[:10])


def parse_month(s):
    """Parse ``YYYY-MM`` into the first day of that month."""
    year, month = s.split('-', 1)
    return date(int(year), int(month), 1)
