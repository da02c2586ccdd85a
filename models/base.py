from datetime import datetime, timezone
from core.db import Base


def utcnow() -> datetime:
    # DB에는 naive UTC로 저장
    return datetime.now(timezone.utc).replace(tzinfo=None)
