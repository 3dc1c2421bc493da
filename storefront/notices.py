import logging
from typing import Callable
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Notice(BaseModel):
    """A user-visible message; the UI layer decides how to render it."""

    level: str = "info" # info, error
    title: str
    message: str

    @classmethod
    def info(cls, title: str, message: str) -> "Notice":
        return cls(level="info", title=title, message=message)

    @classmethod
    def error(cls, title: str, message: str) -> "Notice":
        return cls(level="error", title=title, message=message)


Notifier = Callable[[Notice], None]


def log_notice(notice: Notice) -> None:
    if notice.level == "error":
        logger.warning("%s: %s", notice.title, notice.message)
    else:
        logger.info("%s: %s", notice.title, notice.message)
