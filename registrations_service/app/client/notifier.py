"""
User-facing feedback sink for the registration client.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


class NoticeLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    level: NoticeLevel
    message: str
    code: Optional[str] = None


class Notifier:
    """
    Receives the notices the registration flow wants shown to the user.
    Subclasses decide how they are surfaced.
    """

    def notify(self, notice: Notice):
        raise NotImplementedError

    def info(self, message: str, code: Optional[str] = None):
        self.notify(Notice(NoticeLevel.INFO, message, code))

    def success(self, message: str, code: Optional[str] = None):
        self.notify(Notice(NoticeLevel.SUCCESS, message, code))

    def warning(self, message: str, code: Optional[str] = None):
        self.notify(Notice(NoticeLevel.WARNING, message, code))

    def error(self, message: str, code: Optional[str] = None):
        self.notify(Notice(NoticeLevel.ERROR, message, code))


class LoggingNotifier(Notifier):
    """Writes notices to the log."""

    _LEVELS = {
        NoticeLevel.INFO: logging.INFO,
        NoticeLevel.SUCCESS: logging.INFO,
        NoticeLevel.WARNING: logging.WARNING,
        NoticeLevel.ERROR: logging.ERROR,
    }

    def notify(self, notice: Notice):
        suffix = f" [{notice.code}]" if notice.code else ""
        logger.log(self._LEVELS[notice.level], f"{notice.message}{suffix}")


class RecordingNotifier(Notifier):
    """Keeps notices in order so a UI layer can drain them."""

    def __init__(self):
        self.notices: List[Notice] = []

    def notify(self, notice: Notice):
        self.notices.append(notice)

    def drain(self) -> List[Notice]:
        notices, self.notices = self.notices, []
        return notices

    def codes(self) -> List[Optional[str]]:
        return [notice.code for notice in self.notices]
