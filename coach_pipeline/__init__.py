from .config import Settings
from .models import DoneEvent, TokenEvent
from .pipeline.turn import CoachingTurnPipeline
from .store import CoachStore

__all__ = [
    "CoachStore",
    "CoachingTurnPipeline",
    "DoneEvent",
    "Settings",
    "TokenEvent",
]
