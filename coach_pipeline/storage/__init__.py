from .conversations import CoachConversationsMixin
from .messages import CoachMessagesMixin
from .patterns import CoachPatternsMixin
from .profiles import CoachProfilesMixin
from .schema import CoachSchemaMixin
from .usage import CoachUsageMixin

__all__ = [
    "CoachSchemaMixin",
    "CoachProfilesMixin",
    "CoachConversationsMixin",
    "CoachMessagesMixin",
    "CoachPatternsMixin",
    "CoachUsageMixin",
]
