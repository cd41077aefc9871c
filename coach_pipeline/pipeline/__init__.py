from .composer import compose, compose_sections
from .context import ContextAssembler
from .domain_classifier import DomainClassifier
from .reflection import ReflectionScheduler
from .safety import SafetyScreener
from .stream import StreamProcessor, TagScanner, strip_control_tags
from .turn import CoachingTurnPipeline, build_generation_messages, prior_messages

__all__ = [
    "CoachingTurnPipeline",
    "ContextAssembler",
    "DomainClassifier",
    "ReflectionScheduler",
    "SafetyScreener",
    "StreamProcessor",
    "TagScanner",
    "build_generation_messages",
    "prior_messages",
    "compose",
    "compose_sections",
    "strip_control_tags",
]
