from .registry import VALID_DOMAINS, DomainRegistry
from .validate import MirrorReport, compare_domain_dirs, sync_domain_dirs

__all__ = [
    "VALID_DOMAINS",
    "DomainRegistry",
    "MirrorReport",
    "compare_domain_dirs",
    "sync_domain_dirs",
]
