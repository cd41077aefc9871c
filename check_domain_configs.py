import json
import sys
from pathlib import Path

from coach_pipeline.config import Settings
from coach_pipeline.domains import VALID_DOMAINS, compare_domain_dirs, sync_domain_dirs
from coach_pipeline.models import DomainDefinition


def check_definitions(config_dir):
    errors = 0
    seen = set()
    for path in sorted(config_dir.glob('*.json')):
        try:
            definition = DomainDefinition.from_dict(json.loads(path.read_text(encoding='utf-8')))
        except (ValueError, AttributeError) as e:
            print(f"Invalid domain config {path.name}: {e}")
            errors += 1
            continue
        if definition.id not in VALID_DOMAINS:
            print(f"Unknown domain id '{definition.id}' in {path.name}")
            errors += 1
        if path.stem != definition.id:
            print(f"File name {path.name} does not match domain id '{definition.id}'")
            errors += 1
        seen.add(definition.id)

    for domain_id in VALID_DOMAINS:
        if domain_id not in seen:
            print(f"Missing domain config: {domain_id}.json")
            errors += 1
    return errors


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    settings = Settings.from_env()
    canonical_dir = settings.domain_config_dir
    mirror_dir = settings.domain_config_mirror_dir
    if not canonical_dir.exists():
        print(f"Error: {canonical_dir} does not exist.")
        sys.exit(1)

    if '--sync' in args:
        for name in sync_domain_dirs(canonical_dir, mirror_dir):
            print(f"Synced: {name}")

    errors = check_definitions(canonical_dir)
    report = compare_domain_dirs(canonical_dir, mirror_dir)
    for line in report.lines():
        print(line)
    errors += len(report.lines())

    if errors > 0:
        print(f"Found {errors} domain config problems.")
        sys.exit(1)
    else:
        print("Domain configs are valid and the mirror is identical.")
        sys.exit(0)


if __name__ == '__main__':
    main()
