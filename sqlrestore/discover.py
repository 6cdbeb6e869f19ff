"""
Report the encryption objects an export needs secrets for, without
connecting to any server.
"""

import argparse
import json
import logging
import sys

from .binding import SecretBinder
from .common import add_source_arguments, resolve_options, setup_logging
from .encryption import catalog_to_dict, discover_requirements, render_catalog_text
from .errors import ConfigError
from .models import SECRET_KINDS

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Discover encryption secrets required by an export')
    add_source_arguments(parser)
    parser.add_argument('--format', choices=['text', 'json'], default='text', help='Output format')
    args = parser.parse_args(argv)

    # Keep stdout clean for JSON output
    setup_logging(None, args.verbose, stream=sys.stderr)

    try:
        options = resolve_options(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    catalog = discover_requirements(options.import_directory)

    missing = []
    if args.config:
        binder = SecretBinder(options.secrets, options.database_master_key)
        missing = [r for r in catalog
                   if r.kind in SECRET_KINDS and binder.lookup(r.kind, r.name) is None]

    if args.format == 'json':
        report = catalog_to_dict(catalog)
        if args.config:
            report['missingSecrets'] = [{'kind': r.kind.value, 'name': r.name} for r in missing]
        print(json.dumps(report, indent=2))
    else:
        print(render_catalog_text(catalog))
        if args.config:
            if missing:
                print(f"\nNo secret configured for {len(missing)} requirement(s):")
                for r in missing:
                    print(f"  - {r.kind.value} {r.display_name}")
            else:
                print("\nAll required secrets are configured.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
