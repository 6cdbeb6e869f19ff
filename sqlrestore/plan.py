"""
Print the execution plan of an export tree (stages and scripts in the order
they would run) without executing anything.
"""

import argparse
import logging
import sys

from .binding import script_requirements
from .common import add_source_arguments, resolve_options, setup_logging
from .errors import ConfigError, PlanningError
from .models import ExecutionPlan
from .planner import build_plan

logger = logging.getLogger(__name__)


def render_plan(plan: ExecutionPlan) -> str:
    lines = [f"Execution plan for {plan.root}: {plan.script_count} scripts in {len(plan.stages)} stages"]
    for stage, scripts in plan.stages:
        lines.append("")
        lines.append(f"[{stage.value:02d}] {stage.label} ({len(scripts)})")
        for script in scripts:
            needs = script_requirements(script)
            suffix = ''
            if needs:
                suffix = '  needs: ' + ', '.join(f"{r.kind.value} {r.name}" if r.name else r.kind.value
                                                 for r in needs)
            lines.append(f"  {script.relative_path}{suffix}")
    return '\n'.join(lines)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Show the import plan for an export tree')
    add_source_arguments(parser)
    args = parser.parse_args(argv)
    setup_logging(None, args.verbose)

    try:
        options = resolve_options(args)
        plan = build_plan(options.import_directory, options.exclude_stages)
    except (ConfigError, PlanningError) as e:
        logger.error(str(e))
        return 1

    print(render_plan(plan))
    return 0


if __name__ == "__main__":
    sys.exit(main())
