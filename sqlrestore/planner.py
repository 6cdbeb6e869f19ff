import codecs
import logging
import re
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

from .errors import PlanningError
from .models import ExecutionPlan, ExportedScript, Stage

logger = logging.getLogger(__name__)


# Folder keyword -> stage, checked in order against the normalised folder name
# (numeric prefix removed, lower case, letters and digits only). More specific
# keywords come first: "tablesforeignkeys" must not land in TABLES and
# "userdefinedtypes" must not land in SECURITY_PRINCIPALS.
FOLDER_RULES: List[Tuple[str, Stage]] = [
    ('filegroup', Stage.FILE_GROUPS),
    ('databaseconfiguration', Stage.DATABASE_CONFIGURATION),
    ('scopedconfiguration', Stage.DATABASE_CONFIGURATION),
    ('foreignkey', Stage.KEYS_AND_INDEXES),
    ('index', Stage.KEYS_AND_INDEXES),
    ('constraint', Stage.KEYS_AND_INDEXES),
    ('columnmasterkey', Stage.ENCRYPTION_OBJECTS),
    ('columnencryptionkey', Stage.ENCRYPTION_OBJECTS),
    ('symmetrickey', Stage.ENCRYPTION_OBJECTS),
    ('certificate', Stage.ENCRYPTION_OBJECTS),
    ('encryption', Stage.ENCRYPTION_OBJECTS),
    ('masterkey', Stage.ENCRYPTION_OBJECTS),
    ('securitypolic', Stage.PROGRAMMABILITY),
    ('assembl', Stage.TYPES),
    ('partition', Stage.TYPES),
    ('type', Stage.TYPES),
    ('sequence', Stage.TYPES),
    ('xmlschema', Stage.TYPES),
    ('view', Stage.VIEWS),
    ('function', Stage.FUNCTIONS),
    ('procedure', Stage.PROCEDURES),
    ('trigger', Stage.TRIGGERS),
    ('synonym', Stage.SYNONYMS),
    ('table', Stage.TABLES),
    ('security', Stage.SECURITY_PRINCIPALS),
    ('login', Stage.SECURITY_PRINCIPALS),
    ('user', Stage.SECURITY_PRINCIPALS),
    ('role', Stage.SECURITY_PRINCIPALS),
    ('schema', Stage.SCHEMA_CONTAINERS),
]

# Row data is transferred by a separate tool
DATA_FOLDER = re.compile(r'^(\d+[_\-. ]*)?data$', re.IGNORECASE)


def normalize_folder_name(folder: str) -> str:
    name = re.sub(r'^\d+[_\-. ]*', '', folder)
    return re.sub(r'[^0-9a-z]', '', name.lower())


def classify_folder(folder: str) -> Optional[Stage]:
    """Return the stage for a single folder name, or None if unrecognised."""
    name = normalize_folder_name(folder)
    if not name:
        return None
    for keyword, stage in FOLDER_RULES:
        if keyword in name:
            return stage
    return None


def classify_path(relative: Path) -> Stage:
    """Classify a script by its folders, innermost first.

    Scripts in unrecognised folders, or directly at the export root, belong to
    the final programmability tier, as do security policies wherever they sit
    since their predicates are functions.
    """
    if relative.name.lower().endswith('.securitypolicy.sql'):
        return Stage.PROGRAMMABILITY
    for folder in reversed(relative.parts[:-1]):
        stage = classify_folder(folder)
        if stage is not None:
            return stage
    return Stage.PROGRAMMABILITY


def object_name_from_file(path: Path) -> str:
    """Schema-qualified object name from a file such as dbo.Customers.sql."""
    name = path.stem
    for suffix in ('.data', '.securitypolicy'):
        if name.lower().endswith(suffix):
            name = name[:-len(suffix)]
    return name


def read_script(path: Path) -> str:
    """Read a script as UTF-8 (BOM tolerated) or UTF-16 when it has a UTF-16 BOM.

    Files that are not valid UTF-8 come from older tools writing the Windows
    codepage and are read as cp1252, or latin-1 for bytes cp1252 leaves undefined.
    """
    raw = path.read_bytes()
    if raw.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return raw.decode('utf-16')
    try:
        return raw.decode('utf-8-sig')
    except UnicodeDecodeError as e:
        logger.warning(f"{path.name} is not valid UTF-8 ({e.reason} at byte {e.start}); reading as cp1252")
    try:
        return raw.decode('cp1252')
    except UnicodeDecodeError:
        return raw.decode('latin-1')


def is_data_path(relative: Path) -> bool:
    return any(DATA_FOLDER.match(folder) for folder in relative.parts[:-1])


class StagePlanner:
    """Discovers exported scripts and orders them into stages."""

    def __init__(self, root, exclude_stages: FrozenSet[Stage] = frozenset()):
        self.root = Path(root)
        self.exclude_stages = frozenset(exclude_stages)

    def discover(self) -> List[Path]:
        """All .sql files under the root in discovery order."""
        if not self.root.exists():
            raise PlanningError(f"Export directory not found: {self.root}")
        if not self.root.is_dir():
            raise PlanningError(f"Export path is not a directory: {self.root}")
        files = [p for p in self.root.rglob('*') if p.is_file() and p.suffix.lower() == '.sql']
        return sorted(files, key=lambda p: [part.lower() for part in p.relative_to(self.root).parts])

    def plan(self) -> ExecutionPlan:
        buckets: Dict[Stage, List[ExportedScript]] = {stage: [] for stage in Stage}
        skipped_data = 0
        excluded = 0
        order = 0

        for path in self.discover():
            relative = path.relative_to(self.root)
            if is_data_path(relative):
                skipped_data += 1
                continue
            stage = classify_path(relative)
            if stage in self.exclude_stages:
                excluded += 1
                continue
            sql, read_error = '', None
            try:
                sql = read_script(path)
            except (OSError, UnicodeDecodeError) as e:
                read_error = f"Cannot read script: {e}"
                logger.error(f"{relative}: {read_error}")
            buckets[stage].append(ExportedScript(
                name=object_name_from_file(path),
                path=path,
                relative_path=relative.as_posix(),
                stage=stage,
                sql=sql,
                order=order,
                read_error=read_error,
            ))
            order += 1

        if skipped_data:
            logger.info(f"Skipping {skipped_data} row-data scripts (data is imported separately)")
        if excluded:
            logger.info(f"Excluded {excluded} scripts in stages: "
                        f"{', '.join(s.label for s in sorted(self.exclude_stages))}")

        plan = ExecutionPlan(root=self.root,
                             stages=[(stage, scripts) for stage, scripts in sorted(buckets.items()) if scripts])
        if plan.script_count == 0:
            raise PlanningError(f"No scripts found to import in {self.root}")

        logger.info(f"Import plan: {plan.script_count} scripts in {len(plan.stages)} stages")
        for stage, scripts in plan.stages:
            logger.info(f"  {stage.label}: {len(scripts)} scripts")
        return plan


def build_plan(root, exclude_stages: FrozenSet[Stage] = frozenset()) -> ExecutionPlan:
    return StagePlanner(root, exclude_stages).plan()
