from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple


class Stage(IntEnum):
    """Dependency tiers, executed in ascending order."""
    FILE_GROUPS = 1
    DATABASE_CONFIGURATION = 2
    SECURITY_PRINCIPALS = 3
    SCHEMA_CONTAINERS = 4
    TYPES = 5
    TABLES = 6
    KEYS_AND_INDEXES = 7
    VIEWS = 8
    FUNCTIONS = 9
    PROCEDURES = 10
    TRIGGERS = 11
    SYNONYMS = 12
    ENCRYPTION_OBJECTS = 13
    PROGRAMMABILITY = 14

    @property
    def label(self) -> str:
        return STAGE_LABELS[self]

    @classmethod
    def from_label(cls, text: str) -> 'Stage':
        """Resolve 'Views', 'views', 'KEYS_AND_INDEXES' or 'KeysAndIndexes'."""
        wanted = text.replace('_', '').replace(' ', '').lower()
        for stage in cls:
            if stage.name.replace('_', '').lower() == wanted or stage.label.lower() == wanted:
                return stage
        raise ValueError(f"Unknown stage: {text}")


STAGE_LABELS = {
    Stage.FILE_GROUPS: 'FileGroups',
    Stage.DATABASE_CONFIGURATION: 'DatabaseConfiguration',
    Stage.SECURITY_PRINCIPALS: 'SecurityPrincipals',
    Stage.SCHEMA_CONTAINERS: 'SchemaContainers',
    Stage.TYPES: 'Types',
    Stage.TABLES: 'Tables',
    Stage.KEYS_AND_INDEXES: 'KeysAndIndexes',
    Stage.VIEWS: 'Views',
    Stage.FUNCTIONS: 'Functions',
    Stage.PROCEDURES: 'Procedures',
    Stage.TRIGGERS: 'Triggers',
    Stage.SYNONYMS: 'Synonyms',
    Stage.ENCRYPTION_OBJECTS: 'EncryptionObjects',
    Stage.PROGRAMMABILITY: 'Programmability',
}


@dataclass(frozen=True)
class ExportedScript:
    name: str
    path: Path
    relative_path: str
    stage: Stage
    sql: str
    order: int
    # Set when the file could not be read; the script fails without running
    read_error: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.stage.label}/{self.name}"


@dataclass
class ExecutionPlan:
    root: Path
    stages: List[Tuple[Stage, List[ExportedScript]]] = field(default_factory=list)

    def scripts(self) -> Iterator[ExportedScript]:
        for _, scripts in self.stages:
            yield from scripts

    @property
    def script_count(self) -> int:
        return sum(len(scripts) for _, scripts in self.stages)


class ScriptState(Enum):
    PENDING = 'Pending'
    EXECUTING = 'Executing'
    SUCCEEDED = 'Succeeded'
    DEFERRED = 'DeferredDependency'
    FAILED = 'FailedTerminal'


class ErrorKind(Enum):
    DEPENDENCY_UNRESOLVED = 'DependencyUnresolved'
    MISSING_SECRET = 'MissingSecret'
    EXECUTION_FATAL = 'ExecutionFatal'
    TIMEOUT = 'Timeout'
    SKIPPED = 'Skipped'


@dataclass(frozen=True)
class ExecutionAttempt:
    script: str
    attempt: int
    pass_number: int
    outcome: ScriptState
    error: Optional[str]
    timestamp: datetime


@dataclass
class RetryQueueEntry:
    script: ExportedScript
    attempts: int
    last_error: str


@dataclass(frozen=True)
class ErrorRecord:
    script: str
    path: str
    stage: Stage
    attempts: int
    kind: ErrorKind
    error: str
    timestamp: datetime


class RunStatus(Enum):
    SUCCESS = 'success'
    FAILURE = 'failure'
    ABORTED = 'aborted'


@dataclass
class RunResult:
    status: RunStatus
    total_scripts: int
    attempted: int
    succeeded: int
    failed: int
    passes: int
    errors: List[ErrorRecord] = field(default_factory=list)
    fatal_error: Optional[str] = None
    error_log_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCESS


class RequirementKind(Enum):
    DATABASE_MASTER_KEY = 'DatabaseMasterKey'
    SYMMETRIC_KEY = 'SymmetricKey'
    CERTIFICATE = 'Certificate'
    ASYMMETRIC_KEY = 'AsymmetricKey'
    APPLICATION_ROLE = 'ApplicationRole'
    COLUMN_MASTER_KEY = 'ColumnMasterKey'
    COLUMN_ENCRYPTION_KEY = 'ColumnEncryptionKey'


# Kinds whose restore needs a secret value at execution time. Column master and
# column encryption keys cannot be scripted with their key material, so they
# are only reported.
SECRET_KINDS = frozenset({
    RequirementKind.DATABASE_MASTER_KEY,
    RequirementKind.SYMMETRIC_KEY,
    RequirementKind.CERTIFICATE,
    RequirementKind.ASYMMETRIC_KEY,
    RequirementKind.APPLICATION_ROLE,
})


class RequirementSource(Enum):
    DECLARED = 'Declared'
    INFERRED = 'Inferred'


RequirementKey = Tuple[RequirementKind, Optional[str]]


def requirement_key(kind: RequirementKind, name: Optional[str]) -> RequirementKey:
    """Catalog key; names compare case-insensitively like SQL Server identifiers."""
    if kind is RequirementKind.DATABASE_MASTER_KEY or not name:
        return kind, None
    return kind, name.casefold()


@dataclass(frozen=True)
class EncryptionRequirement:
    kind: RequirementKind
    name: Optional[str]
    source: RequirementSource
    reason: Optional[str] = None
    origin: Optional[str] = None

    @property
    def key(self) -> RequirementKey:
        return requirement_key(self.kind, self.name)

    @property
    def display_name(self) -> str:
        if self.kind is RequirementKind.DATABASE_MASTER_KEY:
            return '(database master key)'
        return self.name or '(unknown)'


class RequirementCatalog:
    """Merged declared/inferred requirements, one entry per (kind, name)."""

    def __init__(self):
        self._entries: Dict[RequirementKey, EncryptionRequirement] = {}

    def add(self, requirement: EncryptionRequirement) -> bool:
        """Add a requirement; returns True if the catalog changed."""
        existing = self._entries.get(requirement.key)
        if existing is None:
            self._entries[requirement.key] = requirement
            return True
        if existing.source is RequirementSource.INFERRED and requirement.source is RequirementSource.DECLARED:
            self._entries[requirement.key] = requirement
            return True
        return False

    def get(self, key: RequirementKey) -> Optional[EncryptionRequirement]:
        return self._entries.get(key)

    def of_kind(self, kind: RequirementKind) -> List[EncryptionRequirement]:
        return [r for r in self._entries.values() if r.kind is kind]

    def __contains__(self, key) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[EncryptionRequirement]:
        order = list(RequirementKind)
        return iter(sorted(self._entries.values(),
                           key=lambda r: (order.index(r.kind), (r.name or '').casefold())))

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class SecretBinding:
    key: RequirementKey
    value: Optional[str]

    @property
    def bound(self) -> bool:
        return self.value is not None
