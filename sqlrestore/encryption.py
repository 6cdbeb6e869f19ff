"""
Encryption requirement discovery.

Works out which cryptographic objects a restore will need secrets for. The
export metadata document is authoritative when present; the script text is
always scanned as well, so exports without metadata (or with objects the
metadata does not list) still produce a useful catalog.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Pattern

import yaml

from .config import coerce_bool
from .errors import ConfigError, PlanningError
from .models import (
    SECRET_KINDS, EncryptionRequirement, RequirementCatalog, RequirementKind,
    RequirementSource, Stage,
)
from .planner import StagePlanner, classify_path, read_script
from .sqltext import strip_comments

logger = logging.getLogger(__name__)


METADATA_FILES = ('_export_metadata.json', '_export_metadata.yaml', '_export_metadata.yml')
MIN_METADATA_VERSION = (1, 1)

# metadata list key -> kind
METADATA_LISTS = {
    'symmetricKeys': RequirementKind.SYMMETRIC_KEY,
    'certificates': RequirementKind.CERTIFICATE,
    'asymmetricKeys': RequirementKind.ASYMMETRIC_KEY,
    'applicationRoles': RequirementKind.APPLICATION_ROLE,
    'columnMasterKeys': RequirementKind.COLUMN_MASTER_KEY,
    'columnEncryptionKeys': RequirementKind.COLUMN_ENCRYPTION_KEY,
}

SCANNED_STAGES = frozenset({Stage.SECURITY_PRINCIPALS, Stage.ENCRYPTION_OBJECTS, Stage.TABLES})

_FLAGS = re.IGNORECASE | re.DOTALL | re.MULTILINE

# [bracketed]]name], "quoted", or bare identifier
NAME = r'''(?:\[(?P<bracket>(?:[^\]'\n]|\]\])+)\]|"(?P<quoted>[^"]+)"|(?P<bare>[A-Za-z_#@][\w#@$]*))'''
# Name carried inside a string literal that is concatenated into dynamic SQL.
# Inside nested dynamic SQL the delimiting quotes are doubled.
LITERAL_NAME = (r"(?:\[?'{1,2}\s*\+\s*(?:QUOTENAME\s*\(\s*)?N?"
                r"(?:''(?P<nested>[^']+)''|'(?P<literal>(?:[^']|'')+)')"
                r"|\s*''(?P<inline>[^'\s]+)'')")
# Rest of the current statement
STATEMENT = r'(?:(?!\b(?:CREATE|ALTER)\b|;|^\s*GO\s*$).)*'


@dataclass(frozen=True)
class InferenceRule:
    name: str
    pattern: Pattern
    kind: RequirementKind
    reason: str
    named: bool = True
    gate: Optional[Callable[[re.Match], bool]] = None


def _not_system(match: re.Match) -> bool:
    name = extract_name(match) or ''
    return not name.startswith('##')


def _by_master_key(match: re.Match) -> bool:
    return _not_system(match) and re.search(r'\bBY\s+MASTER\s+KEY\b', match.group('body'), _FLAGS) is not None


def _without_decryption_password(match: re.Match) -> bool:
    body = match.group('body')
    return not re.search(r'\bDECRYPTION\s+BY\s+PASSWORD\b|\bDECRYPTION_BY_PASSWORD\b', body, _FLAGS)


def _rule(name, pattern, kind, reason, named=True, gate=None) -> InferenceRule:
    return InferenceRule(name, re.compile(pattern, _FLAGS), kind, reason, named, gate)


INFERENCE_RULES: List[InferenceRule] = [
    _rule('symmetric-key',
          rf'\bCREATE\s+SYMMETRIC\s+KEY\s+{NAME}(?P<body>{STATEMENT})',
          RequirementKind.SYMMETRIC_KEY, 'CREATE SYMMETRIC KEY', gate=_not_system),
    _rule('symmetric-key-by-master-key',
          rf'\bCREATE\s+SYMMETRIC\s+KEY\s+{NAME}(?P<body>{STATEMENT})',
          RequirementKind.DATABASE_MASTER_KEY, 'referenced MASTER KEY', named=False, gate=_by_master_key),
    _rule('master-key',
          r'\b(?:CREATE|ALTER|OPEN)\s+MASTER\s+KEY\b',
          RequirementKind.DATABASE_MASTER_KEY, 'referenced MASTER KEY', named=False),
    _rule('certificate',
          rf'\bCREATE\s+CERTIFICATE\s+{NAME}',
          RequirementKind.CERTIFICATE, 'CREATE CERTIFICATE', gate=_not_system),
    _rule('certificate-private-key',
          rf"\b(?:CREATE|ALTER)\s+CERTIFICATE\s+{NAME}{STATEMENT}?\bWITH\s+PRIVATE\s+KEY\s*"
          rf"\((?P<body>(?:'(?:[^']|'')*'|[^)'])*)\)",
          RequirementKind.DATABASE_MASTER_KEY, 'certificate with DMK-encrypted private key',
          named=False, gate=_without_decryption_password),
    _rule('asymmetric-key',
          rf'\bCREATE\s+ASYMMETRIC\s+KEY\s+{NAME}',
          RequirementKind.ASYMMETRIC_KEY, 'CREATE ASYMMETRIC KEY', gate=_not_system),
    _rule('application-role',
          rf'\bCREATE\s+APPLICATION\s+ROLE\s+{NAME}',
          RequirementKind.APPLICATION_ROLE, 'CREATE APPLICATION ROLE'),
    _rule('application-role-dynamic',
          rf'\bCREATE\s+APPLICATION\s+ROLE\s*{LITERAL_NAME}',
          RequirementKind.APPLICATION_ROLE, 'CREATE APPLICATION ROLE (dynamic SQL)'),
    _rule('application-role-activation',
          r"\bsp_setapprole\s+(?:@rolename\s*=\s*)?N?'(?P<literal>(?:[^']|'')+)'",
          RequirementKind.APPLICATION_ROLE, 'activates application role'),
    _rule('column-master-key',
          rf'\bCREATE\s+COLUMN\s+MASTER\s+KEY\s+{NAME}',
          RequirementKind.COLUMN_MASTER_KEY, 'CREATE COLUMN MASTER KEY'),
    _rule('column-encryption-key',
          rf'\bCREATE\s+COLUMN\s+ENCRYPTION\s+KEY\s+{NAME}',
          RequirementKind.COLUMN_ENCRYPTION_KEY, 'CREATE COLUMN ENCRYPTION KEY'),
    _rule('encrypted-column',
          rf'\bENCRYPTED\s+WITH\s*\([^)]*?\bCOLUMN_ENCRYPTION_KEY\s*=\s*{NAME}',
          RequirementKind.COLUMN_ENCRYPTION_KEY, 'inferred from ENCRYPTED WITH'),
    # Older exports reference column keys that were never scripted on their own
    _rule('encrypted-column-master-key',
          r'\bENCRYPTED\s+WITH\s*\([^)]*?\bCOLUMN_ENCRYPTION_KEY\s*=',
          RequirementKind.COLUMN_MASTER_KEY, 'required, inferred from CEK usage', named=False),
]


def extract_name(match: re.Match) -> Optional[str]:
    groups = match.groupdict()
    if groups.get('bracket'):
        return groups['bracket'].replace(']]', ']')
    if groups.get('quoted'):
        return groups['quoted']
    if groups.get('bare'):
        return groups['bare']
    if groups.get('literal'):
        literal = groups['literal'].replace("''", "'").strip()
    else:
        literal = (groups.get('nested') or groups.get('inline') or '').strip()
    if literal:
        if literal.startswith('[') and literal.endswith(']'):
            literal = literal[1:-1].replace(']]', ']')
        return literal or None
    return None


def infer_requirements(sql: str, origin: Optional[str] = None,
                       rules: Iterable[InferenceRule] = INFERENCE_RULES) -> List[EncryptionRequirement]:
    """Apply the rule table to comment-stripped script text."""
    text = strip_comments(sql)
    found: List[EncryptionRequirement] = []
    for rule in rules:
        for match in rule.pattern.finditer(text):
            if rule.gate is not None and not rule.gate(match):
                continue
            name = extract_name(match) if rule.named else None
            if rule.named and not name:
                continue
            found.append(EncryptionRequirement(
                kind=rule.kind,
                name=name,
                source=RequirementSource.INFERRED,
                reason=rule.reason,
                origin=origin,
            ))
    return found


def _parse_version(value) -> Optional[tuple]:
    if isinstance(value, bool) or value is None:
        return None
    parts = str(value).strip().lstrip('vV').split('.')
    try:
        return tuple(int(p) for p in parts)
    except ValueError:
        return None


def _names(value, key: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    names = []
    for item in value:
        if isinstance(item, dict):
            item = item.get('name')
        if item is None or not str(item).strip():
            continue
        names.append(str(item).strip().strip('[]'))
    return names


def _read_metadata_file(path: Path) -> Dict:
    with open(path, 'r', encoding='utf-8-sig') as f:
        if path.suffix.lower() in ('.yaml', '.yml'):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("metadata document is not a mapping")
    return data


def load_declared_requirements(root: Path) -> Optional[List[EncryptionRequirement]]:
    """Requirements listed by the export metadata.

    Returns None when there is no usable metadata (absent, incompatible
    version, malformed); the caller then relies on text scanning only.
    """
    path = next((root / name for name in METADATA_FILES if (root / name).is_file()), None)
    if path is None:
        logger.info("No export metadata found; encryption requirements will be inferred from scripts")
        return None

    try:
        data = _read_metadata_file(path)
        version = _parse_version(data.get('version'))
        if version is None or version < MIN_METADATA_VERSION:
            logger.warning(f"Export metadata version {data.get('version')!r} is not supported "
                           f"(need >= {'.'.join(map(str, MIN_METADATA_VERSION))}); "
                           f"falling back to script scanning")
            return None

        section = data.get('encryptionObjects')
        if section is None:
            return []
        if not isinstance(section, dict):
            raise ValueError("encryptionObjects must be a mapping")

        declared: List[EncryptionRequirement] = []
        if coerce_bool(section.get('hasDatabaseMasterKey', False), 'encryptionObjects.hasDatabaseMasterKey'):
            declared.append(EncryptionRequirement(RequirementKind.DATABASE_MASTER_KEY, None,
                                                  RequirementSource.DECLARED, origin=path.name))
        for key, kind in METADATA_LISTS.items():
            for name in _names(section.get(key), key):
                declared.append(EncryptionRequirement(kind, name, RequirementSource.DECLARED, origin=path.name))
        return declared
    except (OSError, ValueError, ConfigError, yaml.YAMLError) as e:
        # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
        logger.warning(f"Could not read export metadata {path.name}: {e}; falling back to script scanning")
        return None


def is_scanned(relative: Path) -> bool:
    """Security objects, table definitions, and scripts at the export root."""
    if len(relative.parts) == 1:
        return True
    return classify_path(relative) in SCANNED_STAGES


class EncryptionRequirementResolver:
    """Builds the requirement catalog for an export tree."""

    def __init__(self, root, rules: Iterable[InferenceRule] = INFERENCE_RULES):
        self.root = Path(root)
        self.rules = list(rules)

    def scan_scripts(self) -> List[EncryptionRequirement]:
        found: List[EncryptionRequirement] = []
        try:
            paths = StagePlanner(self.root).discover()
        except PlanningError as e:
            logger.warning(f"Cannot scan scripts: {e}")
            return found
        for path in paths:
            relative = path.relative_to(self.root)
            if not is_scanned(relative):
                continue
            try:
                sql = read_script(path)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable script {relative}: {e}")
                continue
            found.extend(infer_requirements(sql, relative.as_posix(), self.rules))
        return found

    def resolve(self) -> RequirementCatalog:
        catalog = RequirementCatalog()
        declared = load_declared_requirements(self.root) if self.root.is_dir() else None
        for requirement in declared or []:
            catalog.add(requirement)
        for requirement in self.scan_scripts():
            catalog.add(requirement)

        logger.info(f"Encryption requirements: {len(catalog)} "
                    f"({sum(1 for r in catalog if r.source is RequirementSource.DECLARED)} declared)")
        return catalog


def discover_requirements(root) -> RequirementCatalog:
    return EncryptionRequirementResolver(root).resolve()


def catalog_to_dict(catalog: RequirementCatalog) -> Dict:
    """Machine-readable form of the catalog."""
    requirements = []
    for r in catalog:
        requirements.append({
            'kind': r.kind.value,
            'name': r.name,
            'source': r.source.value,
            'reason': r.reason,
            'origin': r.origin,
            'needsSecret': r.kind in SECRET_KINDS,
        })
    counts: Dict[str, int] = {}
    for r in catalog:
        counts[r.kind.value] = counts.get(r.kind.value, 0) + 1
    return {'requirements': requirements, 'counts': counts, 'total': len(catalog)}


def render_catalog_json(catalog: RequirementCatalog) -> str:
    return json.dumps(catalog_to_dict(catalog), indent=2)


def render_catalog_text(catalog: RequirementCatalog) -> str:
    """Aligned table of the catalog for the console."""
    if not len(catalog):
        return "No encryption requirements found."

    rows = [('KIND', 'NAME', 'SOURCE', 'SECRET', 'DETAIL')]
    for r in catalog:
        detail = r.reason if r.source is RequirementSource.INFERRED else ''
        if r.origin:
            detail = f"{detail} ({r.origin})" if detail else r.origin
        rows.append((r.kind.value, r.display_name, r.source.value,
                     'yes' if r.kind in SECRET_KINDS else 'info', detail or ''))

    widths = [max(len(row[i]) for row in rows) for i in range(4)]
    lines = []
    for row in rows:
        cells = [row[i].ljust(widths[i]) for i in range(4)]
        lines.append('  '.join(cells + [row[4]]).rstrip())
    lines.append('')
    lines.append(f"{len(catalog)} requirement(s); secrets are needed for kinds marked 'yes'.")
    return '\n'.join(lines)
