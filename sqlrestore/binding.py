import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional

from .encryption import infer_requirements
from .models import (
    SECRET_KINDS, EncryptionRequirement, ExportedScript, RequirementCatalog,
    RequirementKey, RequirementKind, SecretBinding, Stage,
)
from .sqltext import escape_literal

logger = logging.getLogger(__name__)


VARIABLE_PREFIXES = {
    RequirementKind.SYMMETRIC_KEY: 'SymmetricKey',
    RequirementKind.CERTIFICATE: 'Certificate',
    RequirementKind.ASYMMETRIC_KEY: 'AsymmetricKey',
    RequirementKind.APPLICATION_ROLE: 'ApplicationRole',
}
MASTER_KEY_VARIABLE = 'DatabaseMasterKeyPassword'

MODULE_STAGES = frozenset({Stage.VIEWS, Stage.FUNCTIONS, Stage.PROCEDURES, Stage.TRIGGERS})


def secret_variable_name(kind: RequirementKind, name: Optional[str]) -> str:
    """SQLCMD variable through which a script receives a bound secret."""
    if kind is RequirementKind.DATABASE_MASTER_KEY:
        return MASTER_KEY_VARIABLE
    safe = re.sub(r'\W', '_', name or '')
    return f"{VARIABLE_PREFIXES[kind]}_{safe}_Password"


class SecretBindings:
    """Read-only result of binding configured secrets to requirements."""

    def __init__(self, bindings: Dict[RequirementKey, SecretBinding], names: Dict[RequirementKey, Optional[str]]):
        self._bindings = dict(bindings)
        self._names = dict(names)

    def get(self, key: RequirementKey) -> Optional[SecretBinding]:
        return self._bindings.get(key)

    def is_bound(self, key: RequirementKey) -> bool:
        binding = self._bindings.get(key)
        return binding is not None and binding.bound

    def label(self, key: RequirementKey) -> str:
        name = self._names.get(key) or key[1]
        return f"{key[0].value} {name}" if name else key[0].value

    @property
    def unbound(self) -> List[RequirementKey]:
        return [key for key, b in self._bindings.items() if not b.bound]

    def variables(self, keys: Iterable[RequirementKey]) -> Dict[str, str]:
        """SQLCMD variables carrying the bound values of the given requirements."""
        result = {}
        for key in keys:
            binding = self._bindings.get(key)
            if binding is None or not binding.bound:
                continue
            result[secret_variable_name(key[0], self._names.get(key))] = escape_literal(binding.value)
        return result

    def __len__(self) -> int:
        return len(self._bindings)


class SecretBinder:
    """Matches configured secret values to encryption requirements."""

    def __init__(self, secrets: Mapping[RequirementKind, Mapping[str, str]], database_master_key: Optional[str] = None):
        self.database_master_key = database_master_key
        self._lookup: Dict[RequirementKind, Dict[str, str]] = {
            kind: {name.strip('[]').casefold(): value for name, value in values.items()}
            for kind, values in secrets.items()
        }

    def lookup(self, kind: RequirementKind, name: Optional[str]) -> Optional[str]:
        if kind is RequirementKind.DATABASE_MASTER_KEY:
            return self.database_master_key
        if not name:
            return None
        return self._lookup.get(kind, {}).get(name.casefold())

    def bind(self, catalog: RequirementCatalog, scripts: Iterable[ExportedScript] = ()) -> SecretBindings:
        """Bind every secret-bearing requirement of the catalog and the scripts."""
        requirements: Dict[RequirementKey, EncryptionRequirement] = {}
        for requirement in catalog:
            if requirement.kind in SECRET_KINDS:
                requirements[requirement.key] = requirement
            else:
                logger.warning(f"{requirement.kind.value} {requirement.display_name} must be provisioned "
                               f"manually (key material is not part of the export)")
        for script in scripts:
            for requirement in script_requirements(script):
                requirements.setdefault(requirement.key, requirement)

        bindings: Dict[RequirementKey, SecretBinding] = {}
        names: Dict[RequirementKey, Optional[str]] = {}
        for key, requirement in requirements.items():
            value = self.lookup(requirement.kind, requirement.name)
            bindings[key] = SecretBinding(key=key, value=value)
            names[key] = requirement.name
            if value is None:
                logger.warning(f"No secret supplied for {requirement.kind.value} {requirement.display_name}")

        bound = sum(1 for b in bindings.values() if b.bound)
        logger.info(f"Secret bindings: {bound} bound, {len(bindings) - bound} unbound")
        return SecretBindings(bindings, names)


def script_requirements(script: ExportedScript) -> List[EncryptionRequirement]:
    """Secret-bearing requirements a script's own text depends on.

    Module definitions (views, functions, procedures, triggers) only store
    their body, so what the body references is not needed to create them.
    """
    if script.stage in MODULE_STAGES:
        return []
    seen = set()
    result = []
    for requirement in infer_requirements(script.sql, script.relative_path):
        if requirement.kind not in SECRET_KINDS or requirement.key in seen:
            continue
        seen.add(requirement.key)
        result.append(requirement)
    return result


def tag_scripts(scripts: Iterable[ExportedScript]) -> Dict[str, List[RequirementKey]]:
    """Map script path -> requirement keys it needs bound."""
    tags = {}
    for script in scripts:
        keys = [r.key for r in script_requirements(script)]
        if keys:
            tags[script.relative_path] = keys
    return tags


def bind_secrets(catalog: RequirementCatalog, options, scripts: Iterable[ExportedScript] = ()) -> SecretBindings:
    return SecretBinder(options.secrets, options.database_master_key).bind(catalog, scripts)

