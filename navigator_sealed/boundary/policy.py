"""Access policy for the unseal boundary.

Rules map a caller identity (exact name or glob) to the namespaces it may
unseal (globs). ``"*"`` grants every namespace and is the only grant that
covers cluster-wide claims.
"""
import logging
from fnmatch import fnmatchcase
from collections.abc import Iterable, Mapping
from typing import Optional

from ..data import ScopeClaim, SealingScope
from ..exceptions import ForbiddenError

logger = logging.getLogger("navigator.sealed")

ALL_NAMESPACES = "*"


class AccessPolicy:
    """Decides which identities may unseal which scopes."""

    def __init__(self, rules: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._rules: dict[str, tuple[str, ...]] = {
            identity: tuple(namespaces) for identity, namespaces in (rules or {}).items()
        }

    def __repr__(self) -> str:
        return f"<AccessPolicy identities={sorted(self._rules)}>"

    def allows(self, identity: Optional[str], claim: ScopeClaim) -> bool:
        if not identity:
            return False
        cluster_wide = SealingScope(claim.scope) is SealingScope.CLUSTER
        for pattern, namespaces in self._rules.items():
            if not fnmatchcase(identity, pattern):
                continue
            if ALL_NAMESPACES in namespaces:
                return True
            if cluster_wide:
                continue
            if any(fnmatchcase(claim.namespace, ns) for ns in namespaces):
                return True
        return False

    def check(self, identity: Optional[str], claim: ScopeClaim) -> None:
        """Raise ForbiddenError unless identity may unseal claim."""
        if not self.allows(identity, claim):
            logger.warning(
                "Unseal denied: identity=%s namespace=%s name=%s scope=%s",
                identity, claim.namespace, claim.name, SealingScope(claim.scope).value,
            )
            raise ForbiddenError(
                f"{identity or 'anonymous'} may not unseal "
                f"{claim.namespace}/{claim.name}"
            )
