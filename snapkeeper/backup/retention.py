"""
Retention policy enforcement.

Applies the configured policy to every repository with 'forget --prune' and
always follows it with a consistency check, whatever forget reported.
"""

import logging
from typing import Callable, List, Optional

from .backend import OperationResult
from .targets import RepositoryTarget


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Runs the forget -> check sequence over a list of repository targets.
    """

    def __init__(self, backend, policy: str, on_result: Optional[Callable[[OperationResult], None]] = None):
        """
        Initialize retention manager.

        Args:
            backend: Backend adapter (ResticBackend)
            policy: Retention policy expression passed verbatim to forget
            on_result: Called with every OperationResult as it is produced
        """
        self.backend = backend
        self.policy = policy
        self.on_result = on_result

    def enforce_all_policies(self, targets: List[RepositoryTarget]) -> List[OperationResult]:
        """
        Enforce the retention policy on every target, in order.

        Failures are soft: every target gets both its forget and its check.

        Returns:
            OperationResults in execution order
        """
        logger.info(f"Applying retention policy to {len(targets)} repositories: {self.policy}")

        results = []
        for target in targets:
            results.extend(self.enforce_target_policy(target))

        failures = [r for r in results if not r.ok]
        logger.info(
            f"Retention enforcement complete. "
            f"Repositories: {len(targets)}, "
            f"Failures: {len(failures)}"
        )
        return results

    def enforce_target_policy(self, target: RepositoryTarget) -> List[OperationResult]:
        forget = self.backend.forget(target, self.policy)
        self._report(forget)

        check = self.backend.check(target)
        self._report(check)

        return [forget, check]

    def _report(self, result: OperationResult):
        if self.on_result is not None:
            self.on_result(result)
