"""
Health score calculation logic.
"""

import logging
from typing import Optional

from ..core.config import ScoringConfig
from .models import HealthScore, HealthStatus, ScoreBreakdown

logger = logging.getLogger(__name__)


class HealthScoreCalculator:
    """
    Calculates a device health score from its sub-score breakdown.

    The total is the plain sum of four sub-scores, 25 points each:
    - Availability
    - Performance
    - Security
    - Compliance

    Pure computation; persisting the device status and raising alerts for
    the breakdown's issues is the caller's job.
    """

    def __init__(self, config: Optional[ScoringConfig] = None):
        """
        Initialize calculator.

        Args:
            config: Status tier thresholds (defaults: Healthy >= 90, Warning >= 70)
        """
        self.config = config or ScoringConfig()

    def compute_health_score(self, breakdown: ScoreBreakdown) -> HealthScore:
        """
        Compute total and status tier.

        Args:
            breakdown: Sub-scores and issues for one device

        Returns:
            Computed health score
        """
        total = (
            breakdown.availability
            + breakdown.performance
            + breakdown.security
            + breakdown.compliance
        )

        if breakdown.availability == 0:
            # Unreachable: other sub-scores are meaningless
            status = HealthStatus.OFFLINE
        else:
            status = self._score_to_status(total)

        logger.debug(f"Health score for {breakdown.device_id or '<device>'}: {total}/100 ({status.value})")

        return HealthScore(
            device_id=breakdown.device_id,
            total=total,
            status=status,
            breakdown=breakdown,
        )

    def score(self, breakdown: ScoreBreakdown) -> HealthScore:
        """Alias of :meth:`compute_health_score`."""
        return self.compute_health_score(breakdown)

    def _score_to_status(self, total: int) -> HealthStatus:
        if total >= self.config.healthy_threshold:
            return HealthStatus.HEALTHY
        if total >= self.config.warning_threshold:
            return HealthStatus.WARNING
        return HealthStatus.CRITICAL
