"""
Metric sources: where per-device score breakdowns come from.

Raw telemetry collection happens on the endpoints; the control plane only
asks an agent gateway for each device's current snapshot.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from ..core.errors import DependencyTimeoutError, DependencyUnavailableError
from .models import ScoreBreakdown

logger = logging.getLogger(__name__)


class MetricSource(ABC):
    """Base class for metric sources."""

    @abstractmethod
    async def collect(self, device_id: str) -> ScoreBreakdown:
        """
        Collect the current breakdown for a device.

        Raises:
            DependencyTimeoutError: if the device did not answer in time
            DependencyUnavailableError: if the device or gateway is unreachable
        """
        pass


class HttpAgentMetricSource(MetricSource):
    """
    Fetches breakdowns from the endpoint agent gateway.

    ``GET {base_url}/devices/{device_id}/health`` must return the snapshot
    JSON (availability, performance, security, compliance, issues).
    """

    def __init__(self, base_url: str, token: str = "", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers: Dict[str, str] = {"User-Agent": "Fleet-Sentinel/0.3"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def collect(self, device_id: str) -> ScoreBreakdown:
        url = f"{self.base_url}/devices/{device_id}/health"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers) as client:
                response = await client.get(url)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise DependencyTimeoutError(
                f"Health probe for {device_id} timed out", timeout=self.timeout, device_id=device_id
            ) from e
        except httpx.HTTPError as e:
            raise DependencyUnavailableError(
                f"Health probe for {device_id} failed: {e}", device_id=device_id
            ) from e

        payload["device_id"] = device_id
        return ScoreBreakdown(**payload)


class StaticMetricSource(MetricSource):
    """
    Serves breakdowns from memory.

    Used by tests and for devices fed by an external push; a device without
    a snapshot is reported unavailable.
    """

    def __init__(self, snapshots: Optional[Dict[str, ScoreBreakdown]] = None):
        self.snapshots: Dict[str, ScoreBreakdown] = dict(snapshots or {})

    def set(self, breakdown: ScoreBreakdown) -> None:
        self.snapshots[breakdown.device_id] = breakdown

    async def collect(self, device_id: str) -> ScoreBreakdown:
        breakdown = self.snapshots.get(device_id)
        if breakdown is None:
            raise DependencyUnavailableError(f"No snapshot for {device_id}", device_id=device_id)
        return breakdown
