"""
Timeout Sweeper

The rotation controller has no timers. This job, run periodically by cron or
the ``sweep-timeouts`` command, finds contacted providers whose deadline has
passed and submits a TimeoutEvent for each. A provider who answered between
the scan and the submit wins; the timeout is then skipped.
"""

from typing import TYPE_CHECKING

from delivery_rotation.delivery.models import DeliveryRequest, SweepResult, TimeoutEvent
from delivery_rotation.kernel.errors import ConflictError
from delivery_rotation.kernel.logging import LogOperation, get_logger
from delivery_rotation.kernel.metrics import timeouts_swept_total

if TYPE_CHECKING:
    from delivery_rotation.service import DeliveryRotation

logger = get_logger(__name__)


class TimeoutSweeper:
    def __init__(self, rotation: "DeliveryRotation"):
        self.rotation = rotation

    def find_expired(self, requests: list[DeliveryRequest]) -> list[TimeoutEvent]:
        """Timeouts due now, one per non-terminal request at most"""
        now = self.rotation.time_provider.now()
        due: list[TimeoutEvent] = []
        for request in requests:
            entry = request.contacted_entry()
            if entry is None:
                continue
            if entry.timeout_at is not None and entry.timeout_at <= now:
                due.append(
                    TimeoutEvent(
                        request_id=request.request_id,
                        provider_id=entry.provider_id,
                        detected_at=now,
                    )
                )
        return due

    def sweep(self) -> SweepResult:
        result = SweepResult()
        with LogOperation(logger, "sweep_timeouts"):
            active = self.rotation.list_active_requests()
            result.scanned = len(active)
            for timeout in self.find_expired(active):
                try:
                    self.rotation.submit_timeout(timeout)
                except ConflictError as e:
                    logger.info(
                        "Timeout skipped, request moved on",
                        request_id=timeout.request_id,
                        provider_id=timeout.provider_id,
                        reason=str(e),
                    )
                    timeouts_swept_total.labels(outcome="skipped").inc()
                    result.skipped.append(timeout.request_id)
                    continue
                timeouts_swept_total.labels(outcome="applied").inc()
                result.timed_out.append(timeout.request_id)

        logger.info(
            "Timeout sweep finished",
            scanned=result.scanned,
            timed_out=len(result.timed_out),
            skipped=len(result.skipped),
        )
        return result
