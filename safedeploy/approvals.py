"""Manual approval gates."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from .contracts import ApprovalDecision, ApprovalRequest, ApprovalStatus, utcnow
from .errors import (
    ActionCancelled,
    ApprovalExpired,
    ApprovalRejected,
    InvalidTransition,
)
from .notifications import ApprovalNotifier, LoggingApprovalNotifier

logger = logging.getLogger(__name__)


class ApprovalGate:
    """Creates approval requests and blocks until a reviewer decides.

    Only an explicit Approve lets the caller proceed. A Reject or an expired
    deadline raises, and an expired request counts as rejected.
    """

    def __init__(self, notifier: Optional[ApprovalNotifier] = None) -> None:
        self._notifier = notifier or LoggingApprovalNotifier()
        self._pending: Dict[str, tuple[ApprovalRequest, asyncio.Future]] = {}
        self.history: List[ApprovalRequest] = []

    def pending(self, execution_id: str) -> Optional[ApprovalRequest]:
        entry = self._pending.get(execution_id)
        return entry[0] if entry else None

    async def request(
        self,
        execution_id: str,
        stage: str,
        action: str,
        prompt: str,
        review_link: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ApprovalRequest:
        """Open a request and wait for its resolution."""
        if execution_id in self._pending:
            raise InvalidTransition(
                f"Execution {execution_id} already has a pending approval", action=action
            )
        request = ApprovalRequest(
            execution_id=execution_id,
            stage=stage,
            action=action,
            prompt=prompt,
            review_link=review_link,
        )
        decision: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[execution_id] = (request, decision)
        self.history.append(request)
        await self._notifier.request_approval(request)
        logger.info(f"Approval {request.request_id} pending for execution {execution_id}")

        waiters = {decision}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            self._pending.pop(execution_id, None)

        if decision in done:
            if request.status == ApprovalStatus.APPROVED:
                return request
            raise ApprovalRejected(
                f"Approval rejected: {request.comment or 'no comment'}", action=action
            )
        decision.cancel()
        request.resolved_at = utcnow()
        if cancel_waiter is not None and cancel_waiter in done:
            request.status = ApprovalStatus.REJECTED
            request.comment = "Execution cancelled"
            raise ActionCancelled("Approval abandoned by cancellation", action=action)
        request.status = ApprovalStatus.EXPIRED
        logger.warning(f"Approval {request.request_id} expired after {timeout}s")
        raise ApprovalExpired(f"Approval expired after {timeout}s", action=action)

    def resolve(
        self,
        execution_id: str,
        decision: ApprovalDecision | str,
        comment: Optional[str] = None,
    ) -> ApprovalRequest:
        """Record a reviewer decision for the pending request of ``execution_id``."""
        entry = self._pending.get(execution_id)
        if entry is None:
            raise InvalidTransition(f"No pending approval for execution {execution_id}")
        request, future = entry
        if future.done():
            raise InvalidTransition(f"Approval {request.request_id} already resolved")
        decision = ApprovalDecision(decision)
        request.status = (
            ApprovalStatus.APPROVED
            if decision == ApprovalDecision.APPROVE
            else ApprovalStatus.REJECTED
        )
        request.comment = comment
        request.resolved_at = utcnow()
        future.set_result(decision)
        logger.info(
            f"Approval {request.request_id} for execution {execution_id}: {request.status.value}"
        )
        return request
