"""Canary/linear traffic shifting with alarm-driven rollback."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .capabilities import AlarmReader, HostingCapability
from .contracts import AlarmState, EndpointState, ShiftPlan, ShiftStep
from .errors import ActionCancelled, AlarmTriggered, ConfigurationError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
StateObserver = Callable[[EndpointState], Awaitable[None]]


class TrafficShiftController:
    """Moves traffic from the stable variant to a target variant step by step.

    Each step sets the target weight and holds while sampling the alarm
    signal. An alarm reverts the target to 0% at once and raises
    :class:`AlarmTriggered`. After the final step reaches 100% the previous
    variant is retired. Every split applied to the endpoint sums to 100.
    """

    def __init__(
        self,
        hosting: HostingCapability,
        alarms: AlarmReader,
        sleep: Sleep = asyncio.sleep,
        observer: Optional[StateObserver] = None,
    ) -> None:
        self._hosting = hosting
        self._alarms = alarms
        self._sleep = sleep
        self._observer = observer

    async def shift(
        self,
        endpoint: str,
        target_variant: str,
        plan: ShiftPlan,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EndpointState:
        state = await self._hosting.get_endpoint(endpoint)
        stable = self._stable_variant(state, target_variant)

        if stable is None:
            logger.info(
                f"Endpoint {endpoint} has no stable variant; deploying {target_variant} at 100%"
            )
            state = await self._set(endpoint, {target_variant: 100}, target_variant, 0)
            return state

        if target_variant not in state.weights():
            state = await self._set(endpoint, {target_variant: 0}, target_variant, -1)

        for index, step in enumerate(plan.steps):
            logger.info(
                f"Endpoint {endpoint}: step {index + 1}/{len(plan.steps)} "
                f"{target_variant}={step.weight}% {stable}={100 - step.weight}%"
            )
            state = await self._set(
                endpoint,
                {stable: 100 - step.weight, target_variant: step.weight},
                target_variant,
                index,
            )
            await self._hold(endpoint, stable, target_variant, step, index, plan, cancel_event)

        state = await self._hosting.retire_variant(endpoint, stable)
        state = state.model_copy(
            update={"target_variant": target_variant, "step_index": len(plan.steps) - 1}
        )
        await self._notify(state)
        logger.info(f"Endpoint {endpoint}: {target_variant} at 100%, retired {stable}")
        return state

    async def _hold(
        self,
        endpoint: str,
        stable: str,
        target: str,
        step: ShiftStep,
        index: int,
        plan: ShiftPlan,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        # A step with no hold is still sampled once before moving on.
        elapsed = 0.0
        while True:
            wait = min(plan.poll_interval_seconds, step.hold_seconds - elapsed)
            if wait > 0:
                await self._sleep(wait)
                elapsed += wait

            alarm = await self._alarms.get_alarm_state(endpoint, step.alarm_names)
            if alarm == AlarmState.ALARM:
                await self._rollback(endpoint, stable, target, index, AlarmState.ALARM)
                raise AlarmTriggered(
                    f"Alarm on {endpoint} at {step.weight}% for {target}; rolled back",
                    endpoint=endpoint,
                    weight=step.weight,
                )
            if cancel_event is not None and cancel_event.is_set():
                await self._rollback(endpoint, stable, target, index, AlarmState.OK)
                raise ActionCancelled(
                    f"Traffic shift on {endpoint} cancelled; reverted {target} to 0%"
                )
            if elapsed >= step.hold_seconds:
                return

    async def _rollback(
        self, endpoint: str, stable: str, target: str, index: int, alarm: AlarmState
    ) -> None:
        logger.warning(f"Endpoint {endpoint}: reverting {target} to 0%, {stable} to 100%")
        await self._set(endpoint, {stable: 100, target: 0}, target, index, alarm)

    async def _set(
        self,
        endpoint: str,
        weights: dict,
        target: str,
        index: int,
        alarm: AlarmState = AlarmState.OK,
    ) -> EndpointState:
        state = await self._hosting.update_weights(endpoint, weights)
        state = state.model_copy(
            update={"target_variant": target, "step_index": index, "alarm": alarm}
        )
        await self._notify(state)
        return state

    async def _notify(self, state: EndpointState) -> None:
        if self._observer is not None:
            await self._observer(state)

    @staticmethod
    def _stable_variant(state: EndpointState, target: str) -> Optional[str]:
        serving = [v.variant for v in state.variants if v.variant != target and v.weight > 0]
        if len(serving) > 1:
            raise ConfigurationError(
                f"Endpoint {state.endpoint} splits traffic across {', '.join(serving)}; "
                "cannot choose a stable variant"
            )
        return serving[0] if serving else None
