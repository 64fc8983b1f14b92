# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Fault injection hooks.

Components receive a hooks object at construction and call
``await hooks.hit(point, **context)`` at named points. Production wiring
passes NoFaults; test harnesses pass a FaultInjector and arm points to
force an error or a delay. There is no configuration switch for this.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Protocol, Union

BEFORE_SIGN = "before-sign"
BEFORE_UPLOAD_PART = "before-upload-part"
AFTER_UPLOAD_PART = "after-upload-part"
BEFORE_COMPLETE = "before-complete"
KMS_CALL = "kms-call"
STS_CALL = "sts-call"

FAULT_POINTS = (
    BEFORE_SIGN,
    BEFORE_UPLOAD_PART,
    AFTER_UPLOAD_PART,
    BEFORE_COMPLETE,
    KMS_CALL,
    STS_CALL,
)

ErrorFactory = Union[BaseException, Callable[[], BaseException]]


class FaultHooks(Protocol):
    """Anything with an awaitable hit(point, **context)."""

    async def hit(self, point: str, **context: Any) -> None: ...


class NoFaults:
    """Production hooks: every point is a no-op."""

    async def hit(self, point: str, **context: Any) -> None:
        return None


@dataclass
class _ArmedFault:
    error: ErrorFactory | None
    delay: float
    remaining: int | None  # None = fire forever
    match: Dict[str, Any] = field(default_factory=dict)

    def matches(self, context: Dict[str, Any]) -> bool:
        return all(context.get(k) == v for k, v in self.match.items())


class FaultInjector:
    """
    Controllable hooks for tests.

    Example:
        faults = FaultInjector()
        faults.arm(BEFORE_UPLOAD_PART, error=lambda: TransientNetworkError("reset"),
                   times=2, match={"part_number": 3})
    """

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self._sleep = sleep
        self._armed: Dict[str, List[_ArmedFault]] = {}
        self._reached: Dict[str, int] = {}
        self._fired: Dict[str, int] = {}

    def arm(
        self,
        point: str,
        *,
        error: ErrorFactory | None = None,
        delay: float = 0.0,
        times: int | None = 1,
        match: Dict[str, Any] | None = None,
    ) -> None:
        """Arm `point` to delay and/or raise for the next `times` matching hits."""
        if point not in FAULT_POINTS:
            raise ValueError(f"Unknown fault point: {point}")
        if error is None and delay <= 0:
            raise ValueError("arm() needs an error, a delay, or both")
        self._armed.setdefault(point, []).append(
            _ArmedFault(error=error, delay=delay, remaining=times, match=dict(match or {}))
        )

    def disarm(self, point: str | None = None) -> None:
        if point is None:
            self._armed.clear()
        else:
            self._armed.pop(point, None)

    def reached(self, point: str) -> int:
        """How many times `point` was passed, armed or not."""
        return self._reached.get(point, 0)

    def fired(self, point: str) -> int:
        """How many times an armed fault actually triggered at `point`."""
        return self._fired.get(point, 0)

    async def hit(self, point: str, **context: Any) -> None:
        self._reached[point] = self._reached.get(point, 0) + 1

        for fault in self._armed.get(point, []):
            if fault.remaining == 0 or not fault.matches(context):
                continue
            if fault.remaining is not None:
                fault.remaining -= 1
            self._fired[point] = self._fired.get(point, 0) + 1

            if fault.delay > 0:
                await self._sleep(fault.delay)
            if fault.error is not None:
                error = fault.error
                if not isinstance(error, BaseException):
                    error = error()
                raise error
            return
