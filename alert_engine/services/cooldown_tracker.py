"""
Dedup/cooldown tracking keyed by (rule id, dedupe key).

The check-and-update is what keeps duplicate alerts out. Every key gets its
own ``asyncio.Lock``; ``claim`` checks and records under that lock, and
``hold`` lets the orchestrator keep the lock across alert persistence so two
observations arriving together cannot both pass the gate.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import structlog

from alert_engine.domain.alerts import EvaluationState
from alert_engine.domain.models import AlertRule
from alert_engine.services.locks import KeyedLocks
from alert_engine.services.ports import EvaluationStateStore

logger = structlog.get_logger(__name__)

StateKey = tuple[str, str]


class InMemoryEvaluationStateStore:
    """Process-local EvaluationStateStore."""

    def __init__(self) -> None:
        self._states: dict[StateKey, EvaluationState] = {}

    async def get_state(self, rule_id: str, dedupe_key: str) -> EvaluationState | None:
        return self._states.get((rule_id, dedupe_key))

    async def put_state(self, state: EvaluationState) -> None:
        self._states[(state.rule_id, state.dedupe_key)] = state

    async def delete_states(self, rule_id: str | None = None, dedupe_key: str | None = None) -> int:
        doomed = [
            key
            for key in self._states
            if (rule_id is None or key[0] == rule_id)
            and (dedupe_key is None or key[1] == dedupe_key)
        ]
        for key in doomed:
            del self._states[key]
        return len(doomed)


class CooldownTracker:
    """Decides whether a matched rule may fire again for a dedupe key."""

    def __init__(self, store: EvaluationStateStore | None = None) -> None:
        self.store = store or InMemoryEvaluationStateStore()
        self._locks: KeyedLocks[StateKey] = KeyedLocks()
        self.logger = logger.bind(component="cooldown_tracker")

    @asynccontextmanager
    async def hold(self, rule_id: str, dedupe_key: str) -> AsyncIterator[None]:
        """Exclusive access to one key for a check, persist, record sequence."""
        async with self._locks.hold((rule_id, dedupe_key)):
            yield

    async def last_triggered_at(self, rule_id: str, dedupe_key: str) -> datetime | None:
        state = await self.store.get_state(rule_id, dedupe_key)
        return state.last_triggered_at if state else None

    async def should_suppress(self, rule: AlertRule, dedupe_key: str, now: datetime) -> bool:
        """True while ``now`` is inside the rule's cooldown since the last trigger."""
        if not rule.cooldown:
            return False
        last = await self.last_triggered_at(rule.id, dedupe_key)
        if last is None:
            return False
        return now - last < rule.cooldown

    async def record_trigger(self, rule_id: str, dedupe_key: str, now: datetime) -> EvaluationState:
        previous = await self.store.get_state(rule_id, dedupe_key)
        state = EvaluationState(
            rule_id=rule_id,
            dedupe_key=dedupe_key,
            last_triggered_at=now,
            trigger_count=previous.trigger_count + 1 if previous else 1,
        )
        await self.store.put_state(state)
        return state

    async def claim(self, rule: AlertRule, dedupe_key: str, now: datetime) -> bool:
        """Atomically check the cooldown and, if allowed, record the trigger."""
        async with self.hold(rule.id, dedupe_key):
            if await self.should_suppress(rule, dedupe_key, now):
                return False
            await self.record_trigger(rule.id, dedupe_key, now)
            return True

    async def reset(self, rule_id: str | None = None, dedupe_key: str | None = None) -> int:
        """Administrative reset; the only way evaluation state is ever removed."""
        removed = await self.store.delete_states(rule_id, dedupe_key)
        self.logger.info(
            "evaluation_state_reset", rule_id=rule_id, dedupe_key=dedupe_key, removed=removed
        )
        return removed
