"""Event-driven lead scoring."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Mapping, Optional, Sequence, Union

from ..clock import Clock, SystemClock
from ..conditions import evaluate, mapping_lookup
from ..errors import ConditionEvaluationError
from ..utils.locks import KeyedLock
from .models import ScoreChange, ScoreHistory, ScoringRule, ThresholdCrossed

if TYPE_CHECKING:
    from ..persistence.repository import AutomationRepository

logger = logging.getLogger(__name__)

ScoreSignal = Union[ScoreChange, ThresholdCrossed]
ScoreListener = Callable[[ScoreSignal], Awaitable[None]]


class ScoringEngine:
    """Applies scoring rules to behavioral events and tracks live scores.

    Listeners registered with :meth:`subscribe` receive a ``ScoreChange``
    for every score movement and a ``ThresholdCrossed`` for every configured
    threshold the score passes, in either direction.

    Grants for one contact are serialized, so a ``max_occurrences`` check
    and the grant it allows never interleave with another event's.
    """

    def __init__(
        self,
        repository: "AutomationRepository",
        clock: Optional[Clock] = None,
        thresholds: Sequence[int] = (),
    ) -> None:
        self._repository = repository
        self._clock = clock or SystemClock()
        self._thresholds = sorted(set(thresholds))
        self._listeners: List[ScoreListener] = []
        self._contact_locks = KeyedLock()

    def subscribe(self, listener: ScoreListener) -> None:
        self._listeners.append(listener)

    async def add_rule(self, rule: ScoringRule) -> ScoringRule:
        await self._repository.save_rule(rule)
        return rule

    async def live_score(self, contact_id: str) -> int:
        """Sum of the contact's non-expired grants."""
        now = self._clock.now()
        entries = await self._repository.list_scores(contact_id)
        return sum(e.points for e in entries if e.is_live(now))

    async def history(self, contact_id: str) -> list[ScoreHistory]:
        return await self._repository.list_scores(contact_id)

    async def apply_event(
        self, contact_id: str, event_type: str, payload: Optional[Mapping[str, Any]] = None
    ) -> Optional[ScoreChange]:
        """Grant points for every active rule the event satisfies.

        Returns the resulting change, or ``None`` when no rule fired. A rule
        with malformed conditions is skipped without affecting the others.
        """
        rules = await self._repository.list_rules(event_type=event_type)
        if not rules:
            logger.debug(f"No scoring rules for event {event_type}")
            return None

        lookup = mapping_lookup(payload or {})
        async with self._contact_locks.hold(contact_id):
            previous = await self.live_score(contact_id)
            granted: List[ScoreHistory] = []
            for rule in rules:
                try:
                    matched = evaluate(rule.conditions, lookup)
                except ConditionEvaluationError as exc:
                    logger.warning(f"Skipping scoring rule {rule.id} ({rule.name}): {exc}")
                    continue
                if not matched:
                    continue
                if not await self._under_cap(rule, contact_id):
                    logger.debug(
                        f"Rule {rule.id} reached max_occurrences={rule.max_occurrences} "
                        f"for contact {contact_id}"
                    )
                    continue
                granted.append(
                    await self._grant(contact_id, rule.points, rule=rule, event_type=event_type)
                )

            if not granted:
                return None
            change = await self._change(contact_id, previous, granted)
        await self._publish(change)
        return change

    async def grant(
        self,
        contact_id: str,
        points: int,
        reason: Optional[str] = None,
        expires_after_days: Optional[int] = None,
    ) -> ScoreChange:
        """Grant points outside of any rule, e.g. from an ``add_score`` action."""
        async with self._contact_locks.hold(contact_id):
            previous = await self.live_score(contact_id)
            entry = await self._grant(
                contact_id, points, reason=reason, expires_after_days=expires_after_days
            )
            change = await self._change(contact_id, previous, [entry])
        await self._publish(change)
        return change

    async def _under_cap(self, rule: ScoringRule, contact_id: str) -> bool:
        if rule.max_occurrences is None:
            return True
        now = self._clock.now()
        entries = await self._repository.list_scores(contact_id, rule_id=rule.id)
        return sum(1 for e in entries if e.is_live(now)) < rule.max_occurrences

    async def _grant(
        self,
        contact_id: str,
        points: int,
        *,
        rule: Optional[ScoringRule] = None,
        event_type: Optional[str] = None,
        reason: Optional[str] = None,
        expires_after_days: Optional[int] = None,
    ) -> ScoreHistory:
        now = self._clock.now()
        days = rule.expires_after_days if rule else expires_after_days
        entry = ScoreHistory(
            contact_id=contact_id,
            rule_id=rule.id if rule else None,
            event_type=event_type,
            points=points,
            reason=reason or (rule.name if rule else None),
            created_at=now,
            expires_at=now + timedelta(days=days) if days else None,
        )
        return await self._repository.append_score(entry)

    async def _change(
        self, contact_id: str, previous: int, entries: List[ScoreHistory]
    ) -> ScoreChange:
        score = await self.live_score(contact_id)
        logger.info(f"Score for contact {contact_id}: {previous} -> {score}")
        return ScoreChange(
            contact_id=contact_id,
            score=score,
            previous_score=previous,
            delta=score - previous,
            entries=entries,
        )

    async def _publish(self, change: ScoreChange) -> None:
        # Listeners may grant points for the same contact, so they run unlocked.
        await self._notify(change)
        for crossed in self._crossed(change.contact_id, change.previous_score, change.score):
            await self._notify(crossed)

    def _crossed(self, contact_id: str, previous: int, score: int) -> List[ThresholdCrossed]:
        crossed = []
        for threshold in self._thresholds:
            if previous < threshold <= score:
                crossed.append(ThresholdCrossed(contact_id=contact_id, threshold=threshold, score=score, direction="up"))
            elif score < threshold <= previous:
                crossed.append(ThresholdCrossed(contact_id=contact_id, threshold=threshold, score=score, direction="down"))
        return crossed

    async def _notify(self, signal: ScoreSignal) -> None:
        for listener in self._listeners:
            try:
                await listener(signal)
            except Exception:
                logger.exception(f"Score listener {listener!r} failed for {type(signal).__name__}")
