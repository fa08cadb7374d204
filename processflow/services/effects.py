"""Post-commit effects.

Workflow commands queue notification / audit / metric work here instead of
running it inline.  Routers call ``dispatch`` once the primary transaction has
committed; each effect commits on its own, and a failing one is rolled back,
logged, counted and turned into a response warning.  The rollback expires
loaded instances, so callers build their response payload before dispatching.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from processflow.core.metrics import side_effect_failures_total

logger = logging.getLogger(__name__)

EffectFn = Callable[[AsyncSession], Awaitable[None]]


@dataclass
class PostCommitEffect:
    name: str
    run: EffectFn
    warning: str | None = None


class PostCommitEffects:
    def __init__(self) -> None:
        self._effects: list[PostCommitEffect] = []

    def add(self, name: str, run: EffectFn, warning: str | None = None) -> None:
        self._effects.append(PostCommitEffect(name=name, run=run, warning=warning))

    def extend(self, other: PostCommitEffects) -> None:
        self._effects.extend(other._effects)

    def names(self) -> list[str]:
        return [e.name for e in self._effects]

    def __len__(self) -> int:
        return len(self._effects)

    async def dispatch(self, db: AsyncSession) -> list[str]:
        """Run queued effects in order; return one warning per failed effect."""
        warnings: list[str] = []
        effects, self._effects = self._effects, []
        for effect in effects:
            try:
                await effect.run(db)
                await db.commit()
            except Exception:
                logger.exception("Post-commit effect %s failed", effect.name)
                side_effect_failures_total.labels(effect=effect.name).inc()
                warnings.append(effect.warning or f"{effect.name} could not be completed")
                await db.rollback()
        return warnings
