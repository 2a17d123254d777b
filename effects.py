"""Best-effort follow-up actions run after a command's primary write."""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


@dataclass
class SideEffect:
    description: str
    func: Callable[..., Any]
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EffectFailure:
    description: str
    error: Exception


def run_side_effects(effects: List[SideEffect]) -> List[EffectFailure]:
    failures = []
    for effect in effects:
        try:
            effect.func(*effect.args, **effect.kwargs)
        except Exception as exc:
            logger.warning("Side effect failed: %s: %s", effect.description, exc)
            failures.append(EffectFailure(effect.description, exc))
    if failures:
        logger.error("%d of %d side effects failed", len(failures), len(effects))
    return failures
