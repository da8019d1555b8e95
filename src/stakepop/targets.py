import logging
import random
from collections.abc import Sequence

log = logging.getLogger("stakepop.targets")


class TargetSelector:
    """Uniform sampling of nomination targets without replacement."""

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    def select(self, count: int, validators: Sequence[str]) -> tuple[str, ...]:
        """Pick ``min(count, len(validators))`` distinct validators.

        The result is shorter than ``count`` when the set is too small;
        an empty set gives an empty tuple.
        """
        if count < 0:
            raise ValueError("count can't be negative!")
        pool = list(dict.fromkeys(validators))
        k = min(count, len(pool))
        if k < count:
            log.debug("Capping %s nominations to %s available validators", count, k)
        return tuple(self.rng.sample(pool, k))
