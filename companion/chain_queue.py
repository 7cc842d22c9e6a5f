"""Follow-up attacks for moves sent outside the batch pipeline.

When a move goes out as a single action, the attack it unlocks only shows
up in a later listing. Entries wait here, bounded in age and in listing
generations, and are re-scanned on every new listing.
"""
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

from companion import config
from companion.models import ActionListing, UnitAttackAction

logger = logging.getLogger(__name__)


@dataclass
class ChainEntry:
    attacker_unit_id: int
    preferred_target_unit_id: Optional[int]  # None = no preference
    enqueued_at: float
    generation: int
    retries: int = 0


class ChainQueue:

    def __init__(self, max_age_ms: int = config.CHAIN_MAX_AGE_MS,
                 max_generation_lag: int = config.CHAIN_MAX_GENERATION_LAG):
        self.max_age_ms = max_age_ms
        self.max_generation_lag = max_generation_lag
        self._entries: List[ChainEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[ChainEntry]:
        return list(self._entries)

    def enqueue(self, attacker_unit_id: int, preferred_target_unit_id: Optional[int],
                generation: int, now: Optional[float] = None) -> ChainEntry:
        # one follow-up per attacker; a newer move supersedes the old entry
        self._entries = [e for e in self._entries if e.attacker_unit_id != attacker_unit_id]
        entry = ChainEntry(
            attacker_unit_id=attacker_unit_id,
            preferred_target_unit_id=preferred_target_unit_id,
            enqueued_at=time.monotonic() if now is None else now,
            generation=generation,
        )
        self._entries.append(entry)
        logger.debug(f"Chain: queued follow-up for unit {attacker_unit_id} (gen {generation})")
        return entry

    def clear(self) -> None:
        self._entries = []

    def expire(self, current_generation: int, now: Optional[float] = None) -> List[ChainEntry]:
        """Drop entries that are too old or too many generations behind."""
        now = time.monotonic() if now is None else now
        max_age = self.max_age_ms / 1000.0
        kept, dropped = [], []
        for entry in self._entries:
            too_old = now - entry.enqueued_at > max_age
            too_stale = current_generation - entry.generation > self.max_generation_lag
            (dropped if too_old or too_stale else kept).append(entry)
        for entry in dropped:
            logger.info(f"Chain: expired follow-up for unit {entry.attacker_unit_id} "
                        f"after {entry.retries} retries")
        self._entries = kept
        return dropped

    @staticmethod
    def find_attack(entry: ChainEntry, listing: ActionListing) -> Optional[UnitAttackAction]:
        if entry.preferred_target_unit_id is not None:
            preferred = listing.find_attack(entry.attacker_unit_id, entry.preferred_target_unit_id)
            if preferred is not None:
                return preferred
        attacks = listing.attacks_for(entry.attacker_unit_id)
        return attacks[0] if attacks else None

    def rescan(self, listing: ActionListing, can_dispatch: bool,
               now: Optional[float] = None) -> Optional[Tuple[ChainEntry, UnitAttackAction]]:
        """Expire, then pick at most one entry whose attack is now legal.

        The picked entry is removed; every other surviving entry has its
        retry counter bumped.
        """
        self.expire(listing.generation, now)
        picked: Optional[Tuple[ChainEntry, UnitAttackAction]] = None
        for entry in list(self._entries):
            if picked is None and can_dispatch:
                attack = self.find_attack(entry, listing)
                if attack is not None:
                    picked = (entry, attack)
                    self._entries.remove(entry)
                    continue
            entry.retries += 1
        return picked
