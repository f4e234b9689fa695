from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .cohort import CohortScope
from .database import begin_write
from .errors import ValidationError
from .models import ROUNDS, RoundControl, utcnow
from .repositories import AuditRepository, RoundControlRepository

logger = logging.getLogger(__name__)


def validate_round(round_name: Optional[str]) -> str:
    name = (round_name or "").strip().lower()
    if name not in ROUNDS:
        raise ValidationError(f"Invalid round '{round_name}'; expected one of {', '.join(ROUNDS)}", code="invalid_round")
    return name


@dataclass(frozen=True)
class RoundState:
    initial_enabled: bool = True
    final_enabled: bool = False
    initial_end_date: Optional[datetime] = None
    final_end_date: Optional[datetime] = None

    @classmethod
    def from_control(cls, control: Optional[RoundControl]) -> "RoundState":
        if control is None:
            return cls()
        return cls(
            initial_enabled=bool(control.initial_enabled),
            final_enabled=bool(control.final_enabled),
            initial_end_date=control.initial_end_date,
            final_end_date=control.final_end_date,
        )

    def accepts(self, round_name: str) -> bool:
        return self.initial_enabled if round_name == "initial" else self.final_enabled

    def to_dict(self) -> dict:
        return {
            "initial_enabled": self.initial_enabled,
            "final_enabled": self.final_enabled,
            "initial_end_date": self.initial_end_date,
            "final_end_date": self.final_end_date,
        }


class RoundController:
    """Enable/disable switches for the two feedback rounds of one cohort.

    A cohort without a stored record accepts initial feedback and rejects
    final feedback. Disabling ``initial`` stamps ``initial_end_date``; enabling
    ``final`` stamps ``final_end_date`` a fixed window ahead. No other
    transition touches the dates.
    """

    def __init__(
        self,
        db: Session,
        rounds: RoundControlRepository,
        audit: Optional[AuditRepository] = None,
        final_window_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.rounds = rounds
        self.audit = audit
        self.final_window_days = final_window_days
        self.clock = clock

    def status(self, scope: CohortScope) -> RoundState:
        return RoundState.from_control(self.rounds.get(scope))

    def is_open(self, scope: CohortScope, round_name: str) -> bool:
        return self.status(scope).accepts(validate_round(round_name))

    def apply(self, scope: CohortScope, round_name: str, enabled: bool) -> RoundControl:
        """Stage the transition without committing."""
        round_name = validate_round(round_name)
        control = self.rounds.get_or_create(scope)
        now = self.clock()
        if round_name == "initial":
            control.initial_enabled = enabled
            if not enabled:
                control.initial_end_date = now
        else:
            control.final_enabled = enabled
            if enabled:
                control.final_end_date = now + timedelta(days=self.final_window_days)
        self.db.flush()
        return control

    def set_enabled(self, scope: CohortScope, round_name: str, enabled: bool, actor: str = "system") -> RoundState:
        round_name = validate_round(round_name)
        try:
            begin_write(self.db)
            control = self.apply(scope, round_name, enabled)
            if self.audit is not None:
                self.audit.record(
                    actor,
                    "ENABLE_ROUND" if enabled else "DISABLE_ROUND",
                    "RoundControl",
                    control.id,
                    {"round": round_name, "class": scope.class_code, "branch": scope.branch, "cohort_year": scope.cohort_year},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "Round %s %s for %s/%s/%s",
            round_name,
            "enabled" if enabled else "disabled",
            scope.class_code,
            scope.branch,
            scope.cohort_year,
        )
        return RoundState.from_control(control)
