from __future__ import annotations

from typing import Any, Iterable, Optional

from .models import CandidateCredential
from .store import AccountStore


class DedupIndex:
    """Answers "does an account with this email or remote user id already exist".

    Backed by the live store rather than a copy, so every query sees inserts made
    earlier in the same batch.
    """

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def exists(self, email: Any, user_id: Optional[Any] = None) -> bool:
        return self.store.find_duplicate(email, user_id) is not None

    def partition(
        self, candidates: Iterable[CandidateCredential]
    ) -> tuple[list[CandidateCredential], list[CandidateCredential]]:
        """Split candidates into (fresh, already_present) using the email they carry."""

        fresh: list[CandidateCredential] = []
        present: list[CandidateCredential] = []
        for candidate in candidates:
            if candidate.email and self.exists(candidate.email):
                present.append(candidate)
            else:
                fresh.append(candidate)
        return fresh, present
