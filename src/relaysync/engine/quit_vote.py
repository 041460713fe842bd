"""QuitVoteCoordinator: team vote to abandon the match.

none -> active -> resolved(quit|stay) -> none. The outcome is only ever
taken from the server; local votes are never tallied. A resolved vote is
cleared once its display delay has elapsed.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from relaysync.state.models import ClientState, MatchState, QuitVoteState

logger = logging.getLogger(__name__)


class QuitVoteCoordinator:
    def __init__(
        self,
        user_id: str | None,
        display_ms: int = 2_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._user_id = user_id
        self._display_s = display_ms / 1000
        self._clock = clock
        self._has_voted = False
        self._resolved_at: float | None = None

    @property
    def has_voted(self) -> bool:
        return self._has_voted

    # ------------------------------------------------------------------
    # Local intent checks
    # ------------------------------------------------------------------

    def can_initiate(self, match: MatchState | None, client: ClientState) -> bool:
        """Only the local team's leader may start a vote, and only one at a time."""
        if match is None or self._user_id is None:
            return False
        if client.quit_vote is not None and client.quit_vote.active:
            return False
        return match.my_team.leader_id == self._user_id

    def can_vote(self, client: ClientState) -> bool:
        vote = client.quit_vote
        return vote is not None and vote.active and not self._has_voted

    def mark_voted(self) -> None:
        self._has_voted = True

    # ------------------------------------------------------------------
    # Server events (inside a store transaction)
    # ------------------------------------------------------------------

    def start(self, client: ClientState, data: dict) -> None:
        self._has_voted = False
        self._resolved_at = None
        client.quit_vote = QuitVoteState(
            initiator_id=data["initiatorId"],
            initiator_name=data.get("initiatorName", ""),
            votes=dict(data.get("votes") or {}),
            expires_at=data.get("expiresAt"),
        )
        self._note_own_vote(client.quit_vote.votes)

    def update(self, client: ClientState, votes: dict) -> bool:
        if client.quit_vote is None:
            logger.warning("quit_vote_update with no vote in progress")
            return False
        client.quit_vote.votes = dict(votes)
        self._note_own_vote(client.quit_vote.votes)
        return True

    def resolve(self, client: ClientState, result: str) -> bool:
        if client.quit_vote is None:
            logger.warning("quit_vote_result with no vote in progress")
            return False
        client.quit_vote.active = False
        client.quit_vote.result = result
        self._resolved_at = self._clock()
        return True

    def _note_own_vote(self, votes: dict) -> None:
        if self._user_id is not None and votes.get(self._user_id) is not None:
            self._has_voted = True

    def is_expired(self) -> bool:
        if self._resolved_at is None:
            return False
        return self._clock() - self._resolved_at >= self._display_s

    def expire(self, client: ClientState) -> bool:
        """Clear a resolved vote whose display delay has passed."""
        if not self.is_expired():
            return False
        client.quit_vote = None
        self._resolved_at = None
        self._has_voted = False
        return True
