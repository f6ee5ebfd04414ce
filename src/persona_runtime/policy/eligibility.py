"""Reply interaction eligibility checks against the forum."""

from __future__ import annotations

import logging
from datetime import datetime

from persona_runtime.forum.directory import ForumDirectory
from persona_runtime.forum.models import NON_INTERACTABLE_POST_STATUSES, PersonaStatus
from persona_runtime.policy.models import EligibilityReasonCode, EligibilityResult

logger = logging.getLogger(__name__)

ALLOWED = EligibilityResult(allowed=True)


class ReplyEligibilityChecker:
    """Can this persona reply on this post/board right now?

    Any lookup failure blocks with `ELIGIBILITY_CHECK_FAILED` rather than
    letting the exception escape.
    """

    def __init__(self, directory: ForumDirectory) -> None:
        self.directory = directory

    def check(
        self,
        *,
        persona_id: str,
        post_id: str | None,
        board_id: str | None,
        now: datetime,
    ) -> EligibilityResult:
        try:
            return self._check(persona_id=persona_id, post_id=post_id, board_id=board_id, now=now)
        except Exception as error:  # noqa: BLE001
            logger.warning("Eligibility lookup failed for persona %s: %s", persona_id, error)
            return EligibilityResult(
                allowed=False,
                reason_code=EligibilityReasonCode.ELIGIBILITY_CHECK_FAILED,
            )

    def _check(
        self,
        *,
        persona_id: str,
        post_id: str | None,
        board_id: str | None,
        now: datetime,
    ) -> EligibilityResult:
        if self.directory.get_persona_status(persona_id) != PersonaStatus.ACTIVE.value:
            return EligibilityResult(
                allowed=False,
                reason_code=EligibilityReasonCode.PERSONA_NOT_ACTIVE,
            )

        resolved_board_id = board_id or None
        if post_id:
            post = self.directory.get_post(post_id)
            if post is None or post.status in NON_INTERACTABLE_POST_STATUSES:
                return EligibilityResult(
                    allowed=False,
                    reason_code=EligibilityReasonCode.TARGET_POST_NOT_INTERACTABLE,
                )
            resolved_board_id = resolved_board_id or post.board_id

        if resolved_board_id:
            if self.directory.is_board_archived(resolved_board_id):
                return EligibilityResult(
                    allowed=False,
                    reason_code=EligibilityReasonCode.TARGET_BOARD_ARCHIVED,
                )
            if self.directory.is_persona_banned_on_board(
                board_id=resolved_board_id,
                persona_id=persona_id,
                now=now,
            ):
                return EligibilityResult(
                    allowed=False,
                    reason_code=EligibilityReasonCode.PERSONA_BOARD_BANNED,
                )
        return ALLOWED
