"""Issue status transitions.

The AI pipeline owns ``ai_running`` and ``pr_created``; humans may only
close an open issue or send an abandoned PR back to ``open``. A closed
issue is reopened only by a rollback.
"""

from ..errors import ValidationError
from ..models import Issue, IssueStatus, IssueUpdate

OPEN = IssueStatus.OPEN.value
AI_RUNNING = IssueStatus.AI_RUNNING.value
PR_CREATED = IssueStatus.PR_CREATED.value
CLOSED = IssueStatus.CLOSED.value

# (from, to) pairs driven by the orchestrators
SYSTEM_TRANSITIONS = {
    (OPEN, AI_RUNNING),
    (AI_RUNNING, PR_CREATED),
    (AI_RUNNING, OPEN),
    (PR_CREATED, CLOSED),
    (CLOSED, OPEN),
}

MANUAL_TRANSITIONS = {
    (OPEN, CLOSED),
    (PR_CREATED, OPEN),
}

# States from which an autofix run may take the lock
AUTOFIX_START_STATES = (OPEN,)

AI_RUNNING_MESSAGE = "Cannot manually move an issue that is being processed by AI Agent."
CLOSED_MESSAGE = "Completed issues are read-only. Roll back the merged change to reopen it."


def _status(value) -> str:
    return getattr(value, "value", value)


def can_transition(current: str, target: str, manual: bool = False) -> bool:
    pair = (_status(current), _status(target))
    if pair[0] == pair[1]:
        return manual and pair[0] in (OPEN, PR_CREATED)
    return pair in (MANUAL_TRANSITIONS if manual else SYSTEM_TRANSITIONS)


def ensure_autofix_allowed(issue: Issue) -> None:
    """Reject an autofix request that cannot take the AI lock."""
    status = _status(issue.status)
    if status == AI_RUNNING:
        raise ValidationError(f"Issue {issue.id} is already being processed by the AI agent.")
    if status == CLOSED:
        raise ValidationError(f"Issue {issue.id} is closed. {CLOSED_MESSAGE}")
    if status not in AUTOFIX_START_STATES:
        raise ValidationError(
            f"Issue {issue.id} is '{status}'. Move it back to 'open' before running the AI agent again."
        )


def validate_manual_update(issue: Issue, update: IssueUpdate) -> dict:
    """Check a manual edit and return the column changes it implies.

    Raises:
        ValidationError: if the issue is locked or the status move is not
            a manual transition
    """
    status = _status(issue.status)
    if status == AI_RUNNING:
        raise ValidationError(AI_RUNNING_MESSAGE)
    if status == CLOSED:
        raise ValidationError(CLOSED_MESSAGE)

    changes = update.model_dump(exclude_none=True, exclude={"status"})

    if update.status is not None:
        target = _status(update.status)
        if target != status:
            if not can_transition(status, target, manual=True):
                raise ValidationError(f"Cannot move issue from '{status}' to '{target}' manually.")
            changes["status"] = target
            if status == PR_CREATED and target == OPEN:
                changes["pr_url"] = None
                changes["ai_explanation"] = None

    return changes
