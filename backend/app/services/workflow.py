from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from backend.app.models import LEGACY_STATUSES, ApplicationStatus

TERMINAL_STATES = frozenset(
    {ApplicationStatus.rejected, ApplicationStatus.withdrawn, ApplicationStatus.hired}
)

ALLOWED_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.applied: frozenset(
        {ApplicationStatus.viewed, ApplicationStatus.withdrawn, ApplicationStatus.rejected}
    ),
    ApplicationStatus.viewed: frozenset(
        {ApplicationStatus.contacted, ApplicationStatus.rejected, ApplicationStatus.withdrawn}
    ),
    ApplicationStatus.contacted: frozenset(
        {ApplicationStatus.interviewing, ApplicationStatus.rejected}
    ),
    ApplicationStatus.interviewing: frozenset(
        {ApplicationStatus.offered, ApplicationStatus.rejected}
    ),
    ApplicationStatus.offered: frozenset({ApplicationStatus.hired, ApplicationStatus.rejected}),
    ApplicationStatus.accepted: frozenset({ApplicationStatus.hired, ApplicationStatus.rejected}),
    ApplicationStatus.hired: frozenset(),
    ApplicationStatus.rejected: frozenset(),
    ApplicationStatus.withdrawn: frozenset(),
}

# display order for messages and API payloads
STATUS_ORDER = [status for status in ApplicationStatus]


class UnknownStatusError(ValueError):
    def __init__(self, value: object) -> None:
        self.value = value
        valid = ", ".join(status.value for status in ApplicationStatus)
        super().__init__(f'Invalid status "{value}". Must be one of: {valid}')


class IllegalTransitionError(Exception):
    def __init__(
        self,
        from_status: ApplicationStatus,
        to_status: ApplicationStatus,
        allowed: list[ApplicationStatus],
        message: str,
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = allowed
        super().__init__(message)


@dataclass(frozen=True)
class TransitionValidation:
    ok: bool
    from_status: ApplicationStatus
    to_status: ApplicationStatus
    allowed: list[ApplicationStatus]
    message: Optional[str] = None

    def raise_for_error(self) -> None:
        if not self.ok:
            raise IllegalTransitionError(
                self.from_status, self.to_status, self.allowed, self.message or ""
            )


def _check_table() -> None:
    for status in ApplicationStatus:
        allowed = ALLOWED_TRANSITIONS[status]
        if status in TERMINAL_STATES and allowed:
            raise RuntimeError(f"terminal status has outbound transitions: {status.value}")
        if status not in TERMINAL_STATES and not allowed:
            raise RuntimeError(f"non-terminal status has no transitions: {status.value}")


_check_table()


def parse_status(value: Union[str, ApplicationStatus]) -> ApplicationStatus:
    if isinstance(value, ApplicationStatus):
        return value
    if not isinstance(value, str):
        raise UnknownStatusError(value)
    try:
        return ApplicationStatus(value.strip())
    except ValueError as exc:
        raise UnknownStatusError(value) from exc


def is_terminal(status: Union[str, ApplicationStatus]) -> bool:
    return parse_status(status) in TERMINAL_STATES


def allowed_transitions(status: Union[str, ApplicationStatus]) -> list[ApplicationStatus]:
    allowed = ALLOWED_TRANSITIONS[parse_status(status)]
    return [candidate for candidate in STATUS_ORDER if candidate in allowed]


def is_transition_allowed(
    from_status: Union[str, ApplicationStatus],
    to_status: Union[str, ApplicationStatus],
) -> bool:
    current = parse_status(from_status)
    target = parse_status(to_status)
    if current == target:
        return True
    if current in TERMINAL_STATES:
        return False
    return target in ALLOWED_TRANSITIONS[current]


def _quoted(statuses: list[ApplicationStatus]) -> str:
    return ", ".join(f'"{status.value}"' for status in statuses)


def validate_transition(
    from_status: Union[str, ApplicationStatus],
    to_status: Union[str, ApplicationStatus],
) -> TransitionValidation:
    current = parse_status(from_status)
    target = parse_status(to_status)
    allowed = allowed_transitions(current)
    if is_transition_allowed(current, target):
        return TransitionValidation(ok=True, from_status=current, to_status=target, allowed=allowed)

    if current in TERMINAL_STATES:
        terminal = ", ".join(status.value for status in STATUS_ORDER if status in TERMINAL_STATES)
        message = (
            f'Cannot change status from "{current.value}". Applications in terminal states '
            f"({terminal}) cannot be modified."
        )
    else:
        message = (
            f'Invalid status transition from "{current.value}" to "{target.value}". '
            f'Allowed transitions from "{current.value}" are: {_quoted(allowed)}.'
        )
    return TransitionValidation(
        ok=False,
        from_status=current,
        to_status=target,
        allowed=allowed,
        message=message,
    )


def ensure_transition(
    from_status: Union[str, ApplicationStatus],
    to_status: Union[str, ApplicationStatus],
) -> TransitionValidation:
    validation = validate_transition(from_status, to_status)
    validation.raise_for_error()
    return validation


def describe_transitions(status: Union[str, ApplicationStatus]) -> str:
    current = parse_status(status)
    if current in TERMINAL_STATES:
        return f'Status "{current.value}" is a terminal state and cannot be changed.'
    targets = _quoted(allowed_transitions(current))
    description = f'From "{current.value}", you can transition to: {targets}.'
    if current in LEGACY_STATUSES:
        description += " This is a legacy status kept for older applications."
    return description
