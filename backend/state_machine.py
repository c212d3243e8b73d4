from models import ReportStatus, VisitStatus

REPORT_TRANSITIONS: dict[ReportStatus, list[ReportStatus]] = {
    ReportStatus.DRAFT: [ReportStatus.FINALIZED],
}

VISIT_TRANSITIONS: dict[VisitStatus, list[VisitStatus]] = {
    VisitStatus.DRAFT: [VisitStatus.WAITING, VisitStatus.COMPLETED],
    VisitStatus.WAITING: [VisitStatus.COMPLETED],
}


def _validate(kind: str, transitions: dict, current_state, new_state) -> bool:
    allowed = transitions.get(current_state)
    if allowed is None:
        raise ValueError(f"No transitions from {kind} state '{current_state.value}'")

    if new_state not in allowed:
        raise ValueError(
            f"Invalid transition: {kind} cannot go from '{current_state.value}' to '{new_state.value}'. "
            f"Allowed: {[state.value for state in allowed]}"
        )

    return True

def validate_report_transition(current_state: ReportStatus, new_state: ReportStatus) -> bool:
    """Validate and return True if transition is allowed, raise ValueError otherwise."""
    return _validate("report", REPORT_TRANSITIONS, current_state, new_state)

def validate_visit_transition(current_state: VisitStatus, new_state: VisitStatus) -> bool:
    if current_state == new_state:
        return True
    return _validate("visit", VISIT_TRANSITIONS, current_state, new_state)
