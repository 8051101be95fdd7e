from enum import Enum


class AutomationState(str, Enum):
    WAITING = "waiting"
    DUE = "due"
    PROCESSING = "processing"
    RETRYING = "retrying"
    ERROR = "error"


# States in which an executor may be working on the store
IN_FLIGHT_STATES = (AutomationState.PROCESSING.value, AutomationState.RETRYING.value)

ALLOWED_TRANSITIONS = {
    AutomationState.WAITING: {AutomationState.DUE},
    AutomationState.DUE: {AutomationState.PROCESSING},
    AutomationState.PROCESSING: {
        AutomationState.WAITING,
        AutomationState.RETRYING,
        AutomationState.ERROR,
    },
    AutomationState.RETRYING: {AutomationState.PROCESSING, AutomationState.ERROR},
    AutomationState.ERROR: {AutomationState.WAITING},
}


def can_transition(current, target) -> bool:
    return AutomationState(target) in ALLOWED_TRANSITIONS[AutomationState(current)]
