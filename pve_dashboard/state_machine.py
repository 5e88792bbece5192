from enum import Enum


class ProvisionStage(str, Enum):
    VALIDATING = "validating"
    RESERVING_IP = "reserving_ip"
    AUTHENTICATING = "authenticating"
    RESOLVING_TEMPLATE = "resolving_template"
    CLONING = "cloning"
    CONFIGURING = "configuring"
    RESIZING = "resizing"
    STARTING = "starting"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    ProvisionStage.VALIDATING.value: {
        ProvisionStage.RESERVING_IP.value,
        ProvisionStage.FAILED.value,
    },
    ProvisionStage.RESERVING_IP.value: {
        ProvisionStage.AUTHENTICATING.value,
        ProvisionStage.FAILED.value,
    },
    ProvisionStage.AUTHENTICATING.value: {
        ProvisionStage.RESOLVING_TEMPLATE.value,
        ProvisionStage.FAILED.value,
    },
    ProvisionStage.RESOLVING_TEMPLATE.value: {
        ProvisionStage.CLONING.value,
        ProvisionStage.FAILED.value,
    },
    ProvisionStage.CLONING.value: {
        ProvisionStage.CONFIGURING.value,
        ProvisionStage.FAILED.value,
    },
    ProvisionStage.CONFIGURING.value: {
        ProvisionStage.RESIZING.value,
        ProvisionStage.STARTING.value,
        ProvisionStage.FAILED.value,
    },
    ProvisionStage.RESIZING.value: {ProvisionStage.STARTING.value},
    ProvisionStage.STARTING.value: {ProvisionStage.FINALIZING.value},
    ProvisionStage.FINALIZING.value: {ProvisionStage.SUCCEEDED.value},
    ProvisionStage.SUCCEEDED.value: set(),
    ProvisionStage.FAILED.value: set(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
