from typing import List, Optional


class WorkflowError(Exception):
    """Base class for every failure a workflow transition can surface"""

    kind = "workflow_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def user_message(self, fallback: str) -> str:
        return self.message or fallback

    @property
    def details(self) -> List[str]:
        return []


class NetworkError(WorkflowError):
    """No response received: connection failure or timeout"""

    kind = "network_error"

    def __init__(self, service: str, operation: str, timeout: bool = False, reason: str = ""):
        self.service = service
        self.operation = operation
        self.timeout = timeout
        self.reason = reason
        if timeout:
            message = f"{service} did not respond in time ({operation})"
        else:
            message = f"No response from {service} ({operation})"
        super().__init__(message)

    def user_message(self, fallback: str) -> str:
        if self.timeout:
            return f"{fallback}: the {self.service} service timed out"
        return f"{fallback}: the {self.service} service is unreachable"


class ServiceError(WorkflowError):
    """Backend answered with an error status"""

    kind = "service_error"

    def __init__(self, service: str, operation: str, status_code: int, detail: Optional[str] = None):
        self.service = service
        self.operation = operation
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{service} {operation} failed: {status_code} - {detail or 'no detail'}")

    def user_message(self, fallback: str) -> str:
        return self.detail or fallback


class MalformedResponse(WorkflowError):
    """Response received but it does not match the expected contract"""

    kind = "malformed_response"

    def __init__(self, service: str, operation: str, reason: str):
        self.service = service
        self.operation = operation
        self.reason = reason
        super().__init__(f"Malformed response from {service} ({operation}): {reason}")

    def user_message(self, fallback: str) -> str:
        return f"{fallback}: unexpected response from the {self.service} service"


class InvalidSelection(WorkflowError):
    kind = "invalid_selection"

    def __init__(self, choice: str, available: List[str], what: str = "Enhancement method"):
        self.choice = choice
        self.available = list(available)
        super().__init__(
            f"{what} '{choice}' is not available "
            f"(choose one of: {', '.join(self.available) or 'none'})"
        )


class ExportBlocked(WorkflowError):
    """validate-export answered can_export=false; a normal outcome, not a service failure"""

    kind = "export_blocked"

    def __init__(self, messages: List[str]):
        self.messages = list(messages)
        super().__init__("; ".join(self.messages) or "Export is not possible")

    @property
    def details(self) -> List[str]:
        return self.messages


class InvalidUpload(WorkflowError):
    kind = "invalid_upload"


class InvalidAssignment(WorkflowError):
    kind = "invalid_assignment"


class StageError(WorkflowError):
    """Transition invoked from a stage that does not accept it"""

    kind = "invalid_stage"


class ArtifactUnavailable(WorkflowError):
    """Read of a stage artifact that is not (or no longer) valid"""

    kind = "artifact_unavailable"
