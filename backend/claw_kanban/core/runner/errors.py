"""Errors raised by the run supervisor before anything is spawned or mutated."""


class RunError(RuntimeError):
    """Base class for rejected operator commands."""

    code = "run_error"
    status_code = 400

    def __init__(self, message: str, *, card_id: str | None = None) -> None:
        super().__init__(message)
        self.card_id = card_id


class CardNotFoundError(RunError):
    code = "not_found"
    status_code = 404


class UnsupportedAgentError(RunError):
    """Assignee is not an agent kind the launcher knows."""

    code = "unsupported_agent"

    def __init__(self, message: str, *, card_id: str | None = None, agent: str | None = None) -> None:
        super().__init__(message, card_id=card_id)
        self.agent = agent


class AlreadyRunningError(RunError):
    code = "already_running"
    status_code = 409


class ProjectPathError(RunError):
    """No usable working directory could be resolved."""

    code = "project_path_unresolved"


class InvalidCardStateError(RunError):
    code = "invalid_state"


class NoActiveRunError(RunError):
    code = "no_active_run"
    status_code = 409


class CredentialError(RunError):
    """No bearer token available for an HTTP-streamed agent."""

    code = "missing_credentials"
